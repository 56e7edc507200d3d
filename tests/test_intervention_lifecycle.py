"""
Property Works — Intervention lifecycle service tests.

Covers:
    1. reject_intervention
    2. cancel_intervention
    3. propose_schedule / accept_schedule
    4. transition_intervention (table-driven edges, request_quote)
    5. get_available_transitions
    6. Side effects: activity log and notifications never fail the operation
    7. Team scope for manager operations
    8. Time slots: propose, cancel, list
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from propworks.core.exceptions import (
    ForbiddenError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from propworks.models import db
from propworks.models.activity import ActivityLog
from propworks.models.intervention import Intervention, InterventionStatus, InterventionTimeSlot
from propworks.models.notification import Notification
from propworks.models.quote import Quote
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services import intervention_lifecycle as lifecycle


def _activity(action):
    return ActivityLog.query.filter_by(action=action).all()


def _reload(intervention_id):
    db.session.expire_all()
    return db.session.get(Intervention, intervention_id)


# ═══════════════════════════════════════════════════════════════════════════
#  1. reject_intervention
# ═══════════════════════════════════════════════════════════════════════════


class TestRejectIntervention:
    def test_pending_is_rejected_with_public_and_internal_comment(self, factory, manager, tenant):
        iv = factory.intervention("pending", created_by=tenant)

        result = lifecycle.reject_intervention(
            iv.id, "Not covered by the lease", manager.id, internal_comment="Owner's responsibility",
        )

        assert result["new_status"] == "rejected"
        iv = _reload(iv.id)
        assert iv.status == "rejected"
        assert iv.manager_comment == "Not covered by the lease"
        assert iv.internal_comment == "Owner's responsibility"

    def test_blank_reason_is_refused(self, factory, manager):
        iv = factory.intervention("pending")
        with pytest.raises(ValidationError):
            lifecycle.reject_intervention(iv.id, "   ", manager.id)
        assert _reload(iv.id).status == "pending"

    @pytest.mark.parametrize("status", [
        "rejected", "approved", "quote_requested", "scheduling", "scheduled", "in_progress",
        "provider_completed", "tenant_validated", "completed", "cancelled",
    ])
    def test_only_pending_can_be_rejected(self, factory, manager, status):
        iv = factory.intervention(status)
        with pytest.raises(InvalidStateError) as exc:
            lifecycle.reject_intervention(iv.id, "Too late", manager.id)
        assert exc.value.current_status == status
        assert _reload(iv.id).status == status

    def test_missing_intervention(self, manager):
        with pytest.raises(NotFoundError):
            lifecycle.reject_intervention(9999, "reason", manager.id)

    def test_creator_is_notified(self, factory, manager, tenant):
        iv = factory.intervention("pending", created_by=tenant)
        lifecycle.reject_intervention(iv.id, "Duplicate request", manager.id)

        notes = Notification.query.filter_by(user_id=tenant.id).all()
        assert len(notes) == 1
        assert notes[0].type == "intervention_status_changed"
        assert "Duplicate request" in notes[0].message
        assert Notification.query.filter_by(user_id=manager.id).count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  2. cancel_intervention
# ═══════════════════════════════════════════════════════════════════════════


class TestCancelIntervention:
    @pytest.mark.parametrize("status", [
        "approved", "quote_requested", "scheduling", "scheduled", "in_progress",
    ])
    def test_cancellable_statuses(self, factory, manager, status):
        iv = factory.intervention(status)

        result = lifecycle.cancel_intervention(iv.id, "Tenant moved out", manager.id)

        assert result["previous_status"] == status
        iv = _reload(iv.id)
        assert iv.status == "cancelled"
        assert iv.cancellation_reason == "Tenant moved out"
        assert iv.cancelled_at is not None

    @pytest.mark.parametrize("status", [
        "pending", "rejected", "provider_completed", "tenant_validated", "completed", "cancelled",
    ])
    def test_other_statuses_refused(self, factory, manager, status):
        iv = factory.intervention(status)
        with pytest.raises(InvalidStateError):
            lifecycle.cancel_intervention(iv.id, "reason", manager.id)
        assert _reload(iv.id).status == status

    def test_activity_metadata(self, factory, manager):
        iv = factory.intervention("scheduled")
        lifecycle.cancel_intervention(iv.id, "Budget frozen", manager.id, internal_comment="Q4")

        [entry] = _activity("intervention.cancel")
        meta = entry.metadata_dict
        assert entry.actor == manager.id
        assert entry.entity_id == str(iv.id)
        assert meta["previous_status"] == "scheduled"
        assert meta["reason"] == "Budget frozen"
        assert meta["actor"] == manager.id
        assert "timestamp" in meta

    def test_lost_race_reports_invalid_state(self, factory, manager):
        iv = factory.intervention("approved")
        with patch.object(InterventionRepository, "update_intervention_status", return_value=0):
            with pytest.raises(InvalidStateError, match="concurrently"):
                lifecycle.cancel_intervention(iv.id, "reason", manager.id)
        assert _activity("intervention.cancel") == []

    def test_database_error_becomes_internal_error(self, factory, manager):
        iv = factory.intervention("approved")
        boom = OperationalError("UPDATE interventions", {}, Exception("disk I/O error"))
        with patch.object(InterventionRepository, "update_intervention_status", side_effect=boom):
            with pytest.raises(InternalError):
                lifecycle.cancel_intervention(iv.id, "reason", manager.id)
        assert _reload(iv.id).status == "approved"

    def test_activity_failure_does_not_fail_cancel(self, factory, manager):
        iv = factory.intervention("approved")
        boom = OperationalError("INSERT activity_logs", {}, Exception("locked"))
        with patch.object(InterventionRepository, "insert_activity_log", side_effect=boom):
            result = lifecycle.cancel_intervention(iv.id, "reason", manager.id)
        assert result["new_status"] == "cancelled"
        assert _reload(iv.id).status == "cancelled"

    def test_notification_failure_does_not_fail_cancel(self, factory, manager, tenant):
        iv = factory.intervention("approved", created_by=tenant)
        with patch(
            "propworks.services.notification_dispatcher.NotificationDispatcher.notify_status_changed",
            side_effect=RuntimeError("queue gone"),
        ):
            result = lifecycle.cancel_intervention(iv.id, "reason", manager.id)
        assert result["new_status"] == "cancelled"


# ═══════════════════════════════════════════════════════════════════════════
#  3. Scheduling
# ═══════════════════════════════════════════════════════════════════════════


class TestScheduling:
    def test_propose_date(self, factory, manager):
        iv = factory.intervention("scheduling")
        when = datetime(2026, 11, 5, 14, 0, tzinfo=timezone.utc)

        result = lifecycle.propose_schedule(iv.id, manager.id, scheduled_date=when)

        assert result["status"] == "scheduling"
        assert _reload(iv.id).scheduled_date is not None

    def test_propose_slot_marks_it_selected(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        first = factory.time_slot(iv, provider=provider)
        second = factory.time_slot(iv, provider=provider,
                                   start=datetime(2026, 11, 4, 8, 0, tzinfo=timezone.utc))

        lifecycle.propose_schedule(iv.id, manager.id, slot_id=second.id)

        db.session.expire_all()
        assert db.session.get(type(first), first.id).status == "pending"
        assert db.session.get(type(second), second.id).status == "selected"
        assert _reload(iv.id).scheduled_date.day == 4

    def test_cancelled_slot_cannot_be_picked(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, status="cancelled")

        with pytest.raises(InvalidStateError, match="cancelled"):
            lifecycle.propose_schedule(iv.id, manager.id, slot_id=slot.id)
        assert _reload(iv.id).scheduled_date is None

    def test_assigned_provider_may_propose(self, factory, provider):
        iv = factory.intervention("scheduling")
        factory.assign(iv, provider, is_primary=True)
        when = datetime(2026, 11, 6, 10, 0, tzinfo=timezone.utc)

        lifecycle.propose_schedule(iv.id, provider.id, scheduled_date=when)
        assert _reload(iv.id).scheduled_date is not None

    def test_unassigned_provider_cannot_propose(self, factory, provider):
        iv = factory.intervention("scheduling")
        with pytest.raises(ForbiddenError):
            lifecycle.propose_schedule(
                iv.id, provider.id, scheduled_date=datetime(2026, 11, 6, tzinfo=timezone.utc),
            )

    def test_propose_requires_exactly_one_argument(self, factory, manager):
        iv = factory.intervention("scheduling")
        with pytest.raises(ValidationError):
            lifecycle.propose_schedule(iv.id, manager.id)

    def test_propose_outside_scheduling(self, factory, manager):
        iv = factory.intervention("scheduled")
        with pytest.raises(InvalidStateError):
            lifecycle.propose_schedule(
                iv.id, manager.id, scheduled_date=datetime(2026, 11, 5, tzinfo=timezone.utc),
            )

    def test_primary_provider_accepts(self, factory, manager, provider):
        iv = factory.intervention(
            "scheduling", scheduled_date=datetime(2026, 11, 5, 14, 0, tzinfo=timezone.utc),
        )
        factory.assign(iv, manager, is_primary=True)
        factory.assign(iv, provider, is_primary=True)

        result = lifecycle.accept_schedule(iv.id, provider.id)

        assert result["new_status"] == "scheduled"
        assert _reload(iv.id).status == "scheduled"
        notes = Notification.query.filter_by(user_id=manager.id, type="schedule_accepted").all()
        assert len(notes) == 1

    def test_secondary_provider_cannot_accept(self, factory, provider, second_provider):
        iv = factory.intervention(
            "scheduling", scheduled_date=datetime(2026, 11, 5, tzinfo=timezone.utc),
        )
        factory.assign(iv, provider, is_primary=True)
        factory.assign(iv, second_provider, is_primary=False)

        with pytest.raises(ForbiddenError):
            lifecycle.accept_schedule(iv.id, second_provider.id)
        assert _reload(iv.id).status == "scheduling"

    def test_accept_without_date(self, factory, provider):
        iv = factory.intervention("scheduling")
        factory.assign(iv, provider, is_primary=True)

        with pytest.raises(NotFoundError, match="Scheduled date"):
            lifecycle.accept_schedule(iv.id, provider.id)

    def test_accept_wrong_status(self, factory, provider):
        iv = factory.intervention("approved")
        factory.assign(iv, provider, is_primary=True)
        with pytest.raises(InvalidStateError):
            lifecycle.accept_schedule(iv.id, provider.id)


# ═══════════════════════════════════════════════════════════════════════════
#  4. transition_intervention
# ═══════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_unknown_action(self, factory, manager):
        iv = factory.intervention("pending")
        with pytest.raises(ValidationError):
            lifecycle.transition_intervention(iv.id, "teleport", manager.id)

    def test_approve(self, factory, manager):
        iv = factory.intervention("pending")
        result = lifecycle.transition_intervention(iv.id, "approve", manager.id)
        assert result["previous_status"] == "pending"
        assert _reload(iv.id).status == "approved"

    def test_action_from_wrong_status(self, factory, manager):
        iv = factory.intervention("scheduled")
        with pytest.raises(InvalidStateError):
            lifecycle.transition_intervention(iv.id, "approve", manager.id)

    def test_request_quote_creates_pending_quotes(self, factory, manager, provider, second_provider):
        iv = factory.intervention("approved")

        result = lifecycle.transition_intervention(
            iv.id, "request_quote", manager.id,
            provider_ids=[provider.id, second_provider.id, provider.id],
        )

        assert _reload(iv.id).status == "quote_requested"
        quotes = Quote.query.filter_by(intervention_id=iv.id).order_by(Quote.id).all()
        assert [q.provider_id for q in quotes] == [provider.id, second_provider.id]
        assert {q.status for q in quotes} == {"pending"}
        assert result["quote_ids"] == [q.id for q in quotes]
        assert Notification.query.filter_by(type="quote_requested").count() == 2

    def test_request_quote_needs_providers(self, factory, manager, tenant):
        iv = factory.intervention("approved")
        with pytest.raises(ValidationError):
            lifecycle.transition_intervention(iv.id, "request_quote", manager.id)
        with pytest.raises(ValidationError):
            lifecycle.transition_intervention(iv.id, "request_quote", manager.id,
                                              provider_ids=[tenant.id])
        assert _reload(iv.id).status == "approved"

    def test_provider_flow_to_completion(self, factory, manager, provider, tenant):
        iv = factory.intervention("scheduled", created_by=tenant)
        factory.assign(iv, provider, is_primary=True)
        factory.assign(iv, tenant)

        lifecycle.transition_intervention(iv.id, "start_work", provider.id)
        lifecycle.transition_intervention(iv.id, "complete_by_provider", provider.id,
                                          report="Replaced the cartridge")
        lifecycle.transition_intervention(iv.id, "validate_by_tenant", tenant.id)
        lifecycle.transition_intervention(iv.id, "finalize", manager.id)

        iv = _reload(iv.id)
        assert iv.status == "completed"
        assert iv.provider_report == "Replaced the cartridge"
        assert iv.completed_at is not None

    def test_start_work_requires_assigned_provider(self, factory, provider):
        iv = factory.intervention("scheduled")
        with pytest.raises(ForbiddenError):
            lifecycle.transition_intervention(iv.id, "start_work", provider.id)

    def test_tenant_validation_requires_tenant(self, factory, provider):
        iv = factory.intervention("provider_completed")
        factory.assign(iv, provider, is_primary=True)
        with pytest.raises(ForbiddenError):
            lifecycle.transition_intervention(iv.id, "validate_by_tenant", provider.id)


# ═══════════════════════════════════════════════════════════════════════════
#  5. get_available_transitions
# ═══════════════════════════════════════════════════════════════════════════


class TestAvailableTransitions:
    def test_pending(self, factory):
        iv = factory.intervention("pending")
        assert set(lifecycle.get_available_transitions(iv)) == {"reject", "approve"}

    def test_scheduling(self, factory):
        iv = factory.intervention("scheduling")
        assert set(lifecycle.get_available_transitions(iv)) == {
            "cancel", "propose_schedule", "accept_schedule",
        }

    @pytest.mark.parametrize("status", ["rejected", "completed", "cancelled"])
    def test_terminal_has_none(self, factory, status):
        iv = factory.intervention(status)
        assert lifecycle.get_available_transitions(iv) == []

    def test_every_offered_action_is_an_edge(self, factory):
        for status in InterventionStatus:
            iv = factory.intervention(status.value)
            for action in lifecycle.get_available_transitions(iv):
                if action in lifecycle.LIFECYCLE_ACTIONS:
                    assert lifecycle.LIFECYCLE_ACTIONS[action]["from"] == status


# ═══════════════════════════════════════════════════════════════════════════
#  6. Team scope
# ═══════════════════════════════════════════════════════════════════════════


class TestTeamScope:
    def test_reject_by_other_team_manager(self, factory, outsider):
        iv = factory.intervention("pending")
        with pytest.raises(ForbiddenError):
            lifecycle.reject_intervention(iv.id, "Not ours", outsider.id)
        assert _reload(iv.id).status == "pending"
        assert _activity("intervention.reject") == []

    def test_cancel_by_other_team_manager(self, factory, outsider):
        iv = factory.intervention("scheduled")
        with pytest.raises(ForbiddenError):
            lifecycle.cancel_intervention(iv.id, "Not ours", outsider.id)
        assert _reload(iv.id).status == "scheduled"

    @pytest.mark.parametrize("status,action", [
        ("pending", "approve"),
        ("quote_requested", "start_scheduling"),
        ("tenant_validated", "finalize"),
    ])
    def test_manager_transitions_by_other_team(self, factory, outsider, status, action):
        iv = factory.intervention(status)
        with pytest.raises(ForbiddenError):
            lifecycle.transition_intervention(iv.id, action, outsider.id)
        assert _reload(iv.id).status == status

    def test_propose_schedule_by_other_team(self, factory, outsider):
        iv = factory.intervention("scheduling")
        with pytest.raises(ForbiddenError):
            lifecycle.propose_schedule(
                iv.id, outsider.id, scheduled_date=datetime(2026, 11, 5, tzinfo=timezone.utc),
            )
        assert _reload(iv.id).scheduled_date is None

    def test_forbidden_wins_over_wrong_status(self, factory, outsider):
        iv = factory.intervention("completed")
        with pytest.raises(ForbiddenError):
            lifecycle.cancel_intervention(iv.id, "reason", outsider.id)

    def test_unknown_actor(self, factory):
        iv = factory.intervention("pending")
        with pytest.raises(ForbiddenError):
            lifecycle.reject_intervention(iv.id, "reason", 9999)


# ═══════════════════════════════════════════════════════════════════════════
#  7. Time slots
# ═══════════════════════════════════════════════════════════════════════════


def _windows(*days):
    return [
        (datetime(2026, 11, day, 9, 0, tzinfo=timezone.utc),
         datetime(2026, 11, day, 11, 0, tzinfo=timezone.utc))
        for day in days
    ]


def _slot(slot_id):
    db.session.expire_all()
    return db.session.get(InterventionTimeSlot, slot_id)


class TestProposeTimeSlots:
    def test_manager_addresses_slots_to_provider(self, factory, manager, provider):
        iv = factory.intervention("quote_requested")
        factory.assign(iv, provider, is_primary=True)

        result = lifecycle.propose_time_slots(iv.id, manager.id, _windows(3, 4), provider_id=provider.id)

        assert result["provider_id"] == provider.id
        slots = [_slot(sid) for sid in result["slot_ids"]]
        assert [s.status for s in slots] == ["pending", "pending"]
        assert {s.provider_id for s in slots} == {provider.id}
        assert {s.proposed_by for s in slots} == {manager.id}
        notes = Notification.query.filter_by(user_id=provider.id, type="time_slots_proposed").all()
        assert len(notes) == 1
        [entry] = _activity("intervention.time_slots_proposed")
        assert entry.metadata_dict["slot_ids"] == result["slot_ids"]

    def test_provider_proposes_own_slots_and_managers_hear(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        factory.assign(iv, manager, is_primary=True)
        factory.assign(iv, provider, is_primary=True)

        result = lifecycle.propose_time_slots(iv.id, provider.id, _windows(5))

        assert result["provider_id"] == provider.id
        assert _slot(result["slot_ids"][0]).provider_id == provider.id
        assert Notification.query.filter_by(user_id=manager.id, type="time_slots_proposed").count() == 1

    def test_provider_cannot_propose_for_someone_else(self, factory, provider, second_provider):
        iv = factory.intervention("scheduling")
        factory.assign(iv, provider, is_primary=True)
        factory.assign(iv, second_provider)
        with pytest.raises(ForbiddenError):
            lifecycle.propose_time_slots(iv.id, provider.id, _windows(5), provider_id=second_provider.id)

    def test_provider_id_must_be_assigned(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        with pytest.raises(ValidationError):
            lifecycle.propose_time_slots(iv.id, manager.id, _windows(5), provider_id=provider.id)
        assert InterventionRepository.get_time_slots(iv.id) == []

    @pytest.mark.parametrize("status", ["pending", "scheduled", "in_progress", "cancelled"])
    def test_outside_proposal_statuses(self, factory, manager, status):
        iv = factory.intervention(status)
        with pytest.raises(InvalidStateError):
            lifecycle.propose_time_slots(iv.id, manager.id, _windows(5))

    def test_window_must_end_after_start(self, factory, manager):
        iv = factory.intervention("scheduling")
        start = datetime(2026, 11, 5, 11, 0, tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            lifecycle.propose_time_slots(iv.id, manager.id, [(start, start)])
        with pytest.raises(ValidationError):
            lifecycle.propose_time_slots(iv.id, manager.id, [])

    def test_tenant_cannot_propose(self, factory, tenant):
        iv = factory.intervention("scheduling")
        factory.assign(iv, tenant)
        with pytest.raises(ForbiddenError):
            lifecycle.propose_time_slots(iv.id, tenant.id, _windows(5))

    def test_other_team_manager_cannot_propose(self, factory, outsider):
        iv = factory.intervention("scheduling")
        with pytest.raises(ForbiddenError):
            lifecycle.propose_time_slots(iv.id, outsider.id, _windows(5))


class TestCancelTimeSlot:
    def test_proposer_cancels(self, factory, provider):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, proposed_by=provider)

        result = lifecycle.cancel_time_slot(iv.id, slot.id, provider.id)

        assert result["status"] == "cancelled"
        slot = _slot(slot.id)
        assert slot.status == "cancelled"
        assert slot.cancelled_by == provider.id
        assert slot.cancelled_at is not None
        assert len(_activity("intervention.time_slot_cancelled")) == 1

    def test_team_manager_cancels_provider_slot(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, proposed_by=provider)
        lifecycle.cancel_time_slot(iv.id, slot.id, manager.id)
        assert _slot(slot.id).status == "cancelled"

    def test_other_provider_refused(self, factory, provider, second_provider):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, proposed_by=provider)
        with pytest.raises(ForbiddenError):
            lifecycle.cancel_time_slot(iv.id, slot.id, second_provider.id)
        assert _slot(slot.id).status == "pending"

    def test_other_team_manager_refused(self, factory, provider, outsider):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, proposed_by=provider)
        with pytest.raises(ForbiddenError):
            lifecycle.cancel_time_slot(iv.id, slot.id, outsider.id)

    @pytest.mark.parametrize("status", ["selected", "cancelled"])
    def test_only_pending_slots(self, factory, provider, status):
        iv = factory.intervention("scheduling")
        slot = factory.time_slot(iv, provider=provider, proposed_by=provider, status=status)
        with pytest.raises(InvalidStateError):
            lifecycle.cancel_time_slot(iv.id, slot.id, provider.id)
        assert _slot(slot.id).status == status

    def test_slot_of_another_intervention(self, factory, provider):
        iv = factory.intervention("scheduling")
        other = factory.intervention("scheduling")
        slot = factory.time_slot(other, provider=provider, proposed_by=provider)
        with pytest.raises(NotFoundError):
            lifecycle.cancel_time_slot(iv.id, slot.id, provider.id)

    def test_cancelled_slots_hidden_from_listing(self, factory, manager, provider):
        iv = factory.intervention("scheduling")
        kept = factory.time_slot(iv, provider=provider)
        factory.time_slot(iv, provider=provider, status="cancelled",
                          start=datetime(2026, 11, 4, 9, 0, tzinfo=timezone.utc))

        assert [s["id"] for s in lifecycle.list_time_slots(iv.id, manager.id)] == [kept.id]
        assert len(lifecycle.list_time_slots(iv.id, manager.id, include_cancelled=True)) == 2
