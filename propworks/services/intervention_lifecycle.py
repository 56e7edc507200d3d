"""
Intervention Lifecycle Service

Validates and applies intervention status transitions. Every status write is
conditional on the expected prior status; a write that matches no row means
a concurrent request won and is reported as ``InvalidStateError``.

Operations:
  reject_intervention     pending → rejected
  cancel_intervention     approved | quote_requested | scheduling | scheduled | in_progress → cancelled
  propose_schedule        sets scheduled_date while scheduling
  accept_schedule         scheduling → scheduled (primary provider only)
  propose_time_slots      offers visit windows (approved | quote_requested | scheduling)
  cancel_time_slot        withdraws a pending window
  transition_intervention table-driven remaining edges (see LIFECYCLE_ACTIONS)

Manager-side operations are limited to managers of the intervention's team.

Activity logging and notifications run after the commit and never fail the
operation.

Usage:
    from propworks.services.intervention_lifecycle import cancel_intervention

    result = cancel_intervention(
        intervention_id=7,
        reason="Tenant moved out",
        actor_id=3,
        internal_comment="Refund deposit",
    )
"""

import logging
from datetime import datetime, timezone

from propworks.core.exceptions import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from propworks.models import db
from propworks.models.intervention import (
    CANCELLABLE_STATUSES,
    SLOT_PROPOSAL_STATUSES,
    Intervention,
    InterventionStatus,
    ParticipantRole,
    TimeSlotStatus,
    validate_intervention_transition,
)
from propworks.models.quote import Quote, QuoteStatus
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services.helpers.unit_of_work import log_activity, notify, unit_of_work
from propworks.services.participant_permissions import authorize, authorize_team, authorize_viewer

logger = logging.getLogger(__name__)

_S = InterventionStatus

# Remaining edges of the transition graph, keyed by action name.
LIFECYCLE_ACTIONS = {
    "approve": {"from": _S.PENDING, "to": _S.APPROVED, "actor_role": None},
    "request_quote": {"from": _S.APPROVED, "to": _S.QUOTE_REQUESTED, "actor_role": None},
    "start_scheduling": {"from": _S.QUOTE_REQUESTED, "to": _S.SCHEDULING, "actor_role": None},
    "start_work": {"from": _S.SCHEDULED, "to": _S.IN_PROGRESS, "actor_role": ParticipantRole.PROVIDER},
    "complete_by_provider": {
        "from": _S.IN_PROGRESS, "to": _S.PROVIDER_COMPLETED, "actor_role": ParticipantRole.PROVIDER,
    },
    "validate_by_tenant": {
        "from": _S.PROVIDER_COMPLETED, "to": _S.TENANT_VALIDATED, "actor_role": ParticipantRole.TENANT,
    },
    "finalize": {"from": _S.TENANT_VALIDATED, "to": _S.COMPLETED, "actor_role": None},
}


def _utcnow():
    return datetime.now(timezone.utc)


def _require_text(value, field: str) -> str:
    text = (value or "").strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", details={"field": field})
    return text


def _load(intervention_id: int) -> Intervention:
    intervention = InterventionRepository.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    return intervention


def _load_slot(intervention: Intervention, slot_id: int):
    slot = next((s for s in intervention.time_slots if s.id == slot_id), None)
    if slot is None:
        raise NotFoundError("Time slot", slot_id, reason=f"not found on intervention {intervention.id}")
    return slot


def _authorize_scheduler(intervention: Intervention, actor_id: int) -> bool:
    """Managers of the intervention's team, or one of its assigned providers.

    Returns True when the actor acts as a manager.
    """
    actor = InterventionRepository.get_user(actor_id)
    if actor is not None and actor.role_enum == ParticipantRole.MANAGER:
        authorize_team(intervention, actor_id)
        return True
    authorize(intervention.id, actor_id, [ParticipantRole.PROVIDER])
    return False


def _refuse(intervention: Intervention, action: str, reason: str | None = None):
    msg = f"Cannot {action} intervention {intervention.id} (status={intervention.status})"
    if reason:
        msg += f": {reason}"
    return InvalidStateError(msg, current_status=intervention.status)


def _apply(intervention: Intervention, action: str, new_status: InterventionStatus,
           expected, **fields) -> None:
    """Conditional status write; a lost race raises InvalidStateError."""
    rows = InterventionRepository.update_intervention_status(
        intervention.id, new_status, expected, **fields,
    )
    if rows != 1:
        raise _refuse(intervention, action, "status changed concurrently")


def _after_transition(intervention_id: int, action: str, previous: InterventionStatus,
                      new: InterventionStatus, actor_id: int, *, reason: str | None = None,
                      metadata: dict | None = None) -> None:
    intervention = InterventionRepository.get_intervention(intervention_id)
    logger.info(
        "Intervention %s: %s → %s (%s)", intervention_id, previous.value, new.value, action,
        extra={"intervention_id": intervention_id, "actor_id": actor_id,
               "event_type": f"intervention.{action}"},
    )
    log_activity(
        entity_type="intervention",
        entity_id=intervention_id,
        action=f"intervention.{action}",
        actor=actor_id,
        team_id=intervention.team_id if intervention is not None else None,
        metadata={"previous_status": previous.value, "new_status": new.value, **(metadata or {})},
    )
    if intervention is not None:
        notify("notify_status_changed", intervention, previous, new, actor_id, reason)


def _result(intervention_id: int, action: str, previous, new, **extra) -> dict:
    return {
        "intervention_id": intervention_id,
        "action": action,
        "previous_status": previous.value,
        "new_status": new.value,
        **extra,
    }


# ── Reject / cancel ──────────────────────────────────────────────────────


def reject_intervention(
    intervention_id: int,
    reason: str,
    actor_id: int,
    internal_comment: str | None = None,
) -> dict:
    """
    Reject a pending intervention.

    The reason becomes the public ``manager_comment``; ``internal_comment``
    is visible to managers only.

    Raises:
        ValidationError, NotFoundError, InvalidStateError
        ForbiddenError: actor belongs to another team
    """
    reason = _require_text(reason, "reason")
    intervention = _load(intervention_id)
    authorize_team(intervention, actor_id)
    if intervention.status_enum != _S.PENDING:
        raise _refuse(intervention, "reject")

    with unit_of_work("reject intervention", intervention_id=intervention_id):
        _apply(intervention, "reject", _S.REJECTED, [_S.PENDING],
               manager_comment=reason, internal_comment=internal_comment)

    _after_transition(intervention_id, "reject", _S.PENDING, _S.REJECTED, actor_id,
                      reason=reason, metadata={"reason": reason})
    return _result(intervention_id, "reject", _S.PENDING, _S.REJECTED)


def cancel_intervention(
    intervention_id: int,
    reason: str,
    actor_id: int,
    internal_comment: str | None = None,
) -> dict:
    """
    Cancel an intervention that is under way.

    Raises:
        ValidationError, NotFoundError, InvalidStateError
        ForbiddenError: actor belongs to another team
    """
    reason = _require_text(reason, "reason")
    intervention = _load(intervention_id)
    authorize_team(intervention, actor_id)
    previous = intervention.status_enum
    if previous not in CANCELLABLE_STATUSES:
        raise _refuse(intervention, "cancel")

    cancelled_at = _utcnow()
    with unit_of_work("cancel intervention", intervention_id=intervention_id):
        _apply(intervention, "cancel", _S.CANCELLED, [previous],
               cancellation_reason=reason, internal_comment=internal_comment,
               cancelled_at=cancelled_at)

    _after_transition(
        intervention_id, "cancel", previous, _S.CANCELLED, actor_id, reason=reason,
        metadata={"reason": reason, "actor": actor_id, "timestamp": cancelled_at.isoformat()},
    )
    return _result(intervention_id, "cancel", previous, _S.CANCELLED,
                   cancelled_at=cancelled_at.isoformat())


# ── Scheduling ───────────────────────────────────────────────────────────


def propose_schedule(
    intervention_id: int,
    actor_id: int,
    *,
    scheduled_date: datetime | None = None,
    slot_id: int | None = None,
) -> dict:
    """
    Fix the visit date while the intervention is in ``scheduling``.

    Either pass ``scheduled_date`` directly or pick one of the intervention's
    time slots with ``slot_id`` (its start time becomes the date).
    """
    if (scheduled_date is None) == (slot_id is None):
        raise ValidationError("Provide exactly one of scheduled_date or slot_id")

    intervention = _load(intervention_id)
    _authorize_scheduler(intervention, actor_id)
    if intervention.status_enum != _S.SCHEDULING:
        raise _refuse(intervention, "propose a schedule for")

    if slot_id is not None:
        slot = _load_slot(intervention, slot_id)
        if slot.status_enum == TimeSlotStatus.CANCELLED:
            raise InvalidStateError(
                f"Time slot {slot_id} is cancelled", details={"slot_status": slot.status},
            )
        scheduled_date = slot.start_time

    with unit_of_work("propose schedule", intervention_id=intervention_id):
        _apply(intervention, "propose a schedule for", _S.SCHEDULING, [_S.SCHEDULING],
               scheduled_date=scheduled_date)
        if slot_id is not None and InterventionRepository.select_time_slot(intervention_id, slot_id) != 1:
            raise InvalidStateError(f"Time slot {slot_id} was cancelled concurrently")

    log_activity(
        entity_type="intervention",
        entity_id=intervention_id,
        action="intervention.propose_schedule",
        actor=actor_id,
        team_id=intervention.team_id,
        metadata={"scheduled_date": scheduled_date.isoformat(), "slot_id": slot_id},
    )
    return {
        "intervention_id": intervention_id,
        "status": _S.SCHEDULING.value,
        "scheduled_date": scheduled_date.isoformat(),
        "slot_id": slot_id,
    }


def accept_schedule(intervention_id: int, actor_id: int) -> dict:
    """
    Primary provider accepts the proposed date: scheduling → scheduled.

    Raises:
        NotFoundError: intervention missing, or no scheduled_date set yet
        InvalidStateError: status is not ``scheduling``
        ForbiddenError: actor is not the primary provider
    """
    intervention = _load(intervention_id)
    if intervention.status_enum != _S.SCHEDULING:
        raise _refuse(intervention, "accept the schedule of")

    authorize(intervention_id, actor_id, [ParticipantRole.PROVIDER], primary_only=True)

    if intervention.scheduled_date is None:
        raise NotFoundError("Scheduled date", reason=f"for intervention {intervention_id} is not set")
    scheduled_date = intervention.scheduled_date

    with unit_of_work("accept schedule", intervention_id=intervention_id):
        _apply(intervention, "accept the schedule of", _S.SCHEDULED, [_S.SCHEDULING])

    _after_transition(intervention_id, "accept_schedule", _S.SCHEDULING, _S.SCHEDULED, actor_id,
                      metadata={"scheduled_date": scheduled_date.isoformat()})

    managers = InterventionRepository.get_assignments(intervention_id, ParticipantRole.MANAGER)
    primary = next((a for a in managers if a.is_primary), managers[0] if managers else None)
    if primary is not None:
        notify(
            "notify_users", [primary.user_id], "schedule_accepted",
            f"Schedule accepted for intervention #{intervention_id}",
            f"The provider accepted the visit on {scheduled_date.isoformat()}.",
            {"scheduled_date": scheduled_date.isoformat(), "provider_id": actor_id},
            team_id=intervention.team_id, entity_type="intervention", entity_id=intervention_id,
        )
    return _result(intervention_id, "accept_schedule", _S.SCHEDULING, _S.SCHEDULED,
                   scheduled_date=scheduled_date.isoformat())


# ── Time slots ───────────────────────────────────────────────────────────


def propose_time_slots(
    intervention_id: int,
    actor_id: int,
    windows: list[tuple[datetime, datetime]],
    provider_id: int | None = None,
) -> dict:
    """
    Offer visit windows on an intervention that is not yet scheduled.

    A manager may address the windows to one assigned provider with
    ``provider_id``; a provider always proposes for themself. Addressed slots
    follow their provider into the child intervention when it is split.

    Raises:
        ValidationError: empty window list, a window ending before it starts,
            or ``provider_id`` is not a provider of the intervention
        ForbiddenError: actor is neither a team manager nor an assigned provider
        InvalidStateError: status is past scheduling
    """
    if not windows:
        raise ValidationError("At least one time slot is required", details={"field": "slots"})
    for index, (start, end) in enumerate(windows):
        if start >= end:
            raise ValidationError(
                "end_time must be after start_time", details={"field": "slots", "index": index},
            )

    intervention = _load(intervention_id)
    as_manager = _authorize_scheduler(intervention, actor_id)
    if intervention.status_enum not in SLOT_PROPOSAL_STATUSES:
        raise _refuse(intervention, "propose time slots for")

    if not as_manager:
        if provider_id is not None and provider_id != actor_id:
            raise ForbiddenError(f"Provider {actor_id} may only propose their own time slots")
        provider_id = actor_id
    elif provider_id is not None and InterventionRepository.get_assignment_for_user(
            intervention_id, provider_id, ParticipantRole.PROVIDER) is None:
        raise ValidationError(
            "provider_id must reference a provider of the intervention",
            details={"provider_id": provider_id},
        )

    with unit_of_work("propose time slots", intervention_id=intervention_id):
        slots = InterventionRepository.add_time_slots(
            intervention_id, windows, provider_id=provider_id, proposed_by=actor_id,
        )
    slot_ids = [s.id for s in slots]

    log_activity(
        entity_type="intervention",
        entity_id=intervention_id,
        action="intervention.time_slots_proposed",
        actor=actor_id,
        team_id=intervention.team_id,
        metadata={"slot_ids": slot_ids, "provider_id": provider_id},
    )

    if as_manager:
        recipients = [provider_id] if provider_id is not None else [
            a.user_id for a in InterventionRepository.get_assignments(
                intervention_id, ParticipantRole.PROVIDER)
        ]
    else:
        recipients = [
            a.user_id for a in InterventionRepository.get_assignments(
                intervention_id, ParticipantRole.MANAGER)
        ]
    recipients = [uid for uid in dict.fromkeys(recipients) if uid != actor_id]
    if recipients:
        notify(
            "notify_users", recipients, "time_slots_proposed",
            f"New visit windows for intervention #{intervention_id}",
            f"{len(slot_ids)} time slot(s) proposed for '{intervention.title}'.",
            {"slot_ids": slot_ids, "provider_id": provider_id},
            team_id=intervention.team_id, entity_type="intervention", entity_id=intervention_id,
        )
    return {"intervention_id": intervention_id, "slot_ids": slot_ids, "provider_id": provider_id}


def cancel_time_slot(intervention_id: int, slot_id: int, actor_id: int) -> dict:
    """
    Withdraw a pending time slot. The proposer or a manager of the team may
    cancel it.

    Raises:
        NotFoundError: intervention missing, or the slot is not on it
        ForbiddenError: actor is neither the proposer nor a team manager
        InvalidStateError: slot already cancelled, or currently selected
    """
    intervention = _load(intervention_id)
    slot = _load_slot(intervention, slot_id)
    if slot.proposed_by != actor_id:
        actor = InterventionRepository.get_user(actor_id)
        if actor is None or actor.role_enum != ParticipantRole.MANAGER:
            raise ForbiddenError(f"User {actor_id} did not propose time slot {slot_id}")
        authorize_team(intervention, actor_id)

    if slot.status_enum != TimeSlotStatus.PENDING:
        raise InvalidStateError(
            f"Cannot cancel time slot {slot_id} (status={slot.status})",
            details={"slot_status": slot.status},
        )

    cancelled_at = _utcnow()
    with unit_of_work("cancel time slot", intervention_id=intervention_id):
        rows = InterventionRepository.update_time_slot_status(
            slot_id, TimeSlotStatus.CANCELLED, [TimeSlotStatus.PENDING],
            cancelled_at=cancelled_at, cancelled_by=actor_id,
        )
        if rows != 1:
            raise InvalidStateError(f"Time slot {slot_id} changed concurrently")

    log_activity(
        entity_type="intervention",
        entity_id=intervention_id,
        action="intervention.time_slot_cancelled",
        actor=actor_id,
        team_id=intervention.team_id,
        metadata={"slot_id": slot_id},
    )
    return {
        "intervention_id": intervention_id,
        "slot_id": slot_id,
        "status": TimeSlotStatus.CANCELLED.value,
        "cancelled_at": cancelled_at.isoformat(),
    }


def list_time_slots(intervention_id: int, actor_id: int, include_cancelled: bool = False) -> list[dict]:
    intervention = _load(intervention_id)
    authorize_viewer(intervention, actor_id)
    statuses = None if include_cancelled else [TimeSlotStatus.PENDING, TimeSlotStatus.SELECTED]
    return [s.to_dict() for s in InterventionRepository.get_time_slots(intervention_id, statuses)]


# ── Table-driven transitions ─────────────────────────────────────────────


def transition_intervention(
    intervention_id: int,
    action: str,
    actor_id: int,
    *,
    provider_ids: list[int] | None = None,
    report: str | None = None,
    comment: str | None = None,
) -> dict:
    """
    Execute one of the ``LIFECYCLE_ACTIONS`` transitions.

    Args:
        provider_ids: Required for ``request_quote``; one pending quote is
            created per provider.
        report: Optional provider report for ``complete_by_provider``.
        comment: Optional note stored in the activity log.

    Raises:
        ValidationError, NotFoundError, InvalidStateError, ForbiddenError
    """
    rule = LIFECYCLE_ACTIONS.get(action)
    if rule is None:
        raise ValidationError(
            f"Unknown action: {action}", details={"allowed": sorted(LIFECYCLE_ACTIONS)},
        )

    intervention = _load(intervention_id)
    if rule["actor_role"] is None:
        authorize_team(intervention, actor_id)

    previous, target = rule["from"], rule["to"]
    if intervention.status_enum != previous:
        raise _refuse(intervention, action.replace("_", " "))

    if rule["actor_role"] is not None:
        authorize(intervention_id, actor_id, [rule["actor_role"]])

    fields = {}
    new_provider_ids = []
    if action == "request_quote":
        new_provider_ids = _distinct_ids(provider_ids, "provider_ids")
        _require_providers(new_provider_ids)
    elif action == "complete_by_provider" and report:
        fields["provider_report"] = report
    elif action == "finalize":
        fields["completed_at"] = _utcnow()

    quote_ids = []
    with unit_of_work(f"{action} intervention", intervention_id=intervention_id):
        _apply(intervention, action.replace("_", " "), target, [previous], **fields)
        for provider_id in new_provider_ids:
            quote = Quote(
                intervention_id=intervention_id,
                provider_id=provider_id,
                status=QuoteStatus.PENDING.value,
            )
            db.session.add(quote)
            db.session.flush()
            quote_ids.append(quote.id)

    metadata = {"comment": comment} if comment else {}
    if quote_ids:
        metadata["quote_ids"] = quote_ids
    _after_transition(intervention_id, action, previous, target, actor_id,
                      reason=comment, metadata=metadata)

    if new_provider_ids:
        notify(
            "notify_users", new_provider_ids, "quote_requested",
            f"Quote requested for intervention #{intervention_id}",
            f"Please submit a quote for '{intervention.title}'.",
            {"quote_ids": quote_ids},
            team_id=intervention.team_id, entity_type="intervention", entity_id=intervention_id,
        )

    extra = {"quote_ids": quote_ids} if action == "request_quote" else {}
    return _result(intervention_id, action, previous, target, **extra)


def _distinct_ids(values, field: str) -> list[int]:
    if not values or not isinstance(values, (list, tuple)):
        raise ValidationError(f"{field} must be a non-empty list", details={"field": field})
    ids = []
    for value in values:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must contain integers", details={"field": field})
        if number not in ids:
            ids.append(number)
    return ids


def _require_providers(user_ids: list[int]) -> None:
    found = {u.id: u for u in InterventionRepository.get_users(user_ids)}
    invalid = [uid for uid in user_ids
               if uid not in found or found[uid].role_enum != ParticipantRole.PROVIDER]
    if invalid:
        raise ValidationError(
            "provider_ids must reference provider users", details={"invalid_ids": invalid},
        )


def get_available_transitions(intervention: Intervention) -> list[str]:
    """List the actions valid for the intervention's current status."""
    status = intervention.status_enum
    actions = []
    if status == _S.PENDING:
        actions.append("reject")
    if status in CANCELLABLE_STATUSES:
        actions.append("cancel")
    if status == _S.SCHEDULING:
        actions += ["propose_schedule", "accept_schedule"]
    actions += [name for name, rule in LIFECYCLE_ACTIONS.items() if rule["from"] == status]
    return [a for a in actions if _edge_exists(status, a)]


def _edge_exists(status: InterventionStatus, action: str) -> bool:
    if action == "reject":
        return validate_intervention_transition(status, _S.REJECTED)
    if action == "cancel":
        return validate_intervention_transition(status, _S.CANCELLED)
    if action == "propose_schedule":
        return True
    if action == "accept_schedule":
        return validate_intervention_transition(status, _S.SCHEDULED)
    return validate_intervention_transition(status, LIFECYCLE_ACTIONS[action]["to"])
