"""
Persistence access for the intervention workflow.

Every status write is conditional: ``UPDATE ... WHERE id = ? AND status IN
(...)`` followed by an affected-row check in the caller. A zero row count
means another request moved the row first.

The repository only flushes. Services own the transaction and decide when to
commit or roll back.

Usage:
    from propworks.repositories.intervention_repository import InterventionRepository

    rows = InterventionRepository.update_intervention_status(
        7, InterventionStatus.CANCELLED, CANCELLABLE_STATUSES,
        cancellation_reason="Tenant moved out",
    )
    if rows != 1:
        raise InvalidStateError(...)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select, update

from propworks.models import db
from propworks.models.activity import ActivityLog, write_activity
from propworks.models.auth import User
from propworks.models.intervention import (
    Intervention,
    InterventionAssignment,
    InterventionStatus,
    InterventionTimeSlot,
    ParticipantRole,
    TimeSlotStatus,
)
from propworks.models.property import Lot, PropertyManager
from propworks.models.quote import Quote, QuoteStatus, quote_status_storage_values


@dataclass
class ChildInterventionSpec:
    """Everything needed to carve one provider's share out of a parent."""

    provider_id: int
    fields: dict
    assignments: list[dict] = field(default_factory=list)
    time_slot_ids: list[int] = field(default_factory=list)
    quote_ids: list[int] = field(default_factory=list)


def _status_values(statuses: Iterable) -> list[str]:
    return [InterventionStatus(s).value for s in statuses]


class InterventionRepository:
    """Stateless data access for interventions, quotes and assignments."""

    # ── Interventions ─────────────────────────────────────────────────────

    @staticmethod
    def get_intervention(intervention_id: int) -> Intervention | None:
        return db.session.get(Intervention, intervention_id)

    @staticmethod
    def update_intervention_status(
        intervention_id: int,
        new_status: InterventionStatus,
        expected_statuses: Iterable[InterventionStatus],
        **fields,
    ) -> int:
        """Move an intervention to ``new_status`` if it is still in one of
        ``expected_statuses``. Extra keyword arguments are written in the same
        statement.

        Returns:
            Number of rows updated (0 or 1).
        """
        stmt = (
            update(Intervention)
            .where(
                Intervention.id == intervention_id,
                Intervention.status.in_(_status_values(expected_statuses)),
            )
            .values(status=InterventionStatus(new_status).value, **fields)
            .execution_options(synchronize_session="fetch")
        )
        result = db.session.execute(stmt)
        return result.rowcount

    @staticmethod
    def mark_split(parent_id: int, split_at: datetime) -> int:
        """Stamp ``split_at`` unless the intervention was already split."""
        stmt = (
            update(Intervention)
            .where(Intervention.id == parent_id, Intervention.split_at.is_(None))
            .values(split_at=split_at)
            .execution_options(synchronize_session="fetch")
        )
        return db.session.execute(stmt).rowcount

    @staticmethod
    def create_child_interventions(
        parent_id: int, specs: list[ChildInterventionSpec],
    ) -> list[Intervention]:
        """Create one child per spec and move the listed slots and quotes
        from the parent to it."""
        children = []
        for spec in specs:
            child = Intervention(parent_intervention_id=parent_id, **spec.fields)
            db.session.add(child)
            db.session.flush()

            for data in spec.assignments:
                db.session.add(InterventionAssignment(intervention_id=child.id, **data))

            if spec.time_slot_ids:
                db.session.execute(
                    update(InterventionTimeSlot)
                    .where(
                        InterventionTimeSlot.id.in_(spec.time_slot_ids),
                        InterventionTimeSlot.intervention_id == parent_id,
                    )
                    .values(intervention_id=child.id)
                    .execution_options(synchronize_session="fetch")
                )
            if spec.quote_ids:
                db.session.execute(
                    update(Quote)
                    .where(Quote.id.in_(spec.quote_ids), Quote.intervention_id == parent_id)
                    .values(intervention_id=child.id)
                    .execution_options(synchronize_session="fetch")
                )
            children.append(child)

        db.session.flush()
        return children

    # ── Time slots ────────────────────────────────────────────────────────

    @staticmethod
    def get_time_slots(
        intervention_id: int, statuses: Iterable[TimeSlotStatus] | None = None,
    ) -> list[InterventionTimeSlot]:
        stmt = select(InterventionTimeSlot).where(
            InterventionTimeSlot.intervention_id == intervention_id,
        )
        if statuses is not None:
            stmt = stmt.where(
                InterventionTimeSlot.status.in_([TimeSlotStatus(s).value for s in statuses]),
            )
        return list(db.session.scalars(
            stmt.order_by(InterventionTimeSlot.start_time, InterventionTimeSlot.id),
        ))

    @staticmethod
    def add_time_slots(
        intervention_id: int,
        windows: list[tuple[datetime, datetime]],
        *,
        provider_id: int | None,
        proposed_by: int,
    ) -> list[InterventionTimeSlot]:
        slots = [
            InterventionTimeSlot(
                intervention_id=intervention_id,
                provider_id=provider_id,
                start_time=start,
                end_time=end,
                proposed_by=proposed_by,
                status=TimeSlotStatus.PENDING.value,
            )
            for start, end in windows
        ]
        db.session.add_all(slots)
        db.session.flush()
        return slots

    @staticmethod
    def update_time_slot_status(
        slot_id: int,
        new_status: TimeSlotStatus,
        expected_statuses: Iterable[TimeSlotStatus],
        **fields,
    ) -> int:
        stmt = (
            update(InterventionTimeSlot)
            .where(
                InterventionTimeSlot.id == slot_id,
                InterventionTimeSlot.status.in_([TimeSlotStatus(s).value for s in expected_statuses]),
            )
            .values(status=TimeSlotStatus(new_status).value, **fields)
            .execution_options(synchronize_session="fetch")
        )
        return db.session.execute(stmt).rowcount

    @staticmethod
    def select_time_slot(intervention_id: int, slot_id: int) -> int:
        """Mark ``slot_id`` selected and put any previously selected slot of
        the intervention back to pending.

        Returns:
            1 if the slot was selectable, 0 if it was cancelled meanwhile.
        """
        db.session.execute(
            update(InterventionTimeSlot)
            .where(
                InterventionTimeSlot.intervention_id == intervention_id,
                InterventionTimeSlot.id != slot_id,
                InterventionTimeSlot.status == TimeSlotStatus.SELECTED.value,
            )
            .values(status=TimeSlotStatus.PENDING.value)
            .execution_options(synchronize_session="fetch")
        )
        return InterventionRepository.update_time_slot_status(
            slot_id, TimeSlotStatus.SELECTED, [TimeSlotStatus.PENDING, TimeSlotStatus.SELECTED],
        )

    # ── Quotes ────────────────────────────────────────────────────────────

    @staticmethod
    def get_quote(quote_id: int) -> Quote | None:
        return db.session.get(Quote, quote_id)

    @staticmethod
    def get_quotes_for_intervention(
        intervention_id: int, statuses: Iterable[QuoteStatus] | None = None,
    ) -> list[Quote]:
        stmt = select(Quote).where(Quote.intervention_id == intervention_id)
        if statuses is not None:
            stmt = stmt.where(Quote.status.in_(quote_status_storage_values(statuses)))
        return list(db.session.scalars(stmt.order_by(Quote.id)))

    @staticmethod
    def update_quote_status(
        quote_id: int,
        new_status: QuoteStatus,
        fields: dict | None,
        expected_statuses: Iterable[QuoteStatus],
    ) -> int:
        """Conditional quote write. ``expected_statuses`` are canonical; every
        stored spelling of them is matched."""
        stmt = (
            update(Quote)
            .where(
                Quote.id == quote_id,
                Quote.status.in_(quote_status_storage_values(expected_statuses)),
            )
            .values(status=QuoteStatus(new_status).value, **(fields or {}))
            .execution_options(synchronize_session="fetch")
        )
        return db.session.execute(stmt).rowcount

    @staticmethod
    def bulk_reject_quotes(
        intervention_id: int,
        exclude_quote_id: int,
        expected_statuses: Iterable[QuoteStatus],
        reason: str,
        validated_by: int | None = None,
    ) -> dict[int, int]:
        """Reject every competing quote of an intervention in one statement.

        The rejected rows come back through RETURNING, so a quote that turned
        pending just before the UPDATE is still reported.

        Returns:
            {quote_id: provider_id} for each rejected quote, ordered by id.
        """
        stmt = (
            update(Quote)
            .where(
                Quote.intervention_id == intervention_id,
                Quote.id != exclude_quote_id,
                Quote.status.in_(quote_status_storage_values(expected_statuses)),
            )
            .values(
                status=QuoteStatus.REJECTED.value,
                rejection_reason=reason,
                validated_by=validated_by,
                validated_at=datetime.now(timezone.utc),
            )
            .returning(Quote.id, Quote.provider_id)
            .execution_options(synchronize_session="fetch")
        )
        return dict(sorted(db.session.execute(stmt).tuples()))

    # ── Assignments & people ──────────────────────────────────────────────

    @staticmethod
    def get_assignments(
        intervention_id: int, role: ParticipantRole | None = None,
    ) -> list[InterventionAssignment]:
        stmt = select(InterventionAssignment).where(
            InterventionAssignment.intervention_id == intervention_id,
        )
        if role is not None:
            stmt = stmt.where(InterventionAssignment.role == ParticipantRole(role).value)
        return list(db.session.scalars(stmt.order_by(InterventionAssignment.id)))

    @staticmethod
    def get_assignment_for_user(
        intervention_id: int, user_id: int, role: ParticipantRole | None = None,
    ) -> InterventionAssignment | None:
        """First assignment of ``user_id`` (optionally in ``role``); primary wins."""
        stmt = select(InterventionAssignment).where(
            InterventionAssignment.intervention_id == intervention_id,
            InterventionAssignment.user_id == user_id,
        )
        if role is not None:
            stmt = stmt.where(InterventionAssignment.role == ParticipantRole(role).value)
        stmt = stmt.order_by(InterventionAssignment.is_primary.desc(), InterventionAssignment.id)
        return db.session.scalars(stmt).first()

    @staticmethod
    def get_property_manager_ids(intervention: Intervention) -> list[int]:
        """Managers of the intervention's lot, then of its building (the lot's
        building included). Duplicates are kept; callers dedupe."""
        building_ids = []
        if intervention.building_id is not None:
            building_ids.append(intervention.building_id)

        manager_ids = []
        if intervention.lot_id is not None:
            manager_ids += db.session.scalars(
                select(PropertyManager.user_id)
                .where(PropertyManager.lot_id == intervention.lot_id)
                .order_by(PropertyManager.id)
            ).all()
            lot = db.session.get(Lot, intervention.lot_id)
            if lot is not None and lot.building_id is not None and lot.building_id not in building_ids:
                building_ids.append(lot.building_id)

        if building_ids:
            manager_ids += db.session.scalars(
                select(PropertyManager.user_id)
                .where(PropertyManager.building_id.in_(building_ids))
                .order_by(PropertyManager.id)
            ).all()
        return list(manager_ids)

    @staticmethod
    def get_user(user_id: int) -> User | None:
        return db.session.get(User, user_id)

    @staticmethod
    def get_users(user_ids: Iterable[int]) -> list[User]:
        ids = list(user_ids)
        if not ids:
            return []
        return list(db.session.scalars(select(User).where(User.id.in_(ids)).order_by(User.id)))

    # ── Activity ──────────────────────────────────────────────────────────

    @staticmethod
    def insert_activity_log(entry: dict) -> ActivityLog:
        """Append an activity row. ``entry`` keys match ``write_activity``."""
        return write_activity(**entry)
