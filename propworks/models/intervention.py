"""
Property Works — Intervention Workflow Engine
Intervention domain models.

Models:
    - Intervention:             maintenance request tracked through a status lifecycle
    - InterventionAssignment:   user ↔ intervention link with role and confirmation gate
    - InterventionTimeSlot:     proposed visit window, optionally addressed to one provider

Architecture:
    Intervention ──1:N──▶ InterventionAssignment
    Intervention ──1:N──▶ InterventionTimeSlot
    Intervention ──1:N──▶ Quote                       (see models/quote.py)
    Intervention ──1:N──▶ Intervention                (split children, parent_intervention_id)

Lifecycle:
    pending → approved → quote_requested → scheduling → scheduled → in_progress
            → provider_completed → tenant_validated → completed
    pending → rejected
    approved | quote_requested | scheduling | scheduled | in_progress → cancelled
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.orm import validates

from propworks.models import db


# ── Vocabulary ───────────────────────────────────────────────────────────────


class InterventionStatus(str, Enum):
    PENDING = "pending"
    REJECTED = "rejected"
    APPROVED = "approved"
    QUOTE_REQUESTED = "quote_requested"
    SCHEDULING = "scheduling"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PROVIDER_COMPLETED = "provider_completed"
    TENANT_VALIDATED = "tenant_validated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipantRole(str, Enum):
    """The three participant roles on an intervention."""

    MANAGER = "manager"
    PROVIDER = "provider"
    TENANT = "tenant"


class ConfirmationStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class TimeSlotStatus(str, Enum):
    PENDING = "pending"
    SELECTED = "selected"
    CANCELLED = "cancelled"


class AssignmentMode(str, Enum):
    """How several providers on one intervention work together."""

    SINGLE = "single"
    GROUP = "group"
    SEPARATE = "separate"


_S = InterventionStatus

INTERVENTION_TRANSITIONS: dict[InterventionStatus, set[InterventionStatus]] = {
    _S.PENDING:            {_S.APPROVED, _S.REJECTED},
    _S.APPROVED:           {_S.QUOTE_REQUESTED, _S.CANCELLED},
    _S.QUOTE_REQUESTED:    {_S.SCHEDULING, _S.CANCELLED},
    _S.SCHEDULING:         {_S.SCHEDULED, _S.CANCELLED},
    _S.SCHEDULED:          {_S.IN_PROGRESS, _S.CANCELLED},
    _S.IN_PROGRESS:        {_S.PROVIDER_COMPLETED, _S.CANCELLED},
    _S.PROVIDER_COMPLETED: {_S.TENANT_VALIDATED},
    _S.TENANT_VALIDATED:   {_S.COMPLETED},
    _S.REJECTED:           set(),
    _S.COMPLETED:          set(),
    _S.CANCELLED:          set(),
}

CANCELLABLE_STATUSES = frozenset(
    status for status, targets in INTERVENTION_TRANSITIONS.items() if _S.CANCELLED in targets
)

TERMINAL_STATUSES = frozenset(
    status for status, targets in INTERVENTION_TRANSITIONS.items() if not targets
)

# Visit windows may be offered until the date is agreed
SLOT_PROPOSAL_STATUSES = frozenset({_S.APPROVED, _S.QUOTE_REQUESTED, _S.SCHEDULING})


# Valid confirmation moves; not_required and terminal answers never move.
CONFIRMATION_TRANSITIONS: dict[ConfirmationStatus, set[ConfirmationStatus]] = {
    ConfirmationStatus.NOT_REQUIRED: set(),
    ConfirmationStatus.PENDING: {ConfirmationStatus.CONFIRMED, ConfirmationStatus.REJECTED},
    ConfirmationStatus.CONFIRMED: set(),
    ConfirmationStatus.REJECTED: set(),
}


def validate_intervention_transition(old_status, new_status) -> bool:
    """Return True if the Intervention status transition is an edge of the graph."""
    try:
        old, new = InterventionStatus(old_status), InterventionStatus(new_status)
    except ValueError:
        return False
    return new in INTERVENTION_TRANSITIONS[old]


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Intervention
# ═════════════════════════════════════════════════════════════════════════════


class Intervention(db.Model):
    """
    A maintenance request on a lot or building.

    Never physically deleted: cancellation is a terminal status.
    Children produced by a multi-provider split point back to their parent
    through ``parent_intervention_id``, which is write-once.
    """

    __tablename__ = "interventions"
    __table_args__ = (
        db.Index("idx_intervention_team_status", "team_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=False, index=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("lots.id", ondelete="SET NULL"), nullable=True)
    building_id = db.Column(
        db.Integer, db.ForeignKey("buildings.id", ondelete="SET NULL"), nullable=True,
    )
    parent_intervention_id = db.Column(
        db.Integer,
        db.ForeignKey("interventions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Set only on children produced by a multi-provider split",
    )

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), nullable=False, default=InterventionStatus.PENDING.value,
        comment="pending | rejected | approved | quote_requested | scheduling | scheduled | "
                "in_progress | provider_completed | tenant_validated | completed | cancelled",
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=True)
    requires_participant_confirmation = db.Column(db.Boolean, nullable=False, default=False)
    assignment_mode = db.Column(
        db.String(20), nullable=False, default=AssignmentMode.SINGLE.value,
        comment="single | group | separate",
    )
    selected_quote_id = db.Column(db.Integer, nullable=True)

    # Decision trail
    manager_comment = db.Column(db.Text, nullable=True, comment="Public reason shown to the tenant")
    internal_comment = db.Column(db.Text, nullable=True, comment="Visible to managers only")
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    provider_report = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    split_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    assignments = db.relationship(
        "InterventionAssignment", backref="intervention", lazy="select",
        order_by="InterventionAssignment.id",
    )
    time_slots = db.relationship(
        "InterventionTimeSlot", backref="intervention", lazy="select",
        order_by="InterventionTimeSlot.id",
    )
    children = db.relationship(
        "Intervention", backref=db.backref("parent", remote_side=[id]), lazy="select",
        order_by="Intervention.id",
    )

    @validates("status")
    def _validate_status(self, key, value):
        return InterventionStatus(value).value

    @validates("parent_intervention_id")
    def _validate_parent(self, key, value):
        current = self.parent_intervention_id
        if current is not None and value != current:
            raise ValueError(
                f"parent_intervention_id is immutable (intervention {self.id} "
                f"already belongs to {current})"
            )
        return value

    @property
    def status_enum(self) -> InterventionStatus:
        return InterventionStatus(self.status)

    @property
    def is_child(self) -> bool:
        return self.parent_intervention_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "lot_id": self.lot_id,
            "building_id": self.building_id,
            "parent_intervention_id": self.parent_intervention_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_by": self.created_by,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "requires_participant_confirmation": self.requires_participant_confirmation,
            "assignment_mode": self.assignment_mode,
            "selected_quote_id": self.selected_quote_id,
            "manager_comment": self.manager_comment,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "split_at": self.split_at.isoformat() if self.split_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Intervention {self.id}: {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. InterventionAssignment
# ═════════════════════════════════════════════════════════════════════════════


class InterventionAssignment(db.Model):
    """
    Link between a user and an intervention.

    ``confirmation_status`` only ever moves pending → confirmed or
    pending → rejected; a not_required assignment stays not_required.
    """

    __tablename__ = "intervention_assignments"
    __table_args__ = (
        db.UniqueConstraint("intervention_id", "user_id", "role", name="uq_assignment_user_role"),
        db.Index("idx_assignment_intervention_role", "intervention_id", "role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    intervention_id = db.Column(
        db.Integer, db.ForeignKey("interventions.id", ondelete="CASCADE"), nullable=False,
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = db.Column(db.String(20), nullable=False, comment="manager | provider | tenant")
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    requires_confirmation = db.Column(db.Boolean, nullable=False, default=False)
    confirmation_status = db.Column(
        db.String(20), nullable=False, default=ConfirmationStatus.NOT_REQUIRED.value,
        comment="not_required | pending | confirmed | rejected",
    )
    provider_instructions = db.Column(db.Text, nullable=True)
    assigned_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @validates("role")
    def _validate_role(self, key, value):
        return ParticipantRole(value).value

    @validates("confirmation_status")
    def _validate_confirmation(self, key, value):
        new = ConfirmationStatus(value)
        if self.confirmation_status is None or self.id is None:
            return new.value
        old = ConfirmationStatus(self.confirmation_status)
        if new != old and new not in CONFIRMATION_TRANSITIONS[old]:
            raise ValueError(f"confirmation_status cannot move from {old.value} to {new.value}")
        return new.value

    @property
    def role_enum(self) -> ParticipantRole:
        return ParticipantRole(self.role)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intervention_id": self.intervention_id,
            "user_id": self.user_id,
            "role": self.role,
            "is_primary": self.is_primary,
            "requires_confirmation": self.requires_confirmation,
            "confirmation_status": self.confirmation_status,
            "provider_instructions": self.provider_instructions,
        }

    def __repr__(self):
        return f"<InterventionAssignment {self.intervention_id}/{self.user_id} {self.role}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. InterventionTimeSlot
# ═════════════════════════════════════════════════════════════════════════════


class InterventionTimeSlot(db.Model):
    """
    Proposed visit window. ``provider_id`` addresses it to one provider, and a
    split hands the slot to that provider's child intervention.

    status: pending → selected (picked by propose_schedule) → pending again
    when another slot is picked; pending → cancelled. A selected slot must be
    replaced before it can be cancelled.
    """

    __tablename__ = "intervention_time_slots"
    __table_args__ = (
        db.Index("idx_time_slot_intervention_status", "intervention_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    intervention_id = db.Column(
        db.Integer, db.ForeignKey("interventions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)
    proposed_by = db.Column(db.Integer, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=TimeSlotStatus.PENDING.value,
        comment="pending | selected | cancelled",
    )
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @validates("status")
    def _validate_status(self, key, value):
        return TimeSlotStatus(value).value

    @property
    def status_enum(self) -> TimeSlotStatus:
        return TimeSlotStatus(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intervention_id": self.intervention_id,
            "provider_id": self.provider_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "proposed_by": self.proposed_by,
            "status": self.status,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancelled_by": self.cancelled_by,
        }

    def __repr__(self):
        return f"<InterventionTimeSlot {self.id} for {self.intervention_id}>"
