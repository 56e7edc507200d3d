"""
Property Works — Intervention Workflow Engine
Quote domain model.

Models:
    - Quote: a provider's priced bid against an intervention

Older rows store "pending" under two legacy spellings. Both are accepted on
input and normalized to ``QuoteStatus.PENDING`` by ``parse_quote_status``;
conditional writes use ``quote_status_storage_values`` so a WHERE clause still
matches rows written before normalization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from sqlalchemy.orm import validates

from propworks.core.exceptions import ValidationError
from propworks.models import db


class QuoteStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


QUOTE_STATUS_ALIASES: dict[str, QuoteStatus] = {
    "en_attente": QuoteStatus.PENDING,
    "demande": QuoteStatus.PENDING,
}

APPROVABLE_QUOTE_STATUSES = frozenset({QuoteStatus.PENDING, QuoteStatus.SENT})
RESOLVED_QUOTE_STATUSES = frozenset(
    {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED}
)

COMPETING_QUOTE_REJECTION_REASON = "another quote was selected"


def parse_quote_status(raw) -> QuoteStatus:
    """Normalize a stored or submitted quote status to its canonical member.

    Raises:
        ValidationError: ``raw`` is neither a canonical value nor a known alias.
    """
    if isinstance(raw, QuoteStatus):
        return raw
    value = (raw or "").strip().lower() if isinstance(raw, str) else raw
    if value in QUOTE_STATUS_ALIASES:
        return QUOTE_STATUS_ALIASES[value]
    try:
        return QuoteStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown quote status: {raw!r}",
            details={"status": raw, "allowed": [s.value for s in QuoteStatus]},
        )


def quote_status_storage_values(statuses: Iterable[QuoteStatus]) -> list[str]:
    """Every stored spelling of the given canonical statuses, for IN clauses."""
    wanted = {parse_quote_status(s) for s in statuses}
    values = [s.value for s in QuoteStatus if s in wanted]
    values += [alias for alias, canonical in QUOTE_STATUS_ALIASES.items() if canonical in wanted]
    return values


def _utcnow():
    return datetime.now(timezone.utc)


class Quote(db.Model):
    """
    Provider bid on an intervention.

    At most one quote per intervention is ever ``accepted``; once it is, the
    others are ``rejected`` or ``cancelled``. Accepted and cancelled quotes
    are immutable.
    """

    __tablename__ = "intervention_quotes"
    __table_args__ = (
        db.Index("idx_quote_intervention_status", "intervention_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    intervention_id = db.Column(
        db.Integer, db.ForeignKey("interventions.id", ondelete="CASCADE"), nullable=False,
    )
    provider_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default=QuoteStatus.PENDING.value,
        comment="pending | sent | accepted | rejected | cancelled",
    )

    validated_by = db.Column(db.Integer, nullable=True)
    validated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    review_comments = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    intervention = db.relationship("Intervention", backref=db.backref("quotes", lazy="select"))

    @validates("status")
    def _validate_status(self, key, value):
        return parse_quote_status(value).value

    @property
    def canonical_status(self) -> QuoteStatus:
        return parse_quote_status(self.status)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intervention_id": self.intervention_id,
            "provider_id": self.provider_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "description": self.description,
            "status": self.canonical_status.value,
            "validated_by": self.validated_by,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
            "rejection_reason": self.rejection_reason,
            "review_comments": self.review_comments,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Quote {self.id}: {self.status}>"
