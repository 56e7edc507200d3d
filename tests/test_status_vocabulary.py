"""
Property Works — Status vocabulary and transition graph tests.
"""

import pytest

from propworks.core.exceptions import ValidationError
from propworks.models import db
from propworks.models.intervention import (
    CANCELLABLE_STATUSES,
    CONFIRMATION_TRANSITIONS,
    INTERVENTION_TRANSITIONS,
    TERMINAL_STATUSES,
    ConfirmationStatus,
    InterventionStatus,
    validate_intervention_transition,
)
from propworks.models.quote import (
    QuoteStatus,
    parse_quote_status,
    quote_status_storage_values,
)


class TestInterventionGraph:
    def test_every_status_has_an_entry(self):
        assert set(INTERVENTION_TRANSITIONS) == set(InterventionStatus)

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            InterventionStatus.REJECTED, InterventionStatus.COMPLETED, InterventionStatus.CANCELLED,
        }

    def test_cancellable_statuses(self):
        assert CANCELLABLE_STATUSES == {
            InterventionStatus.APPROVED,
            InterventionStatus.QUOTE_REQUESTED,
            InterventionStatus.SCHEDULING,
            InterventionStatus.SCHEDULED,
            InterventionStatus.IN_PROGRESS,
        }

    @pytest.mark.parametrize("old,new,ok", [
        ("pending", "approved", True),
        ("pending", "rejected", True),
        ("pending", "scheduled", False),
        ("scheduling", "scheduled", True),
        ("provider_completed", "cancelled", False),
        ("completed", "pending", False),
        ("pending", "bogus", False),
    ])
    def test_validate_transition(self, old, new, ok):
        assert validate_intervention_transition(old, new) is ok

    def test_unknown_status_rejected_on_write(self, factory):
        iv = factory.intervention("pending")
        with pytest.raises(ValueError):
            iv.status = "on_hold"


class TestConfirmation:
    def test_only_pending_moves(self):
        movable = {s for s, targets in CONFIRMATION_TRANSITIONS.items() if targets}
        assert movable == {ConfirmationStatus.PENDING}

    def test_rejected_assignment_cannot_reconfirm(self, factory, provider):
        iv = factory.intervention("approved", requires_participant_confirmation=True)
        a = factory.assign(iv, provider, requires_confirmation=True)
        a.confirmation_status = "rejected"
        db.session.commit()
        with pytest.raises(ValueError):
            a.confirmation_status = "confirmed"


class TestQuoteVocabulary:
    @pytest.mark.parametrize("raw,expected", [
        ("pending", QuoteStatus.PENDING),
        ("en_attente", QuoteStatus.PENDING),
        ("demande", QuoteStatus.PENDING),
        (" Sent ", QuoteStatus.SENT),
        (QuoteStatus.ACCEPTED, QuoteStatus.ACCEPTED),
    ])
    def test_parse(self, raw, expected):
        assert parse_quote_status(raw) is expected

    @pytest.mark.parametrize("raw", ["approved", "", None, 3])
    def test_parse_unknown(self, raw):
        with pytest.raises(ValidationError):
            parse_quote_status(raw)

    def test_storage_values_include_aliases(self):
        values = quote_status_storage_values([QuoteStatus.PENDING, QuoteStatus.SENT])
        assert set(values) == {"pending", "sent", "en_attente", "demande"}

    def test_storage_values_without_pending(self):
        assert quote_status_storage_values([QuoteStatus.ACCEPTED]) == ["accepted"]

    def test_alias_normalized_on_write(self, factory, provider):
        iv = factory.intervention("quote_requested")
        q = factory.quote(iv, provider, status="demande")
        assert q.status == "pending"
