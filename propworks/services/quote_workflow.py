"""
Quote Workflow Service

Competing provider quotes on one intervention. At most one quote is ever
accepted; accepting it rejects every other open quote of the intervention.

approve_quote runs as one transaction:
  1. quote      pending|sent → accepted        (conditional write)
  2. intervention quote_requested → scheduling  (conditional write)
  3. competitors pending|sent → rejected        (one batch update, SAVEPOINT)

A lost race in step 1 or 2 rolls everything back. A failure in step 3 rolls
back only the savepoint, is logged, and the accepted quote still commits.

Usage:
    from propworks.services.quote_workflow import approve_quote

    result = approve_quote(quote_id=12, approver_id=3, comments="Best price")
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
from propworks.models.intervention import Intervention, InterventionStatus, ParticipantRole
from propworks.models.quote import (
    APPROVABLE_QUOTE_STATUSES,
    COMPETING_QUOTE_REJECTION_REASON,
    RESOLVED_QUOTE_STATUSES,
    Quote,
    QuoteStatus,
)
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services.helpers.unit_of_work import log_activity, notify, unit_of_work
from propworks.services.participant_permissions import authorize_team

logger = logging.getLogger(__name__)


def _load_quote(quote_id: int) -> Quote:
    quote = InterventionRepository.get_quote(quote_id)
    if quote is None:
        raise NotFoundError("Quote", quote_id)
    return quote


def _load_intervention(intervention_id: int) -> Intervention:
    intervention = InterventionRepository.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    return intervention


def _refuse(quote: Quote, action: str, reason: str | None = None) -> InvalidStateError:
    msg = f"Cannot {action} quote {quote.id} (status={quote.canonical_status.value})"
    if reason:
        msg += f": {reason}"
    return InvalidStateError(msg, current_status=quote.canonical_status.value)


# ── Approve ──────────────────────────────────────────────────────────────


def approve_quote(quote_id: int, approver_id: int, comments: str | None = None) -> dict:
    """
    Accept a quote and move its intervention to ``scheduling``.

    Returns:
        {"quote_id", "intervention_id", "status", "intervention_status",
         "rejected_quote_ids"}

    Raises:
        NotFoundError, InvalidStateError
        ForbiddenError: approver belongs to another team
    """
    quote = _load_quote(quote_id)
    intervention_id = quote.intervention_id
    intervention = _load_intervention(intervention_id)
    authorize_team(intervention, approver_id)
    if quote.canonical_status not in APPROVABLE_QUOTE_STATUSES:
        raise _refuse(quote, "approve")
    if intervention.status_enum != InterventionStatus.QUOTE_REQUESTED:
        raise InvalidStateError(
            f"Cannot approve quote {quote_id}: intervention {intervention_id} "
            f"is {intervention.status}, expected {InterventionStatus.QUOTE_REQUESTED.value}",
            current_status=intervention.status,
        )

    now = datetime.now(timezone.utc)
    rejected: dict[int, int] = {}

    with unit_of_work("approve quote", quote_id=quote_id, intervention_id=intervention_id):
        rows = InterventionRepository.update_quote_status(
            quote_id,
            QuoteStatus.ACCEPTED,
            {"validated_by": approver_id, "validated_at": now, "review_comments": comments},
            APPROVABLE_QUOTE_STATUSES,
        )
        if rows != 1:
            raise _refuse(quote, "approve", "status changed concurrently")

        rows = InterventionRepository.update_intervention_status(
            intervention_id,
            InterventionStatus.SCHEDULING,
            [InterventionStatus.QUOTE_REQUESTED],
            selected_quote_id=quote_id,
        )
        if rows != 1:
            raise InvalidStateError(
                f"Cannot approve quote {quote_id}: intervention {intervention_id} "
                "changed status concurrently",
            )

        try:
            with db.session.begin_nested():
                rejected = InterventionRepository.bulk_reject_quotes(
                    intervention_id,
                    quote_id,
                    APPROVABLE_QUOTE_STATUSES,
                    COMPETING_QUOTE_REJECTION_REASON,
                    validated_by=approver_id,
                )
        except Exception:
            rejected = {}
            logger.warning(
                "Rejecting competing quotes of intervention %s failed; quote %s stays accepted",
                intervention_id, quote_id, exc_info=True,
                extra={"quote_id": quote_id, "intervention_id": intervention_id,
                       "event_type": "quote.bulk_reject_failed"},
            )

    rejected_ids = list(rejected)
    logger.info(
        "Quote %s accepted; %d competing quote(s) rejected", quote_id, len(rejected_ids),
        extra={"quote_id": quote_id, "intervention_id": intervention_id,
               "actor_id": approver_id, "event_type": "quote.approve"},
    )
    log_activity(
        entity_type="quote",
        entity_id=quote_id,
        action="quote.approve",
        actor=approver_id,
        team_id=intervention.team_id,
        metadata={
            "intervention_id": intervention_id,
            "comments": comments,
            "rejected_quote_ids": rejected_ids,
        },
    )

    intervention = InterventionRepository.get_intervention(intervention_id)
    notify("notify_status_changed", intervention, InterventionStatus.QUOTE_REQUESTED,
           InterventionStatus.SCHEDULING, approver_id, None)
    for rejected_id, provider_id in rejected.items():
        notify("notify_quote_rejected", {
            "quote_id": rejected_id,
            "intervention_id": intervention_id,
            "provider_id": provider_id,
            "reason": COMPETING_QUOTE_REJECTION_REASON,
            "rejected_by": approver_id,
            "team_id": intervention.team_id,
        })

    return {
        "quote_id": quote_id,
        "intervention_id": intervention_id,
        "status": QuoteStatus.ACCEPTED.value,
        "intervention_status": InterventionStatus.SCHEDULING.value,
        "rejected_quote_ids": rejected_ids,
    }


# ── Reject ───────────────────────────────────────────────────────────────


def reject_quote(quote_id: int, reason: str, approver_id: int) -> dict:
    """
    Reject a pending quote and notify its provider.

    Raises:
        ValidationError: blank reason
        NotFoundError, InvalidStateError
        ForbiddenError: approver belongs to another team
    """
    reason = (reason or "").strip() if isinstance(reason, str) else ""
    if not reason:
        raise ValidationError("reason is required", details={"field": "reason"})

    quote = _load_quote(quote_id)
    intervention = _load_intervention(quote.intervention_id)
    authorize_team(intervention, approver_id)
    if quote.canonical_status in RESOLVED_QUOTE_STATUSES:
        raise _refuse(quote, "reject", "already resolved")
    if quote.canonical_status != QuoteStatus.PENDING:
        raise _refuse(quote, "reject", "only pending quotes can be rejected")

    with unit_of_work("reject quote", quote_id=quote_id):
        rows = InterventionRepository.update_quote_status(
            quote_id,
            QuoteStatus.REJECTED,
            {
                "validated_by": approver_id,
                "validated_at": datetime.now(timezone.utc),
                "rejection_reason": reason,
            },
            [QuoteStatus.PENDING],
        )
        if rows != 1:
            raise _refuse(quote, "reject", "status changed concurrently")

    team_id = intervention.team_id
    logger.info("Quote %s rejected", quote_id,
                extra={"quote_id": quote_id, "actor_id": approver_id, "event_type": "quote.reject"})
    log_activity(
        entity_type="quote",
        entity_id=quote_id,
        action="quote.reject",
        actor=approver_id,
        team_id=team_id,
        metadata={"intervention_id": quote.intervention_id, "reason": reason},
    )
    notify("notify_quote_rejected", {
        "quote_id": quote_id,
        "intervention_id": quote.intervention_id,
        "provider_id": quote.provider_id,
        "reason": reason,
        "rejected_by": approver_id,
        "team_id": team_id,
    })
    return {
        "quote_id": quote_id,
        "intervention_id": quote.intervention_id,
        "status": QuoteStatus.REJECTED.value,
        "rejection_reason": reason,
    }


# ── Cancel ───────────────────────────────────────────────────────────────


def collect_manager_ids(intervention: Intervention) -> list[int]:
    """Managers assigned to the intervention, then managers of its lot and
    building, deduplicated in first-seen order."""
    assigned = [
        a.user_id
        for a in InterventionRepository.get_assignments(intervention.id, ParticipantRole.MANAGER)
    ]
    manager_ids = []
    for user_id in assigned + InterventionRepository.get_property_manager_ids(intervention):
        if user_id not in manager_ids:
            manager_ids.append(user_id)
    return manager_ids


def cancel_quote(quote_id: int, provider_id: int) -> dict:
    """
    Owning provider withdraws a pending quote; managers are notified.

    Raises:
        NotFoundError: quote missing
        ForbiddenError: caller does not own the quote
        InvalidStateError: quote is no longer pending
    """
    quote = _load_quote(quote_id)
    if quote.provider_id != provider_id:
        raise ForbiddenError(f"User {provider_id} does not own quote {quote_id}")
    if quote.canonical_status != QuoteStatus.PENDING:
        raise _refuse(quote, "cancel", "only pending quotes can be cancelled")

    with unit_of_work("cancel quote", quote_id=quote_id):
        rows = InterventionRepository.update_quote_status(
            quote_id, QuoteStatus.CANCELLED, None, [QuoteStatus.PENDING],
        )
        if rows != 1:
            raise _refuse(quote, "cancel", "status changed concurrently")

    intervention = InterventionRepository.get_intervention(quote.intervention_id)
    manager_ids = []
    if intervention is not None:
        try:
            manager_ids = collect_manager_ids(intervention)
        except Exception:
            db.session.rollback()
            logger.warning("Could not resolve managers for cancelled quote %s", quote_id,
                           exc_info=True, extra={"quote_id": quote_id})

    team_id = intervention.team_id if intervention is not None else None
    logger.info("Quote %s cancelled by provider %s", quote_id, provider_id,
                extra={"quote_id": quote_id, "actor_id": provider_id, "event_type": "quote.cancel"})
    log_activity(
        entity_type="quote",
        entity_id=quote_id,
        action="quote.cancel",
        actor=provider_id,
        team_id=team_id,
        metadata={"intervention_id": quote.intervention_id, "notified_manager_ids": manager_ids},
    )
    if manager_ids:
        notify(
            "notify_users", manager_ids, "quote_cancelled",
            f"Quote #{quote_id} withdrawn",
            f"The provider withdrew their quote for intervention #{quote.intervention_id}.",
            {"quote_id": quote_id, "provider_id": provider_id},
            team_id=team_id, entity_type="quote", entity_id=quote_id,
        )
    return {
        "quote_id": quote_id,
        "intervention_id": quote.intervention_id,
        "status": QuoteStatus.CANCELLED.value,
        "notified_manager_ids": manager_ids,
    }
