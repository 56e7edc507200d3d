"""
Transaction and side-effect helpers shared by the workflow services.

``unit_of_work`` wraps a primary mutation: commit on success, roll back on
any failure. Workflow errors pass through unchanged; database errors surface
as ``InternalError``.

``log_activity`` and ``notify`` run after the commit. They never raise.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from propworks.core.exceptions import InternalError, WorkflowError
from propworks.models import db
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services.notification_dispatcher import get_dispatcher

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(description: str, **log_extra):
    """Run a block as one committed transaction."""
    try:
        yield db.session
        db.session.commit()
    except WorkflowError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("%s failed, rolled back", description, exc_info=True, extra=log_extra)
        raise InternalError(f"{description} failed") from exc


def log_activity(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: int | None = None,
    team_id: int | None = None,
    metadata: dict | None = None,
) -> bool:
    """Append and commit one activity row; failure only rolls back the row."""
    try:
        InterventionRepository.insert_activity_log({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "actor": actor,
            "team_id": team_id,
            "metadata": metadata,
        })
        db.session.commit()
        return True
    except Exception:
        db.session.rollback()
        logger.warning(
            "Activity log failed for %s %s/%s, main flow unaffected",
            action, entity_type, entity_id, exc_info=True,
            extra={"event_type": action, "actor_id": actor},
        )
        return False


def notify(method: str, *args, **kwargs) -> None:
    """Hand an event to the notification dispatcher; failures are logged."""
    try:
        getattr(get_dispatcher(), method)(*args, **kwargs)
    except Exception:
        logger.warning("Notification %s could not be queued, main flow unaffected",
                       method, exc_info=True, extra={"event_type": method})
