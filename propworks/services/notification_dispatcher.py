"""
Property Works — Intervention Workflow Engine
Notification Dispatcher.

Outbound event queue for workflow notifications. Services call the contract
methods after their primary change has committed; the dispatcher snapshots
what it needs into a ``NotificationEvent`` and returns immediately.

Architecture:
    - NotificationEvent: plain data, no ORM objects cross the queue
    - NotificationDispatcher: bounded ``queue.Queue`` drained by one daemon
      worker thread inside an app context
    - Channels: in-app (NotificationService), push (PushService),
      email (EmailService). Each channel is isolated; one failing channel
      does not stop the others.

Delivery is at-most-once: a failed channel is logged and never retried, and
a full queue drops the event with a warning. ``NOTIFICATION_DISPATCH_MODE =
"sync"`` delivers inline instead (used by the test suite).

Usage:
    from propworks.services.notification_dispatcher import get_dispatcher
    get_dispatcher().notify_users([12], "quote_cancelled", "Quote withdrawn", "...")
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field

from flask import Flask, current_app

from propworks.models import db
from propworks.models.intervention import Intervention
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services.email_service import EmailService
from propworks.services.notification import NotificationService
from propworks.services.push_service import PushService

logger = logging.getLogger(__name__)

CHANNELS = ("in_app", "push", "email")

EXTENSION_KEY = "notification_dispatcher"


@dataclass(frozen=True)
class NotificationEvent:
    user_ids: tuple[int, ...]
    type: str
    title: str
    message: str
    metadata: dict = field(default_factory=dict)
    team_id: int | None = None
    entity_type: str = ""
    entity_id: int | None = None
    channels: tuple[str, ...] = CHANNELS


def _dedupe(user_ids, exclude=None) -> tuple[int, ...]:
    seen = []
    for uid in user_ids:
        if uid is None or uid == exclude or uid in seen:
            continue
        seen.append(uid)
    return tuple(seen)


class NotificationDispatcher:
    """Fire-and-forget sink for workflow notifications."""

    def __init__(self, app: Flask | None = None, push_service: PushService | None = None) -> None:
        self._app: Flask | None = None
        self._queue: queue.Queue | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.mode = "async"
        self.push_service = push_service or PushService()
        self.processed = 0
        self.dropped = 0
        self.channel_failures = 0
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        self._app = app
        self.mode = app.config.get("NOTIFICATION_DISPATCH_MODE", "async")
        self._queue = queue.Queue(maxsize=app.config.get("NOTIFICATION_QUEUE_MAXSIZE", 1000))
        app.extensions[EXTENSION_KEY] = self
        logger.info("NotificationDispatcher initialized (mode=%s)", self.mode)

    # ── Contract ─────────────────────────────────────────────────────────

    def notify_status_changed(self, intervention: Intervention, from_status, to_status,
                              changed_by: int | None, reason: str | None = None) -> None:
        """Tell every participant (and the creator) that the status moved."""
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        participants = [a.user_id for a in InterventionRepository.get_assignments(intervention.id)]
        recipients = _dedupe([intervention.created_by, *participants], exclude=changed_by)

        message = f"Intervention '{intervention.title}' moved from {from_value} to {to_value}."
        if reason:
            message += f" Reason: {reason}"
        self._enqueue(NotificationEvent(
            user_ids=recipients,
            type="intervention_status_changed",
            title=f"Intervention #{intervention.id} is now {to_value}",
            message=message,
            metadata={
                "from_status": from_value,
                "to_status": to_value,
                "changed_by": changed_by,
                "reason": reason,
            },
            team_id=intervention.team_id,
            entity_type="intervention",
            entity_id=intervention.id,
        ))

    def notify_quote_rejected(self, payload: dict) -> None:
        """Tell a provider their quote was rejected.

        ``payload`` keys: quote_id, intervention_id, provider_id, reason,
        rejected_by, team_id (optional).
        """
        reason = payload.get("reason") or ""
        self._enqueue(NotificationEvent(
            user_ids=_dedupe([payload["provider_id"]]),
            type="quote_rejected",
            title=f"Quote #{payload['quote_id']} rejected",
            message=f"Your quote for intervention #{payload['intervention_id']} was rejected. {reason}".strip(),
            metadata=dict(payload),
            team_id=payload.get("team_id"),
            entity_type="quote",
            entity_id=payload["quote_id"],
        ))

    def notify_users(self, user_ids, type: str, title: str, message: str,
                     metadata: dict | None = None, *, team_id: int | None = None,
                     entity_type: str = "", entity_id: int | None = None) -> None:
        self._enqueue(NotificationEvent(
            user_ids=_dedupe(user_ids),
            type=type,
            title=title,
            message=message,
            metadata=dict(metadata or {}),
            team_id=team_id,
            entity_type=entity_type,
            entity_id=entity_id,
        ))

    # ── Queue ────────────────────────────────────────────────────────────

    def _enqueue(self, event: NotificationEvent) -> None:
        if not event.user_ids:
            return
        if self.mode == "sync":
            self._deliver(event)
            return

        self._ensure_worker()
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._count("dropped")
            logger.warning("Notification queue full, dropped %s for %d recipient(s)",
                           event.type, len(event.user_ids), extra={"event_type": event.type})

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="notification-dispatcher", daemon=True,
            )
            self._thread.start()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                with self._app.app_context():
                    self._deliver(event)
            except Exception:
                logger.exception("Notification worker failed on %s", getattr(event, "type", None))
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been processed."""
        if self._queue is not None:
            self._queue.join()

    def shutdown(self, timeout: float = 5.0) -> None:
        thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(None)
        thread.join(timeout)

    def _count(self, counter: str) -> None:
        # Request threads and the worker both report here
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def stats(self) -> dict:
        with self._lock:
            counters = {
                "processed": self.processed,
                "dropped": self.dropped,
                "channel_failures": self.channel_failures,
            }
        return {
            "mode": self.mode,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            **counters,
        }

    # ── Channels ─────────────────────────────────────────────────────────

    def _deliver(self, event: NotificationEvent) -> None:
        handlers = {
            "in_app": self._deliver_in_app,
            "push": self._deliver_push,
            "email": self._deliver_email,
        }
        for channel in event.channels:
            try:
                handlers[channel](event)
            except Exception:
                self._count("channel_failures")
                db.session.rollback()
                logger.warning(
                    "Notification channel %s failed for %s, not retried",
                    channel, event.type, exc_info=True,
                    extra={"event_type": event.type},
                )
        self._count("processed")

    def _deliver_in_app(self, event: NotificationEvent) -> None:
        NotificationService.create_for_users(
            user_ids=event.user_ids,
            type=event.type,
            title=event.title,
            message=event.message,
            metadata=event.metadata,
            team_id=event.team_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
        )

    def _deliver_push(self, event: NotificationEvent) -> None:
        users = InterventionRepository.get_users(event.user_ids)
        self.push_service.send(
            tokens=[u.push_token for u in users if u.push_token],
            title=event.title,
            message=event.message,
            data={"type": event.type, "entity_type": event.entity_type, "entity_id": event.entity_id},
        )

    def _deliver_email(self, event: NotificationEvent) -> None:
        for user in InterventionRepository.get_users(event.user_ids):
            EmailService.send_notification(
                user=user,
                title=event.title,
                message=event.message,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
            )


def get_dispatcher() -> NotificationDispatcher:
    """Return the dispatcher bound to the current app."""
    return current_app.extensions[EXTENSION_KEY]
