"""
Property Works — Intervention Workflow Engine
Notification Service.

In-app channel: creates and queries ``Notification`` rows. Called by the
notification dispatcher for workflow events and by the notifications API.
"""

import json

from sqlalchemy.exc import SQLAlchemyError

from propworks.models import db
from propworks.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create_for_users(*, user_ids, type="system", title, message="", metadata=None,
                         team_id=None, entity_type="", entity_id=None):
        """
        Insert one notification per recipient and commit.

        Returns:
            List of created Notification instances.
        """
        payload = json.dumps(metadata or {}, default=str)
        notifications = []
        try:
            for user_id in user_ids:
                notif = Notification(
                    user_id=user_id,
                    team_id=team_id,
                    type=type,
                    title=title,
                    message=message,
                    metadata_json=payload,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
                db.session.add(notif)
                notifications.append(notif)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve a user's notifications, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark one of the user's notifications as read. None if not theirs."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.user_id != user_id:
            return None
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif
