"""
Property Works — Intervention Workflow Engine
Activity log model.

Models:
    - ActivityLog: append-only trail of workflow events, never read back by
      the workflow services themselves.
"""

import json
from datetime import datetime, timezone

from propworks.models import db


ACTIVITY_ENTITY_TYPES = {"intervention", "quote", "assignment"}

ACTIVITY_ACTIONS = {
    # Intervention lifecycle
    "intervention.approve",
    "intervention.reject",
    "intervention.cancel",
    "intervention.request_quote",
    "intervention.start_scheduling",
    "intervention.propose_schedule",
    "intervention.accept_schedule",
    "intervention.start_work",
    "intervention.complete_by_provider",
    "intervention.validate_by_tenant",
    "intervention.finalize",
    "intervention.assign_providers",
    "intervention.split",
    # Quotes
    "quote.approve",
    "quote.reject",
    "quote.cancel",
}


class ActivityLog(db.Model):
    """
    One row per state-changing action.

    ``metadata_json`` carries the action payload, e.g. ``previous_status``
    and ``reason`` for a cancellation.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_type", "entity_id"),
        db.Index("idx_activity_team", "team_id"),
        db.Index("idx_activity_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=True)
    entity_type = db.Column(db.String(30), nullable=False, comment="intervention | quote | assignment")
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.Integer, nullable=True, comment="User id; NULL for system actions")
    metadata_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def metadata_dict(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "metadata": self.metadata_dict,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_activity(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: int | None = None,
    team_id: int | None = None,
    metadata: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = ActivityLog(
        team_id=team_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
