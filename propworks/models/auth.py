"""
Property Works — Intervention Workflow Engine
User model.

Authentication happens upstream; the engine only needs identity, role and
contact details for notification fan-out.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from propworks.models import db
from propworks.models.intervention import ParticipantRole


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_team_id", "team_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, nullable=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(20), nullable=False, comment="manager | provider | tenant")
    push_token = db.Column(db.String(300), nullable=True, comment="Device token for the push gateway")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @validates("role")
    def _validate_role(self, key, value):
        return ParticipantRole(value).value

    @property
    def role_enum(self) -> ParticipantRole:
        return ParticipantRole(self.role)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
