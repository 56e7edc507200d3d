"""
Actor context middleware.

Authentication happens upstream (API gateway / session layer), which forwards
the authenticated user id in ``X-User-Id``. This hook resolves it into
``g.actor_id`` and ``g.actor`` for the workflow blueprints.

A missing or malformed header on a workflow path is rejected with 401
``unauthorized``; an id with no matching user is rejected the same way.
"""

import logging

from flask import g, request

from propworks.core.exceptions import ResultCode
from propworks.models import db
from propworks.models.auth import User
from propworks.utils.errors import api_error

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"

# Paths that need no actor
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_actor_context(app):
    """Register actor resolution as a before_request hook."""

    @app.before_request
    def _actor_context():
        g.actor_id = None
        g.actor = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None
        if request.method == "OPTIONS":
            return None

        raw = (request.headers.get(ACTOR_HEADER) or "").strip()
        if not raw.isdigit():
            return api_error(ResultCode.UNAUTHORIZED, "Authentication required")

        actor = db.session.get(User, int(raw))
        if actor is None:
            logger.warning("Unknown actor id %s on %s", raw, request.path,
                           extra={"request_id": getattr(g, "request_id", None)})
            return api_error(ResultCode.UNAUTHORIZED, "Unknown user")

        g.actor_id = actor.id
        g.actor = actor
        return None

    logger.info("Actor context middleware installed")
