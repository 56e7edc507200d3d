"""
Intervention workflow blueprint.

Routes:
  POST /interventions/<id>/reject             manager rejects a pending request
  POST /interventions/<id>/cancel             manager cancels an ongoing intervention
  POST /interventions/<id>/schedule           propose the visit date (manager/provider)
  POST /interventions/<id>/accept-schedule    primary provider accepts the date
  POST /interventions/<id>/transition         remaining lifecycle actions
  POST /interventions/<id>/providers          assign providers (manager)
  POST /interventions/<id>/split              split a separate-mode intervention (manager)
  GET  /interventions/<id>/permissions        caller's capability set
  GET  /interventions/<id>/transitions        actions valid in the current status
  GET  /interventions/<id>/linked             split parent, children and siblings
  GET  /interventions/<id>/time-slots         proposed visit windows
  POST /interventions/<id>/time-slots         offer visit windows (manager/provider)
  POST /interventions/<id>/time-slots/<s>/cancel  withdraw a pending window
  POST /quotes/<id>/approve                   manager accepts a quote
  POST /quotes/<id>/reject                    manager rejects a quote
  POST /quotes/<id>/cancel                    owning provider withdraws a quote
  GET  /notifications                         caller's in-app notifications
  POST /notifications/<id>/read               mark one as read

The caller is ``g.actor`` (resolved by the actor context middleware).
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Blueprint, g, jsonify, request
from werkzeug.exceptions import HTTPException

from propworks.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    ResultCode,
    ValidationError,
    WorkflowError,
)
from propworks.models.intervention import ParticipantRole
from propworks.repositories.intervention_repository import InterventionRepository
from propworks.services import intervention_lifecycle as lifecycle
from propworks.services import multi_provider_split as splitter
from propworks.services import quote_workflow
from propworks.services.notification import NotificationService
from propworks.services.participant_permissions import get_participant_permissions
from propworks.utils.errors import api_error, error_response

logger = logging.getLogger(__name__)

intervention_bp = Blueprint("interventions", __name__, url_prefix="/api/v1")

# Lifecycle actions reserved to managers; provider/tenant actions are checked
# against the assignment by the service.
MANAGER_ACTIONS = frozenset({"approve", "request_quote", "start_scheduling", "finalize"})


# ── Helpers ──────────────────────────────────────────────────────────────────


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_role(*roles: ParticipantRole) -> None:
    if g.actor.role_enum not in roles:
        allowed = "/".join(r.value for r in roles)
        raise ForbiddenError(f"This action requires the {allowed} role")


def _parse_datetime(raw, field: str) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError(f"{field} is required", details={"field": field})
    try:
        value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", details={"field": field})
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _ok(result: dict, status: int = 200):
    return jsonify({"code": ResultCode.SUCCESS.value, **result}), status


# ── Error handlers ───────────────────────────────────────────────────────────


@intervention_bp.errorhandler(WorkflowError)
def _handle_workflow_error(error: WorkflowError):
    if error.http_status >= 500:
        logger.error("Workflow failure on %s: %s", request.endpoint, error.message,
                     extra={"actor_id": getattr(g, "actor_id", None)})
    return error_response(error)


@intervention_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in interventions endpoint=%s", request.endpoint)
    return api_error(ResultCode.INTERNAL_ERROR, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════════
# Interventions
# ═════════════════════════════════════════════════════════════════════════════


@intervention_bp.route("/interventions/<int:intervention_id>/reject", methods=["POST"])
def reject_intervention(intervention_id):
    """Body: {reason, internal_comment?}"""
    _require_role(ParticipantRole.MANAGER)
    data = _body()
    result = lifecycle.reject_intervention(
        intervention_id, data.get("reason"), g.actor_id,
        internal_comment=data.get("internal_comment"),
    )
    return _ok(result)


@intervention_bp.route("/interventions/<int:intervention_id>/cancel", methods=["POST"])
def cancel_intervention(intervention_id):
    """Body: {reason, internal_comment?}"""
    _require_role(ParticipantRole.MANAGER)
    data = _body()
    result = lifecycle.cancel_intervention(
        intervention_id, data.get("reason"), g.actor_id,
        internal_comment=data.get("internal_comment"),
    )
    return _ok(result)


@intervention_bp.route("/interventions/<int:intervention_id>/schedule", methods=["POST"])
def propose_schedule(intervention_id):
    """Body: {scheduled_date} or {slot_id}"""
    _require_role(ParticipantRole.MANAGER, ParticipantRole.PROVIDER)
    data = _body()
    scheduled_date = None
    if data.get("scheduled_date") is not None:
        scheduled_date = _parse_datetime(data["scheduled_date"], "scheduled_date")
    slot_id = data.get("slot_id")
    if slot_id is not None and not isinstance(slot_id, int):
        raise ValidationError("slot_id must be an integer", details={"field": "slot_id"})
    result = lifecycle.propose_schedule(
        intervention_id, g.actor_id, scheduled_date=scheduled_date, slot_id=slot_id,
    )
    return _ok(result)


@intervention_bp.route("/interventions/<int:intervention_id>/accept-schedule", methods=["POST"])
def accept_schedule(intervention_id):
    return _ok(lifecycle.accept_schedule(intervention_id, g.actor_id))


@intervention_bp.route("/interventions/<int:intervention_id>/transition", methods=["POST"])
def transition(intervention_id):
    """Body: {action, provider_ids?, report?, comment?}"""
    data = _body()
    action = (data.get("action") or "").strip() if isinstance(data.get("action"), str) else ""
    if not action:
        raise ValidationError("action is required", details={"field": "action"})
    if action in MANAGER_ACTIONS:
        _require_role(ParticipantRole.MANAGER)
    result = lifecycle.transition_intervention(
        intervention_id, action, g.actor_id,
        provider_ids=data.get("provider_ids"),
        report=data.get("report"),
        comment=data.get("comment"),
    )
    return _ok(result)


@intervention_bp.route("/interventions/<int:intervention_id>/providers", methods=["POST"])
def assign_providers(intervention_id):
    """Body: {provider_ids: [...], mode?: group|separate, instructions?: {provider_id: text}}"""
    _require_role(ParticipantRole.MANAGER)
    data = _body()
    provider_ids = data.get("provider_ids")
    if not isinstance(provider_ids, list):
        raise ValidationError("provider_ids must be a list", details={"field": "provider_ids"})
    result = splitter.assign_providers(
        intervention_id, provider_ids, data.get("mode"), g.actor_id,
        instructions=data.get("instructions"),
    )
    return _ok(result)


@intervention_bp.route("/interventions/<int:intervention_id>/split", methods=["POST"])
def split(intervention_id):
    _require_role(ParticipantRole.MANAGER)
    return _ok(splitter.split_intervention(intervention_id, g.actor_id), 201)


@intervention_bp.route("/interventions/<int:intervention_id>/permissions", methods=["GET"])
def permissions(intervention_id):
    result = get_participant_permissions(intervention_id, g.actor_id)
    return _ok({"intervention_id": intervention_id, "user_id": g.actor_id,
                "permissions": result.to_dict()})


@intervention_bp.route("/interventions/<int:intervention_id>/transitions", methods=["GET"])
def transitions(intervention_id):
    intervention = InterventionRepository.get_intervention(intervention_id)
    if intervention is None:
        raise NotFoundError("Intervention", intervention_id)
    return _ok({
        "intervention_id": intervention_id,
        "status": intervention.status,
        "available_actions": lifecycle.get_available_transitions(intervention),
    })


@intervention_bp.route("/interventions/<int:intervention_id>/linked", methods=["GET"])
def linked_interventions(intervention_id):
    return _ok(splitter.get_linked_interventions(intervention_id, g.actor_id))


# ── Time slots ───────────────────────────────────────────────────────────────


@intervention_bp.route("/interventions/<int:intervention_id>/time-slots", methods=["GET"])
def list_time_slots(intervention_id):
    """Query: include_cancelled=true"""
    include_cancelled = request.args.get("include_cancelled", "false").lower() == "true"
    slots = lifecycle.list_time_slots(intervention_id, g.actor_id, include_cancelled=include_cancelled)
    return _ok({"intervention_id": intervention_id, "items": slots, "total": len(slots)})


@intervention_bp.route("/interventions/<int:intervention_id>/time-slots", methods=["POST"])
def propose_time_slots(intervention_id):
    """Body: {slots: [{start_time, end_time}, ...], provider_id?}"""
    _require_role(ParticipantRole.MANAGER, ParticipantRole.PROVIDER)
    data = _body()
    raw_slots = data.get("slots")
    if not isinstance(raw_slots, list) or not raw_slots:
        raise ValidationError("slots must be a non-empty list", details={"field": "slots"})
    windows = []
    for raw in raw_slots:
        if not isinstance(raw, dict):
            raise ValidationError("each slot must be an object", details={"field": "slots"})
        windows.append((_parse_datetime(raw.get("start_time"), "start_time"),
                        _parse_datetime(raw.get("end_time"), "end_time")))
    provider_id = data.get("provider_id")
    if provider_id is not None and not isinstance(provider_id, int):
        raise ValidationError("provider_id must be an integer", details={"field": "provider_id"})
    result = lifecycle.propose_time_slots(intervention_id, g.actor_id, windows, provider_id=provider_id)
    return _ok(result, 201)


@intervention_bp.route(
    "/interventions/<int:intervention_id>/time-slots/<int:slot_id>/cancel", methods=["POST"],
)
def cancel_time_slot(intervention_id, slot_id):
    return _ok(lifecycle.cancel_time_slot(intervention_id, slot_id, g.actor_id))


# ═════════════════════════════════════════════════════════════════════════════
# Quotes
# ═════════════════════════════════════════════════════════════════════════════


@intervention_bp.route("/quotes/<int:quote_id>/approve", methods=["POST"])
def approve_quote(quote_id):
    """Body: {comments?}"""
    _require_role(ParticipantRole.MANAGER)
    data = _body()
    return _ok(quote_workflow.approve_quote(quote_id, g.actor_id, comments=data.get("comments")))


@intervention_bp.route("/quotes/<int:quote_id>/reject", methods=["POST"])
def reject_quote(quote_id):
    """Body: {reason}"""
    _require_role(ParticipantRole.MANAGER)
    data = _body()
    return _ok(quote_workflow.reject_quote(quote_id, data.get("reason"), g.actor_id))


@intervention_bp.route("/quotes/<int:quote_id>/cancel", methods=["POST"])
def cancel_quote(quote_id):
    return _ok(quote_workflow.cancel_quote(quote_id, g.actor_id))


# ═════════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════════


@intervention_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Query: unread_only=true, limit, offset"""
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items, total = NotificationService.list_for_user(
        g.actor_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(g.actor_id),
    }), 200


@intervention_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id, g.actor_id)
    if notif is None:
        raise NotFoundError("Notification", notification_id)
    return jsonify(notif.to_dict()), 200
