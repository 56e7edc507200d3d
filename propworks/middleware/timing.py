"""
Request timing middleware.

Every response carries ``X-Request-ID`` (echoed from the caller when given)
and ``X-Request-Duration-Ms``. Workflow calls are logged with the acting user
and the intervention or quote the route addresses, so a single id can be
followed from the HTTP layer into the service logs.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

# Orchestrator health checks hit these every few seconds
_QUIET_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})

# Route arguments promoted to log fields
_ENTITY_ARGS = {"intervention_id": "intervention_id", "quote_id": "quote_id"}


def _request_fields(response, duration_ms: float) -> dict:
    fields = {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "request_id": g.get("request_id", ""),
        "actor_id": g.get("actor_id"),
        "remote_addr": request.remote_addr,
    }
    actor = g.get("actor")
    if actor is not None:
        fields["team_id"] = actor.team_id
    for arg, field in _ENTITY_ARGS.items():
        if request.view_args and arg in request.view_args:
            fields[field] = request.view_args[arg]
    return fields


def init_request_timing(app: Flask):
    """Register before/after hooks for request ids and timing."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = g.get("request_start")
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _QUIET_PATHS:
            return response

        fields = _request_fields(response, duration_ms)
        summary = "%s %s -> %d (%.0fms)"
        args = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Workflow call failed: " + summary, *args, extra=fields)
        elif duration_ms > slow_ms:
            logger.warning("Slow workflow call: " + summary, *args, extra=fields)
        elif request.method != "GET":
            logger.info("Workflow call: " + summary, *args, extra=fields)
        else:
            logger.debug(summary, *args, extra=fields)

        return response
