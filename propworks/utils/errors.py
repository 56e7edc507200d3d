"""Standardised API error responses.

Usage
-----
    from propworks.utils.errors import api_error
    from propworks.core.exceptions import ResultCode

    return api_error(ResultCode.NOT_FOUND, "Quote id=4 not found")
    return api_error(ResultCode.VALIDATION_FAILED, "reason is required",
                     details={"field": "reason"})
"""

from __future__ import annotations

from flask import jsonify

from propworks.core.exceptions import ResultCode, WorkflowError

# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    ResultCode.SUCCESS.value: 200,
    ResultCode.VALIDATION_FAILED.value: 400,
    ResultCode.UNAUTHORIZED.value: 401,
    ResultCode.FORBIDDEN.value: 403,
    ResultCode.NOT_FOUND.value: 404,
    ResultCode.INVALID_STATE.value: 409,
    ResultCode.INTERNAL_ERROR.value: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable result code (``ResultCode`` member or its value).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, current status, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)``, a drop-in for Flask views.
    """
    code = ResultCode(code).value
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_response(exc: WorkflowError):
    """Render a ``WorkflowError`` with its own code and HTTP status."""
    details = dict(exc.details)
    current_status = getattr(exc, "current_status", None)
    if current_status is not None:
        details.setdefault("current_status", current_status)
    return api_error(exc.code, exc.message, status=exc.http_status, details=details or None)
