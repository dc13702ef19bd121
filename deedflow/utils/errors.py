"""Standardised API error responses.

Usage
-----
    from deedflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Form not found")
    return api_error(E.VALIDATION_REQUIRED, "method is required")
    return api_error(E.OUT_OF_ORDER, str(exc), details={"stage": "staff3"})

``register_workflow_error_handlers(bp)`` wires the service exception
hierarchy to these responses for a blueprint.
"""

from __future__ import annotations

import logging

from flask import g, jsonify

from deedflow.core.exceptions import (
    AlreadyLockedError,
    ConflictError,
    IncompleteDataError,
    NotFoundError,
    OutOfOrderError,
    PermissionDeniedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for every application error
    """

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business-rule input failure – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    INCOMPLETE_DATA = "ERR_INCOMPLETE_DATA"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / workflow ordering – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    OUT_OF_ORDER = "ERR_OUT_OF_ORDER"
    FORM_LOCKED = "ERR_FORM_LOCKED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.INCOMPLETE_DATA: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.OUT_OF_ORDER: 409,
    E.FORM_LOCKED: 409,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
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
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (per-field errors, stage, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Blueprint error handlers ──────────────────────────────────────────


def _rejected(exc, **extra):
    logger.warning(
        "Rejected intent: %s", exc,
        extra={"request_id": getattr(g, "request_id", None), **extra},
    )


def register_workflow_error_handlers(bp):
    """Map the service exception hierarchy to JSON error responses on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(exc):
        return api_error(E.NOT_FOUND, str(exc))

    @bp.errorhandler(IncompleteDataError)
    def _handle_incomplete(exc):
        _rejected(exc, stage=exc.stage_key)
        return api_error(E.INCOMPLETE_DATA, str(exc), details=exc.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(exc):
        _rejected(exc)
        return api_error(E.VALIDATION_CONSTRAINT, str(exc), details=exc.details)

    @bp.errorhandler(AlreadyLockedError)
    def _handle_locked(exc):
        _rejected(exc, form_id=exc.form_id, stage=exc.stage_key)
        return api_error(E.FORM_LOCKED, str(exc), details={"status": exc.status})

    @bp.errorhandler(OutOfOrderError)
    def _handle_out_of_order(exc):
        _rejected(exc, form_id=exc.form_id, stage=exc.stage_key)
        return api_error(E.OUT_OF_ORDER, str(exc), details={"stage": exc.stage_key})

    @bp.errorhandler(ConflictError)
    def _handle_conflict(exc):
        _rejected(exc)
        return api_error(E.CONFLICT_STATE, str(exc))

    @bp.errorhandler(PermissionDeniedError)
    def _handle_forbidden(exc):
        _rejected(exc, actor_id=exc.actor_id)
        return api_error(E.FORBIDDEN, str(exc), details={"capability": exc.capability})
