"""Shared request helpers for the blueprints.

actor_from_request:  explicit Actor from the X-Actor-Id / X-Actor-Role headers
parse_datetime:      ISO-8601 query/body values → aware datetime (UTC)
"""
from datetime import datetime, timezone

from flask import request

from deedflow.core.exceptions import ValidationError
from deedflow.services.permission import ROLES, Actor
from deedflow.utils.errors import E, api_error

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


def actor_from_request():
    """Build the calling Actor from request headers.

    Identity is established by the upstream auth service; this layer only
    reads what it forwards.  Same tuple-return pattern as get_or_404:

        actor, err = actor_from_request()
        if err:
            return err
    """
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip().lower()
    if not actor_id or not role:
        return None, api_error(
            E.VALIDATION_REQUIRED,
            f"{ACTOR_ID_HEADER} and {ACTOR_ROLE_HEADER} headers are required",
        )
    if role not in ROLES:
        return None, api_error(
            E.VALIDATION_INVALID,
            f"Unknown actor role '{role}'",
            details={"valid_roles": sorted(ROLES)},
        )
    return Actor(id=actor_id, role=role), None


def parse_datetime(value):
    """Parse an ISO-8601 string; naive values are taken as UTC.

    Returns None for empty input, raises ValidationError on bad input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except (ValueError, TypeError):
        raise ValidationError(
            f"Invalid datetime '{value}'", details={"now": "must be ISO-8601"},
        ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
