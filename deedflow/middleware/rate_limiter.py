"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in deedflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from deedflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

API_LIMIT = "60/minute"


def actor_rate_limit_key():
    """Rate limit key: the forwarded actor id if present, else remote IP."""
    actor_id = (flask_request.headers.get("X-Actor-Id") or "").strip()
    if actor_id:
        return f"actor:{actor_id}"
    return get_remote_address() or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per actor, falling back to remote IP):
        - forms:     60/minute  (submission and stage transitions)
        - delivery:  60/minute
        - Health check: exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("forms", "delivery"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(API_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: forms and delivery %s", API_LIMIT)
