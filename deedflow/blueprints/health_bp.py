"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready    simple 200 for load balancers
    GET /api/v1/health/live     dependency status (database, rate-limit store)
    GET /api/v1/health/metrics  in-process request stats (?window=seconds)
"""

import logging
import time
from collections import Counter

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from deedflow.middleware.timing import get_recent_metrics
from deedflow.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness check; always 200 while the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Rate-limit storage ───────────────────────────────────────────
    storage = current_app.config.get("REDIS_URL", "memory://")
    checks["rate_limit_storage"] = {
        "status": "ok",
        "backend": "memory" if storage.startswith("memory") else "redis",
    }

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Deed Workflow Service",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "delivery_escalation_days": current_app.config.get("DELIVERY_ESCALATION_DAYS"),
    }

    status_code = 200 if overall else 503
    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), status_code


@health_bp.route("/metrics", methods=["GET"])
def request_metrics():
    """Request stats from the timing buffer over the last hour (or ?window=)."""
    window = request.args.get("window", 3600, type=int)
    recent = get_recent_metrics(seconds=window)
    if not recent:
        return jsonify({
            "window_seconds": window,
            "total_requests": 0,
            "avg_latency_ms": 0,
            "p95_latency_ms": 0,
            "status_distribution": {},
            "top_error_endpoints": [],
        })

    latencies = sorted(m["ms"] for m in recent)
    p95_idx = max(0, int(len(latencies) * 0.95) - 1)
    statuses = Counter(str(m["status"]) for m in recent)
    errors = Counter(f'{m["method"]} {m["path"]}' for m in recent if m["status"] >= 400)

    return jsonify({
        "window_seconds": window,
        "total_requests": len(recent),
        "avg_latency_ms": round(sum(latencies) / len(latencies), 1),
        "p95_latency_ms": latencies[p95_idx],
        "max_latency_ms": latencies[-1],
        "status_distribution": dict(statuses),
        "error_rate": round(sum(errors.values()) / len(recent) * 100, 1),
        "top_error_endpoints": [
            {"endpoint": ep, "count": c} for ep, c in errors.most_common(10)
        ],
    })
