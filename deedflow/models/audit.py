"""
Deed Workflow Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for workflow transitions.
"""

import json
from datetime import UTC, datetime

from deedflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"form", "delivery"}

AUDIT_ACTIONS = {
    # Form lifecycle
    "form.create_draft",
    "form.save_draft",
    "form.submit",
    "form.final_done",
    # Stage transitions (form.<stage>.<action>)
    *(f"form.staff{n}.{action}"
      for n in range(1, 6)
      for action in ("approve", "reject", "request_correction", "correct")),
    # Delivery sub-workflow
    "delivery.initialise",
    "delivery.set_preference",
    "delivery.staff4_decide",
    "delivery.dispatch",
    "delivery.deliver",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every successful transition.

    One row per transition.  ``diff_json`` carries the old→new snapshot
    of the fields touched by the transition.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="form | delivery",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="Form id the entry belongs to",
    )

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="form.staff1.approve | delivery.dispatch | …",
    )
    actor = db.Column(
        db.String(64), nullable=False, default="system",
        comment="Actor id or 'system'",
    )
    actor_role = db.Column(db.String(20), nullable=True)
    request_id = db.Column(
        db.String(36), nullable=True,
        comment="X-Request-ID of the HTTP request that caused the transition",
    )

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} plus transition context",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "request_id": self.request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    actor_role: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    from flask import g, has_request_context

    request_id = getattr(g, "request_id", None) if has_request_context() else None

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        actor_role=actor_role,
        request_id=request_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
