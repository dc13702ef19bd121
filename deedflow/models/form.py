"""
Deed Workflow Service
Form domain model.

Models:
    - Form: aggregate root for a submitted legal-document form
    - ApprovalRecord: one row per (form, stage) (the approvals map)
    - FormNote: append-only admin/staff notes
    - Delivery: post-lock delivery sub-state (one per form)

Constants describing the pipeline (stage order, status values, the status
each approval produces) live here so services and blueprints share one
definition.
"""

import uuid
from datetime import datetime, timezone

from deedflow.models import db

# ── Helpers ──────────────────────────────────────────────────────────────────


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

SERVICE_TYPES = frozenset({
    "sale-deed",
    "will-deed",
    "trust-deed",
    "property-registration",
    "property-sale-certificate",
    "power-of-attorney",
    "adoption-deed",
})

# Handled by staff2's mark-final-done short-circuit instead of staff4/staff5.
SHORT_CIRCUIT_SERVICE_TYPES = frozenset({"e-stamp", "map-module"})

ALL_SERVICE_TYPES = SERVICE_TYPES | SHORT_CIRCUIT_SERVICE_TYPES

FORM_STATUSES = frozenset({
    "draft",
    "submitted",
    "in-progress",
    "under_review",
    "verified",
    "needs_correction",
    "cross_verified",
    "pending_cross_verification",
    "rejected",
    "completed",
    "locked_by_staff5",
})

TERMINAL_STATUSES = frozenset({"locked_by_staff5", "rejected", "completed"})
DRAFT_STATUSES = frozenset({"draft", "in-progress"})

STAGE_KEYS = ("staff1", "staff2", "staff3", "staff4", "staff5")

# Status the form moves to once the stage approves.
APPROVE_STATUS = {
    "staff1": "verified",
    "staff2": "under_review",
    "staff3": "pending_cross_verification",
    "staff4": "cross_verified",
    "staff5": "locked_by_staff5",
}

APPROVAL_OUTCOMES = frozenset({"pending", "approved", "rejected", "needs_correction"})

VERIFICATION_ASPECTS = frozenset({"trustee", "amount", "land", "plot", "both"})

DELIVERY_METHODS = frozenset({"pickup", "courier", "email", "postal"})

DELIVERY_TRANSITIONS = {
    "pending_user_selection": ["user_selected", "staff4_decided"],
    "user_selected":          ["user_selected", "dispatched"],
    "staff4_decided":         ["dispatched"],
    "dispatched":             ["delivered"],
    "delivered":              [],
}


def next_stage(stage_key):
    """Return the stage after ``stage_key`` or None for the last stage."""
    idx = STAGE_KEYS.index(stage_key)
    return STAGE_KEYS[idx + 1] if idx + 1 < len(STAGE_KEYS) else None


def earlier_stages(stage_key):
    """Return every stage key that precedes ``stage_key`` in the pipeline."""
    return STAGE_KEYS[:STAGE_KEYS.index(stage_key)]


def validate_delivery_transition(old_status, new_status):
    """Return True if Delivery status transition is valid."""
    return new_status in DELIVERY_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Form
# ═════════════════════════════════════════════════════════════════════════════


class Form(db.Model):
    """
    A legal-document form moving through the five-stage approval pipeline.

    Business rules:
    - status and approvals are written only by the workflow engine.
    - locked_by_staff5 / rejected / completed are terminal.
    - version is the optimistic-concurrency counter; a stale flush raises
      StaleDataError.
    """

    __tablename__ = "forms"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    service_type = db.Column(
        db.String(40), nullable=False, index=True,
        comment="sale-deed | will-deed | trust-deed | ... | e-stamp | map-module",
    )
    submitted_by = db.Column(db.String(64), nullable=False, index=True)
    submitted_by_role = db.Column(
        db.String(20), nullable=False, default="user",
        comment="user | agent | staff1 | admin: who created the form",
    )

    fields = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(30), nullable=False, default="submitted", index=True)
    current_stage = db.Column(
        db.String(10), nullable=True, index=True,
        comment="Stage expected to act next; NULL for drafts and terminal forms",
    )

    document_ready = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set on staff4 approval; consumed by the document generator",
    )
    final_done_at = db.Column(db.DateTime(timezone=True), nullable=True)
    final_done_by = db.Column(db.String(64), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    last_activity_by = db.Column(db.String(64), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','in-progress','under_review','verified',"
            "'needs_correction','cross_verified','pending_cross_verification',"
            "'rejected','completed','locked_by_staff5')",
            name="ck_form_status",
        ),
        db.Index("ix_forms_status_service_type", "status", "service_type"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    approvals = db.relationship(
        "ApprovalRecord", backref="form", lazy="select",
        cascade="all, delete-orphan", order_by="ApprovalRecord.stage_key",
    )
    notes = db.relationship(
        "FormNote", backref="form", lazy="select",
        cascade="all, delete-orphan", order_by="FormNote.id",
    )
    delivery = db.relationship(
        "Delivery", backref="form", uselist=False,
        cascade="all, delete-orphan",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    def approval_for(self, stage_key):
        """Return the ApprovalRecord for ``stage_key`` (None before submission)."""
        for rec in self.approvals:
            if rec.stage_key == stage_key:
                return rec
        return None

    def is_stage_approved(self, stage_key) -> bool:
        rec = self.approval_for(stage_key)
        return bool(rec and rec.approved)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_notes=True):
        result = {
            "id": self.id,
            "service_type": self.service_type,
            "submitted_by": self.submitted_by,
            "submitted_by_role": self.submitted_by_role,
            "fields": dict(self.fields or {}),
            "status": self.status,
            "current_stage": self.current_stage,
            "approvals": {
                key: (self.approval_for(key).to_dict() if self.approval_for(key) else None)
                for key in STAGE_KEYS
            },
            "document_ready": self.document_ready,
            "final_done_at": _iso(self.final_done_at),
            "final_done_by": self.final_done_by,
            "delivery": self.delivery.to_dict() if self.delivery else None,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "submitted_at": _iso(self.submitted_at),
            "last_activity_at": _iso(self.last_activity_at),
            "last_activity_by": self.last_activity_by,
        }
        if include_notes:
            result["admin_notes"] = [n.to_dict() for n in self.notes]
        return result

    def __repr__(self):
        return f"<Form {self.id} {self.service_type} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ApprovalRecord
# ═════════════════════════════════════════════════════════════════════════════


class ApprovalRecord(db.Model):
    """
    A single stage's entry in the form's approvals map.

    Created as ``pending`` for all five stages at submission. Overwritten in
    place when a stage is re-processed after correction (``pass_number``
    counts the passes); the per-pass history lives in audit_logs.
    """

    __tablename__ = "form_approvals"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_key = db.Column(db.String(10), nullable=False)
    outcome = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected | needs_correction",
    )
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=False, default="")
    verification_aspect = db.Column(
        db.String(20), nullable=True,
        comment="staff2: trustee | amount | both; staff3: land | plot | both",
    )
    corrections = db.Column(
        db.JSON, nullable=False, default=list,
        comment="staff4 only: corrections applied to staff1-3 data",
    )
    pass_number = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("form_id", "stage_key", name="uq_form_approval_stage"),
        db.CheckConstraint(
            "outcome IN ('pending','approved','rejected','needs_correction')",
            name="ck_form_approval_outcome",
        ),
    )

    @property
    def approved(self) -> bool:
        return self.outcome == "approved"

    def reset(self):
        """Return the record to the not-yet-processed state."""
        self.outcome = "pending"
        self.verified_at = None
        self.verified_by = None
        self.notes = ""
        self.verification_aspect = None

    def to_dict(self):
        return {
            "approved": self.approved,
            "outcome": self.outcome,
            "verified_at": _iso(self.verified_at),
            "verified_by": self.verified_by,
            "notes": self.notes or "",
            "verification_aspect": self.verification_aspect,
            "corrections": list(self.corrections or []),
            "pass_number": self.pass_number,
        }

    def __repr__(self):
        return f"<ApprovalRecord {self.form_id}/{self.stage_key} {self.outcome}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. FormNote
# ═════════════════════════════════════════════════════════════════════════════


class FormNote(db.Model):
    """Append-only note attached to a form. Never updated or deleted."""

    __tablename__ = "form_notes"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    stage_key = db.Column(db.String(10), nullable=True)
    added_by = db.Column(db.String(64), nullable=False)
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    note = db.Column(db.Text, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_key": self.stage_key,
            "added_by": self.added_by,
            "added_at": _iso(self.added_at),
            "note": self.note,
        }

    def __repr__(self):
        return f"<FormNote #{self.id} {self.form_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. Delivery
# ═════════════════════════════════════════════════════════════════════════════


class Delivery(db.Model):
    """
    Delivery sub-state for a locked form.

    The user's preference and staff4's fallback decision are stored side by
    side; ``final_method`` is whichever one was applied.
    """

    __tablename__ = "form_deliveries"

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(36), db.ForeignKey("forms.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    status = db.Column(
        db.String(30), nullable=False, default="pending_user_selection",
        comment="pending_user_selection | user_selected | staff4_decided | dispatched | delivered",
    )
    ready_for_delivery_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    # User preference
    user_method = db.Column(db.String(20), nullable=True)
    user_address = db.Column(db.Text, nullable=True)
    user_phone = db.Column(db.String(30), nullable=True)
    user_email = db.Column(db.String(255), nullable=True)
    user_selected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Staff4 fallback decision
    staff4_method = db.Column(db.String(20), nullable=True)
    staff4_address = db.Column(db.Text, nullable=True)
    staff4_phone = db.Column(db.String(30), nullable=True)
    staff4_email = db.Column(db.String(255), nullable=True)
    staff4_decided_by = db.Column(db.String(64), nullable=True)
    staff4_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    staff4_notes = db.Column(db.Text, nullable=True)

    final_method = db.Column(db.String(20), nullable=True)

    # Dispatch / hand-over
    tracking_number = db.Column(db.String(100), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dispatched_by = db.Column(db.String(64), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_by = db.Column(db.String(64), nullable=True)
    delivery_notes = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending_user_selection','user_selected','staff4_decided',"
            "'dispatched','delivered')",
            name="ck_form_delivery_status",
        ),
    )

    def to_dict(self):
        return {
            "status": self.status,
            "ready_for_delivery_at": _iso(self.ready_for_delivery_at),
            "user_preference": {
                "method": self.user_method,
                "delivery_address": self.user_address,
                "contact_phone": self.user_phone,
                "email": self.user_email,
                "selected_at": _iso(self.user_selected_at),
            } if self.user_method else None,
            "staff4_decision": {
                "method": self.staff4_method,
                "delivery_address": self.staff4_address,
                "contact_phone": self.staff4_phone,
                "email": self.staff4_email,
                "decided_by": self.staff4_decided_by,
                "decided_at": _iso(self.staff4_decided_at),
                "notes": self.staff4_notes,
            } if self.staff4_method else None,
            "final_method": self.final_method,
            "tracking_number": self.tracking_number,
            "dispatched_at": _iso(self.dispatched_at),
            "dispatched_by": self.dispatched_by,
            "delivered_at": _iso(self.delivered_at),
            "delivered_by": self.delivered_by,
            "delivery_notes": self.delivery_notes,
        }

    def __repr__(self):
        return f"<Delivery {self.form_id} [{self.status}]>"
