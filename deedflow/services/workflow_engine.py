"""
Deed Workflow Service — Workflow Engine

The sole mutator of ``Form.status`` and the approvals map.  Staff surfaces
submit intents (approve / reject / correct / lock); the engine validates
them against the stage gates and applies them atomically.

advance() checks, in order, and raises the first failure:
    1. unknown form                         → NotFoundError
    2. unknown stage or action              → ValidationError
    3. terminal form / draft form           → AlreadyLockedError / OutOfOrderError
    4. actor lacks the stage capability     → PermissionDeniedError
    5. earlier stages not approved          → OutOfOrderError
    6. action rules (stage already processed, missing stampDuty, ...)

Concurrency:
    Forms are loaded ``FOR UPDATE`` and ``forms.version`` is the mapper's
    version_id_col.  A StaleDataError on flush rolls back, reloads the form
    and re-evaluates the intent once; a second stale read is reported as a
    ConflictError.

Collaborator hooks (workflow_hooks) fire after commit.

Usage:
    from deedflow.services import workflow_engine
    from deedflow.services.permission import Actor

    form = workflow_engine.submit_form("sale-deed", "user-1", fields)
    workflow_engine.advance(form.id, "staff1", "approve", Actor("s1", "staff1"), "ok")
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from deedflow.core.exceptions import (
    AlreadyLockedError,
    ConflictError,
    NotFoundError,
    OutOfOrderError,
    PermissionDeniedError,
    ValidationError,
)
from deedflow.models import db
from deedflow.models.audit import AuditLog, write_audit
from deedflow.models.form import (
    DRAFT_STATUSES,
    FORM_STATUSES,
    SHORT_CIRCUIT_SERVICE_TYPES,
    STAGE_KEYS,
    TERMINAL_STATUSES,
    ApprovalRecord,
    Form,
    FormNote,
)
from deedflow.services import workflow_hooks
from deedflow.services.field_validators import get_validator
from deedflow.services.permission import Actor, check_capability
from deedflow.services.stage_gates import GATES, get_gate
from deedflow.services.stamp_duty import calculate_stamp_duty

logger = logging.getLogger(__name__)

ACTIONS = frozenset({"approve", "reject", "correct", "lock"})


# ── Private helpers ──────────────────────────────────────────────────────────


def _utcnow():
    return datetime.now(timezone.utc)


def load_form_for_update(form_id: str) -> Form:
    """Load a form with a row lock and fresh state; NotFoundError if absent."""
    stmt = (
        select(Form)
        .where(Form.id == form_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    form = db.session.execute(stmt).scalar_one_or_none()
    if form is None:
        raise NotFoundError(resource="Form", resource_id=form_id)
    return form


def run_form_transition(form_id: str, apply):
    """
    Run ``apply(form) -> events`` against a locked, fresh form and commit.

    ``apply`` returns None for a no-op, or a list of hook events
    (``("approved", stage_key)`` / ``("locked",)``).  Any exception rolls
    the session back so the form is left unchanged.  Returns the form.
    """
    for attempt in (1, 2):
        try:
            form = load_form_for_update(form_id)
            events = apply(form)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            if attempt == 1:
                logger.warning(
                    "Stale form version, re-evaluating transition",
                    extra={"form_id": form_id},
                )
                continue
            raise ConflictError("Form", f"{form_id} was modified concurrently; retry") from None
        except Exception:
            db.session.rollback()
            raise
        break

    for event in events or []:
        if event[0] == "approved":
            workflow_hooks.fire_approved(form, event[1])
        elif event[0] == "locked":
            workflow_hooks.fire_locked(form)
    return form


def _check_mutable(form, stage_key=None):
    if form.status in TERMINAL_STATUSES:
        raise AlreadyLockedError(form.id, form.status, stage_key)
    if form.status in DRAFT_STATUSES:
        raise OutOfOrderError(form.id, stage_key, "form has not been submitted yet")


def _check_owner(form, actor: Actor, capability: str):
    if actor.is_admin or actor.id == form.submitted_by:
        return
    raise PermissionDeniedError(actor.id, actor.role, capability)


def _merge_fields(form, field_patches, *, require_complete=True) -> dict:
    """Return the fields bag with ``field_patches`` applied, validated."""
    if field_patches is None:
        field_patches = {}
    if not isinstance(field_patches, dict):
        raise ValidationError(
            "field_patches must be an object", details={"field_patches": "must be an object"},
        )
    merged = {**(form.fields or {}), **field_patches}
    get_validator(form.service_type).validate(merged, require_complete=require_complete)
    return merged


def _field_diff(old: dict, new: dict) -> dict:
    return {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


def _touch(form, actor: Actor, now):
    form.last_activity_at = now
    form.last_activity_by = actor.id


def _add_note(form, actor: Actor, note: str, now, stage_key=None):
    form.notes.append(FormNote(stage_key=stage_key, added_by=actor.id, added_at=now, note=note))


# ═════════════════════════════════════════════════════════════════════════════
# Submission & drafts
# ═════════════════════════════════════════════════════════════════════════════


def submit_form(service_type, submitted_by, fields, *, actor=None, as_draft=False, now=None) -> Form:
    """
    Create a form.

    ``as_draft=False`` creates it ``submitted`` with staff1 as the current
    stage; ``as_draft=True`` creates a ``draft`` that skips the required-key
    checks until submit_draft().  Staff1, agents and admins may submit on a
    user's behalf; a user may only submit for themselves.
    """
    now = now or _utcnow()
    if not submitted_by:
        raise ValidationError("submitted_by is required", details={"submitted_by": "required"})
    actor = actor or Actor(id=submitted_by, role="user")
    validator = get_validator(service_type)
    check_capability(actor, "form_submit")
    if actor.role == "user" and actor.id != submitted_by:
        raise PermissionDeniedError(actor.id, actor.role, "form_submit_on_behalf")

    fields = {} if fields is None else fields
    validator.validate(fields, require_complete=not as_draft)
    fields = dict(fields)

    form = Form(
        service_type=service_type,
        submitted_by=submitted_by,
        submitted_by_role=actor.role,
        fields=fields,
        status="draft" if as_draft else "submitted",
        current_stage=None if as_draft else "staff1",
        submitted_at=None if as_draft else now,
        created_at=now,
        last_activity_at=now,
        last_activity_by=actor.id,
    )
    form.approvals = [ApprovalRecord(stage_key=key) for key in STAGE_KEYS]
    db.session.add(form)
    db.session.flush()

    write_audit(
        entity_type="form",
        entity_id=form.id,
        action="form.create_draft" if as_draft else "form.submit",
        actor=actor.id,
        actor_role=actor.role,
        diff={"status": {"old": None, "new": form.status}, "service_type": service_type},
    )
    db.session.commit()

    logger.info(
        "Form created",
        extra={
            "form_id": form.id,
            "actor_id": actor.id,
            "service_type": service_type,
            "status": form.status,
        },
    )
    return form


def save_draft(form_id, actor, fields, *, now=None) -> Form:
    """Merge ``fields`` into a draft; the form moves to ``in-progress``."""
    now = now or _utcnow()

    def apply(form):
        if form.status in TERMINAL_STATUSES:
            raise AlreadyLockedError(form.id, form.status)
        if form.status not in DRAFT_STATUSES:
            raise OutOfOrderError(form.id, None, f"form is {form.status}; only drafts can be edited")
        _check_owner(form, actor, "draft_edit")
        merged = _merge_fields(form, fields, require_complete=False)

        old_fields, old_status = dict(form.fields or {}), form.status
        form.fields = merged
        form.status = "in-progress"
        _touch(form, actor, now)
        write_audit(
            entity_type="form",
            entity_id=form.id,
            action="form.save_draft",
            actor=actor.id,
            actor_role=actor.role,
            diff={
                "status": {"old": old_status, "new": form.status},
                "fields": _field_diff(old_fields, merged),
            },
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info("Draft saved", extra={"form_id": form.id, "actor_id": actor.id})
    return form


def submit_draft(form_id, actor, *, now=None) -> Form:
    """Submit a draft; the full service-type validation now applies."""
    now = now or _utcnow()

    def apply(form):
        if form.status in TERMINAL_STATUSES:
            raise AlreadyLockedError(form.id, form.status)
        if form.status not in DRAFT_STATUSES:
            raise OutOfOrderError(form.id, None, f"form is already {form.status}")
        _check_owner(form, actor, "draft_submit")
        get_validator(form.service_type).validate(dict(form.fields or {}))

        old_status = form.status
        form.status = "submitted"
        form.current_stage = "staff1"
        form.submitted_at = now
        _touch(form, actor, now)
        write_audit(
            entity_type="form",
            entity_id=form.id,
            action="form.submit",
            actor=actor.id,
            actor_role=actor.role,
            diff={"status": {"old": old_status, "new": "submitted"}},
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info("Draft submitted", extra={"form_id": form.id, "actor_id": actor.id})
    return form


# ═════════════════════════════════════════════════════════════════════════════
# Stage transitions
# ═════════════════════════════════════════════════════════════════════════════


def advance(
    form_id,
    stage_key,
    action,
    actor,
    notes="",
    field_patches=None,
    *,
    verification_aspect=None,
    request_correction=False,
    reopen_stage=None,
    now=None,
) -> Form:
    """
    Apply a stage intent to a form and return the updated form.

    Args:
        action: approve | reject | correct | lock (staff5 alias of approve).
        notes: free text stored on the approval record and in admin notes.
        field_patches: key → value updates merged into ``fields``.
        verification_aspect: staff2 trustee|amount|both, staff3 land|plot|both.
        request_correction: on reject, re-open for correction instead of
            rejecting terminally.
        reopen_stage: staff4 only; the stage (staff1–staff4) to re-open.
    """
    now = now or _utcnow()
    notes = (notes or "").strip()

    def apply(form):
        gate = get_gate(stage_key)
        if action not in ACTIONS:
            raise ValidationError(
                f"Unknown action '{action}'",
                details={"action": f"must be one of {sorted(ACTIONS)}"},
            )
        if action == "lock" and stage_key != "staff5":
            raise ValidationError("Only staff5 can lock a form", details={"action": "lock is staff5 only"})

        _check_mutable(form, stage_key)

        check_capability(actor, gate.capability)
        if action == "correct":
            check_capability(actor, "form_correct")

        gate.check_prerequisites(form)

        if action in ("approve", "lock"):
            return _approve(form, gate, actor, notes, field_patches, verification_aspect, now)
        if action == "reject":
            return _reject(form, gate, actor, notes, verification_aspect,
                           request_correction, reopen_stage, now)
        return _correct(form, gate, actor, notes, field_patches, now)

    return run_form_transition(form_id, apply)


def _approve(form, gate, actor, notes, field_patches, verification_aspect, now):
    stage = gate.stage_key
    record = form.approval_for(stage)

    if record.approved:
        current = dict(form.fields or {})
        unchanged = field_patches is None or (
            isinstance(field_patches, dict) and not _field_diff(current, {**current, **field_patches})
        )
        if record.verified_by == actor.id and record.notes == notes and unchanged:
            logger.info(
                "Duplicate approve ignored",
                extra={"form_id": form.id, "stage": stage, "actor_id": actor.id},
            )
            return None
        raise OutOfOrderError(form.id, stage, f"{stage} has already approved this form")

    aspect = gate.resolve_aspect(form, verification_aspect)
    merged = _merge_fields(form, field_patches)
    gate.validate_approve(form, merged)

    old_status = form.status
    fields_changed = _field_diff(dict(form.fields or {}), merged)
    if fields_changed:
        form.fields = merged
        _add_note(form, actor, f"{stage} updated {', '.join(fields_changed)} on approval", now, stage)

    record.outcome = "approved"
    record.verified_at = now
    record.verified_by = actor.id
    record.notes = notes
    record.verification_aspect = aspect
    record.pass_number += 1

    form.status = gate.approve_status
    form.current_stage = gate.next_stage
    if notes:
        _add_note(form, actor, notes, now, stage)
    _touch(form, actor, now)

    events = [("approved", stage)]
    events += gate.on_approve(form, actor, now)

    write_audit(
        entity_type="form",
        entity_id=form.id,
        action=f"form.{stage}.approve",
        actor=actor.id,
        actor_role=actor.role,
        diff={
            "status": {"old": old_status, "new": form.status},
            "notes": notes,
            "verification_aspect": aspect,
            "pass_number": record.pass_number,
            "fields": fields_changed,
        },
    )
    logger.info(
        "Stage approved",
        extra={"form_id": form.id, "stage": stage, "actor_id": actor.id, "status": form.status},
    )
    return events


def _reject(form, gate, actor, notes, verification_aspect, request_correction, reopen_stage, now):
    stage = gate.stage_key
    record = form.approval_for(stage)

    if record.approved:
        raise OutOfOrderError(
            form.id, stage, f"{stage} has already approved this form; it must be re-opened first",
        )
    aspect = gate.resolve_aspect(form, verification_aspect)

    old_status = form.status
    if request_correction:
        target = gate.correction_target(form, reopen_stage)
        # Roll the re-opened stage and every later stage back to not-approved.
        reopened = STAGE_KEYS[STAGE_KEYS.index(target):STAGE_KEYS.index(stage)]
        for key in reopened:
            form.approval_for(key).reset()
        outcome, form.status, form.current_stage = "needs_correction", "needs_correction", target
        form.document_ready = False
        audit_action = f"form.{stage}.request_correction"
    else:
        if reopen_stage is not None:
            raise ValidationError(
                "reopen_stage is only valid with request_correction",
                details={"reopen_stage": "requires request_correction"},
            )
        reopened = ()
        outcome, form.status, form.current_stage = "rejected", "rejected", None
        audit_action = f"form.{stage}.reject"

    record.outcome = outcome
    record.verified_at = now
    record.verified_by = actor.id
    record.notes = notes
    record.verification_aspect = aspect
    record.pass_number += 1

    if notes:
        _add_note(form, actor, notes, now, stage)
    _touch(form, actor, now)

    write_audit(
        entity_type="form",
        entity_id=form.id,
        action=audit_action,
        actor=actor.id,
        actor_role=actor.role,
        diff={
            "status": {"old": old_status, "new": form.status},
            "notes": notes,
            "verification_aspect": aspect,
            "reopened": list(reopened),
            "current_stage": form.current_stage,
        },
    )
    logger.info(
        "Stage rejected",
        extra={
            "form_id": form.id,
            "stage": stage,
            "actor_id": actor.id,
            "status": form.status,
            "current_stage": form.current_stage,
        },
    )
    return []


def _correct(form, gate, actor, notes, field_patches, now):
    stage = gate.stage_key
    if not field_patches:
        raise ValidationError("correct requires field_patches", details={"field_patches": "required"})
    if form.current_stage != stage:
        raise OutOfOrderError(
            form.id, stage, f"corrections are only accepted while {stage} is the current stage",
        )

    merged = _merge_fields(form, field_patches)
    changes = _field_diff(dict(form.fields or {}), merged)
    if not changes:
        return None

    form.fields = merged
    summary = f"{stage} corrected {', '.join(changes)}"
    _add_note(form, actor, f"{summary}: {notes}" if notes else summary, now, stage)

    if stage == "staff4":
        record = form.approval_for(stage)
        record.corrections = [
            *(record.corrections or []),
            {"fields": changes, "by": actor.id, "at": now.isoformat(), "notes": notes},
        ]
    _touch(form, actor, now)

    write_audit(
        entity_type="form",
        entity_id=form.id,
        action=f"form.{stage}.correct",
        actor=actor.id,
        actor_role=actor.role,
        diff={"fields": changes, "notes": notes},
    )
    logger.info(
        "Form fields corrected",
        extra={"form_id": form.id, "stage": stage, "actor_id": actor.id, "fields": list(changes)},
    )
    return []


# ═════════════════════════════════════════════════════════════════════════════
# Staff helpers
# ═════════════════════════════════════════════════════════════════════════════


def apply_stamp_duty(form_id, actor, property_value=None, *, notes="", now=None):
    """
    Compute the stamp duty and write ``fields.stampDuty`` as a staff1
    correction.  ``property_value`` defaults to the form's own value.

    Returns (form, calculation).
    """
    form = get_form(form_id)
    check_capability(actor, "stamp_duty")
    if property_value is None:
        fields = form.fields or {}
        property_value = (
            fields.get("propertyValue")
            or fields.get("trustPropertyValue")
            or fields.get("marketValue")
            or 0
        )
    calculation = calculate_stamp_duty(form.service_type, property_value)
    form = advance(
        form_id, "staff1", "correct", actor,
        notes=notes or calculation["calculation"],
        field_patches={"stampDuty": calculation["amount"]},
        now=now,
    )
    return form, calculation


def mark_final_done(form_id, actor, notes="", *, now=None) -> Form:
    """
    Staff2 short-circuit for e-stamp and map-module forms whose land/plot
    check is approved: the form is ``completed`` without staff4/staff5.
    """
    now = now or _utcnow()
    notes = (notes or "").strip()

    def apply(form):
        _check_mutable(form)
        check_capability(actor, "final_done")
        if form.service_type not in SHORT_CIRCUIT_SERVICE_TYPES:
            raise ValidationError(
                f"final-done is not available for {form.service_type} forms",
                details={"service_type": f"must be one of {sorted(SHORT_CIRCUIT_SERVICE_TYPES)}"},
            )
        if not form.is_stage_approved("staff3"):
            raise OutOfOrderError(form.id, "staff3", "staff3 has not approved this form")

        old_status = form.status
        form.status = "completed"
        form.current_stage = None
        form.final_done_at = now
        form.final_done_by = actor.id
        _add_note(form, actor, notes or "Marked final done", now, "staff2")
        _touch(form, actor, now)
        write_audit(
            entity_type="form",
            entity_id=form.id,
            action="form.final_done",
            actor=actor.id,
            actor_role=actor.role,
            diff={"status": {"old": old_status, "new": "completed"}, "notes": notes},
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info("Form marked final done", extra={"form_id": form.id, "actor_id": actor.id})
    return form


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_form(form_id) -> Form:
    form = db.session.get(Form, form_id)
    if form is None:
        raise NotFoundError(resource="Form", resource_id=form_id)
    return form


def is_form_ready_for_final(form) -> bool:
    """True when staff1, staff2 and staff3 have all approved."""
    return all(form.is_stage_approved(key) for key in ("staff1", "staff2", "staff3"))


def list_forms(status=None, service_type=None, submitted_by=None) -> list[Form]:
    if status is not None and status not in FORM_STATUSES:
        raise ValidationError(f"Unknown status '{status}'", details={"status": "invalid"})
    stmt = select(Form)
    if status:
        stmt = stmt.where(Form.status == status)
    if service_type:
        stmt = stmt.where(Form.service_type == service_type)
    if submitted_by:
        stmt = stmt.where(Form.submitted_by == submitted_by)
    stmt = stmt.order_by(Form.created_at.desc(), Form.id)
    return list(db.session.execute(stmt).scalars())


def list_stage_queue(stage_key) -> list[Form]:
    """Forms waiting on ``stage_key``, oldest activity first."""
    get_gate(stage_key)
    stmt = (
        select(Form)
        .where(
            Form.current_stage == stage_key,
            Form.status.notin_(TERMINAL_STATUSES | DRAFT_STATUSES),
        )
        .order_by(Form.last_activity_at.asc(), Form.id)
    )
    return list(db.session.execute(stmt).scalars())


def get_form_history(form_id) -> list[AuditLog]:
    get_form(form_id)
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_id == str(form_id))
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )
    return list(db.session.execute(stmt).scalars())


def completeness_report(form) -> dict:
    """Missing/invalid keys for submission and for each remaining stage."""
    validator = get_validator(form.service_type)
    fields = dict(form.fields or {})
    missing = validator.missing_required(fields)
    invalid = validator.invalid_fields(fields)
    stages = {
        key: gate.missing_fields(fields)
        for key, gate in GATES.items()
        if not form.is_stage_approved(key)
    }
    return {
        "form_id": form.id,
        "service_type": form.service_type,
        "status": form.status,
        "current_stage": form.current_stage,
        "missing_required": missing,
        "invalid_fields": invalid,
        "stage_requirements": stages,
        "ready_for_final": is_form_ready_for_final(form),
        "complete": not missing and not invalid and not any(stages.values()),
    }
