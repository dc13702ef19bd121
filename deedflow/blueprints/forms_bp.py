"""
Forms Blueprint — form submission, stage transitions and staff queues.

Endpoints:
    POST   /api/v1/forms                              submit (or create draft)
    GET    /api/v1/forms                              list (status, service_type, submitted_by)
    GET    /api/v1/forms/<id>                         read
    PUT    /api/v1/forms/<id>/draft                   save draft fields
    POST   /api/v1/forms/<id>/submit                  submit a draft
    POST   /api/v1/forms/<id>/stages/<stage>/<action> approve | reject | correct | lock
    GET    /api/v1/forms/<id>/ready-for-final         staff1–3 approved?
    GET    /api/v1/forms/<id>/history                 audit trail
    GET    /api/v1/forms/<id>/completeness            missing / invalid fields
    POST   /api/v1/forms/<id>/stamp-duty              staff1 stamp duty calculation
    POST   /api/v1/forms/<id>/final-done              staff2 short-circuit (e-stamp, map-module)
    GET    /api/v1/staff/<stage>/queue                forms waiting on a stage

The acting identity comes from the X-Actor-Id / X-Actor-Role headers.

Layer contract:
    - Blueprint: parse + validate input shape, call service, return JSON.
    - NO db.session calls here; all writes owned by workflow_engine.
    - Business guards (ordering, capabilities, locking) live in the service;
      their exceptions are mapped by register_workflow_error_handlers.
"""

import logging

from flask import Blueprint, jsonify, request

from deedflow.services import workflow_engine
from deedflow.utils.errors import E, api_error, register_workflow_error_handlers
from deedflow.utils.helpers import actor_from_request

logger = logging.getLogger(__name__)

forms_bp = Blueprint("forms", __name__, url_prefix="/api/v1")

register_workflow_error_handlers(forms_bp)


def _json_body():
    """Return (data, err).  The body must be a JSON object when present."""
    data = request.get_json(silent=True)
    if data is None:
        if request.data:
            return None, api_error(E.VALIDATION_INVALID, "Request body must be valid JSON")
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _optional_object(data, key):
    value = data.get(key)
    if value is not None and not isinstance(value, dict):
        return api_error(E.VALIDATION_INVALID, f"Field '{key}' must be an object")
    return None


def _optional_bool(data, key):
    """Return (value, err).  Absent or null means False; anything else must be a JSON boolean."""
    value = data.get(key)
    if value is None:
        return False, None
    if not isinstance(value, bool):
        return None, api_error(E.VALIDATION_INVALID, f"Field '{key}' must be a boolean")
    return value, None


# ── Submission ─────────────────────────────────────────────────────────────────


@forms_bp.route("/forms", methods=["POST"])
def submit_form():
    """Create a form.  Body: {service_type, fields, submitted_by?, as_draft?}

    submitted_by defaults to the calling actor (staff1/agent/admin may file
    on a user's behalf).  Returns 201.
    """
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err

    service_type = str(data.get("service_type") or "").strip()
    if not service_type:
        return api_error(E.VALIDATION_REQUIRED, "Field 'service_type' is required")
    err = _optional_object(data, "fields")
    if err:
        return err
    as_draft, err = _optional_bool(data, "as_draft")
    if err:
        return err

    form = workflow_engine.submit_form(
        service_type,
        str(data.get("submitted_by") or actor.id).strip(),
        data.get("fields") or {},
        actor=actor,
        as_draft=as_draft,
    )
    return jsonify(form.to_dict()), 201


@forms_bp.route("/forms", methods=["GET"])
def list_forms():
    forms = workflow_engine.list_forms(
        status=request.args.get("status") or None,
        service_type=request.args.get("service_type") or None,
        submitted_by=request.args.get("submitted_by") or None,
    )
    return jsonify({"items": [f.to_dict(include_notes=False) for f in forms], "total": len(forms)})


@forms_bp.route("/forms/<form_id>", methods=["GET"])
def get_form(form_id):
    return jsonify(workflow_engine.get_form(form_id).to_dict())


@forms_bp.route("/forms/<form_id>/draft", methods=["PUT"])
def save_draft(form_id):
    """Body: {fields: {...}} merged into the draft."""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    if not isinstance(data.get("fields"), dict):
        return api_error(E.VALIDATION_REQUIRED, "Field 'fields' is required and must be an object")

    form = workflow_engine.save_draft(form_id, actor, data["fields"])
    return jsonify(form.to_dict())


@forms_bp.route("/forms/<form_id>/submit", methods=["POST"])
def submit_draft(form_id):
    actor, err = actor_from_request()
    if err:
        return err
    form = workflow_engine.submit_draft(form_id, actor)
    return jsonify(form.to_dict())


# ── Stage transitions ──────────────────────────────────────────────────────────


@forms_bp.route("/forms/<form_id>/stages/<stage_key>/<action>", methods=["POST"])
def advance(form_id, stage_key, action):
    """Apply a stage intent.

    Body: {notes?, field_patches?, verification_aspect?,
           request_correction?, reopen_stage?}
    """
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    err = _optional_object(data, "field_patches")
    if err:
        return err
    notes = data.get("notes") or ""
    if not isinstance(notes, str):
        return api_error(E.VALIDATION_INVALID, "Field 'notes' must be a string")
    request_correction, err = _optional_bool(data, "request_correction")
    if err:
        return err

    form = workflow_engine.advance(
        form_id,
        stage_key,
        action,
        actor,
        notes,
        data.get("field_patches"),
        verification_aspect=data.get("verification_aspect"),
        request_correction=request_correction,
        reopen_stage=data.get("reopen_stage"),
    )
    return jsonify(form.to_dict())


@forms_bp.route("/forms/<form_id>/ready-for-final", methods=["GET"])
def ready_for_final(form_id):
    form = workflow_engine.get_form(form_id)
    return jsonify({
        "form_id": form.id,
        "ready_for_final": workflow_engine.is_form_ready_for_final(form),
        "status": form.status,
    })


@forms_bp.route("/forms/<form_id>/history", methods=["GET"])
def form_history(form_id):
    entries = workflow_engine.get_form_history(form_id)
    return jsonify({"items": [e.to_dict() for e in entries], "total": len(entries)})


@forms_bp.route("/forms/<form_id>/completeness", methods=["GET"])
def completeness(form_id):
    form = workflow_engine.get_form(form_id)
    return jsonify(workflow_engine.completeness_report(form))


# ── Staff helpers ──────────────────────────────────────────────────────────────


@forms_bp.route("/forms/<form_id>/stamp-duty", methods=["POST"])
def stamp_duty(form_id):
    """Body: {property_value?, notes?}.  Writes fields.stampDuty."""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err

    form, calculation = workflow_engine.apply_stamp_duty(
        form_id, actor, data.get("property_value"), notes=data.get("notes") or "",
    )
    return jsonify({"form": form.to_dict(), "calculation": calculation})


@forms_bp.route("/forms/<form_id>/final-done", methods=["POST"])
def final_done(form_id):
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_body()
    if err:
        return err
    form = workflow_engine.mark_final_done(form_id, actor, data.get("notes") or "")
    return jsonify(form.to_dict())


@forms_bp.route("/staff/<stage_key>/queue", methods=["GET"])
def stage_queue(stage_key):
    forms = workflow_engine.list_stage_queue(stage_key)
    return jsonify({
        "stage": stage_key,
        "items": [f.to_dict(include_notes=False) for f in forms],
        "total": len(forms),
    })
