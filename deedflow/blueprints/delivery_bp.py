"""
Delivery Blueprint — post-lock delivery sub-workflow.

Endpoints:
    GET    /api/v1/forms/<id>/delivery              delivery state + escalation_due
    PUT    /api/v1/forms/<id>/delivery/preference   owner's choice
    PUT    /api/v1/forms/<id>/delivery/decision     staff4 fallback after the window
    PUT    /api/v1/forms/<id>/delivery/dispatch     handed to courier/post/pickup desk
    PUT    /api/v1/forms/<id>/delivery/delivered    received
    GET    /api/v1/delivery/escalations             forms whose window has elapsed

The read endpoints accept ``?now=<ISO-8601>`` to evaluate the escalation
window at a given instant.
"""

import logging

from flask import Blueprint, jsonify, request

from deedflow.services import delivery_service
from deedflow.utils.errors import E, api_error, register_workflow_error_handlers
from deedflow.utils.helpers import actor_from_request, parse_datetime

logger = logging.getLogger(__name__)

delivery_bp = Blueprint("delivery", __name__, url_prefix="/api/v1")

register_workflow_error_handlers(delivery_bp)


def _json_object():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _method_from(data):
    method = str(data.get("method") or "").strip().lower()
    if not method:
        return None, api_error(E.VALIDATION_REQUIRED, "Field 'method' is required")
    return method, None


@delivery_bp.route("/forms/<form_id>/delivery", methods=["GET"])
def get_delivery(form_id):
    now = parse_datetime(request.args.get("now"))
    delivery = delivery_service.get_delivery(form_id)
    return jsonify({
        **delivery.to_dict(),
        "escalation_due": delivery_service.is_delivery_escalation_due(delivery.form, now),
    })


@delivery_bp.route("/forms/<form_id>/delivery/preference", methods=["PUT"])
def set_preference(form_id):
    """Body: {method, delivery_address?, contact_phone, email?}"""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_object()
    if err:
        return err
    method, err = _method_from(data)
    if err:
        return err

    delivery = delivery_service.set_delivery_preference(
        form_id,
        method,
        data.get("delivery_address"),
        data.get("contact_phone"),
        data.get("email"),
        actor=actor,
    )
    return jsonify(delivery.to_dict())


@delivery_bp.route("/forms/<form_id>/delivery/decision", methods=["PUT"])
def decide_method(form_id):
    """Body: {method, delivery_address?, contact_phone?, email?, notes?}"""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_object()
    if err:
        return err
    method, err = _method_from(data)
    if err:
        return err

    delivery = delivery_service.decide_delivery_method(
        form_id,
        actor,
        method,
        data.get("delivery_address"),
        data.get("contact_phone"),
        data.get("email"),
        data.get("notes"),
    )
    return jsonify(delivery.to_dict())


@delivery_bp.route("/forms/<form_id>/delivery/dispatch", methods=["PUT"])
def dispatch(form_id):
    """Body: {tracking_number?}"""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_object()
    if err:
        return err
    delivery = delivery_service.mark_dispatched(form_id, actor, data.get("tracking_number"))
    return jsonify(delivery.to_dict())


@delivery_bp.route("/forms/<form_id>/delivery/delivered", methods=["PUT"])
def delivered(form_id):
    """Body: {notes?}"""
    actor, err = actor_from_request()
    if err:
        return err
    data, err = _json_object()
    if err:
        return err
    delivery = delivery_service.mark_delivered(form_id, actor, data.get("notes"))
    return jsonify(delivery.to_dict())


@delivery_bp.route("/delivery/escalations", methods=["GET"])
def escalations():
    now = parse_datetime(request.args.get("now"))
    forms = delivery_service.list_escalations_due(now)
    return jsonify({
        "items": [
            {"form_id": f.id, "service_type": f.service_type, "submitted_by": f.submitted_by,
             "delivery": f.delivery.to_dict()}
            for f in forms
        ],
        "total": len(forms),
    })
