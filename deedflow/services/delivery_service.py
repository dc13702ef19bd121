"""
Deed Workflow Service — Delivery Sub-Workflow

Opened when staff5 locks a form (see FinalLockGate).  The owner chooses a
delivery method; if they have not chosen within DELIVERY_ESCALATION_DAYS of
``ready_for_delivery_at`` the choice passes to an actor holding the
``delivery_decide`` capability (staff4 or admin).

    pending_user_selection ─┬─► user_selected ──┬─► dispatched ─► delivered
                            └─► staff4_decided ─┘

The user may change their preference until the document is dispatched.
Escalation is evaluated lazily: ``is_delivery_escalation_due`` for a single
form, ``list_escalations_due`` as a sweep for dashboards/schedulers.
"""

import logging
from datetime import datetime, timedelta, timezone

from email_validator import EmailNotValidError, validate_email
from flask import current_app, has_app_context
from sqlalchemy import select

from deedflow.core.exceptions import ConflictError, OutOfOrderError, PermissionDeniedError, ValidationError
from deedflow.models import db
from deedflow.models.audit import write_audit
from deedflow.models.form import DELIVERY_METHODS, Delivery, Form, validate_delivery_transition
from deedflow.services.permission import check_capability
from deedflow.services.workflow_engine import get_form, run_form_transition

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_DAYS = 7


# ── Private helpers ──────────────────────────────────────────────────────────


def _utcnow():
    return datetime.now(timezone.utc)


def _as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _escalation_days(escalation_days=None) -> int:
    if escalation_days is not None:
        return int(escalation_days)
    if has_app_context():
        return int(current_app.config.get("DELIVERY_ESCALATION_DAYS", DEFAULT_ESCALATION_DAYS))
    return DEFAULT_ESCALATION_DAYS


def _require_delivery(form) -> Delivery:
    if form.delivery is None:
        raise OutOfOrderError(
            form.id, "staff5", "delivery is not available until the form is locked by staff5",
        )
    return form.delivery


def _check_transition(delivery, new_status):
    if not validate_delivery_transition(delivery.status, new_status):
        raise ConflictError(
            "Delivery",
            f"cannot move from '{delivery.status}' to '{new_status}'",
        )


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def validate_delivery_details(method, address=None, phone=None, email=None, *, phone_required=True):
    """
    Check the method and its conditionally required contact fields.

    courier/postal need an address, email needs a valid address; phone is
    required for user preferences.  Returns the cleaned
    ``(address, phone, email)``.
    """
    errors = {}
    if method not in DELIVERY_METHODS:
        errors["method"] = f"must be one of {sorted(DELIVERY_METHODS)}"

    address, phone, email = _clean(address), _clean(phone), _clean(email)
    if phone_required and not phone:
        errors["contact_phone"] = "required"
    if method in ("courier", "postal") and not address:
        errors["delivery_address"] = f"required for {method} delivery"
    if method == "email" and not email:
        errors["email"] = "required for email delivery"
    elif email:
        try:
            email = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError as exc:
            errors["email"] = str(exc)

    if errors:
        raise ValidationError(
            f"Invalid delivery details: {', '.join(sorted(errors))}", details=errors,
        )
    return address, phone, email


# ═════════════════════════════════════════════════════════════════════════════
# Escalation
# ═════════════════════════════════════════════════════════════════════════════


def is_delivery_escalation_due(form, now=None, *, escalation_days=None) -> bool:
    """True when the owner still has not chosen a method after the window."""
    delivery = form.delivery
    if delivery is None or delivery.status != "pending_user_selection":
        return False
    now = _as_utc(now or _utcnow())
    window = timedelta(days=_escalation_days(escalation_days))
    return now - _as_utc(delivery.ready_for_delivery_at) >= window


def list_escalations_due(now=None, *, escalation_days=None) -> list[Form]:
    """Locked forms whose delivery choice has passed to staff4."""
    now = now or _utcnow()
    stmt = (
        select(Form)
        .join(Delivery, Delivery.form_id == Form.id)
        .where(Delivery.status == "pending_user_selection")
        .order_by(Delivery.ready_for_delivery_at.asc(), Form.id)
    )
    return [
        form for form in db.session.execute(stmt).scalars()
        if is_delivery_escalation_due(form, now, escalation_days=escalation_days)
    ]


def get_delivery(form_id) -> Delivery:
    return _require_delivery(get_form(form_id))


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def set_delivery_preference(form_id, method, address=None, phone=None, email=None, *,
                            actor, now=None) -> Delivery:
    """Record the owner's delivery preference; allowed until dispatch."""
    now = now or _utcnow()

    def apply(form):
        delivery = _require_delivery(form)
        if not (actor.is_admin or actor.id == form.submitted_by):
            raise PermissionDeniedError(actor.id, actor.role, "delivery_prefer")
        _check_transition(delivery, "user_selected")
        clean_address, clean_phone, clean_email = validate_delivery_details(
            method, address, phone, email,
        )

        old_status, old_method = delivery.status, delivery.final_method
        delivery.user_method = method
        delivery.user_address = clean_address
        delivery.user_phone = clean_phone
        delivery.user_email = clean_email
        delivery.user_selected_at = now
        delivery.final_method = method
        delivery.status = "user_selected"
        form.last_activity_at = now
        form.last_activity_by = actor.id

        write_audit(
            entity_type="delivery",
            entity_id=form.id,
            action="delivery.set_preference",
            actor=actor.id,
            actor_role=actor.role,
            diff={
                "status": {"old": old_status, "new": delivery.status},
                "final_method": {"old": old_method, "new": method},
            },
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info(
        "Delivery preference set",
        extra={"form_id": form.id, "actor_id": actor.id, "method_choice": method},
    )
    return form.delivery


def decide_delivery_method(form_id, actor, method, address=None, phone=None, email=None,
                           notes=None, *, now=None) -> Delivery:
    """Staff4 fallback decision once the owner's selection window has elapsed."""
    now = now or _utcnow()

    def apply(form):
        delivery = _require_delivery(form)
        check_capability(actor, "delivery_decide")
        _check_transition(delivery, "staff4_decided")
        if not is_delivery_escalation_due(form, now):
            raise ConflictError(
                "Delivery",
                f"the owner still has until {_escalation_days()} days after "
                f"{_as_utc(delivery.ready_for_delivery_at).isoformat()} to choose",
            )
        clean_address, clean_phone, clean_email = validate_delivery_details(
            method, address, phone, email, phone_required=False,
        )

        delivery.staff4_method = method
        delivery.staff4_address = clean_address
        delivery.staff4_phone = clean_phone
        delivery.staff4_email = clean_email
        delivery.staff4_decided_by = actor.id
        delivery.staff4_decided_at = now
        delivery.staff4_notes = _clean(notes)
        delivery.final_method = method
        delivery.status = "staff4_decided"
        form.last_activity_at = now
        form.last_activity_by = actor.id

        write_audit(
            entity_type="delivery",
            entity_id=form.id,
            action="delivery.staff4_decide",
            actor=actor.id,
            actor_role=actor.role,
            diff={
                "status": {"old": "pending_user_selection", "new": "staff4_decided"},
                "final_method": {"old": None, "new": method},
                "notes": delivery.staff4_notes,
            },
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info(
        "Delivery method decided by staff",
        extra={"form_id": form.id, "actor_id": actor.id, "method_choice": method},
    )
    return form.delivery


def mark_dispatched(form_id, actor, tracking_number=None, *, now=None) -> Delivery:
    now = now or _utcnow()

    def apply(form):
        delivery = _require_delivery(form)
        check_capability(actor, "delivery_decide")
        _check_transition(delivery, "dispatched")
        if delivery.final_method in ("courier", "postal") and not _clean(tracking_number):
            raise ValidationError(
                f"tracking_number is required for {delivery.final_method} delivery",
                details={"tracking_number": "required"},
            )

        old_status = delivery.status
        delivery.status = "dispatched"
        delivery.tracking_number = _clean(tracking_number)
        delivery.dispatched_at = now
        delivery.dispatched_by = actor.id
        form.last_activity_at = now
        form.last_activity_by = actor.id

        write_audit(
            entity_type="delivery",
            entity_id=form.id,
            action="delivery.dispatch",
            actor=actor.id,
            actor_role=actor.role,
            diff={
                "status": {"old": old_status, "new": "dispatched"},
                "tracking_number": delivery.tracking_number,
            },
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info("Delivery dispatched", extra={"form_id": form.id, "actor_id": actor.id})
    return form.delivery


def mark_delivered(form_id, actor, notes=None, *, now=None) -> Delivery:
    now = now or _utcnow()

    def apply(form):
        delivery = _require_delivery(form)
        check_capability(actor, "delivery_decide")
        _check_transition(delivery, "delivered")

        delivery.status = "delivered"
        delivery.delivered_at = now
        delivery.delivered_by = actor.id
        delivery.delivery_notes = _clean(notes)
        form.last_activity_at = now
        form.last_activity_by = actor.id

        write_audit(
            entity_type="delivery",
            entity_id=form.id,
            action="delivery.deliver",
            actor=actor.id,
            actor_role=actor.role,
            diff={"status": {"old": "dispatched", "new": "delivered"}, "notes": delivery.delivery_notes},
        )
        return []

    form = run_form_transition(form_id, apply)
    logger.info("Delivery completed", extra={"form_id": form.id, "actor_id": actor.id})
    return form.delivery
