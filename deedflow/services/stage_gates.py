"""
Deed Workflow Service — Approval Stage Gates

One gate per staff role.  A gate knows:
  - the capability an actor needs to act at the stage
  - the prerequisites the form must meet before the stage may act
  - which verification aspects the stage records
  - extra checks before approving, and side effects after approving
  - which stage a correction request re-opens

Gates only inspect and mutate the Form in memory; the workflow engine owns
the transaction, audit rows and hook dispatch.

    staff1  form review & stamp duty     → verified
    staff2  trustee / amount validation  → under_review
    staff3  land / plot verification     → pending_cross_verification
    staff4  cross-verification of 1–3    → cross_verified (document_ready)
    staff5  final authority & lock       → locked_by_staff5 (delivery opened)
"""

from deedflow.core.exceptions import (
    IncompleteDataError,
    OutOfOrderError,
    ValidationError,
)
from deedflow.models.audit import write_audit
from deedflow.models.form import APPROVE_STATUS, STAGE_KEYS, Delivery, earlier_stages, next_stage
from deedflow.services.field_validators import is_number


class StageGate:
    """Base gate: linear prerequisites, no aspects, no approve checks."""

    stage_key = None
    capability = None
    aspects = frozenset()
    can_request_correction = True

    @property
    def approve_status(self) -> str:
        return APPROVE_STATUS[self.stage_key]

    @property
    def next_stage(self):
        return next_stage(self.stage_key)

    # ── Preconditions ────────────────────────────────────────────────────

    def check_prerequisites(self, form) -> None:
        """Raise OutOfOrderError unless every earlier stage has approved."""
        for prior in earlier_stages(self.stage_key):
            if not form.is_stage_approved(prior):
                raise OutOfOrderError(
                    form.id, self.stage_key, f"{prior} has not approved this form",
                )

    def missing_fields(self, fields: dict) -> list[str]:
        """Field keys that must hold a valid value before this stage approves."""
        return []

    def validate_approve(self, form, fields: dict) -> None:
        missing = self.missing_fields(fields)
        if missing:
            raise IncompleteDataError(self.stage_key, missing)

    # ── Verification aspect ──────────────────────────────────────────────

    def default_aspect(self, form):
        return None

    def resolve_aspect(self, form, aspect):
        if aspect is not None and not isinstance(aspect, str):
            raise ValidationError(
                "Verification aspect must be a string",
                details={"verification_aspect": "must be a string"},
            )
        if not self.aspects:
            if aspect is not None:
                raise ValidationError(
                    f"{self.stage_key} does not record a verification aspect",
                    details={"verification_aspect": "not applicable"},
                )
            return None
        if aspect is None:
            return self.default_aspect(form)
        if aspect not in self.aspects:
            raise ValidationError(
                f"Invalid verification aspect '{aspect}' for {self.stage_key}",
                details={"verification_aspect": f"must be one of {sorted(self.aspects)}"},
            )
        return aspect

    # ── Correction ───────────────────────────────────────────────────────

    def correction_target(self, form, reopen_stage) -> str:
        """Return the stage that must re-process after a correction request."""
        if not self.can_request_correction:
            raise ValidationError(
                f"{self.stage_key} cannot request a correction; reject or approve instead",
                details={"request_correction": "not allowed"},
            )
        if reopen_stage not in (None, self.stage_key):
            raise ValidationError(
                f"{self.stage_key} can only re-open its own stage",
                details={"reopen_stage": f"must be {self.stage_key}"},
            )
        return self.stage_key

    # ── Side effects ─────────────────────────────────────────────────────

    def on_approve(self, form, actor, now) -> list:
        """Apply stage-specific side effects; return extra hook events."""
        return []

    def __repr__(self):
        return f"<{type(self).__name__} {self.stage_key}>"


class FormReviewGate(StageGate):
    """staff1: checks completeness and attaches the stamp duty."""

    stage_key = "staff1"
    capability = "form_review"

    def missing_fields(self, fields):
        value = fields.get("stampDuty")
        if not is_number(value) or value < 0:
            return ["stampDuty"]
        return []


class TrusteeAmountGate(StageGate):
    """staff2: trustee identity and amount checks."""

    stage_key = "staff2"
    capability = "trustee_amount_verify"
    aspects = frozenset({"trustee", "amount", "both"})

    def default_aspect(self, form):
        return "amount" if form.service_type == "sale-deed" else "trustee"


class LandPlotGate(StageGate):
    """staff3: land measurement and plot boundary checks."""

    stage_key = "staff3"
    capability = "land_plot_verify"
    aspects = frozenset({"land", "plot", "both"})

    def default_aspect(self, form):
        return "land"


class CrossVerificationGate(StageGate):
    """staff4: re-checks staff1–3 and may send any of them back."""

    stage_key = "staff4"
    capability = "cross_verify"

    def correction_target(self, form, reopen_stage):
        if reopen_stage is None:
            return self.stage_key
        allowed = earlier_stages(self.stage_key) + (self.stage_key,)
        if reopen_stage not in allowed:
            raise ValidationError(
                f"staff4 cannot re-open '{reopen_stage}'",
                details={"reopen_stage": f"must be one of {list(allowed)}"},
            )
        return reopen_stage

    def on_approve(self, form, actor, now):
        form.document_ready = True
        return []


class FinalLockGate(StageGate):
    """staff5: irreversible lock; opens the delivery sub-workflow."""

    stage_key = "staff5"
    capability = "final_lock"
    can_request_correction = False

    def check_prerequisites(self, form):
        super().check_prerequisites(form)
        if form.status != "cross_verified":
            raise OutOfOrderError(
                form.id, self.stage_key,
                f"form must be cross_verified before the final lock (status is {form.status})",
            )

    def on_approve(self, form, actor, now):
        form.delivery = Delivery(status="pending_user_selection", ready_for_delivery_at=now)
        write_audit(
            entity_type="delivery",
            entity_id=form.id,
            action="delivery.initialise",
            actor=actor.id,
            actor_role=actor.role,
            diff={"status": {"old": None, "new": "pending_user_selection"}},
        )
        return [("locked",)]


GATES = {
    gate.stage_key: gate
    for gate in (
        FormReviewGate(),
        TrusteeAmountGate(),
        LandPlotGate(),
        CrossVerificationGate(),
        FinalLockGate(),
    )
}


def get_gate(stage_key: str) -> StageGate:
    try:
        return GATES[stage_key]
    except KeyError:
        raise ValidationError(
            f"Unknown stage '{stage_key}'",
            details={"stage_key": f"must be one of {list(STAGE_KEYS)}"},
        ) from None
