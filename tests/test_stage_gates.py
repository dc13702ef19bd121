"""
Tests: stage gates — prerequisites, aspects, correction targets.

Gates are exercised against in-memory forms; nothing is flushed.
"""

import pytest

from deedflow.core.exceptions import IncompleteDataError, OutOfOrderError, ValidationError
from deedflow.models.form import STAGE_KEYS, ApprovalRecord, Form
from deedflow.services.stage_gates import GATES, get_gate


def _make_form(service_type="sale-deed", status="submitted", approved=()):
    form = Form(id="f-1", service_type=service_type, submitted_by="user-1",
                fields={}, status=status)
    form.approvals = [
        ApprovalRecord(stage_key=key, outcome="approved" if key in approved else "pending")
        for key in STAGE_KEYS
    ]
    return form


def test_every_stage_has_a_gate():
    assert list(GATES) == list(STAGE_KEYS)
    assert [GATES[key].approve_status for key in STAGE_KEYS] == [
        "verified", "under_review", "pending_cross_verification",
        "cross_verified", "locked_by_staff5",
    ]
    assert GATES["staff5"].next_stage is None
    assert GATES["staff2"].next_stage == "staff3"


def test_unknown_stage_raises_validation():
    with pytest.raises(ValidationError):
        get_gate("staff6")


@pytest.mark.parametrize("stage,approved", [
    ("staff2", ()),
    ("staff3", ("staff1",)),
    ("staff4", ("staff1", "staff3")),
])
def test_prerequisites_require_every_earlier_stage(stage, approved):
    with pytest.raises(OutOfOrderError):
        get_gate(stage).check_prerequisites(_make_form(approved=approved))


def test_prerequisites_pass_when_earlier_stages_approved():
    form = _make_form(status="under_review", approved=("staff1", "staff2"))
    get_gate("staff3").check_prerequisites(form)


def test_final_lock_requires_cross_verified_status():
    form = _make_form(status="needs_correction", approved=STAGE_KEYS[:4])
    with pytest.raises(OutOfOrderError):
        get_gate("staff5").check_prerequisites(form)
    form.status = "cross_verified"
    get_gate("staff5").check_prerequisites(form)


def test_form_review_requires_numeric_stamp_duty():
    gate = get_gate("staff1")
    form = _make_form()
    assert gate.missing_fields({}) == ["stampDuty"]
    assert gate.missing_fields({"stampDuty": "100"}) == ["stampDuty"]
    assert gate.missing_fields({"stampDuty": 0}) == []
    with pytest.raises(IncompleteDataError):
        gate.validate_approve(form, {"stampDuty": None})


def test_aspect_defaults():
    assert get_gate("staff2").resolve_aspect(_make_form("sale-deed"), None) == "amount"
    assert get_gate("staff2").resolve_aspect(_make_form("trust-deed"), None) == "trustee"
    assert get_gate("staff3").resolve_aspect(_make_form(), None) == "land"
    assert get_gate("staff4").resolve_aspect(_make_form(), None) is None


def test_aspect_must_belong_to_stage():
    with pytest.raises(ValidationError):
        get_gate("staff2").resolve_aspect(_make_form(), "plot")
    with pytest.raises(ValidationError):
        get_gate("staff4").resolve_aspect(_make_form(), "both")
    assert get_gate("staff3").resolve_aspect(_make_form(), "plot") == "plot"


@pytest.mark.parametrize("stage", ["staff2", "staff3", "staff4"])
@pytest.mark.parametrize("bad", [["amount"], {"aspect": "land"}, 3])
def test_aspect_must_be_a_string(stage, bad):
    with pytest.raises(ValidationError) as exc_info:
        get_gate(stage).resolve_aspect(_make_form(), bad)
    assert exc_info.value.details == {"verification_aspect": "must be a string"}


def test_correction_targets():
    form = _make_form()
    assert get_gate("staff1").correction_target(form, None) == "staff1"
    assert get_gate("staff4").correction_target(form, None) == "staff4"
    assert get_gate("staff4").correction_target(form, "staff1") == "staff1"
    with pytest.raises(ValidationError):
        get_gate("staff4").correction_target(form, "staff5")
    with pytest.raises(ValidationError):
        get_gate("staff3").correction_target(form, "staff2")
    with pytest.raises(ValidationError):
        get_gate("staff5").correction_target(form, None)
