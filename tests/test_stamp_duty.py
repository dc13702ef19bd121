"""Tests: stamp duty calculator and the staff1 stamp-duty helper."""

import pytest

from deedflow.core.exceptions import AlreadyLockedError, PermissionDeniedError, ValidationError
from deedflow.models.form import STAGE_KEYS
from deedflow.services import workflow_engine
from deedflow.services.stamp_duty import MAX_PROPERTY_VALUE, calculate_stamp_duty


@pytest.mark.parametrize("service_type,value,expected", [
    ("sale-deed", 40_000, 2400.0),
    ("sale-deed", 12_345.67, 740.74),
    ("will-deed", 100_000, 500.0),
    ("will-deed", 2_000_000, 2000.0),
    ("trust-deed", 10_000, 300.0),
    ("property-registration", 250_000, 2500.0),
    ("power-of-attorney", 999_999, 100.0),
    ("adoption-deed", 0, 50.0),
    ("e-stamp", 40_000, 0.0),
    ("map-module", 40_000, 0.0),
])
def test_stamp_duty_amounts(service_type, value, expected):
    assert calculate_stamp_duty(service_type, value)["amount"] == expected


def test_calculation_shape():
    result = calculate_stamp_duty("sale-deed", "40000")
    assert result["service_type"] == "sale-deed"
    assert result["property_value"] == 40_000.0
    assert result["base_rate"] == "6%"
    assert "2400.00" in result["calculation"]


def test_half_up_rounding():
    # 0.06 * 8.375 = 0.5025 -> 0.50; 0.06 * 0.25 = 0.015 -> 0.02
    assert calculate_stamp_duty("sale-deed", "8.375")["amount"] == 0.50
    assert calculate_stamp_duty("sale-deed", "0.25")["amount"] == 0.02


def test_not_applicable_service_type():
    result = calculate_stamp_duty("map-module")
    assert result["base_rate"] == "Not applicable"


@pytest.mark.parametrize("bad", [-1, "abc", True, float("nan"), 1e30, "1e16"])
def test_invalid_property_value(bad):
    with pytest.raises(ValidationError):
        calculate_stamp_duty("sale-deed", bad)


def test_largest_property_value_is_accepted():
    result = calculate_stamp_duty("will-deed", MAX_PROPERTY_VALUE)
    assert result["amount"] == 1_000_000_000_000.0


# ── apply_stamp_duty ─────────────────────────────────────────────────────────


def test_apply_stamp_duty_writes_field_and_unblocks_approval(submitted_form, actors):
    form, calculation = workflow_engine.apply_stamp_duty(submitted_form.id, actors["staff1"])
    assert calculation["amount"] == 2400.0
    assert form.fields["stampDuty"] == 2400.0
    assert form.status == "submitted"

    form = workflow_engine.advance(submitted_form.id, "staff1", "approve", actors["staff1"])
    assert form.status == "verified"


def test_apply_stamp_duty_with_explicit_value(submitted_form, actors):
    _, calculation = workflow_engine.apply_stamp_duty(
        submitted_form.id, actors["staff1"], 100_000, notes="revalued",
    )
    assert calculation["amount"] == 6000.0
    assert any(n.note.endswith("revalued") for n in workflow_engine.get_form(submitted_form.id).notes)


def test_apply_stamp_duty_requires_staff1(submitted_form, actors):
    with pytest.raises(PermissionDeniedError):
        workflow_engine.apply_stamp_duty(submitted_form.id, actors["staff2"])


def test_apply_stamp_duty_on_locked_form(submitted_form, advance_through, actors):
    advance_through(submitted_form.id, *STAGE_KEYS)
    with pytest.raises(AlreadyLockedError):
        workflow_engine.apply_stamp_duty(submitted_form.id, actors["staff1"])
