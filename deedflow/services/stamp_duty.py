"""
Deed Workflow Service — Stamp Duty Calculator

Staff1 computes the stamp duty for a form before approving it.  Rates are
per service type; amounts are rounded half-up to two decimals.

    sale-deed              6 % of property value
    will-deed              0.1 % of property value, minimum 500
    trust-deed             3 %
    property-registration  1 %
    power-of-attorney      fixed 100
    adoption-deed          fixed 50
    anything else          0 (not applicable)
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from deedflow.core.exceptions import ValidationError

_TWO_PLACES = Decimal("0.01")
MAX_PROPERTY_VALUE = Decimal("1000000000000000")

# service_type → (kind, value, label)
STAMP_DUTY_RULES = {
    "sale-deed":             ("rate", Decimal("0.06"), "6%"),
    "will-deed":             ("rate_min", (Decimal("0.001"), Decimal("500")), "0.1% (min 500)"),
    "trust-deed":            ("rate", Decimal("0.03"), "3%"),
    "property-registration": ("rate", Decimal("0.01"), "1%"),
    "power-of-attorney":     ("fixed", Decimal("100"), "Fixed 100"),
    "adoption-deed":         ("fixed", Decimal("50"), "Fixed 50"),
}


def _to_decimal(property_value) -> Decimal:
    if isinstance(property_value, bool):
        raise ValidationError("property_value must be a number", details={"property_value": "invalid"})
    try:
        value = Decimal(str(property_value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            "property_value must be a number", details={"property_value": "invalid"},
        ) from None
    if not value.is_finite() or value < 0:
        raise ValidationError(
            "property_value must be a non-negative number",
            details={"property_value": "must be >= 0"},
        )
    if value > MAX_PROPERTY_VALUE:
        raise ValidationError(
            f"property_value must not exceed {MAX_PROPERTY_VALUE}",
            details={"property_value": f"must be <= {MAX_PROPERTY_VALUE}"},
        )
    return value


def calculate_stamp_duty(service_type: str, property_value=0) -> dict:
    """
    Compute the stamp duty for ``service_type``.

    Returns:
        {"amount": float, "service_type", "property_value", "base_rate",
         "calculation"}
    """
    value = _to_decimal(property_value if property_value is not None else 0)
    rule = STAMP_DUTY_RULES.get(service_type)

    if rule is None:
        amount = Decimal("0")
        base_rate = "Not applicable"
        calculation = "Stamp duty is not applicable for this service type"
    else:
        kind, param, base_rate = rule
        if kind == "rate":
            amount = value * param
            calculation = f"{value} x {base_rate} = {amount.quantize(_TWO_PLACES, ROUND_HALF_UP)}"
        elif kind == "rate_min":
            rate, minimum = param
            amount = max(minimum, value * rate)
            calculation = f"max({minimum}, {value} x 0.1%) = {amount.quantize(_TWO_PLACES, ROUND_HALF_UP)}"
        else:
            amount = param
            calculation = f"Fixed amount for {service_type}"

    amount = amount.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    return {
        "amount": float(amount),
        "service_type": service_type,
        "property_value": float(value),
        "base_rate": base_rate,
        "calculation": calculation,
    }
