"""
Deed Workflow Service — Service-Type Field Validators

The ``fields`` bag of a form is free-form JSON, but each service type has a
small schema: the party/property keys that must be present before the form
leaves draft, and the keys that must hold numbers whenever they are present.
One validator object per service type is registered in ``VALIDATORS``;
``get_validator(service_type)`` selects it.

Validators never mutate the bag.  ``validate`` raises ``ValidationError``
with a per-key ``details`` map; ``missing_required`` is the non-raising
variant used by the completeness report.
"""

import numbers

from deedflow.core.exceptions import ValidationError

# Keys that must be numeric for every service type when present.
COMMON_NUMERIC_FIELDS = ("stampDuty", "propertyValue", "marketValue", "salePrice", "amount")


def is_number(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


class FieldValidator:
    """Base strategy: no required keys, common numeric keys."""

    service_type = None
    required_fields: tuple = ()
    numeric_fields: tuple = COMMON_NUMERIC_FIELDS

    def missing_required(self, fields: dict) -> list[str]:
        return [
            key for key in self.required_fields
            if fields.get(key) in (None, "") or (isinstance(fields.get(key), str) and not fields[key].strip())
        ]

    def invalid_fields(self, fields: dict) -> dict:
        errors = {}
        for key in self.numeric_fields:
            value = fields.get(key)
            if value is None:
                continue
            if not is_number(value):
                errors[key] = "must be a number"
            elif value < 0:
                errors[key] = "must be >= 0"
        return errors

    def validate(self, fields, *, require_complete: bool = True) -> None:
        """Raise ValidationError if ``fields`` is not acceptable.

        ``require_complete=False`` is used for drafts and patches: only the
        shape of the keys that are present is checked.
        """
        if not isinstance(fields, dict):
            raise ValidationError("fields must be an object", details={"fields": "must be an object"})

        errors = self.invalid_fields(fields)
        if require_complete:
            for key in self.missing_required(fields):
                errors.setdefault(key, "required")
        if errors:
            raise ValidationError(
                f"Invalid fields for {self.service_type}: {', '.join(sorted(errors))}",
                details=errors,
            )


class SaleDeedValidator(FieldValidator):
    service_type = "sale-deed"
    required_fields = ("sellerName", "buyerName", "propertyValue")


class WillDeedValidator(FieldValidator):
    service_type = "will-deed"
    required_fields = ("testatorName",)


class TrustDeedValidator(FieldValidator):
    service_type = "trust-deed"
    required_fields = ("trusteeName", "trustPropertyValue")
    numeric_fields = COMMON_NUMERIC_FIELDS + ("trustPropertyValue",)


class PropertyRegistrationValidator(FieldValidator):
    service_type = "property-registration"
    required_fields = ("ownerName", "propertyAddress")


class PropertySaleCertificateValidator(FieldValidator):
    service_type = "property-sale-certificate"
    required_fields = ("buyerName", "propertyAddress")


class PowerOfAttorneyValidator(FieldValidator):
    service_type = "power-of-attorney"
    required_fields = ("firstPartyName", "secondPartyName")


class AdoptionDeedValidator(FieldValidator):
    service_type = "adoption-deed"
    required_fields = ("firstPartyName", "secondPartyName")


class EStampValidator(FieldValidator):
    service_type = "e-stamp"
    required_fields = ("firstPartyName", "amount")


class MapModuleValidator(FieldValidator):
    service_type = "map-module"
    required_fields = ("propertyAddress",)


VALIDATORS = {
    cls.service_type: cls()
    for cls in (
        SaleDeedValidator,
        WillDeedValidator,
        TrustDeedValidator,
        PropertyRegistrationValidator,
        PropertySaleCertificateValidator,
        PowerOfAttorneyValidator,
        AdoptionDeedValidator,
        EStampValidator,
        MapModuleValidator,
    )
}


def get_validator(service_type: str) -> FieldValidator:
    """Return the validator for ``service_type``; unknown types raise."""
    try:
        return VALIDATORS[service_type]
    except KeyError:
        raise ValidationError(
            f"Unknown service type '{service_type}'",
            details={"service_type": f"must be one of {sorted(VALIDATORS)}"},
        ) from None
