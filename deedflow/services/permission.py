"""
Deed Workflow Service — Role-Based Access Control

Every workflow call carries an explicit ``Actor(id, role)``.  Roles map to
capability sets through ``ROLE_CAPABILITIES``; each stage gate declares the
capability it needs, so staff4's two duties (cross-verification and the
delivery-method fallback) are two capabilities that happen to be granted to
the same role.

Usage:
    from deedflow.services.permission import Actor, check_capability

    actor = Actor(id="u-17", role="staff4")
    check_capability(actor, "delivery_decide")   # raises PermissionDeniedError
"""

from dataclasses import dataclass

from deedflow.core.exceptions import PermissionDeniedError, ValidationError

ROLES = frozenset({
    "user", "agent",
    "staff1", "staff2", "staff3", "staff4", "staff5",
    "admin",
})

ROLE_CAPABILITIES = {
    "user":   {"form_submit", "delivery_prefer"},
    "agent":  {"form_submit"},
    "staff1": {"form_submit", "form_review", "form_correct", "stamp_duty"},
    "staff2": {"trustee_amount_verify", "final_done"},
    "staff3": {"land_plot_verify"},
    "staff4": {"cross_verify", "form_correct", "delivery_decide"},
    "staff5": {"final_lock"},
}

# Admin holds every capability any other role has.
ROLE_CAPABILITIES["admin"] = set().union(*ROLE_CAPABILITIES.values())


@dataclass(frozen=True)
class Actor:
    """The identity on whose behalf a workflow call is made."""

    id: str
    role: str

    def __post_init__(self):
        if not self.id:
            raise ValidationError("Actor id is required", details={"actor_id": "required"})
        if self.role not in ROLES:
            raise ValidationError(
                f"Unknown actor role '{self.role}'",
                details={"actor_role": f"must be one of {sorted(ROLES)}"},
            )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def has_capability(actor: Actor, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(actor.role, set())


def check_capability(actor: Actor, capability: str) -> None:
    """Raise PermissionDeniedError unless ``actor`` holds ``capability``."""
    if not has_capability(actor, capability):
        raise PermissionDeniedError(actor.id, actor.role, capability)
