"""
Service-wide exception hierarchy.

Every workflow and delivery operation either returns the updated entity or
raises one of the types below. Blueprints register handlers against these
types once and get consistent HTTP status codes everywhere.

None of these are process-fatal: each one describes a condition the calling
staff/user surface resolves by choosing a different form or action.

Usage:
    from deedflow.core.exceptions import NotFoundError, OutOfOrderError

    raise NotFoundError(resource="Form", resource_id=form_id)
    raise OutOfOrderError(form_id, "staff3", "staff2 has not approved this form")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Form").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint); this
    exception signals that the data was well-formed but violated a business
    rule (unknown service type, delivery method missing its address, ...).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class IncompleteDataError(ValidationError):
    """Raised when a stage is approved before its required fields are present.

    Args:
        stage_key: Stage that attempted the approval.
        missing: Names of the missing/invalid fields.
    """

    def __init__(self, stage_key: str, missing: list[str]) -> None:
        self.stage_key = stage_key
        self.missing = list(missing)
        super().__init__(
            f"{stage_key} cannot approve: missing required field(s) {', '.join(self.missing)}",
            details={name: "required" for name in self.missing},
        )


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a resource.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        message: What conflicted.
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(f"{resource}: {message}")


class PermissionDeniedError(Exception):
    """Raised when the actor's role does not grant the requested capability."""

    def __init__(self, actor_id: str, role: str, capability: str) -> None:
        self.actor_id = actor_id
        self.role = role
        self.capability = capability
        super().__init__(
            f"Actor {actor_id} (role={role}) is not permitted to '{capability}'"
        )


class WorkflowError(Exception):
    """Base class for approval-pipeline ordering violations."""

    def __init__(self, form_id: str, stage_key: str | None, reason: str) -> None:
        self.form_id = form_id
        self.stage_key = stage_key
        self.reason = reason
        where = f" at {stage_key}" if stage_key else ""
        super().__init__(f"Form {form_id}{where}: {reason}")


class OutOfOrderError(WorkflowError):
    """Raised when a stage acts before its prerequisite stage is complete,
    or re-acts on a stage that has already been processed."""


class AlreadyLockedError(WorkflowError):
    """Raised when a mutation is attempted on a form in a terminal status."""

    def __init__(self, form_id: str, status: str, stage_key: str | None = None) -> None:
        self.status = status
        super().__init__(form_id, stage_key, f"form is {status} and can no longer be modified")
