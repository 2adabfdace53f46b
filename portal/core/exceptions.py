"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from portal.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Project", resource_id=42)
    raise InvalidTransitionError("onboarding", "payment")

Mapping used by the blueprints:
    NotFoundError                 404
    ValidationError               422
      UnknownActionError          422
      RuleConfigError             422
      InvalidTransitionError      409
    ConflictError                 409
      AlreadyInitializedError     409
      ActionAlreadyCompletedError 409
    TransientStorageError         503
    NotificationDispatchError     never surfaces; logged by the caller
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Project", "Phase").
        resource_id: The key that was looked up. Included in logs and message.
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
    """Raised when input was well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Args:
        resource: Entity name.
        field: The field whose current value blocks the operation.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class UnknownActionError(ValidationError):
    """The action key is not a required action of the project's current phase."""

    def __init__(self, action_key: str, phase_key: str) -> None:
        self.action_key = action_key
        self.phase_key = phase_key
        super().__init__(
            f"Action '{action_key}' is not a required action of phase '{phase_key}'",
            details={"action_key": action_key, "phase_key": phase_key},
        )


class InvalidTransitionError(ValidationError):
    """A phase transition that the workflow does not allow."""

    def __init__(self, from_phase: str | None, to_phase: str | None, message: str | None = None) -> None:
        self.from_phase = from_phase
        self.to_phase = to_phase
        super().__init__(
            message or f"Invalid transition: {from_phase} → {to_phase}",
            details={"from_phase": from_phase, "to_phase": to_phase},
        )


class RuleConfigError(ValidationError):
    """An automation rule whose trigger or action configuration is malformed."""

    def __init__(self, message: str, rule_id: int | None = None, details: dict | None = None) -> None:
        self.rule_id = rule_id
        prefix = f"Rule {rule_id}: " if rule_id is not None else ""
        super().__init__(prefix + message, details=details)


class AlreadyInitializedError(ConflictError):
    """Phase tracking already exists for the project."""

    def __init__(self, project_id: int) -> None:
        super().__init__(
            "ProjectPhaseState", "project_id", str(project_id),
            message=f"Phase tracking is already initialized for project {project_id}",
        )


class ActionAlreadyCompletedError(ConflictError):
    """The required action was completed earlier."""

    def __init__(self, action_key: str, phase_key: str) -> None:
        self.action_key = action_key
        self.phase_key = phase_key
        super().__init__(
            "ActionCompletion", "action_key", action_key,
            message=f"Action '{action_key}' in phase '{phase_key}' is already completed",
        )


class TransientStorageError(Exception):
    """A retryable storage failure (lost connection, lock timeout, ...)."""


class NotificationDispatchError(Exception):
    """A notification could not be delivered.

    Phase state never depends on notification success: callers log this and
    carry on.
    """
