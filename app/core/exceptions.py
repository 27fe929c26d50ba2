"""
Engine-wide exception hierarchy.

Services and engine modules raise these types; blueprints register one
error handler per type and map it to a consistent HTTP status, so a
validation or state failure looks the same no matter which operation
produced it.

Usage:
    from app.core.exceptions import NotFoundError, StateError, ValidationError

    raise NotFoundError(resource="Milestone", resource_id=42)
    raise ValidationError("lag_days must be >= 0", details={"lag_days": "-1"})
    raise StateError("Locked by dependency", current="pending", target="in_progress")

None of these are raised after a write has been applied: every check runs
before the session is touched, so a raised error means nothing changed.
"""


class NotFoundError(Exception):
    """Raised when a referenced milestone, task, dependency or approval does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Milestone", "Task").
        resource_id: The id that was looked up.
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
    """Raised when well-formed input violates a business rule.

    Covers malformed dependencies (self-reference, cycle, cross-booking
    edge, negative lag, unknown dependency type), non-positive weights and
    invalid reorder requests.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StateError(Exception):
    """Raised when a status transition is not permitted from the current state.

    Examples: starting a milestone still blocked by an unmet
    finish_to_start predecessor, completing a milestone whose latest
    approval is not ``approved``.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, current: str | None = None, target: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field (or field pair) that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ConcurrencyConflict(Exception):
    """Raised when a write is based on a stale order_index assignment or milestone version.

    The caller should re-read the current state and retry.  Maps to HTTP 409.
    """


class ForbiddenError(Exception):
    """Raised when the acting role may not perform the requested action.

    The engine does not authenticate anyone; the role is passed in by the
    caller and only checked against the approval rules.  Maps to HTTP 403.
    """
