"""
Routing-engine exception hierarchy.

Services raise these types and nothing else for business failures, so a
caller (web layer, CLI, bulk job) can map them once:

    NotFoundError     → a referenced row does not exist (or is soft-deleted)
    ValidationError   → well-formed input that violates a business rule
    ConflictError     → a uniqueness rule would be broken

The routing-specific errors all derive from ValidationError:

    InvalidStateTransition → status edge not in the transition table
    NoActiveWorkflow       → no active workflow template for a category
    ActionNotAllowed       → a mutation was called while its ``can_*``
                             precondition is false

Usage:
    from opts.core.exceptions import InvalidStateTransition

    raise InvalidStateTransition("Completed", "In Progress")
"""


class NotFoundError(Exception):
    """Raised when a requested row does not exist.

    Args:
        resource: Human-readable model name (e.g. "Transaction", "Office").
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

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidStateTransition(ValidationError):
    """Raised when a transaction status change is not a legal edge.

    The message quotes both statuses verbatim, e.g.
    ``Cannot transition from "Completed" to "In Progress"``.
    """

    def __init__(self, old_status: str, new_status: str) -> None:
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f'Cannot transition from "{old_status}" to "{new_status}"',
            details={"old_status": old_status, "new_status": new_status},
        )


class NoActiveWorkflow(ValidationError):
    """Raised when no active workflow template exists for a category."""

    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(
            f"No active workflow found for category: {category}",
            details={"category": category},
        )


class ActionNotAllowed(ValidationError):
    """Raised when a routing action is attempted while its precondition fails.

    ``reason`` is the same string the matching ``get_cannot_*_reason``
    query returns, so UI tooltips and error responses stay consistent.
    """

    def __init__(self, action: str, reason: str) -> None:
        self.action = action
        self.reason = reason
        super().__init__(reason, details={"action": action})
