"""Domain errors raised by the reconciliation and duplicate-detection services.

Each error carries a stable ``code`` that request handlers surface to clients.
"""


class ReconciliationError(Exception):
    """Base class for recoverable reconciliation errors."""

    code = "reconciliation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ReconciliationError):
    """Session, account or transaction does not exist for the requesting user."""

    code = "not_found"

    def __init__(self, resource: str, resource_id: object | None = None) -> None:
        message = f"{resource} not found" if resource_id is None else f"{resource} {resource_id} not found"
        super().__init__(message)
        self.resource = resource


class InvalidStateError(ReconciliationError):
    """Action is not allowed in the session's current state."""

    code = "invalid_state"


class BusinessRuleViolationError(ReconciliationError):
    """Action is well-formed but blocked by a reconciliation rule."""

    code = "business_rule_violation"


class ValidationError(ReconciliationError):
    """Malformed input parameters."""

    code = "validation_error"


class AuthorizationError(ReconciliationError):
    """Referenced record belongs to someone else."""

    code = "forbidden"


class DuplicateScanCancelledError(ReconciliationError):
    """Duplicate scan aborted before completion."""

    code = "scan_cancelled"
