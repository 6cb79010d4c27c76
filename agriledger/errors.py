"""
Error Taxonomy

Every failure a loan operation can surface. Each error carries a numeric
code, a retryable flag and structured details so callers can render a
precise message without parsing strings.

Codes follow the families used across the platform:
2xxx validation, 3xxx resource/state, 4xxx persistence/concurrency.
"""

from contextlib import contextmanager
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all loan ledger errors."""

    code = 5001
    kind = "internal_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class NotFoundError(LedgerError):
    """Raised when a referenced loan does not exist."""

    code = 3001
    kind = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"{entity_type.capitalize()} with ID {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationError(LedgerError):
    """Raised for malformed input: bad amounts, missing fields for a transition."""

    code = 2001
    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        merged = dict(details or {})
        if field:
            merged["field"] = field
        super().__init__(message, merged)
        self.field = field


class InvalidTransitionError(LedgerError):
    """Raised when the loan state machine rejects an event."""

    code = 3003
    kind = "invalid_transition"

    def __init__(self, current_status: str, event: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot apply '{event}' to a loan in {current_status} status",
            {"current_status": current_status, "event": event},
        )
        self.current_status = current_status
        self.event = event


class BusyError(LedgerError):
    """Raised when exclusive access to a loan could not be obtained in time."""

    code = 4003
    kind = "busy"
    retryable = True

    def __init__(self, resource_id: str, timeout: Optional[float] = None,
                 message: Optional[str] = None):
        super().__init__(
            message or f"Loan {resource_id} is busy; lock not acquired within {timeout}s",
            {"resource_id": resource_id, "timeout": timeout},
        )
        self.resource_id = resource_id
        self.timeout = timeout


class ConcurrentModificationError(BusyError):
    """Raised when a stored record changed between read and write."""

    code = 4004
    kind = "concurrent_modification"

    def __init__(self, resource_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            resource_id,
            message=(f"Loan {resource_id} was modified concurrently "
                     f"(expected version {expected_version}, found {actual_version})"),
        )
        self.details.update({"expected_version": expected_version,
                             "actual_version": actual_version})


class PersistenceError(LedgerError):
    """Raised when the underlying store fails."""

    code = 4001
    kind = "persistence_failure"
    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        details = {}
        if cause is not None:
            details["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(message, details)
        self.cause = cause


@contextmanager
def persistence_guard(operation: str):
    """Wrap backend failures as PersistenceError; domain errors pass through"""
    try:
        yield
    except LedgerError:
        raise
    except Exception as e:
        raise PersistenceError(f"Storage failure during {operation}: {e}", cause=e) from e
