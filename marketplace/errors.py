"""
Error taxonomy shared by the ledger core and the HTTP layer.

Every failure path of the core raises one of these so the request layer
can map it to a response without string matching.  Business-rule errors
are never retriable; ``ConflictError`` is the only one a caller may
safely retry (after re-reading state).
"""
from typing import Any


class LedgerError(Exception):
    """Base class for all domain errors raised by the booking ledger."""

    code: str = "LEDGER_ERROR"
    status_code: int = 400
    retriable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "details": {k: str(v) if v is not None else None for k, v in self.details.items()},
        }


class NotFoundError(LedgerError):
    """Referenced account, booking or service does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class InactiveError(LedgerError):
    """Account or service exists but is deactivated."""

    code = "INACTIVE"
    status_code = 409


class InsufficientFundsError(LedgerError):
    """A debit would drive a balance below zero."""

    code = "INSUFFICIENT_FUNDS"
    status_code = 402


class InvalidStateError(LedgerError):
    """Booking is not in the state the requested transition needs."""

    code = "INVALID_STATE"
    status_code = 409


class UnauthorizedError(LedgerError):
    """Caller is not allowed to perform the operation."""

    code = "UNAUTHORIZED"
    status_code = 403


class ConflictError(LedgerError):
    """The atomic unit could not commit because of contention or timeout."""

    code = "CONFLICT"
    status_code = 409
    retriable = True


class StorageFailure(LedgerError):
    """Underlying storage error unrelated to business rules."""

    code = "STORAGE_FAILURE"
    status_code = 503


__all__ = [
    "LedgerError",
    "NotFoundError",
    "InactiveError",
    "InsufficientFundsError",
    "InvalidStateError",
    "UnauthorizedError",
    "ConflictError",
    "StorageFailure",
]
