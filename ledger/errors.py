"""
Ledger error kinds.

Every error raised by the ledger services is a LedgerError carrying an
ErrorKind. Callers (views, management commands) branch on `error.kind`
instead of on concrete exception classes, and map it to an HTTP status with
`ErrorKind.status`.
"""

import enum
from decimal import Decimal


class ErrorKind(enum.Enum):
    VALIDATION = ("VALIDATION_ERROR", 400)
    NOT_FOUND = ("NOT_FOUND", 404)
    INVALID_SPLIT = ("INVALID_SPLIT", 400)
    INSUFFICIENT_DEBT = ("INSUFFICIENT_DEBT", 400)
    ALREADY_EXISTS = ("ALREADY_EXISTS", 409)
    PERSISTENCE = ("PERSISTENCE_ERROR", 500)
    IDEMPOTENCY = ("IDEMPOTENCY_ERROR", 409)

    def __init__(self, code, status):
        self.code = code
        self.status = status


class LedgerError(Exception):
    """Base class for all ledger errors. `message` is safe to show to callers."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def status(self) -> int:
        return self.kind.status

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(LedgerError):
    """Malformed input: bad amount, currency, description, identifier, non-member, same participant."""

    kind = ErrorKind.VALIDATION

    @classmethod
    def required(cls, field: str) -> "ValidationError":
        return cls(f"Field '{field}' is required")

    @classmethod
    def invalid_value(cls, field: str, value) -> "ValidationError":
        return cls(f"Invalid value '{value}' for field '{field}'")


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")
        self.resource = resource


class SplitError(LedgerError):
    """A split request violates a precondition of the split calculator."""

    kind = ErrorKind.INVALID_SPLIT


class InvalidSplitError(SplitError):
    """Split amounts or percentages do not reconcile with the expense total."""


class InsufficientDebtError(LedgerError):
    kind = ErrorKind.INSUFFICIENT_DEBT

    def __init__(self, available: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient debt: available {available}, requested {requested}"
        )
        self.available = available
        self.requested = requested


class AlreadyExistsError(LedgerError):
    kind = ErrorKind.ALREADY_EXISTS

    def __init__(self, resource: str):
        super().__init__(f"{resource} already exists")
        self.resource = resource


class PersistenceError(LedgerError):
    """
    Storage failure. The original exception is kept on `cause` for logging;
    the message never includes it.
    """

    kind = ErrorKind.PERSISTENCE

    def __init__(self, cause: Exception = None, message: str = "Database operation failed"):
        super().__init__(message)
        self.cause = cause


class IdempotencyError(LedgerError):
    kind = ErrorKind.IDEMPOTENCY
