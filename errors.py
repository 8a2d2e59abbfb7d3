from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    DEADLINE_EXPIRED = "DEADLINE_EXPIRED"
    DATABASE = "DATABASE_ERROR"


# Every kind must have a status; checked below at import.
HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_FUNDS: 402,
    ErrorKind.DEADLINE_EXPIRED: 410,
    ErrorKind.DATABASE: 500,
}

_missing = set(ErrorKind) - set(HTTP_STATUS)
if _missing:
    raise RuntimeError(f"No HTTP status mapped for error kinds: {sorted(k.name for k in _missing)}")


class SplitError(Exception):
    """Base class for every rejection raised by the split/settlement core."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


class ValidationError(SplitError):
    kind = ErrorKind.VALIDATION


class UnauthorizedError(SplitError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(SplitError):
    kind = ErrorKind.FORBIDDEN


class ConflictError(SplitError):
    kind = ErrorKind.CONFLICT


class NotFoundError(SplitError):
    kind = ErrorKind.NOT_FOUND


class InsufficientFundsError(SplitError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class DeadlineExpiredError(SplitError):
    kind = ErrorKind.DEADLINE_EXPIRED


class DatabaseError(SplitError):
    kind = ErrorKind.DATABASE
