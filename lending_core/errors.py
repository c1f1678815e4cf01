"""
Error Taxonomy Module

Structured errors raised by the transactional core. Every error carries a
machine-readable code, a human message and the HTTP-style status the outer
routing layer maps it to.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Error categories with their HTTP-style status codes"""
    VALIDATION = ("validation", 400)         # Malformed or out-of-range input
    NOT_FOUND = ("not_found", 404)           # Missing loan/payment/lot/movement
    CONFLICT = ("conflict", 400)             # Business rule rejected the operation
    UNAUTHENTICATED = ("unauthenticated", 401)
    FORBIDDEN = ("forbidden", 403)

    def __init__(self, label: str, status: int):
        self.label = label
        self.status = status


class LendingError(ValueError):
    """
    Base error for the lending core.

    Subclasses ValueError so callers that only know "bad input" semantics
    keep working, while the outer layer can read code/status/details.
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        if kind is not None:
            self.kind = kind

    @property
    def status(self) -> int:
        """HTTP-style status for this error"""
        return self.kind.status

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation: code + message (+ details)"""
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(LendingError):
    """Malformed or out-of-range input"""
    kind = ErrorKind.VALIDATION


class NotFoundError(LendingError):
    """Referenced entity does not exist"""
    kind = ErrorKind.NOT_FOUND


class ConflictError(LendingError):
    """Operation conflicts with current state (EXCEEDS_PENDING, HAS_PAYMENTS, ...)"""
    kind = ErrorKind.CONFLICT


class UnauthenticatedError(LendingError):
    """Raised by the identity layer; carried here so callers share one taxonomy"""
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(LendingError):
    """Raised by the role layer; carried here so callers share one taxonomy"""
    kind = ErrorKind.FORBIDDEN


class StorageError(Exception):
    """Base error for the document store"""
    pass


class TransactionConflict(StorageError):
    """A document read by the transaction changed before commit (retryable)"""
    pass


class TransactionTooLarge(StorageError):
    """The transaction buffered more writes than the store accepts"""
    pass


class IndexUnavailableError(StorageError):
    """The store cannot serve a filtered and ordered query without an index"""
    pass
