"""Exception taxonomy for aumai-storetx."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from aumai_storetx.models import ErrorCode, UniquenessConstraint

if TYPE_CHECKING:
    from aumai_storetx.models import RollbackResult

__all__ = [
    "StoreTxError",
    "ConfigurationError",
    "ValidationError",
    "DuplicateError",
    "ConflictError",
    "InventoryError",
    "ResourceError",
    "StorageError",
    "NotFoundError",
    "PermissionDeniedError",
    "InvalidStateError",
    "TransactionTimeoutError",
    "BackendUnavailableError",
    "InternalError",
]


class StoreTxError(Exception):
    """Base class for all aumai-storetx errors.

    Attributes:
        code: User-visible error code, or *None* to let the caller choose its
            generic failure code.
        rollback: The rollback/compensation outcome, attached by the
            coordinator when it rolled the context back before re-raising.
    """

    default_code: ErrorCode | None = None

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.rollback: RollbackResult | None = None


class ConfigurationError(StoreTxError):
    """Raised when a configuration value is missing or invalid."""


class ValidationError(StoreTxError, ValueError):
    """Bad input, detected before any resource was touched."""

    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        fields: list[str] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.fields = fields or []


class DuplicateError(StoreTxError):
    """A uniqueness constraint already has a matching document."""

    def __init__(
        self,
        constraint: UniquenessConstraint,
        existing_id: str,
        existing: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Duplicate {constraint.describe()}: already used by {existing_id!r}",
            code=constraint.error_code,
        )
        self.constraint = constraint
        self.existing_id = existing_id
        self.existing = existing or {}


class ConflictError(StoreTxError):
    """A concurrent writer changed a resource this transaction depends on."""

    default_code = ErrorCode.CONFLICT_ERROR


class InventoryError(StoreTxError):
    """Not enough of a finite resource is left."""

    default_code = ErrorCode.INSUFFICIENT_TICKETS

    def __init__(self, message: str, *, code: ErrorCode | None = None, available: int = 0) -> None:
        super().__init__(message, code=code)
        self.available = available


class ResourceError(StoreTxError):
    """A storage or database call failed."""

    retryable = True


class StorageError(ResourceError):
    """An object-storage write or read failed."""


class NotFoundError(ResourceError):
    default_code = ErrorCode.NOT_FOUND_ERROR
    retryable = False


class PermissionDeniedError(ResourceError):
    default_code = ErrorCode.PERMISSION_ERROR
    retryable = False


class InvalidStateError(StoreTxError):
    """The transaction context is not in a state that allows the call."""


class TransactionTimeoutError(InvalidStateError):
    """The context outlived its TTL and was rolled back as expired."""


class BackendUnavailableError(StoreTxError):
    """Neither native nor fallback prerequisites are met."""


class InternalError(StoreTxError):
    """Anything unclassified."""
