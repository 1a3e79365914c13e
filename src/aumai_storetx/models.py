"""Pydantic models for aumai-storetx."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

__all__ = [
    "ErrorCode",
    "TransactionMode",
    "TransactionState",
    "OperationKind",
    "ResourceKind",
    "ResourceStatus",
    "CleanupStatus",
    "UniquenessConstraint",
    "StagedOperation",
    "ResourceHandle",
    "Document",
    "TransactionContext",
    "CommitResult",
    "CompensationOutcome",
    "CompensationReport",
    "RollbackResult",
    "OperationResponse",
    "ID_FIELD",
]

# Pseudo-field naming the document id itself in a uniqueness constraint.
ID_FIELD = "id"


class ErrorCode(str, Enum):
    """User-visible error codes carried in failure responses."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    DUPLICATE_USER = "DUPLICATE_USER"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    DUPLICATE_TICKET_ID = "DUPLICATE_TICKET_ID"
    INSUFFICIENT_TICKETS = "INSUFFICIENT_TICKETS"
    TICKET_TYPE_UNAVAILABLE = "TICKET_TYPE_UNAVAILABLE"
    CONFLICT_ERROR = "CONFLICT_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    SIGNUP_ERROR = "SIGNUP_ERROR"
    BOOKING_ERROR = "BOOKING_ERROR"


class TransactionMode(str, Enum):
    """How a context's document operations reach the backend."""

    native = "native"
    fallback = "fallback"


class TransactionState(str, Enum):
    """Lifecycle states for a transaction context.  All but *open* are terminal."""

    open = "open"
    committed = "committed"
    rolled_back = "rolled_back"
    expired = "expired"


class OperationKind(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


class ResourceKind(str, Enum):
    object = "object"
    document = "document"


class ResourceStatus(str, Enum):
    staged = "staged"
    committed = "committed"
    deleted = "deleted"


class CleanupStatus(str, Enum):
    success = "success"
    failed = "failed"


class UniquenessConstraint(BaseModel):
    """A field that must be unique within a collection.

    The pseudo-field ``"id"`` constrains the document id itself.
    """

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Document field (or 'id') that must be unique")
    collection: str = Field(..., description="Collection the uniqueness is scoped to")
    error_code: ErrorCode | None = Field(
        default=None, description="Code reported when an existing match is found"
    )

    def describe(self) -> str:
        return f"{self.field} within {self.collection}"


class StagedOperation(BaseModel):
    """A single write recorded against a transaction context.  Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1, description="Monotonic position within the context")
    kind: OperationKind = Field(..., description="create, update or delete")
    resource: ResourceKind = Field(..., description="object or document")
    container: str = Field(..., description="Collection name or bucket id")
    target_id: str = Field(..., description="Document id or object key")
    payload: dict[str, Any] | None = Field(
        default=None, description="Document data, or object metadata for uploads"
    )
    constraints: tuple[UniquenessConstraint, ...] = Field(
        default=(), description="Uniqueness constraints checked before the write"
    )
    expected_revision: int | None = Field(
        default=None, description="Revision the target must still have when written"
    )
    staged_at: datetime = Field(..., description="UTC timestamp when the operation was staged")


class ResourceHandle(BaseModel):
    """A resource touched by a transaction, and where it stands."""

    resource: ResourceKind
    container: str
    identifier: str
    status: ResourceStatus = ResourceStatus.staged
    owner: str | None = Field(
        default=None, description="Owning transaction id while the resource is staged"
    )

    @property
    def label(self) -> str:
        return f"{self.resource.value}:{self.container}/{self.identifier}"


class Document(BaseModel):
    """A document as read from a document store."""

    collection: str
    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    revision: int = Field(default=1, ge=1)


class TransactionContext(BaseModel):
    """The unit of atomicity tracked by the coordinator."""

    transaction_id: str = Field(..., description="Unique identifier for this context")
    mode: TransactionMode = Field(..., description="Execution mode fixed at begin")
    ttl_seconds: int = Field(..., ge=1, description="Maximum seconds the context may stay open")
    state: TransactionState = Field(
        default=TransactionState.open, description="Current lifecycle state"
    )
    created_at: datetime = Field(..., description="UTC timestamp when the context was opened")
    closed_at: datetime | None = Field(
        default=None, description="UTC timestamp when the context reached a terminal state"
    )
    backend_transaction_id: str | None = Field(
        default=None, description="Native backend transaction, once the document phase opened"
    )
    operations: list[StagedOperation] = Field(
        default_factory=list, description="Append-only log of staged operations"
    )
    resources: list[ResourceHandle] = Field(
        default_factory=list, description="Resources touched, in staging order"
    )
    # RollbackResult recorded when the context closed; rollback() returns it again.
    _rollback: Any = PrivateAttr(default=None)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    @property
    def is_open(self) -> bool:
        return self.state == TransactionState.open

    @property
    def document_phase_started(self) -> bool:
        return any(op.resource == ResourceKind.document for op in self.operations)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CommitResult(BaseModel):
    """Outcome of a successful commit."""

    transaction_id: str
    state: TransactionState
    mode: TransactionMode
    operations_applied: int = 0
    resources: list[ResourceHandle] = Field(default_factory=list)


class CompensationOutcome(BaseModel):
    """Cleanup result for one previously applied resource."""

    resource: ResourceHandle
    action: str = Field(..., description="Inverse action attempted (delete, restore, recreate)")
    status: CleanupStatus
    error: str | None = None


class CompensationReport(BaseModel):
    """Per-resource results of a reverse-order compensation walk."""

    transaction_id: str
    outcomes: list[CompensationOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(o.status == CleanupStatus.success for o in self.outcomes)

    @property
    def requires_manual_intervention(self) -> list[ResourceHandle]:
        return [o.resource for o in self.outcomes if o.status == CleanupStatus.failed]

    @property
    def rollback_status(self) -> dict[str, str]:
        return {o.resource.label: o.status.value for o in self.outcomes}


class RollbackResult(BaseModel):
    """Outcome of an explicit rollback, an expiry, or a failed commit."""

    transaction_id: str
    state: TransactionState
    mode: TransactionMode
    reason: str | None = None
    backend_rolled_back: bool | None = Field(
        default=None,
        description="Whether the native backend discarded its staged state (native mode only)",
    )
    discarded: list[ResourceHandle] = Field(
        default_factory=list, description="Native staged documents discarded by the backend"
    )
    compensation: CompensationReport | None = None

    @property
    def rollback_status(self) -> dict[str, str]:
        status: dict[str, str] = {}
        discard_status = (
            CleanupStatus.success if self.backend_rolled_back else CleanupStatus.failed
        )
        for handle in self.discarded:
            status[handle.label] = discard_status.value
        if self.compensation is not None:
            status.update(self.compensation.rollback_status)
        return status

    @property
    def requires_manual_intervention(self) -> list[str]:
        return [label for label, value in self.rollback_status.items() if value == "failed"]


_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_QUANTITY: 400,
    ErrorCode.DUPLICATE_USER: 409,
    ErrorCode.DUPLICATE_EMAIL: 409,
    ErrorCode.DUPLICATE_PAYMENT: 409,
    ErrorCode.DUPLICATE_TICKET_ID: 409,
    ErrorCode.INSUFFICIENT_TICKETS: 400,
    ErrorCode.TICKET_TYPE_UNAVAILABLE: 400,
    ErrorCode.CONFLICT_ERROR: 409,
    ErrorCode.NOT_FOUND_ERROR: 404,
    ErrorCode.PERMISSION_ERROR: 403,
}


class OperationResponse(BaseModel):
    """Response contract returned by every workflow."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    code: ErrorCode | None = None
    rollback_status: dict[str, str] | None = Field(default=None, alias="rollbackStatus")
    details: dict[str, Any] | None = None

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        if self.code is None:
            return 500
        return _HTTP_STATUS.get(self.code, 500)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using wire field names, omitting absent parts."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
