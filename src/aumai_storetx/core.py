"""Core logic for aumai-storetx: the transaction coordinator."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping

from aumai_storetx.adapters.base import (
    DocumentAdapter,
    ObjectAdapter,
    TransactionalDocumentAdapter,
)
from aumai_storetx.compensation import CompensationEngine
from aumai_storetx.config import CoordinatorConfig, StrategyMode
from aumai_storetx.conflicts import ConflictDetector
from aumai_storetx.errors import (
    BackendUnavailableError,
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    StoreTxError,
    TransactionTimeoutError,
    ValidationError,
)
from aumai_storetx.models import (
    CommitResult,
    Document,
    OperationKind,
    ResourceHandle,
    ResourceKind,
    ResourceStatus,
    RollbackResult,
    StagedOperation,
    TransactionContext,
    TransactionMode,
    TransactionState,
    UniquenessConstraint,
)

__all__ = ["TransactionCoordinator"]

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class TransactionCoordinator:
    """Stage, commit and roll back writes spanning object storage and a document store.

    The execution mode is resolved once, here, from the configuration and the
    document adapter's declared capabilities:

    * **native**: document operations are written straight into a backend
      transaction and applied atomically by the backend at :meth:`commit`.
    * **fallback**: document operations are only logged while staging, then
      applied one by one at :meth:`commit`; the first failure triggers
      reverse-order compensation of everything applied.

    Object uploads happen before any document operation and are compensated
    by deletion in both modes.

    Args:
        documents: Document store adapter.
        objects: Object storage adapter, if the workflow uploads files.
        config: Coordinator configuration; defaults are used when omitted.
        clock: UTC time source used for TTL accounting.
        sleep: Sleep function used between fallback read retries.
    """

    def __init__(
        self,
        documents: DocumentAdapter | None,
        objects: ObjectAdapter | None = None,
        config: CoordinatorConfig | None = None,
        *,
        clock: Clock = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or CoordinatorConfig()
        self._documents = documents
        self._objects = objects
        self._clock = clock
        # Open contexts only; terminal ones are dropped when they close.
        self._contexts: dict[str, TransactionContext] = {}
        self.mode, self._unavailable_reason = self._resolve_mode()

        self._detector: ConflictDetector | None = None
        self._compensation: CompensationEngine | None = None
        if documents is not None:
            self._detector = ConflictDetector(
                documents,
                retries=self.config.conflict_check_retries,
                backoff_seconds=self.config.conflict_check_backoff_seconds,
                sleep=sleep,
            )
            self._compensation = CompensationEngine(documents, objects)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin(self, ttl_seconds: int | None = None) -> TransactionContext:
        """Open a new transaction context.

        Args:
            ttl_seconds: Maximum lifetime before the context expires.  Defaults
                to ``config.default_ttl_seconds``.

        Returns:
            The newly opened :class:`~aumai_storetx.models.TransactionContext`.

        Raises:
            BackendUnavailableError: When neither mode's prerequisites are met.
            ValidationError: When *ttl_seconds* is not positive.
        """
        if self.mode is None:
            raise BackendUnavailableError(self._unavailable_reason or "No usable backend")
        ttl = self.config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl < 1:
            raise ValidationError(f"ttl_seconds must be positive, got {ttl}")

        ctx = TransactionContext(
            transaction_id=str(uuid.uuid4()),
            mode=self.mode,
            ttl_seconds=ttl,
            created_at=self._clock(),
        )
        self._contexts[ctx.transaction_id] = ctx
        logger.info(
            "Began %s transaction %s (ttl=%ss)", ctx.mode.value, ctx.transaction_id, ttl
        )
        return ctx

    def upload(
        self,
        ctx: TransactionContext,
        data: bytes,
        bucket: str,
        key: str | None = None,
        content_type: str | None = None,
    ) -> ResourceHandle:
        """Upload an object and track it for compensation.

        Uploads must precede every document operation of the context.  A
        fresh unique key is generated when *key* is omitted.

        Returns:
            The staged :class:`~aumai_storetx.models.ResourceHandle`.

        Raises:
            InvalidStateError: When *ctx* is not open, or documents were already staged.
            StorageError: When the put fails (the context is rolled back first).
        """
        self._ensure_open(ctx)
        object_key = key or uuid.uuid4().hex
        try:
            if self._objects is None:
                raise BackendUnavailableError("No object adapter configured")
            if ctx.document_phase_started:
                raise InvalidStateError(
                    f"Transaction {ctx.transaction_id} already staged document operations; "
                    "objects must be uploaded first"
                )
            compensation = self._require_compensation()
            handle = self._objects.put(data, object_key, bucket, content_type)
        except Exception as exc:
            raise self._fail(ctx, exc)

        handle.status = ResourceStatus.staged
        handle.owner = ctx.transaction_id
        compensation.record(ctx.transaction_id, handle)
        ctx.resources.append(handle)
        self._append(
            ctx,
            kind=OperationKind.create,
            resource=ResourceKind.object,
            container=bucket,
            target_id=object_key,
            payload={"size": len(data), "content_type": content_type},
        )
        logger.debug("Uploaded %s in %s", handle.label, ctx.transaction_id)
        return handle

    def stage(
        self,
        ctx: TransactionContext,
        kind: OperationKind | str,
        collection: str,
        target_id: str,
        payload: Mapping[str, Any] | None = None,
        *,
        constraints: Iterable[UniquenessConstraint] = (),
        expected_revision: int | None = None,
    ) -> StagedOperation:
        """Append a document operation to *ctx*.

        Creates carrying *constraints* pass through the Conflict Detector
        first.  In native mode the write is issued inside the backend
        transaction right away; in fallback mode it is only logged.

        Returns:
            The appended, immutable :class:`~aumai_storetx.models.StagedOperation`.

        Raises:
            InvalidStateError: When *ctx* is not open.
            DuplicateError: When a constraint already has a match.
            ConflictError, ResourceError: On backend failures.

        Every error raised after *ctx* was found open rolls it back first and
        carries the outcome as ``exc.rollback``.
        """
        self._ensure_open(ctx)
        constraint_list = tuple(constraints)
        data = dict(payload) if payload is not None else None
        try:
            kind = OperationKind(kind)
            if constraint_list and kind != OperationKind.create:
                raise ValidationError("Uniqueness constraints only apply to create operations")
            if kind != OperationKind.delete and data is None:
                data = {}
            detector = self._require_detector()
            if ctx.mode == TransactionMode.native:
                transaction = self._open_document_phase(ctx)
                detector.check_all(constraint_list, target_id, data, transaction)
                self._apply_native(transaction, kind, collection, target_id, data, expected_revision)
            else:
                detector.check_all(constraint_list, target_id, data)
        except Exception as exc:
            raise self._fail(ctx, exc)

        ctx.resources.append(
            ResourceHandle(
                resource=ResourceKind.document,
                container=collection,
                identifier=target_id,
                owner=ctx.transaction_id,
            )
        )
        op = self._append(
            ctx,
            kind=kind,
            resource=ResourceKind.document,
            container=collection,
            target_id=target_id,
            payload=data,
            constraints=constraint_list,
            expected_revision=expected_revision,
        )
        logger.debug(
            "Staged #%s %s %s/%s in %s",
            op.sequence,
            kind.value,
            collection,
            target_id,
            ctx.transaction_id,
        )
        return op

    def read(self, ctx: TransactionContext, collection: str, document_id: str) -> Document | None:
        """Read a document the transaction depends on.

        In native mode the read runs inside the backend transaction, so a
        concurrent change to the document makes :meth:`commit` fail with
        :class:`~aumai_storetx.errors.ConflictError`.  In fallback mode it is
        a direct read retried on transient errors.
        """
        self._ensure_open(ctx)
        try:
            detector = self._require_detector()
            transaction = (
                self._open_document_phase(ctx) if ctx.mode == TransactionMode.native else None
            )
            return detector.read(collection, document_id, transaction)
        except Exception as exc:
            raise self._fail(ctx, exc)

    def ensure_unique(
        self, ctx: TransactionContext, constraint: UniquenessConstraint, value: Any
    ) -> None:
        """Run a Conflict Detector check without staging anything."""
        self._ensure_open(ctx)
        try:
            detector = self._require_detector()
            transaction = (
                self._open_document_phase(ctx) if ctx.mode == TransactionMode.native else None
            )
            detector.check(constraint, value, transaction)
        except Exception as exc:
            raise self._fail(ctx, exc)

    def commit(self, ctx: TransactionContext) -> CommitResult:
        """Apply everything staged in *ctx*, all or nothing.

        Returns:
            A :class:`~aumai_storetx.models.CommitResult` in *committed* state.

        Raises:
            InvalidStateError: When *ctx* is not open (``TransactionTimeoutError``
                if it just expired).
            ConflictError, DuplicateError, ResourceError: When any staged
                operation fails.  The context is rolled back, with full
                compensation, before the error is raised.
        """
        self._ensure_open(ctx)
        applied = 0
        try:
            compensation = self._require_compensation()
            if ctx.mode == TransactionMode.native:
                if ctx.backend_transaction_id is not None:
                    self._require_transactional().commit_transaction(ctx.backend_transaction_id)
                applied = sum(1 for op in ctx.operations if op.resource == ResourceKind.document)
            else:
                for op in ctx.operations:
                    if op.resource != ResourceKind.document:
                        continue
                    self._apply_fallback(ctx, op)
                    applied += 1
        except Exception as exc:
            raise self._fail(ctx, exc)

        ctx.state = TransactionState.committed
        ctx.closed_at = self._clock()
        for handle in ctx.resources:
            if handle.status == ResourceStatus.staged:
                handle.status = ResourceStatus.committed
            handle.owner = None
        compensation.discard(ctx.transaction_id)
        self._contexts.pop(ctx.transaction_id, None)
        logger.info(
            "Committed %s transaction %s (%d document operations)",
            ctx.mode.value,
            ctx.transaction_id,
            applied,
        )
        return CommitResult(
            transaction_id=ctx.transaction_id,
            state=ctx.state,
            mode=ctx.mode,
            operations_applied=applied,
            resources=list(ctx.resources),
        )

    def rollback(self, ctx: TransactionContext, reason: str | None = None) -> RollbackResult:
        """Abort *ctx* and undo everything it touched.

        Idempotent: for a context that is already rolled back or expired, the
        result recorded when it closed is returned again.

        Raises:
            InvalidStateError: When *ctx* is already committed.
        """
        if ctx.state == TransactionState.committed:
            raise InvalidStateError(
                f"Transaction {ctx.transaction_id} is committed and cannot be rolled back"
            )
        if not ctx.is_open:
            recorded: RollbackResult | None = ctx._rollback
            if recorded is not None:
                return recorded
            return RollbackResult(
                transaction_id=ctx.transaction_id,
                state=ctx.state,
                mode=ctx.mode,
                reason=f"already {ctx.state.value}",
            )
        if ctx.is_expired(self._clock()):
            return self._close(ctx, TransactionState.expired, self._expiry_reason(ctx))
        return self._close(ctx, TransactionState.rolled_back, reason or "rolled back by caller")

    @contextmanager
    def transaction(self, ttl_seconds: int | None = None) -> Iterator[TransactionContext]:
        """Begin a context, commit it on normal exit and roll it back on any exception.

        Example::

            with coordinator.transaction() as ctx:
                coordinator.upload(ctx, avatar, "avatars")
                coordinator.stage(ctx, "create", "users", user_id, user)
        """
        ctx = self.begin(ttl_seconds)
        try:
            yield ctx
        except BaseException as exc:
            if ctx.is_open:
                result = self.rollback(ctx, reason=f"aborted by {type(exc).__name__}: {exc}")
                if isinstance(exc, StoreTxError) and exc.rollback is None:
                    exc.rollback = result
            raise
        if ctx.is_open:
            self.commit(ctx)

    def expire_stale(self) -> list[RollbackResult]:
        """Expire every open context of this coordinator whose TTL has elapsed."""
        now = self._clock()
        return [
            self._close(ctx, TransactionState.expired, self._expiry_reason(ctx))
            for ctx in list(self._contexts.values())
            if ctx.is_open and ctx.is_expired(now)
        ]

    def get_context(self, transaction_id: str) -> TransactionContext | None:
        """Return the open context with *transaction_id*, or *None*.

        Contexts leave the registry once they reach a terminal state; callers
        holding one can still pass it to :meth:`rollback`.
        """
        return self._contexts.get(transaction_id)

    def get_all_contexts(self) -> list[TransactionContext]:
        """Return every context that is still open."""
        return list(self._contexts.values())

    @property
    def compensation(self) -> CompensationEngine | None:
        return self._compensation

    @property
    def unavailable_reason(self) -> str | None:
        """Why :meth:`begin` will fail, or *None* when a mode was resolved."""
        return self._unavailable_reason

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _resolve_mode(self) -> tuple[TransactionMode | None, str | None]:
        if self._documents is None:
            return None, "No document adapter configured"
        supports = self._documents.supports_transactions and isinstance(
            self._documents, TransactionalDocumentAdapter
        )
        requested = self.config.mode
        if requested == StrategyMode.fallback:
            return TransactionMode.fallback, None
        if supports:
            return TransactionMode.native, None
        if requested == StrategyMode.native:
            return None, (
                f"Native transactions requested but {type(self._documents).__name__} "
                "has no staged-commit support"
            )
        return TransactionMode.fallback, None

    def _ensure_open(self, ctx: TransactionContext) -> None:
        if ctx.is_open and ctx.is_expired(self._clock()):
            result = self._close(ctx, TransactionState.expired, self._expiry_reason(ctx))
            error = TransactionTimeoutError(f"Transaction {ctx.transaction_id} expired")
            error.rollback = result
            raise error
        if ctx.state == TransactionState.expired:
            raise TransactionTimeoutError(f"Transaction {ctx.transaction_id} expired")
        if not ctx.is_open:
            raise InvalidStateError(
                f"Transaction {ctx.transaction_id} is in state {ctx.state.value!r}; "
                "only 'open' transactions accept operations."
            )

    def _require_detector(self) -> ConflictDetector:
        if self._detector is None:
            raise BackendUnavailableError(self._unavailable_reason or "No document adapter")
        return self._detector

    def _require_compensation(self) -> CompensationEngine:
        if self._compensation is None:
            raise BackendUnavailableError(self._unavailable_reason or "No document adapter")
        return self._compensation

    def _require_documents(self) -> DocumentAdapter:
        if self._documents is None:
            raise BackendUnavailableError(self._unavailable_reason or "No document adapter")
        return self._documents

    def _require_transactional(self) -> TransactionalDocumentAdapter:
        if not isinstance(self._documents, TransactionalDocumentAdapter):
            raise InvalidStateError(
                f"{type(self._documents).__name__} has no backend transactions"
            )
        return self._documents

    @staticmethod
    def _expiry_reason(ctx: TransactionContext) -> str:
        return f"ttl of {ctx.ttl_seconds}s elapsed"

    def _append(self, ctx: TransactionContext, **fields: Any) -> StagedOperation:
        op = StagedOperation(
            sequence=len(ctx.operations) + 1, staged_at=self._clock(), **fields
        )
        ctx.operations.append(op)
        return op

    def _open_document_phase(self, ctx: TransactionContext) -> str:
        if ctx.backend_transaction_id is None:
            remaining = (ctx.expires_at - self._clock()).total_seconds()
            ctx.backend_transaction_id = self._require_transactional().begin_transaction(
                max(1, int(remaining))
            )
            logger.info(
                "Opened backend transaction %s for %s",
                ctx.backend_transaction_id,
                ctx.transaction_id,
            )
        return ctx.backend_transaction_id

    def _apply_native(
        self,
        transaction: str,
        kind: OperationKind,
        collection: str,
        target_id: str,
        data: dict[str, Any] | None,
        expected_revision: int | None,
    ) -> None:
        documents = self._require_documents()
        if kind == OperationKind.create:
            documents.create(collection, target_id, data or {}, transaction)
        elif kind == OperationKind.update:
            documents.update(
                collection, target_id, data or {}, transaction, expected_revision=expected_revision
            )
        else:
            documents.delete(collection, target_id, transaction)

    def _apply_fallback(self, ctx: TransactionContext, op: StagedOperation) -> None:
        """Apply one logged operation directly and record it for compensation."""
        documents = self._require_documents()
        compensation = self._require_compensation()
        handle = ctx.resources[op.sequence - 1]
        collection, target_id = op.container, op.target_id

        if op.kind == OperationKind.create:
            # Re-check right before the write; the window since staging is racy.
            self._require_detector().check_all(op.constraints, target_id, op.payload)
            documents.create(collection, target_id, op.payload or {})
            compensation.record(ctx.transaction_id, handle, OperationKind.create)
            return

        previous = documents.get(collection, target_id)
        if op.kind == OperationKind.delete:
            if previous is None:
                logger.warning(
                    "Document %s/%s already absent; delete skipped", collection, target_id
                )
                return
            documents.delete(collection, target_id)
            compensation.record(
                ctx.transaction_id, handle, OperationKind.delete, previous=previous.data
            )
            return

        if previous is None:
            raise NotFoundError(f"Document {collection}/{target_id} not found")
        if op.expected_revision is not None and previous.revision != op.expected_revision:
            raise ConflictError(
                f"Document {collection}/{target_id} is at revision {previous.revision}, "
                f"expected {op.expected_revision}"
            )
        written = documents.update(
            collection, target_id, op.payload or {}, expected_revision=previous.revision
        )
        compensation.record(
            ctx.transaction_id,
            handle,
            OperationKind.update,
            previous=previous.data,
            revision=written.revision,
        )

    def _fail(self, ctx: TransactionContext, exc: BaseException) -> StoreTxError:
        """Roll *ctx* back because of *exc* and return the error to raise."""
        if isinstance(exc, StoreTxError):
            error = exc
        else:
            error = InternalError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
        if ctx.is_open:
            state = (
                TransactionState.expired
                if isinstance(error, TransactionTimeoutError)
                else TransactionState.rolled_back
            )
            logger.warning("Transaction %s failed: %s", ctx.transaction_id, error)
            result = self._close(ctx, state, str(error))
            if error.rollback is None:
                error.rollback = result
        return error

    def _close(
        self, ctx: TransactionContext, state: TransactionState, reason: str
    ) -> RollbackResult:
        """Move *ctx* to a terminal failure state, undoing everything it touched."""
        backend_rolled_back: bool | None = None
        discarded: list[ResourceHandle] = []
        if ctx.mode == TransactionMode.native:
            discarded = [h for h in ctx.resources if h.resource == ResourceKind.document]
            backend_rolled_back = True
            if ctx.backend_transaction_id is not None:
                try:
                    self._require_transactional().rollback_transaction(ctx.backend_transaction_id)
                except Exception as exc:  # noqa: BLE001
                    backend_rolled_back = False
                    logger.error(
                        "Backend rollback of %s failed: %s", ctx.backend_transaction_id, exc
                    )
            if backend_rolled_back:
                for handle in discarded:
                    handle.status = ResourceStatus.deleted

        report = self._require_compensation().compensate(ctx.transaction_id)

        ctx.state = state
        ctx.closed_at = self._clock()
        for handle in ctx.resources:
            handle.owner = None

        result = RollbackResult(
            transaction_id=ctx.transaction_id,
            state=state,
            mode=ctx.mode,
            reason=reason,
            backend_rolled_back=backend_rolled_back,
            discarded=discarded,
            compensation=report,
        )
        ctx._rollback = result
        self._contexts.pop(ctx.transaction_id, None)
        if result.requires_manual_intervention:
            logger.error(
                "Transaction %s %s with resources needing manual cleanup: %s",
                ctx.transaction_id,
                state.value,
                ", ".join(result.requires_manual_intervention),
            )
        else:
            logger.info("Transaction %s %s: %s", ctx.transaction_id, state.value, reason)
        return result
