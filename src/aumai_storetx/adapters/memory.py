"""In-memory resource adapters.

These back the test-suite and the CLI.  :class:`InMemoryTransactionalDocumentAdapter`
models a backend with native staged commits: writes made under a transaction
are visible only to that transaction until commit, and commit validates every
document read and query re-run against the committed state, failing with
:class:`~aumai_storetx.errors.ConflictError` if a concurrent writer got there
first.
"""

from __future__ import annotations

import base64
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from aumai_storetx.adapters.base import (
    DocumentAdapter,
    ObjectAdapter,
    TransactionalDocumentAdapter,
)
from aumai_storetx.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    TransactionTimeoutError,
)
from aumai_storetx.models import ID_FIELD, Document, ResourceHandle, ResourceKind

__all__ = [
    "InMemoryObjectAdapter",
    "InMemoryDocumentAdapter",
    "InMemoryTransactionalDocumentAdapter",
]

logger = logging.getLogger(__name__)

# (bucket, key) or (collection, document id)
_Key = tuple[str, str]


def _matches(document_id: str, data: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for name, value in filters.items():
        if name == ID_FIELD:
            if document_id != value:
                return False
        elif name not in data or data[name] != value:
            return False
    return True


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------


@dataclass
class _StoredObject:
    data: bytes
    content_type: str | None = None


class InMemoryObjectAdapter(ObjectAdapter):
    """Object storage held in a dict keyed by ``(bucket, key)``."""

    def __init__(self) -> None:
        self._objects: dict[_Key, _StoredObject] = {}
        self._lock = threading.RLock()

    def put(
        self, data: bytes, key: str, bucket: str, content_type: str | None = None
    ) -> ResourceHandle:
        with self._lock:
            if (bucket, key) in self._objects:
                raise StorageError(f"Object {bucket}/{key} already exists")
            self._objects[(bucket, key)] = _StoredObject(bytes(data), content_type)
        logger.debug("Stored object %s/%s (%d bytes)", bucket, key, len(data))
        return ResourceHandle(resource=ResourceKind.object, container=bucket, identifier=key)

    def get(self, key: str, bucket: str) -> bytes:
        with self._lock:
            stored = self._objects.get((bucket, key))
        if stored is None:
            raise NotFoundError(f"Object {bucket}/{key} not found")
        return stored.data

    def exists(self, key: str, bucket: str) -> bool:
        with self._lock:
            return (bucket, key) in self._objects

    def delete(self, key: str, bucket: str) -> bool:
        with self._lock:
            removed = self._objects.pop((bucket, key), None)
        if removed is None:
            logger.warning("Object %s/%s not found; nothing to delete", bucket, key)
            return False
        logger.debug("Deleted object %s/%s", bucket, key)
        return True

    def keys(self, bucket: str) -> list[str]:
        with self._lock:
            return [key for (b, key) in self._objects if b == bucket]

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of every stored object."""
        with self._lock:
            return {
                "objects": [
                    {
                        "bucket": bucket,
                        "key": key,
                        "content_type": stored.content_type,
                        "data": base64.b64encode(stored.data).decode("ascii"),
                    }
                    for (bucket, key), stored in self._objects.items()
                ]
            }

    def restore(self, state: Mapping[str, Any]) -> None:
        """Replace all contents with a :meth:`snapshot`."""
        with self._lock:
            self._objects = {
                (entry["bucket"], entry["key"]): _StoredObject(
                    base64.b64decode(entry["data"]), entry.get("content_type")
                )
                for entry in state.get("objects", [])
            }


# ---------------------------------------------------------------------------
# Document store without transactions
# ---------------------------------------------------------------------------


class InMemoryDocumentAdapter(DocumentAdapter):
    """Document store whose writes are visible as soon as they return."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = threading.RLock()

    def get(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> Document | None:
        self._require_no_transaction(transaction)
        with self._lock:
            return self._committed_get(collection, document_id)

    def find(
        self,
        collection: str,
        filters: Mapping[str, Any],
        transaction: str | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        self._require_no_transaction(transaction)
        with self._lock:
            found = self._committed_find(collection, filters)
        return found if limit is None else found[:limit]

    def create(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
    ) -> Document:
        self._require_no_transaction(transaction)
        with self._lock:
            if self._committed_get(collection, document_id) is not None:
                raise ConflictError(f"Document {collection}/{document_id} already exists")
            document = Document(collection=collection, id=document_id, data=dict(data))
            self._collections.setdefault(collection, {})[document_id] = document
            return document.model_copy(deep=True)

    def update(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        self._require_no_transaction(transaction)
        return self._write_committed(collection, document_id, data, expected_revision, merge=True)

    def replace(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        self._require_no_transaction(transaction)
        return self._write_committed(collection, document_id, data, expected_revision, merge=False)

    def delete(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> bool:
        self._require_no_transaction(transaction)
        with self._lock:
            removed = self._collections.get(collection, {}).pop(document_id, None)
        if removed is None:
            logger.warning("Document %s/%s not found; nothing to delete", collection, document_id)
            return False
        return True

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of every committed document."""
        with self._lock:
            return {
                "collections": {
                    name: {
                        doc_id: {"data": doc.data, "revision": doc.revision}
                        for doc_id, doc in docs.items()
                    }
                    for name, docs in self._collections.items()
                }
            }

    def restore(self, state: Mapping[str, Any]) -> None:
        """Replace all contents with a :meth:`snapshot`."""
        with self._lock:
            self._collections = {
                name: {
                    doc_id: Document(
                        collection=name,
                        id=doc_id,
                        data=entry["data"],
                        revision=entry["revision"],
                    )
                    for doc_id, entry in docs.items()
                }
                for name, docs in state.get("collections", {}).items()
            }

    # ------------------------------------------------------------------
    # Committed-state helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _committed_get(self, collection: str, document_id: str) -> Document | None:
        document = self._collections.get(collection, {}).get(document_id)
        return document.model_copy(deep=True) if document is not None else None

    def _committed_find(self, collection: str, filters: Mapping[str, Any]) -> list[Document]:
        return [
            document.model_copy(deep=True)
            for doc_id, document in self._collections.get(collection, {}).items()
            if _matches(doc_id, document.data, filters)
        ]

    def _write_committed(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        expected_revision: int | None,
        *,
        merge: bool,
    ) -> Document:
        with self._lock:
            current = self._collections.get(collection, {}).get(document_id)
            if current is None:
                raise NotFoundError(f"Document {collection}/{document_id} not found")
            if expected_revision is not None and current.revision != expected_revision:
                raise ConflictError(
                    f"Document {collection}/{document_id} is at revision {current.revision}, "
                    f"expected {expected_revision}"
                )
            new_data = {**current.data, **data} if merge else dict(data)
            document = Document(
                collection=collection,
                id=document_id,
                data=new_data,
                revision=current.revision + 1,
            )
            self._collections[collection][document_id] = document
            return document.model_copy(deep=True)


# ---------------------------------------------------------------------------
# Document store with native transactions
# ---------------------------------------------------------------------------


@dataclass
class _PendingTransaction:
    transaction_id: str
    expires_at: float
    # None marks a document deleted inside the transaction.
    writes: dict[_Key, Document | None] = field(default_factory=dict)
    # Committed revision observed on first access; None means absent.
    reads: dict[_Key, int | None] = field(default_factory=dict)
    queries: list[tuple[str, dict[str, Any], frozenset[str]]] = field(default_factory=list)


class InMemoryTransactionalDocumentAdapter(InMemoryDocumentAdapter, TransactionalDocumentAdapter):
    """Document store with staged writes and optimistic validation at commit.

    Args:
        clock: Monotonic time source used for backend transaction TTLs.
    """

    supports_transactions = True

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__()
        self._clock = clock
        self._transactions: dict[str, _PendingTransaction] = {}

    def begin_transaction(self, ttl_seconds: int) -> str:
        transaction_id = uuid.uuid4().hex
        with self._lock:
            self._transactions[transaction_id] = _PendingTransaction(
                transaction_id=transaction_id,
                expires_at=self._clock() + ttl_seconds,
            )
        logger.debug("Opened backend transaction %s (ttl=%ss)", transaction_id, ttl_seconds)
        return transaction_id

    def commit_transaction(self, transaction: str) -> None:
        with self._lock:
            tx = self._transactions.pop(transaction, None)
            if tx is None:
                raise InvalidStateError(f"Unknown or closed transaction {transaction!r}")
            if self._clock() >= tx.expires_at:
                raise TransactionTimeoutError(f"Backend transaction {transaction!r} expired")

            for (collection, document_id), revision in tx.reads.items():
                current = self._collections.get(collection, {}).get(document_id)
                current_revision = current.revision if current is not None else None
                if current_revision != revision:
                    raise ConflictError(
                        f"Document {collection}/{document_id} changed after transaction "
                        f"{transaction} read it"
                    )
            for collection, filters, ids in tx.queries:
                now = frozenset(doc.id for doc in self._committed_find(collection, filters))
                if now != ids:
                    raise ConflictError(
                        f"Query {filters!r} on {collection} changed after transaction "
                        f"{transaction} ran it"
                    )

            for (collection, document_id), staged in tx.writes.items():
                docs = self._collections.setdefault(collection, {})
                if staged is None:
                    docs.pop(document_id, None)
                else:
                    docs[document_id] = staged.model_copy(deep=True)
        logger.debug("Committed backend transaction %s (%d writes)", transaction, len(tx.writes))

    def rollback_transaction(self, transaction: str) -> None:
        with self._lock:
            tx = self._transactions.pop(transaction, None)
        if tx is None:
            logger.warning("Backend transaction %s already closed; nothing to roll back", transaction)
            return
        logger.debug("Discarded backend transaction %s (%d writes)", transaction, len(tx.writes))

    def pending_transactions(self) -> list[str]:
        with self._lock:
            return list(self._transactions)

    # ------------------------------------------------------------------
    # Transaction-scoped operations
    # ------------------------------------------------------------------

    def get(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> Document | None:
        if transaction is None:
            return super().get(collection, document_id)
        with self._lock:
            return self._view(self._pending(transaction), collection, document_id)

    def find(
        self,
        collection: str,
        filters: Mapping[str, Any],
        transaction: str | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        if transaction is None:
            return super().find(collection, filters, limit=limit)
        with self._lock:
            tx = self._pending(transaction)
            committed = self._committed_find(collection, filters)
            tx.queries.append((collection, dict(filters), frozenset(d.id for d in committed)))
            results = {doc.id: doc for doc in committed}
            for (name, doc_id), staged in tx.writes.items():
                if name != collection:
                    continue
                if staged is None or not _matches(doc_id, staged.data, filters):
                    results.pop(doc_id, None)
                else:
                    results[doc_id] = staged.model_copy(deep=True)
        found = list(results.values())
        return found if limit is None else found[:limit]

    def create(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
    ) -> Document:
        if transaction is None:
            return super().create(collection, document_id, data)
        with self._lock:
            tx = self._pending(transaction)
            if self._view(tx, collection, document_id) is not None:
                raise ConflictError(f"Document {collection}/{document_id} already exists")
            return self._stage(tx, collection, document_id, dict(data))

    def update(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        if transaction is None:
            return super().update(collection, document_id, data, expected_revision=expected_revision)
        return self._stage_write(transaction, collection, document_id, data, expected_revision, merge=True)

    def replace(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        if transaction is None:
            return super().replace(collection, document_id, data, expected_revision=expected_revision)
        return self._stage_write(transaction, collection, document_id, data, expected_revision, merge=False)

    def delete(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> bool:
        if transaction is None:
            return super().delete(collection, document_id)
        with self._lock:
            tx = self._pending(transaction)
            if self._view(tx, collection, document_id) is None:
                logger.warning(
                    "Document %s/%s not found in transaction %s; nothing to delete",
                    collection,
                    document_id,
                    transaction,
                )
                return False
            tx.writes[(collection, document_id)] = None
            return True

    # ------------------------------------------------------------------
    # Private helpers (callers hold the lock)
    # ------------------------------------------------------------------

    def _pending(self, transaction: str) -> _PendingTransaction:
        tx = self._transactions.get(transaction)
        if tx is None:
            raise InvalidStateError(f"Unknown or closed transaction {transaction!r}")
        if self._clock() >= tx.expires_at:
            del self._transactions[transaction]
            raise TransactionTimeoutError(f"Backend transaction {transaction!r} expired")
        return tx

    def _view(self, tx: _PendingTransaction, collection: str, document_id: str) -> Document | None:
        """Return the document as *tx* sees it, recording the committed revision read."""
        key = (collection, document_id)
        if key in tx.writes:
            staged = tx.writes[key]
            return staged.model_copy(deep=True) if staged is not None else None
        current = self._committed_get(collection, document_id)
        tx.reads.setdefault(key, current.revision if current is not None else None)
        return current

    def _stage(
        self, tx: _PendingTransaction, collection: str, document_id: str, data: dict[str, Any]
    ) -> Document:
        # One committed write per transaction, so the revision is always base + 1.
        base_revision = tx.reads.get((collection, document_id)) or 0
        document = Document(
            collection=collection, id=document_id, data=data, revision=base_revision + 1
        )
        tx.writes[(collection, document_id)] = document
        return document.model_copy(deep=True)

    def _stage_write(
        self,
        transaction: str,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        expected_revision: int | None,
        *,
        merge: bool,
    ) -> Document:
        with self._lock:
            tx = self._pending(transaction)
            current = self._view(tx, collection, document_id)
            if current is None:
                raise NotFoundError(f"Document {collection}/{document_id} not found")
            if expected_revision is not None and current.revision != expected_revision:
                raise ConflictError(
                    f"Document {collection}/{document_id} is at revision {current.revision}, "
                    f"expected {expected_revision}"
                )
            new_data = {**current.data, **data} if merge else dict(data)
            return self._stage(tx, collection, document_id, new_data)
