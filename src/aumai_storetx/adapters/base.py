"""Resource adapter interfaces for object storage and document stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping

from aumai_storetx.errors import InvalidStateError
from aumai_storetx.models import Document, ResourceHandle

__all__ = ["ObjectAdapter", "DocumentAdapter", "TransactionalDocumentAdapter"]


class ObjectAdapter(ABC):
    """Binary object storage.  There is no staged-write concept here: a put is
    immediately durable and can only be undone by a delete."""

    @abstractmethod
    def put(
        self, data: bytes, key: str, bucket: str, content_type: str | None = None
    ) -> ResourceHandle:
        """Store *data* under *key*.

        Raises:
            StorageError: When the write fails or *key* is already taken.
        """

    @abstractmethod
    def get(self, key: str, bucket: str) -> bytes:
        """Return the stored bytes.

        Raises:
            NotFoundError: When *key* does not exist.
        """

    @abstractmethod
    def exists(self, key: str, bucket: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str, bucket: str) -> bool:
        """Delete *key*.  Idempotent: a missing key is logged, not raised.

        Returns:
            *True* if an object was removed, *False* if there was nothing to remove.
        """


class DocumentAdapter(ABC):
    """A document store.

    Every operation takes an optional *transaction* id.  Plain adapters only
    accept ``None`` and apply writes immediately; see
    :class:`TransactionalDocumentAdapter` for staged writes.
    """

    supports_transactions: bool = False

    @abstractmethod
    def get(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> Document | None:
        ...

    @abstractmethod
    def find(
        self,
        collection: str,
        filters: Mapping[str, Any],
        transaction: str | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        """Return documents whose fields equal every value in *filters*.

        The key ``"id"`` matches the document id.
        """

    @abstractmethod
    def create(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
    ) -> Document:
        """Create a document.

        Raises:
            ConflictError: When *document_id* already exists.
        """

    @abstractmethod
    def update(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        """Merge *data* into an existing document.

        Raises:
            NotFoundError: When the document does not exist.
            ConflictError: When *expected_revision* is given and no longer current.
        """

    @abstractmethod
    def replace(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        """Overwrite an existing document's data entirely."""

    @abstractmethod
    def delete(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> bool:
        """Delete a document.  A missing document is logged and reported as *False*."""

    def claim_unique(self, collection: str, field: str, value: Any, transaction: str) -> None:
        """Make a concurrent transaction claiming the same *value* fail to commit.

        Called after an in-transaction lookup found no match.  Backends whose
        commit validates the reads a transaction made need nothing more, so
        the default does nothing.  Backends that only detect write-write
        conflicts must write a marker every claimant of *value* also writes.
        """

    def _require_no_transaction(self, transaction: str | None) -> None:
        if transaction is not None:
            raise InvalidStateError(
                f"{type(self).__name__} does not support transactions "
                f"(got transaction {transaction!r})"
            )


class TransactionalDocumentAdapter(DocumentAdapter):
    """A document store exposing a native staged-commit primitive."""

    supports_transactions = True

    @abstractmethod
    def begin_transaction(self, ttl_seconds: int) -> str:
        """Open a backend transaction and return its id."""

    @abstractmethod
    def commit_transaction(self, transaction: str) -> None:
        """Atomically apply everything staged under *transaction*.

        Raises:
            ConflictError: When a concurrent writer invalidated a read or write.
            TransactionTimeoutError: When the backend already expired it.
        """

    @abstractmethod
    def rollback_transaction(self, transaction: str) -> None:
        """Discard everything staged under *transaction*."""
