"""MongoDB document adapters.

Documents are stored as ``{"_id": <id>, "_rev": <revision>, **data}``.  The
``_rev`` counter is maintained here and drives compare-and-set updates.

:class:`MongoTransactionalDocumentAdapter` maps backend transactions onto
client sessions and therefore needs a replica set or sharded cluster; against
a standalone server use :class:`MongoDocumentAdapter` with the fallback
strategy.  Transaction lifetime is bounded server-side by
``transactionLifetimeLimitSeconds``; the coordinator enforces its own TTL on
top of that.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from pymongo import MongoClient
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from aumai_storetx.adapters.base import DocumentAdapter, TransactionalDocumentAdapter
from aumai_storetx.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ResourceError,
)
from aumai_storetx.models import ID_FIELD, Document

__all__ = ["MongoDocumentAdapter", "MongoTransactionalDocumentAdapter"]

logger = logging.getLogger(__name__)

_WRITE_CONFLICT = 112
_UNAUTHORIZED = 13
_REVISION_FIELD = "_rev"
# Collection holding one guard document per value claimed under a uniqueness constraint.
_UNIQUE_GUARDS = "_storetx_unique"


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Re-raise pymongo failures as aumai-storetx errors."""
    try:
        yield
    except DuplicateKeyError as exc:
        raise ConflictError(f"{action}: duplicate key ({exc.details or exc})") from exc
    except OperationFailure as exc:
        if exc.code == _WRITE_CONFLICT or exc.has_error_label("TransientTransactionError"):
            raise ConflictError(f"{action}: write conflict ({exc})") from exc
        if exc.code == _UNAUTHORIZED:
            raise PermissionDeniedError(f"{action}: {exc}") from exc
        raise ResourceError(f"{action}: {exc}") from exc
    except PyMongoError as exc:
        raise ResourceError(f"{action}: {exc}") from exc


def _to_filter(filters: Mapping[str, Any]) -> dict[str, Any]:
    return {("_id" if name == ID_FIELD else name): value for name, value in filters.items()}


class MongoDocumentAdapter(DocumentAdapter):
    """Document adapter over a pymongo client, without transactions.

    Args:
        client: A connected :class:`pymongo.MongoClient`.
        database_id: Name of the database holding every collection.
    """

    def __init__(self, client: MongoClient, database_id: str) -> None:
        self._client = client
        self._db = client[database_id]
        self.database_id = database_id

    def get(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> Document | None:
        session = self._session(transaction)
        with _translate_errors(f"get {collection}/{document_id}"):
            raw = self._collection(collection).find_one({"_id": document_id}, session=session)
        return self._to_document(collection, raw) if raw is not None else None

    def find(
        self,
        collection: str,
        filters: Mapping[str, Any],
        transaction: str | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        session = self._session(transaction)
        with _translate_errors(f"find in {collection}"):
            cursor = self._collection(collection).find(_to_filter(filters), session=session)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [self._to_document(collection, raw) for raw in cursor]

    def create(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
    ) -> Document:
        session = self._session(transaction)
        body = {**data, "_id": document_id, _REVISION_FIELD: 1}
        with _translate_errors(f"create {collection}/{document_id}"):
            self._collection(collection).insert_one(body, session=session)
        return Document(collection=collection, id=document_id, data=dict(data), revision=1)

    def update(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        session = self._session(transaction)
        query: dict[str, Any] = {"_id": document_id}
        if expected_revision is not None:
            query[_REVISION_FIELD] = expected_revision
        changes: dict[str, Any] = {"$inc": {_REVISION_FIELD: 1}}
        if data:
            changes["$set"] = dict(data)
        with _translate_errors(f"update {collection}/{document_id}"):
            result = self._collection(collection).update_one(query, changes, session=session)
        if result.matched_count == 0:
            self._raise_missed_write(collection, document_id, expected_revision, session)
        updated = self.get(collection, document_id, transaction)
        if updated is None:
            raise NotFoundError(f"Document {collection}/{document_id} not found")
        return updated

    def replace(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
        expected_revision: int | None = None,
    ) -> Document:
        session = self._session(transaction)
        current = self.get(collection, document_id, transaction)
        if current is None:
            raise NotFoundError(f"Document {collection}/{document_id} not found")
        revision = current.revision if expected_revision is None else expected_revision
        body = {**data, "_id": document_id, _REVISION_FIELD: revision + 1}
        with _translate_errors(f"replace {collection}/{document_id}"):
            result = self._collection(collection).replace_one(
                {"_id": document_id, _REVISION_FIELD: revision}, body, session=session
            )
        if result.matched_count == 0:
            self._raise_missed_write(collection, document_id, revision, session)
        return Document(collection=collection, id=document_id, data=dict(data), revision=revision + 1)

    def delete(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> bool:
        session = self._session(transaction)
        with _translate_errors(f"delete {collection}/{document_id}"):
            result = self._collection(collection).delete_one({"_id": document_id}, session=session)
        if result.deleted_count == 0:
            logger.warning("Document %s/%s not found; nothing to delete", collection, document_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _collection(self, name: str) -> Collection:
        return self._db[name]

    def _session(self, transaction: str | None) -> ClientSession | None:
        self._require_no_transaction(transaction)
        return None

    @staticmethod
    def _to_document(collection: str, raw: Mapping[str, Any]) -> Document:
        data = {k: v for k, v in raw.items() if k not in ("_id", _REVISION_FIELD)}
        return Document(
            collection=collection,
            id=str(raw["_id"]),
            data=data,
            revision=int(raw.get(_REVISION_FIELD, 1)),
        )

    def _raise_missed_write(
        self,
        collection: str,
        document_id: str,
        expected_revision: int | None,
        session: ClientSession | None,
    ) -> None:
        with _translate_errors(f"get {collection}/{document_id}"):
            exists = self._collection(collection).find_one(
                {"_id": document_id}, {"_id": 1}, session=session
            )
        if exists is None:
            raise NotFoundError(f"Document {collection}/{document_id} not found")
        raise ConflictError(
            f"Document {collection}/{document_id} is no longer at revision {expected_revision}"
        )


class MongoTransactionalDocumentAdapter(MongoDocumentAdapter, TransactionalDocumentAdapter):
    """Document adapter whose backend transactions are pymongo client sessions."""

    supports_transactions = True

    def __init__(self, client: MongoClient, database_id: str) -> None:
        super().__init__(client, database_id)
        self._sessions: dict[str, ClientSession] = {}
        self._lock = threading.Lock()

    def begin_transaction(self, ttl_seconds: int) -> str:
        with _translate_errors("begin transaction"):
            session = self._client.start_session()
            try:
                session.start_transaction(max_commit_time_ms=ttl_seconds * 1000)
            except PyMongoError:
                session.end_session()
                raise
        transaction_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[transaction_id] = session
        logger.debug("Opened MongoDB transaction %s (ttl=%ss)", transaction_id, ttl_seconds)
        return transaction_id

    def commit_transaction(self, transaction: str) -> None:
        session = self._pop_session(transaction)
        try:
            with _translate_errors(f"commit transaction {transaction}"):
                session.commit_transaction()
        finally:
            session.end_session()
        logger.debug("Committed MongoDB transaction %s", transaction)

    def rollback_transaction(self, transaction: str) -> None:
        with self._lock:
            session = self._sessions.pop(transaction, None)
        if session is None:
            logger.warning("MongoDB transaction %s already closed; nothing to roll back", transaction)
            return
        try:
            with _translate_errors(f"abort transaction {transaction}"):
                session.abort_transaction()
        finally:
            session.end_session()
        logger.debug("Aborted MongoDB transaction %s", transaction)

    def claim_unique(self, collection: str, field: str, value: Any, transaction: str) -> None:
        """Upsert a guard document keyed by the claimed value.

        MongoDB only detects write-write conflicts, so two sessions that both
        found *value* free would otherwise both commit.  Writing the same
        guard makes the second one fail with a write conflict.
        """
        guard = f"{collection}:{field}:{value!r}"
        with _translate_errors(f"claim {field}={value!r} in {collection}"):
            self._collection(_UNIQUE_GUARDS).update_one(
                {"_id": guard},
                {"$inc": {"claims": 1}},
                upsert=True,
                session=self._session(transaction),
            )

    def _session(self, transaction: str | None) -> ClientSession | None:
        if transaction is None:
            return None
        with self._lock:
            session = self._sessions.get(transaction)
        if session is None:
            raise InvalidStateError(f"Unknown or closed transaction {transaction!r}")
        return session

    def _pop_session(self, transaction: str) -> ClientSession:
        with self._lock:
            session = self._sessions.pop(transaction, None)
        if session is None:
            raise InvalidStateError(f"Unknown or closed transaction {transaction!r}")
        return session
