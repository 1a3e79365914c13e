"""Tests for the in-memory resource adapters."""

from __future__ import annotations

import pytest

from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryObjectAdapter,
    InMemoryTransactionalDocumentAdapter,
)
from aumai_storetx.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    TransactionTimeoutError,
)


class _Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def objects() -> InMemoryObjectAdapter:
    return InMemoryObjectAdapter()


@pytest.fixture()
def documents() -> InMemoryDocumentAdapter:
    return InMemoryDocumentAdapter()


@pytest.fixture()
def ticker() -> _Ticker:
    return _Ticker()


@pytest.fixture()
def txdocs(ticker: _Ticker) -> InMemoryTransactionalDocumentAdapter:
    return InMemoryTransactionalDocumentAdapter(clock=ticker)


# ===========================================================================
# Objects
# ===========================================================================


class TestInMemoryObjectAdapter:
    def test_put_get(self, objects: InMemoryObjectAdapter) -> None:
        handle = objects.put(b"data", "k", "b", "text/plain")
        assert handle.label == "object:b/k"
        assert objects.get("k", "b") == b"data"
        assert objects.exists("k", "b")

    def test_put_never_overwrites(self, objects: InMemoryObjectAdapter) -> None:
        objects.put(b"one", "k", "b")
        with pytest.raises(StorageError):
            objects.put(b"two", "k", "b")
        assert objects.get("k", "b") == b"one"

    def test_get_missing(self, objects: InMemoryObjectAdapter) -> None:
        with pytest.raises(NotFoundError):
            objects.get("k", "b")

    def test_delete_is_idempotent(
        self, objects: InMemoryObjectAdapter, caplog: pytest.LogCaptureFixture
    ) -> None:
        objects.put(b"data", "k", "b")
        assert objects.delete("k", "b") is True
        with caplog.at_level("WARNING"):
            assert objects.delete("k", "b") is False
        assert "not found" in caplog.text

    def test_snapshot_restore(self, objects: InMemoryObjectAdapter) -> None:
        objects.put(b"\x00\xff", "k", "b", "application/octet-stream")
        clone = InMemoryObjectAdapter()
        clone.restore(objects.snapshot())
        assert clone.get("k", "b") == b"\x00\xff"


# ===========================================================================
# Plain documents
# ===========================================================================


class TestInMemoryDocumentAdapter:
    def test_create_and_get(self, documents: InMemoryDocumentAdapter) -> None:
        created = documents.create("users", "U1", {"email": "a@x.io"})
        assert created.revision == 1
        fetched = documents.get("users", "U1")
        assert fetched is not None
        assert fetched.data == {"email": "a@x.io"}

    def test_returned_documents_are_copies(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("users", "U1", {"tags": ["a"]})
        fetched = documents.get("users", "U1")
        assert fetched is not None
        fetched.data["tags"].append("b")
        again = documents.get("users", "U1")
        assert again is not None
        assert again.data["tags"] == ["a"]

    def test_create_existing_conflicts(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("users", "U1", {})
        with pytest.raises(ConflictError):
            documents.create("users", "U1", {})

    def test_find(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("users", "U1", {"email": "a@x.io"})
        documents.create("users", "U2", {"email": "b@x.io"})
        assert [d.id for d in documents.find("users", {"email": "b@x.io"})] == ["U2"]
        assert [d.id for d in documents.find("users", {"id": "U1"})] == ["U1"]
        assert len(documents.find("users", {}, limit=1)) == 1

    def test_update_merges_and_bumps_revision(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("events", "E1", {"name": "Launch", "ticketsLeft": "5"})
        updated = documents.update("events", "E1", {"ticketsLeft": "4"})
        assert updated.data == {"name": "Launch", "ticketsLeft": "4"}
        assert updated.revision == 2

    def test_update_compare_and_set(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("events", "E1", {"n": 1})
        documents.update("events", "E1", {"n": 2}, expected_revision=1)
        with pytest.raises(ConflictError):
            documents.update("events", "E1", {"n": 3}, expected_revision=1)

    def test_update_missing(self, documents: InMemoryDocumentAdapter) -> None:
        with pytest.raises(NotFoundError):
            documents.update("events", "nope", {})

    def test_replace_overwrites(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("events", "E1", {"a": 1, "b": 2})
        replaced = documents.replace("events", "E1", {"a": 9})
        assert replaced.data == {"a": 9}

    def test_delete_missing_returns_false(self, documents: InMemoryDocumentAdapter) -> None:
        assert documents.delete("users", "nope") is False

    def test_rejects_transactions(self, documents: InMemoryDocumentAdapter) -> None:
        assert documents.supports_transactions is False
        with pytest.raises(InvalidStateError):
            documents.get("users", "U1", transaction="tx")

    def test_snapshot_restore(self, documents: InMemoryDocumentAdapter) -> None:
        documents.create("users", "U1", {"email": "a@x.io"})
        documents.update("users", "U1", {"name": "Ana"})
        clone = InMemoryDocumentAdapter()
        clone.restore(documents.snapshot())
        restored = clone.get("users", "U1")
        assert restored is not None
        assert restored.revision == 2
        assert restored.data == {"email": "a@x.io", "name": "Ana"}


# ===========================================================================
# Transactional documents
# ===========================================================================


class TestInMemoryTransactionalDocumentAdapter:
    def test_writes_are_isolated_until_commit(
        self, txdocs: InMemoryTransactionalDocumentAdapter
    ) -> None:
        tx = txdocs.begin_transaction(60)
        txdocs.create("users", "U1", {"n": 1}, tx)
        assert txdocs.get("users", "U1") is None
        assert txdocs.get("users", "U1", tx) is not None
        txdocs.commit_transaction(tx)
        assert txdocs.get("users", "U1") is not None

    def test_find_sees_own_writes(self, txdocs: InMemoryTransactionalDocumentAdapter) -> None:
        txdocs.create("users", "U0", {"team": "a"})
        tx = txdocs.begin_transaction(60)
        txdocs.create("users", "U1", {"team": "a"}, tx)
        txdocs.delete("users", "U0", tx)
        assert [d.id for d in txdocs.find("users", {"team": "a"}, tx)] == ["U1"]

    def test_rollback_discards(self, txdocs: InMemoryTransactionalDocumentAdapter) -> None:
        tx = txdocs.begin_transaction(60)
        txdocs.create("users", "U1", {}, tx)
        txdocs.rollback_transaction(tx)
        assert txdocs.get("users", "U1") is None
        assert txdocs.pending_transactions() == []
        txdocs.rollback_transaction(tx)

    def test_changed_read_fails_commit(self, txdocs: InMemoryTransactionalDocumentAdapter) -> None:
        txdocs.create("events", "E1", {"left": 1})
        tx = txdocs.begin_transaction(60)
        txdocs.get("events", "E1", tx)
        txdocs.update("events", "E1", {"left": 0})
        with pytest.raises(ConflictError):
            txdocs.commit_transaction(tx)

    def test_changed_query_fails_commit(self, txdocs: InMemoryTransactionalDocumentAdapter) -> None:
        tx = txdocs.begin_transaction(60)
        assert txdocs.find("transactions", {"paymentId": "P1"}, tx) == []
        txdocs.create("transactions", "X9", {"paymentId": "P1"})
        with pytest.raises(ConflictError):
            txdocs.commit_transaction(tx)

    def test_staged_update_compare_and_set(
        self, txdocs: InMemoryTransactionalDocumentAdapter
    ) -> None:
        txdocs.create("events", "E1", {"left": 2})
        tx = txdocs.begin_transaction(60)
        staged = txdocs.update("events", "E1", {"left": 1}, tx, expected_revision=1)
        assert staged.revision == 2
        with pytest.raises(ConflictError):
            txdocs.update("events", "E1", {"left": 0}, tx, expected_revision=1)

    def test_expired_backend_transaction(
        self, txdocs: InMemoryTransactionalDocumentAdapter, ticker: _Ticker
    ) -> None:
        tx = txdocs.begin_transaction(10)
        ticker.now = 11
        with pytest.raises(TransactionTimeoutError):
            txdocs.get("users", "U1", tx)

    def test_unknown_transaction(self, txdocs: InMemoryTransactionalDocumentAdapter) -> None:
        with pytest.raises(InvalidStateError):
            txdocs.commit_transaction("nope")
