"""Tests for aumai_storetx.compensation (CompensationEngine)."""

from __future__ import annotations

import pytest

from aumai_storetx.compensation import CompensationEngine
from aumai_storetx.models import (
    CleanupStatus,
    OperationKind,
    ResourceHandle,
    ResourceKind,
    ResourceStatus,
)

from conftest import FlakyDocumentAdapter, FlakyObjectAdapter


@pytest.fixture()
def documents() -> FlakyDocumentAdapter:
    return FlakyDocumentAdapter()


@pytest.fixture()
def objects() -> FlakyObjectAdapter:
    return FlakyObjectAdapter()


@pytest.fixture()
def engine(documents: FlakyDocumentAdapter, objects: FlakyObjectAdapter) -> CompensationEngine:
    return CompensationEngine(documents, objects)


def _doc(collection: str, doc_id: str) -> ResourceHandle:
    return ResourceHandle(resource=ResourceKind.document, container=collection, identifier=doc_id)


class TestLedger:
    def test_record_and_applied(self, engine: CompensationEngine) -> None:
        engine.record("t1", _doc("c", "A"))
        engine.record("t1", _doc("c", "B"))
        assert [e.handle.identifier for e in engine.applied("t1")] == ["A", "B"]
        assert engine.applied("t2") == []

    def test_discard(self, engine: CompensationEngine) -> None:
        engine.record("t1", _doc("c", "A"))
        engine.discard("t1")
        assert engine.applied("t1") == []

    def test_compensating_unknown_transaction_is_empty(self, engine: CompensationEngine) -> None:
        report = engine.compensate("nope")
        assert report.outcomes == []
        assert report.succeeded


class TestCompensate:
    def test_walks_in_reverse_order(
        self,
        engine: CompensationEngine,
        documents: FlakyDocumentAdapter,
        objects: FlakyObjectAdapter,
    ) -> None:
        objects.put(b"a", "k1", "avatars")
        engine.record("t1", ResourceHandle(resource=ResourceKind.object, container="avatars", identifier="k1"))
        for doc_id in ("A", "B"):
            documents.create("c", doc_id, {})
            engine.record("t1", _doc("c", doc_id))

        report = engine.compensate("t1")

        assert [o.resource.identifier for o in report.outcomes] == ["B", "A", "k1"]
        assert report.succeeded
        assert documents.count("c") == 0
        assert objects.deleted == ["k1"]
        assert all(o.resource.status == ResourceStatus.deleted for o in report.outcomes)

    def test_failures_do_not_halt_the_walk(
        self, engine: CompensationEngine, documents: FlakyDocumentAdapter
    ) -> None:
        for doc_id in ("A", "B", "C"):
            documents.create("c", doc_id, {})
            engine.record("t1", _doc("c", doc_id))
        documents.fail_delete_of.add("B")

        report = engine.compensate("t1")

        assert [o.status for o in report.outcomes] == [
            CleanupStatus.success,
            CleanupStatus.failed,
            CleanupStatus.success,
        ]
        assert [h.identifier for h in report.requires_manual_intervention] == ["B"]
        assert report.outcomes[1].error is not None
        assert documents.get("c", "A") is None

    def test_compensation_runs_once(
        self, engine: CompensationEngine, documents: FlakyDocumentAdapter
    ) -> None:
        documents.create("c", "A", {})
        engine.record("t1", _doc("c", "A"))
        engine.compensate("t1")
        assert engine.compensate("t1").outcomes == []

    def test_restore_is_fenced_on_written_revision(
        self, engine: CompensationEngine, documents: FlakyDocumentAdapter
    ) -> None:
        documents.create("accounts", "X", {"balance": 10})
        written = documents.update("accounts", "X", {"balance": 5})
        engine.record(
            "t1",
            _doc("accounts", "X"),
            OperationKind.update,
            previous={"balance": 10},
            revision=written.revision,
        )
        documents.update("accounts", "X", {"balance": 7})

        report = engine.compensate("t1")

        assert report.outcomes[0].action == "restore"
        assert report.outcomes[0].status == CleanupStatus.failed
        current = documents.get("accounts", "X")
        assert current is not None
        assert current.data == {"balance": 7}

    def test_update_then_delete_of_same_document_is_undone(
        self, engine: CompensationEngine, documents: FlakyDocumentAdapter
    ) -> None:
        documents.create("accounts", "X", {"balance": 10})
        written = documents.update("accounts", "X", {"balance": 5})
        engine.record(
            "t1",
            _doc("accounts", "X"),
            OperationKind.update,
            previous={"balance": 10},
            revision=written.revision,
        )
        documents.delete("accounts", "X")
        engine.record("t1", _doc("accounts", "X"), OperationKind.delete, previous={"balance": 5})

        report = engine.compensate("t1")

        assert [o.action for o in report.outcomes] == ["recreate", "restore"]
        assert report.succeeded
        current = documents.get("accounts", "X")
        assert current is not None
        assert current.data == {"balance": 10}

    def test_chained_updates_are_restored_to_the_first_snapshot(
        self, engine: CompensationEngine, documents: FlakyDocumentAdapter
    ) -> None:
        documents.create("accounts", "X", {"balance": 10})
        for previous, balance in ((10, 5), (5, 1)):
            written = documents.update("accounts", "X", {"balance": balance})
            engine.record(
                "t1",
                _doc("accounts", "X"),
                OperationKind.update,
                previous={"balance": previous},
                revision=written.revision,
            )

        report = engine.compensate("t1")

        assert report.succeeded
        current = documents.get("accounts", "X")
        assert current is not None
        assert current.data == {"balance": 10}

    def test_missing_object_adapter_is_reported(self, documents: FlakyDocumentAdapter) -> None:
        engine = CompensationEngine(documents)
        engine.record(
            "t1", ResourceHandle(resource=ResourceKind.object, container="b", identifier="k")
        )
        report = engine.compensate("t1")
        assert report.outcomes[0].status == CleanupStatus.failed
