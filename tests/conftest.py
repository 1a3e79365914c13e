"""Shared test fixtures for aumai-storetx tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import pytest

from aumai_storetx.adapters.memory import (
    InMemoryDocumentAdapter,
    InMemoryObjectAdapter,
    InMemoryTransactionalDocumentAdapter,
)
from aumai_storetx.config import CoordinatorConfig, StrategyMode
from aumai_storetx.core import TransactionCoordinator
from aumai_storetx.errors import ResourceError, StorageError
from aumai_storetx.models import Document


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """A UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FlakyObjectAdapter(InMemoryObjectAdapter):
    """Object storage whose puts or deletes can be made to fail per key or bucket."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_puts_in: set[str] = set()
        self.fail_deletes_for: set[str] = set()
        self.deleted: list[str] = []

    def put(
        self, data: bytes, key: str, bucket: str, content_type: str | None = None
    ):
        if bucket in self.fail_puts_in:
            raise StorageError(f"Simulated put failure in {bucket}")
        return super().put(data, key, bucket, content_type)

    def delete(self, key: str, bucket: str) -> bool:
        if key in self.fail_deletes_for:
            raise StorageError(f"Simulated delete failure for {key}")
        self.deleted.append(key)
        return super().delete(key, bucket)


class FlakyDocumentAdapter(InMemoryDocumentAdapter):
    """Plain document store with injectable failures.

    ``fail_create_in`` makes direct creates in a collection fail;
    ``transient_reads`` makes the next *n* reads raise a retryable error;
    ``fail_delete_of`` makes deletes of specific ids fail.
    """

    def __init__(self) -> None:
        super().__init__()
        self.fail_create_in: set[str] = set()
        self.fail_delete_of: set[str] = set()
        self.transient_reads = 0
        self.reads = 0

    def _maybe_fail_read(self) -> None:
        self.reads += 1
        if self.transient_reads > 0:
            self.transient_reads -= 1
            raise ResourceError("Simulated transient read failure")

    def get(self, collection: str, document_id: str, transaction: str | None = None):
        self._maybe_fail_read()
        return super().get(collection, document_id, transaction)

    def find(self, collection, filters, transaction=None, limit=None):
        self._maybe_fail_read()
        return super().find(collection, filters, transaction, limit)

    def create(
        self,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        transaction: str | None = None,
    ) -> Document:
        if collection in self.fail_create_in:
            raise ResourceError(f"Simulated create failure in {collection}")
        return super().create(collection, document_id, data, transaction)

    def delete(self, collection: str, document_id: str, transaction: str | None = None) -> bool:
        if document_id in self.fail_delete_of:
            raise ResourceError(f"Simulated delete failure for {document_id}")
        return super().delete(collection, document_id, transaction)


@dataclass
class Harness:
    coordinator: TransactionCoordinator
    documents: InMemoryDocumentAdapter
    objects: FlakyObjectAdapter
    clock: FakeClock


def make_harness(mode: str, clock: FakeClock | None = None, **config: Any) -> Harness:
    clock = clock or FakeClock()
    documents: InMemoryDocumentAdapter = (
        InMemoryTransactionalDocumentAdapter()
        if mode == StrategyMode.native.value
        else FlakyDocumentAdapter()
    )
    objects = FlakyObjectAdapter()
    coordinator = TransactionCoordinator(
        documents,
        objects,
        CoordinatorConfig(mode=StrategyMode(mode), **config),
        clock=clock,
        sleep=lambda seconds: None,
    )
    return Harness(coordinator, documents, objects, clock)


def seed_event(
    documents: InMemoryDocumentAdapter,
    event_id: str = "E1",
    tickets_left: int | str = "5",
    categories: tuple[str, ...] = ("VIP:Rs.999:2:Phase 1", "General:Rs.499:3:Phase 1"),
) -> Document:
    return documents.create(
        "events",
        event_id,
        {"name": "Launch Night", "ticketsLeft": tickets_left, "categories": list(categories)},
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def native(clock: FakeClock) -> Harness:
    """Harness whose coordinator runs in native mode."""
    return make_harness("native", clock)


@pytest.fixture()
def fallback(clock: FakeClock) -> Harness:
    """Harness whose coordinator runs in fallback (saga) mode."""
    return make_harness("fallback", clock)


@pytest.fixture(params=["native", "fallback"])
def harness(request: pytest.FixtureRequest, clock: FakeClock) -> Harness:
    """Harness parametrized over both execution modes."""
    return make_harness(request.param, clock)
