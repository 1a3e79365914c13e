"""Reverse-order, best-effort cleanup of resources already applied to a backend."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from aumai_storetx.adapters.base import DocumentAdapter, ObjectAdapter
from aumai_storetx.errors import InternalError
from aumai_storetx.models import (
    CleanupStatus,
    CompensationOutcome,
    CompensationReport,
    OperationKind,
    ResourceHandle,
    ResourceKind,
    ResourceStatus,
)

__all__ = ["AppliedResource", "CompensationEngine"]

logger = logging.getLogger(__name__)


class AppliedResource(BaseModel):
    """A write that actually reached a backend, with what is needed to undo it."""

    handle: ResourceHandle
    kind: OperationKind = Field(..., description="The forward action that was applied")
    previous: dict[str, Any] | None = Field(
        default=None, description="Document data before an update or delete"
    )
    revision: int | None = Field(
        default=None, description="Revision our update left behind; restores are fenced on it"
    )


class CompensationEngine:
    """Track applied resources per transaction and undo them on failure.

    Compensation walks the ledger in strict reverse order.  A failing undo is
    logged and reported but never stops the walk; every resource whose
    cleanup failed is surfaced in the report as needing manual intervention.

    Args:
        documents: Adapter used to undo document writes.
        objects: Adapter used to delete uploaded objects.
    """

    def __init__(self, documents: DocumentAdapter, objects: ObjectAdapter | None = None) -> None:
        self._documents = documents
        self._objects = objects
        self._ledgers: dict[str, list[AppliedResource]] = {}

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def record(
        self,
        transaction_id: str,
        handle: ResourceHandle,
        kind: OperationKind = OperationKind.create,
        previous: dict[str, Any] | None = None,
        revision: int | None = None,
    ) -> AppliedResource:
        """Append an applied write to *transaction_id*'s ledger."""
        entry = AppliedResource(handle=handle, kind=kind, previous=previous, revision=revision)
        self._ledgers.setdefault(transaction_id, []).append(entry)
        logger.debug("Recorded %s of %s for %s", kind.value, handle.label, transaction_id)
        return entry

    def applied(self, transaction_id: str) -> list[AppliedResource]:
        return list(self._ledgers.get(transaction_id, []))

    def discard(self, transaction_id: str) -> None:
        """Forget the ledger once its writes are final."""
        self._ledgers.pop(transaction_id, None)

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    def compensate(self, transaction_id: str) -> CompensationReport:
        """Undo every recorded write for *transaction_id*, newest first.

        Returns:
            A :class:`~aumai_storetx.models.CompensationReport` with one
            outcome per recorded resource.
        """
        entries = self._ledgers.pop(transaction_id, [])
        report = CompensationReport(transaction_id=transaction_id)
        # Revision each undo left behind, so an earlier restore of the same
        # document is fenced on it instead of on the forward write's revision.
        revisions: dict[tuple[ResourceKind, str, str], int] = {}

        for entry in reversed(entries):
            action = self._inverse_action(entry)
            key = (entry.handle.resource, entry.handle.container, entry.handle.identifier)
            try:
                revision = self._undo(entry, revisions.get(key, entry.revision))
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Compensation %s of %s failed: %s", action, entry.handle.label, exc
                )
                report.outcomes.append(
                    CompensationOutcome(
                        resource=entry.handle,
                        action=action,
                        status=CleanupStatus.failed,
                        error=str(exc),
                    )
                )
                continue
            if revision is None:
                revisions.pop(key, None)
            else:
                revisions[key] = revision
            entry.handle.status = (
                ResourceStatus.deleted
                if entry.kind == OperationKind.create
                else ResourceStatus.committed
            )
            logger.info("Compensated %s by %s", entry.handle.label, action)
            report.outcomes.append(
                CompensationOutcome(
                    resource=entry.handle, action=action, status=CleanupStatus.success
                )
            )

        stranded = report.requires_manual_intervention
        if stranded:
            logger.error(
                "Transaction %s left %d resource(s) needing manual cleanup: %s",
                transaction_id,
                len(stranded),
                ", ".join(handle.label for handle in stranded),
            )
        return report

    @staticmethod
    def _inverse_action(entry: AppliedResource) -> str:
        if entry.kind == OperationKind.update:
            return "restore"
        if entry.kind == OperationKind.delete:
            return "recreate"
        return "delete"

    def _undo(self, entry: AppliedResource, fence: int | None) -> int | None:
        """Apply the inverse of *entry*; return the document revision it leaves, if any."""
        handle = entry.handle
        if handle.resource == ResourceKind.object:
            if self._objects is None:
                raise InternalError(f"No object adapter to delete {handle.label}")
            self._objects.delete(handle.identifier, handle.container)
            return None
        if entry.kind == OperationKind.create:
            self._documents.delete(handle.container, handle.identifier)
            return None
        if entry.kind == OperationKind.update:
            restored = self._documents.replace(
                handle.container,
                handle.identifier,
                entry.previous or {},
                expected_revision=fence,
            )
            return restored.revision
        recreated = self._documents.create(
            handle.container, handle.identifier, entry.previous or {}
        )
        return recreated.revision
