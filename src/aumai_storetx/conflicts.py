"""Uniqueness checks performed before (and, in fallback mode, again at) each write."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping

from aumai_storetx.adapters.base import DocumentAdapter
from aumai_storetx.errors import DuplicateError, ResourceError
from aumai_storetx.models import ID_FIELD, Document, UniquenessConstraint

__all__ = ["ConflictDetector", "constraint_value"]

logger = logging.getLogger(__name__)


def constraint_value(
    constraint: UniquenessConstraint, target_id: str, payload: Mapping[str, Any] | None
) -> Any:
    """Return the value *constraint* applies to for a create of *target_id*."""
    if constraint.field == ID_FIELD:
        return target_id
    return (payload or {}).get(constraint.field)


class ConflictDetector:
    """Classify existing matches for uniqueness constraints as duplicates.

    With a *transaction* the lookup runs inside the backend transaction, so
    the backend's own commit-time validation catches racing writers.  Without
    one it is a direct read, retried on transient errors, which the
    coordinator repeats immediately before the write.

    Args:
        documents: The document adapter to read from.
        retries: Attempts for a direct read before giving up.
        backoff_seconds: Fixed pause between attempts.
        sleep: Sleep function, replaceable in tests.
    """

    def __init__(
        self,
        documents: DocumentAdapter,
        *,
        retries: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._documents = documents
        self._retries = max(1, retries)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    def check(
        self,
        constraint: UniquenessConstraint,
        value: Any,
        transaction: str | None = None,
    ) -> None:
        """Raise :class:`DuplicateError` if *value* is already taken.

        A ``None`` value is never considered a duplicate.
        """
        if value is None:
            return
        if transaction is not None:
            existing = self._lookup(constraint, value, transaction)
        else:
            existing = self._lookup_with_retries(constraint, value)
        if existing is not None:
            logger.info(
                "Duplicate %s=%r: existing document %s/%s",
                constraint.field,
                value,
                existing.collection,
                existing.id,
            )
            raise DuplicateError(constraint, existing.id, existing.data)
        # A create of the same id already collides with a racing create.
        if transaction is not None and constraint.field != ID_FIELD:
            self._documents.claim_unique(
                constraint.collection, constraint.field, value, transaction
            )

    def check_all(
        self,
        constraints: Iterable[UniquenessConstraint],
        target_id: str,
        payload: Mapping[str, Any] | None,
        transaction: str | None = None,
    ) -> None:
        """Check every constraint of a create, in order, stopping at the first hit."""
        for constraint in constraints:
            self.check(constraint, constraint_value(constraint, target_id, payload), transaction)

    def read(
        self, collection: str, document_id: str, transaction: str | None = None
    ) -> Document | None:
        """Read a contended document: in-transaction, or direct with retries."""
        if transaction is not None:
            return self._documents.get(collection, document_id, transaction)
        return self._with_retries(
            f"{collection}/{document_id}",
            lambda: self._documents.get(collection, document_id),
        )

    def _lookup(
        self, constraint: UniquenessConstraint, value: Any, transaction: str | None
    ) -> Document | None:
        if constraint.field == ID_FIELD:
            return self._documents.get(constraint.collection, str(value), transaction)
        found = self._documents.find(
            constraint.collection, {constraint.field: value}, transaction, limit=1
        )
        return found[0] if found else None

    def _lookup_with_retries(self, constraint: UniquenessConstraint, value: Any) -> Document | None:
        return self._with_retries(
            constraint.describe(), lambda: self._lookup(constraint, value, None)
        )

    def _with_retries(
        self, what: str, read: Callable[[], Document | None]
    ) -> Document | None:
        for attempt in range(1, self._retries + 1):
            try:
                return read()
            except ResourceError as exc:
                if not exc.retryable or attempt == self._retries:
                    raise
                logger.warning(
                    "Read of %s failed (attempt %s/%s): %s. Retrying in %.2fs...",
                    what,
                    attempt,
                    self._retries,
                    exc,
                    self._backoff_seconds,
                )
                self._sleep(self._backoff_seconds)
        return None
