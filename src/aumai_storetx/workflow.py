"""Shared request pipeline for coordinator-backed workflows."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Mapping, TypeVar

from pydantic import BaseModel

from aumai_storetx.config import CoordinatorConfig
from aumai_storetx.core import TransactionCoordinator
from aumai_storetx.errors import (
    DuplicateError,
    InternalError,
    InventoryError,
    StoreTxError,
    ValidationError,
)
from aumai_storetx.models import (
    ErrorCode,
    OperationResponse,
    RollbackResult,
    TransactionContext,
    TransactionState,
)
from aumai_storetx.schemas import parse_request

__all__ = ["Workflow"]

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)


class Workflow(ABC, Generic[RequestT]):
    """Validate a request, run its stages in one context, commit, and respond.

    Subclasses declare the request model and the generic failure code, and
    implement :meth:`stage`, which performs every upload, read and staged
    write in order and returns the response data.  The first exception ends
    the pipeline: the context is rolled back (if the coordinator has not done
    so already) and the failure is turned into an
    :class:`~aumai_storetx.models.OperationResponse`.

    Args:
        coordinator: The coordinator all stages run through.
        config: Settings for buckets and limits; defaults to the coordinator's.
    """

    request_model: type[RequestT]
    generic_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    name: str = "operation"

    def __init__(
        self, coordinator: TransactionCoordinator, config: CoordinatorConfig | None = None
    ) -> None:
        self.coordinator = coordinator
        self.config = config or coordinator.config

    def run(self, request: RequestT | Mapping[str, Any]) -> OperationResponse:
        """Execute the workflow for *request*.  Never raises."""
        try:
            parsed = parse_request(self.request_model, request)
            self.validate(parsed)
        except ValidationError as exc:
            logger.info("Rejected %s request: %s", self.name, exc)
            return self.failure(exc)

        ctx: TransactionContext | None = None
        try:
            ctx = self.coordinator.begin()
            data = self.stage(ctx, parsed)
            self.coordinator.commit(ctx)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s failed: %s", self.name.capitalize(), exc)
            return self.failure(exc, self._rollback(ctx, exc))

        data["mode"] = ctx.mode.value
        logger.info("%s committed in transaction %s", self.name.capitalize(), ctx.transaction_id)
        return OperationResponse(success=True, data=data)

    def validate(self, request: RequestT) -> None:
        """Extra checks that need configuration; raise :class:`ValidationError`."""

    @abstractmethod
    def stage(self, ctx: TransactionContext, request: RequestT) -> dict[str, Any]:
        """Run every stage of the workflow inside *ctx*, returning the response data."""

    def details(self, exc: StoreTxError) -> dict[str, Any]:
        """Extra response details for a classified failure."""
        details: dict[str, Any] = {}
        if isinstance(exc, DuplicateError):
            details["existingId"] = exc.existing_id
        elif isinstance(exc, InventoryError):
            details["available"] = exc.available
        elif isinstance(exc, ValidationError) and exc.fields:
            details["fields"] = exc.fields
        return details

    def failure(
        self, exc: BaseException, rollback: RollbackResult | None = None
    ) -> OperationResponse:
        """Turn *exc* into a failure response, attaching the rollback status if one ran."""
        if isinstance(exc, StoreTxError) and not isinstance(exc, InternalError):
            error, code, details = exc.message, exc.code or self.generic_code, self.details(exc)
        else:
            error, code = f"{self.name.capitalize()} failed", self.generic_code
            details = {"message": str(exc)}
        return OperationResponse(
            success=False,
            error=error,
            code=code,
            rollback_status=rollback.rollback_status if rollback is not None else None,
            details=details or None,
        )

    def _rollback(
        self, ctx: TransactionContext | None, exc: BaseException
    ) -> RollbackResult | None:
        if isinstance(exc, StoreTxError) and exc.rollback is not None:
            return exc.rollback
        if ctx is None or ctx.state == TransactionState.committed:
            return None
        try:
            return self.coordinator.rollback(ctx, reason=str(exc))
        except StoreTxError as rollback_exc:
            logger.error("Rollback of %s failed: %s", ctx.transaction_id, rollback_exc)
            return None
