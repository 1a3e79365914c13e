"""Ticket booking: ticket, payment record, order and inventory decrement, all or nothing."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from aumai_storetx.errors import DuplicateError, NotFoundError, StoreTxError
from aumai_storetx.inventory import EventInventory
from aumai_storetx.models import (
    ID_FIELD,
    ErrorCode,
    OperationKind,
    TransactionContext,
    UniquenessConstraint,
)
from aumai_storetx.schemas import BookingRequest
from aumai_storetx.workflow import Workflow

__all__ = [
    "BookingWorkflow",
    "EVENTS_COLLECTION",
    "TICKETS_COLLECTION",
    "TRANSACTIONS_COLLECTION",
    "ORDERS_COLLECTION",
    "PAYMENT_CONSTRAINT",
    "TICKET_ID_CONSTRAINT",
]

logger = logging.getLogger(__name__)

EVENTS_COLLECTION = "events"
TICKETS_COLLECTION = "tickets"
TRANSACTIONS_COLLECTION = "transactions"
ORDERS_COLLECTION = "orders"

PAYMENT_GATEWAY = "RazorPay"

PAYMENT_CONSTRAINT = UniquenessConstraint(
    field="paymentId",
    collection=TRANSACTIONS_COLLECTION,
    error_code=ErrorCode.DUPLICATE_PAYMENT,
)
TICKET_ID_CONSTRAINT = UniquenessConstraint(
    field=ID_FIELD,
    collection=TICKETS_COLLECTION,
    error_code=ErrorCode.DUPLICATE_TICKET_ID,
)


def _new_id() -> str:
    return uuid.uuid4().hex


class BookingWorkflow(Workflow[BookingRequest]):
    """Book tickets for one payment.

    Stages, in order: optional QR upload, duplicate-payment check, event read
    inside the context, inventory checks, then the ticket, payment record and
    order creates and the event decrement.  The decrement is fenced on the
    revision read, so two bookings racing for the last tickets cannot both
    commit.
    """

    request_model = BookingRequest
    generic_code = ErrorCode.BOOKING_ERROR
    name = "booking"

    def validate(self, request: BookingRequest) -> None:
        request.check_quantity(self.config.max_tickets_per_booking)

    def stage(self, ctx: TransactionContext, request: BookingRequest) -> dict[str, Any]:
        coordinator = self.coordinator

        qr_code_file_id = request.qr_code_file_id
        if request.qr_code is not None:
            handle = coordinator.upload(
                ctx, request.qr_code, self.config.qr_code_bucket_id, content_type="image/png"
            )
            qr_code_file_id = handle.identifier

        coordinator.ensure_unique(ctx, PAYMENT_CONSTRAINT, request.payment_id)

        event = coordinator.read(ctx, EVENTS_COLLECTION, request.event_id)
        if event is None:
            raise NotFoundError(f"Event {request.event_id} not found")
        remaining = EventInventory.from_document(event.data).reserve(
            request.ticket_type_name, request.quantity
        )

        ticket_id = request.ticket_id or _new_id()
        coordinator.stage(
            ctx,
            OperationKind.create,
            TICKETS_COLLECTION,
            ticket_id,
            self._ticket(request, qr_code_file_id),
            constraints=(TICKET_ID_CONSTRAINT,) if request.ticket_id else (),
        )

        transaction_doc_id = _new_id()
        coordinator.stage(
            ctx,
            OperationKind.create,
            TRANSACTIONS_COLLECTION,
            transaction_doc_id,
            {
                "userId": request.user_id,
                "ticketId": ticket_id,
                "paymentId": request.payment_id,
                "totalAmount": request.total_amount_paid,
                "gateway": PAYMENT_GATEWAY,
            },
            constraints=(PAYMENT_CONSTRAINT,),
        )

        order_id = _new_id()
        coordinator.stage(
            ctx,
            OperationKind.create,
            ORDERS_COLLECTION,
            order_id,
            {
                "userId": request.user_id,
                "ticketId": ticket_id,
                "eventId": request.event_id,
                "transactionId": transaction_doc_id,
                "quantity": request.quantity,
                "singleTicketPrice": request.price_per_ticket,
                "subtotal": request.subtotal,
                "taxGST": request.tax_gst,
                "internetHandlingFee": request.internet_handling_fee,
                "totalAmount": request.total_amount_paid,
            },
        )

        coordinator.stage(
            ctx,
            OperationKind.update,
            EVENTS_COLLECTION,
            request.event_id,
            remaining.to_update(),
            expected_revision=event.revision,
        )
        logger.debug(
            "Staged booking of %d x %s for event %s (%d left)",
            request.quantity,
            request.ticket_type_name,
            request.event_id,
            remaining.tickets_left,
        )
        return {
            "ticketId": ticket_id,
            "transactionId": transaction_doc_id,
            "orderId": order_id,
            "qrCodeIncluded": bool(qr_code_file_id),
        }

    def details(self, exc: StoreTxError) -> dict[str, Any]:
        details = super().details(exc)
        if isinstance(exc, DuplicateError):
            if exc.constraint == PAYMENT_CONSTRAINT:
                details["existingTicketId"] = exc.existing.get("ticketId")
            elif exc.constraint == TICKET_ID_CONSTRAINT:
                details["existingTicketId"] = exc.existing_id
        return details

    @staticmethod
    def _ticket(request: BookingRequest, qr_code_file_id: str | None) -> dict[str, Any]:
        return {
            "userId": request.user_id,
            "eventId": request.event_id,
            "eventName": request.event_name,
            "eventSubName": request.event_sub_name,
            "eventDate": request.event_date,
            "eventTime": request.event_time,
            "eventLocation": request.event_location,
            "totalAmountPaid": request.total_amount_paid,
            "pricePerTicket": request.price_per_ticket,
            "imageFileId": request.image_file_id,
            "category": request.category.replace("Rs.", "") if request.category else None,
            "quantity": request.quantity,
            "isListedForSale": False,
            "qrCodeFileId": qr_code_file_id or "",
        }
