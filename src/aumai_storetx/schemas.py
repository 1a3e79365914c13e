"""Inbound request schemas for the signup and booking workflows."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from aumai_storetx.errors import ValidationError
from aumai_storetx.models import ErrorCode

__all__ = ["SignupRequest", "BookingRequest", "parse_request"]

RequestT = TypeVar("RequestT", bound=BaseModel)

Amount = Union[float, str]

# Fields whose malformed (but present) values carry a dedicated error code.
_FIELD_CODES: dict[str, ErrorCode] = {"quantity": ErrorCode.INVALID_QUANTITY}


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SignupRequest(_Request):
    """Create a user together with an avatar and a QR code asset."""

    user_id: str = Field(..., alias="userId", min_length=1)
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str | None = None
    avatar: bytes | None = Field(default=None, description="Avatar image bytes")
    avatar_content_type: str | None = Field(default=None, alias="avatarContentType")
    qr_code: bytes | None = Field(default=None, alias="qrCode", description="QR code image bytes")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.lower()


class BookingRequest(_Request):
    """Book tickets for an event against a completed payment."""

    user_id: str = Field(..., alias="userId", min_length=1)
    event_id: str = Field(..., alias="eventId", min_length=1)
    payment_id: str = Field(..., alias="paymentId", min_length=1)
    quantity: int
    ticket_type_name: str = Field(..., alias="ticketTypeName", min_length=1)

    event_name: str | None = Field(default=None, alias="eventName")
    event_sub_name: str | None = Field(default=None, alias="eventSubName")
    event_date: str | None = Field(default=None, alias="eventDate")
    event_time: str | None = Field(default=None, alias="eventTime")
    event_location: str | None = Field(default=None, alias="eventLocation")
    total_amount_paid: Amount | None = Field(default=None, alias="totalAmountPaid")
    price_per_ticket: Amount | None = Field(default=None, alias="pricePerTicket")
    subtotal: Amount | None = None
    tax_gst: Amount | None = Field(default=None, alias="taxGST")
    internet_handling_fee: Amount | None = Field(default=None, alias="internetHandlingFee")
    category: str | None = None
    image_file_id: str | None = Field(default=None, alias="imageFileId")
    qr_code_file_id: str | None = Field(default=None, alias="qrCodeFileId")
    ticket_id: str | None = Field(
        default=None, alias="ticketId", description="Client pre-generated ticket id"
    )
    qr_code: bytes | None = Field(default=None, alias="qrCode", description="QR code image bytes")

    def check_quantity(self, maximum: int) -> None:
        """Raise ``INVALID_QUANTITY`` unless ``1 <= quantity <= maximum``."""
        if not 1 <= self.quantity <= maximum:
            raise ValidationError(
                f"Quantity must be between 1 and {maximum}",
                code=ErrorCode.INVALID_QUANTITY,
                fields=["quantity"],
            )


def parse_request(model: type[RequestT], payload: RequestT | Mapping[str, Any]) -> RequestT:
    """Validate *payload* into *model*.

    Raises:
        ValidationError: Listing every missing or invalid field.
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        errors = exc.errors()
        fields = [".".join(str(part) for part in error["loc"]) or "request" for error in errors]
        code = ErrorCode.VALIDATION_ERROR
        first = errors[0] if errors else None
        if first is not None and first["type"] != "missing" and first["loc"]:
            code = _FIELD_CODES.get(str(first["loc"][0]), code)
        missing = [f for f, e in zip(fields, errors) if e["type"] == "missing"]
        message = (
            f"Missing required fields: {', '.join(missing)}"
            if missing
            else f"Invalid fields: {', '.join(fields)}"
        )
        raise ValidationError(message, code=code, fields=fields) from exc
