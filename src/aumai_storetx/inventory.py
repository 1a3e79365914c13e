"""Event inventory records.

Events store their ticket categories as ``"name:price:qty:phase"`` strings and
their remaining total as ``ticketsLeft``.  Those formats are only touched
here: :meth:`EventInventory.from_document` parses them and
:meth:`EventInventory.to_update` writes them back.
"""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, Field

from aumai_storetx.errors import InternalError, InventoryError
from aumai_storetx.models import ErrorCode

__all__ = ["TicketCategory", "EventInventory"]

_SEPARATOR = ":"


def _to_int(value: Any) -> int:
    """Lenient integer conversion; anything unparseable counts as zero."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


class TicketCategory(BaseModel):
    """One ticket type of an event."""

    name: str = Field(..., min_length=1)
    price: str = Field(default="", description="Display price exactly as stored")
    tickets_left: int = Field(default=0, ge=0)
    phase: str | None = Field(default=None, description="Sale phase, when the event has one")

    @classmethod
    def parse(cls, raw: str) -> TicketCategory:
        """Parse a stored ``name:price:qty[:phase]`` string.

        Raises:
            ValueError: When fewer than three parts are present.
        """
        parts = [part.strip() for part in raw.split(_SEPARATOR)]
        if len(parts) < 3 or not parts[0]:
            raise ValueError(f"Malformed ticket category {raw!r}")
        return cls(
            name=parts[0],
            price=parts[1],
            tickets_left=max(0, _to_int(parts[2])),
            phase=_SEPARATOR.join(parts[3:]) if len(parts) > 3 else None,
        )

    def serialize(self) -> str:
        parts = [self.name, self.price, str(self.tickets_left)]
        if self.phase is not None:
            parts.append(self.phase)
        return _SEPARATOR.join(parts)


class EventInventory(BaseModel):
    """Remaining tickets of an event, in total and per category."""

    tickets_left: int = Field(default=0, ge=0)
    categories: list[TicketCategory] = Field(default_factory=list)

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> EventInventory:
        """Build an inventory from an event document's stored fields.

        Raises:
            InternalError: When a stored category cannot be parsed.
        """
        try:
            categories = [TicketCategory.parse(raw) for raw in data.get("categories") or []]
        except ValueError as exc:
            raise InternalError(str(exc)) from exc
        return cls(tickets_left=max(0, _to_int(data.get("ticketsLeft"))), categories=categories)

    def category(self, name: str) -> TicketCategory | None:
        for category in self.categories:
            if category.name == name:
                return category
        return None

    def reserve(self, name: str, quantity: int) -> EventInventory:
        """Return the inventory left after taking *quantity* tickets of *name*.

        Raises:
            InventoryError: ``INSUFFICIENT_TICKETS`` when the event total is too
                low, ``TICKET_TYPE_UNAVAILABLE`` when the category is missing or
                too low.
        """
        if self.tickets_left < quantity:
            raise InventoryError(
                "Insufficient tickets available",
                code=ErrorCode.INSUFFICIENT_TICKETS,
                available=self.tickets_left,
            )
        category = self.category(name)
        if category is None or category.tickets_left < quantity:
            raise InventoryError(
                "Ticket type not available or insufficient quantity",
                code=ErrorCode.TICKET_TYPE_UNAVAILABLE,
                available=category.tickets_left if category is not None else 0,
            )
        return EventInventory(
            tickets_left=self.tickets_left - quantity,
            categories=[
                c.model_copy(update={"tickets_left": c.tickets_left - quantity})
                if c.name == name
                else c
                for c in self.categories
            ],
        )

    def to_update(self) -> dict[str, Any]:
        """Return the event fields to write back, in their stored format."""
        return {
            "ticketsLeft": str(self.tickets_left),
            "categories": [category.serialize() for category in self.categories],
        }
