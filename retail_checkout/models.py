"""
Records exchanged between the checkout services.

These are the contracts of the inventory, order and cart boundaries. JSON
bodies use camelCase field names; snake_case is accepted on input too.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ── Cart ─────────────────────────────────────────


class CartLine(ApiModel):
    sku: str
    name: str
    unit_price: Decimal
    quantity: int = Field(gt=0)

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class Cart(ApiModel):
    customer_id: str
    lines: list[CartLine] = []

    @property
    def total(self) -> Decimal:
        return money(sum((line.line_total for line in self.lines), Decimal("0")))


# ── Inventory ────────────────────────────────────


class ReservationStatus(str, Enum):
    RESERVED = "Reserved"
    COMMITTED = "Committed"
    RELEASED = "Released"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.RESERVED


class InventoryItem(ApiModel):
    sku: str
    quantity: int
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.quantity - self.reserved

    def to_json(self) -> dict:
        return {**super().to_json(), "available": self.available}


class Reservation(ApiModel):
    reservation_id: str
    sku: str
    quantity: int
    status: ReservationStatus
    created_at: datetime
    expires_at: datetime


# ── Order ────────────────────────────────────────


class OrderStatus(str, Enum):
    PAID = "Paid"
    FAILED = "Failed"


class OrderLine(ApiModel):
    sku: str
    name: str
    unit_price: Decimal
    quantity: int


class Order(ApiModel):
    id: str
    customer_id: str
    status: OrderStatus
    total: Decimal
    currency: str = "GBP"
    payment_transaction_id: str | None = None
    lines: list[OrderLine] = []
    created_at: datetime | None = None
