"""
Inventory Service — event definitions

Facts recorded in the event store and published on ``inventory_events``.
"""

from datetime import datetime

from pydantic import BaseModel


class InventoryRestocked(BaseModel):
    """Stock was added to a SKU"""
    sku: str
    quantity: int
    new_quantity: int
    timestamp: datetime


class InventoryReserved(BaseModel):
    """Stock was put on hold for a checkout"""
    sku: str
    reservation_id: str
    quantity: int
    expires_at: datetime
    correlation_id: str | None = None
    timestamp: datetime


class InventoryCommitted(BaseModel):
    """A hold became a sale; owned stock was decremented"""
    sku: str
    reservation_id: str
    quantity: int
    correlation_id: str | None = None
    timestamp: datetime


class InventoryReleased(BaseModel):
    """A hold was given back (compensation)"""
    sku: str
    reservation_id: str
    quantity: int
    correlation_id: str | None = None
    timestamp: datetime


class ReservationExpired(BaseModel):
    """A hold outlived its TTL and was released (by the sweeper or a later reserve)"""
    sku: str
    reservation_id: str
    quantity: int
    expires_at: datetime
    timestamp: datetime
