"""
Order Service — event definitions

Named in the past tense and never modified once recorded.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """A paid order was recorded"""
    order_id: str
    customer_id: str
    status: str
    total: Decimal
    currency: str
    payment_transaction_id: str | None = None
    line_count: int
    timestamp: datetime


class OrderMarkedFailed(BaseModel):
    """A late failure voided the order (payment was refunded)"""
    order_id: str
    reason: str
    timestamp: datetime
