"""
Order Service — command handlers

Orders are created once, keyed by the id the caller supplies, so a retried
create returns the stored order instead of writing a duplicate. The only
later change is marking an order Failed after a refunded late failure.
"""

import logging
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import IdempotencyConflictError, OrderNotFoundError
from ..event_store import append_event, current_version, isoformat, publish_event, utcnow
from ..models import Order, OrderLine, OrderStatus, money
from .events import OrderCreated, OrderMarkedFailed
from .queries import get_order

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    customer_id: str,
    lines: list[OrderLine],
    total: Decimal,
    status: OrderStatus = OrderStatus.PAID,
    currency: str = "GBP",
    payment_transaction_id: str | None = None,
) -> tuple[Order, bool]:
    """
    Idempotent order creation

    Returns ``(order, created)``. The insert is skipped when the id already
    exists, and the stored order is returned unchanged.
    """
    now = utcnow()
    total = money(total)

    result = await session.execute(
        text("""
            INSERT INTO orders
                (id, customer_id, status, total, currency, payment_transaction_id, created_at, updated_at)
            VALUES
                (:id, :customer_id, :status, :total, :currency, :txn, :now, :now)
            ON CONFLICT (id) DO NOTHING
        """).bindparams(bindparam("total", type_=Numeric(18, 2))),
        {
            "id": order_id,
            "customer_id": customer_id,
            "status": status.value,
            "total": total,
            "currency": currency,
            "txn": payment_transaction_id,
            "now": isoformat(now),
        },
    )

    if result.rowcount != 1:
        await session.rollback()
        existing = await get_order(session, order_id)
        if existing.customer_id != customer_id:
            raise IdempotencyConflictError(
                f"Order {order_id} already exists for another customer", order_id=order_id
            )
        logger.info("Order %s already exists; returning stored order", order_id)
        return existing, False

    for line_no, line in enumerate(lines, start=1):
        await session.execute(
            text("""
                INSERT INTO order_lines (order_id, line_no, sku, name, unit_price, quantity)
                VALUES (:order_id, :line_no, :sku, :name, :unit_price, :quantity)
            """).bindparams(bindparam("unit_price", type_=Numeric(18, 2))),
            {
                "order_id": order_id,
                "line_no": line_no,
                "sku": line.sku,
                "name": line.name,
                "unit_price": money(line.unit_price),
                "quantity": line.quantity,
            },
        )

    event = OrderCreated(
        order_id=order_id,
        customer_id=customer_id,
        status=status.value,
        total=total,
        currency=currency,
        payment_transaction_id=payment_transaction_id,
        line_count=len(lines),
        timestamp=now,
    ).model_dump(mode="json")
    await append_event(session, order_id, "Order", "OrderCreated", event, 0)
    await session.commit()

    await publish_event(redis, CHANNEL, "OrderCreated", event)
    logger.info("Created order %s for %s (total=%s %s)", order_id, customer_id, total, currency)

    order = Order(
        id=order_id,
        customer_id=customer_id,
        status=status,
        total=total,
        currency=currency,
        payment_transaction_id=payment_transaction_id,
        lines=lines,
        created_at=now,
    )
    return order, True


async def mark_failed(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: str,
    reason: str,
) -> Order:
    """Record a late failure on an existing order. Repeating it is a no-op."""
    order = await get_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
    if order.status is OrderStatus.FAILED:
        return order

    now = utcnow()
    await session.execute(
        text("UPDATE orders SET status = :status, updated_at = :now WHERE id = :id"),
        {"status": OrderStatus.FAILED.value, "now": isoformat(now), "id": order_id},
    )
    event = OrderMarkedFailed(order_id=order_id, reason=reason, timestamp=now).model_dump(mode="json")
    version = await current_version(session, order_id)
    await append_event(session, order_id, "Order", "OrderMarkedFailed", event, version)
    await session.commit()

    await publish_event(redis, CHANNEL, "OrderMarkedFailed", event)
    logger.warning("Order %s marked Failed: %s", order_id, reason)
    return order.model_copy(update={"status": OrderStatus.FAILED})
