"""
Cart Service — command handlers

From the checkout's point of view a cart is read, then cleared. Adding a
SKU that is already in the cart increases that line's quantity.
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy import Numeric, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..event_store import isoformat, publish_event, utcnow
from ..models import Cart, CartLine, money
from .queries import get_cart

logger = logging.getLogger(__name__)

CHANNEL = "cart_events"


async def add_line(
    session: AsyncSession,
    redis: aioredis.Redis,
    customer_id: str,
    line: CartLine,
) -> Cart:
    now = isoformat(utcnow())
    await session.execute(
        text("""
            INSERT INTO carts (customer_id, created_at, updated_at)
            VALUES (:cid, :now, :now)
            ON CONFLICT (customer_id) DO UPDATE SET updated_at = :now
        """),
        {"cid": customer_id, "now": now},
    )
    await session.execute(
        text("""
            INSERT INTO cart_lines (customer_id, sku, name, unit_price, quantity, position)
            VALUES (
                :cid, :sku, :name, :unit_price, :qty,
                (SELECT COALESCE(MAX(position), 0) + 1 FROM cart_lines WHERE customer_id = :cid)
            )
            ON CONFLICT (customer_id, sku) DO UPDATE
                SET quantity = cart_lines.quantity + excluded.quantity
        """).bindparams(bindparam("unit_price", type_=Numeric(18, 2))),
        {
            "cid": customer_id,
            "sku": line.sku,
            "name": line.name,
            "unit_price": money(line.unit_price),
            "qty": line.quantity,
        },
    )
    await session.commit()

    await publish_event(redis, CHANNEL, "CartLineAdded", {
        "customer_id": customer_id,
        "sku": line.sku,
        "quantity": line.quantity,
        "timestamp": now,
    })
    return await get_cart(session, customer_id)


async def clear_cart(
    session: AsyncSession,
    redis: aioredis.Redis,
    customer_id: str,
) -> bool:
    """Delete the cart and its lines. Returns False when there was nothing to clear."""
    await session.execute(
        text("DELETE FROM cart_lines WHERE customer_id = :cid"),
        {"cid": customer_id},
    )
    result = await session.execute(
        text("DELETE FROM carts WHERE customer_id = :cid"),
        {"cid": customer_id},
    )
    await session.commit()

    cleared = result.rowcount > 0
    if cleared:
        await publish_event(redis, CHANNEL, "CartCleared", {
            "customer_id": customer_id,
            "timestamp": isoformat(utcnow()),
        })
        logger.info("Cleared cart of %s", customer_id)
    return cleared
