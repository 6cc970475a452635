"""
Order Service — query handlers
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Order, OrderLine, OrderStatus, money


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None

    lines = await session.execute(
        text("SELECT * FROM order_lines WHERE order_id = :id ORDER BY line_no"),
        {"id": order_id},
    )
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        status=OrderStatus(row.status),
        total=money(row.total),
        currency=row.currency,
        payment_transaction_id=row.payment_transaction_id,
        created_at=row.created_at,
        lines=[
            OrderLine(
                sku=line.sku,
                name=line.name,
                unit_price=money(line.unit_price),
                quantity=line.quantity,
            )
            for line in lines.fetchall()
        ],
    )
