"""
Cart Service — query handlers
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Cart, CartLine, money


async def get_cart(session: AsyncSession, customer_id: str) -> Cart | None:
    """The customer's cart with its lines in the order they were added, or None."""
    result = await session.execute(
        text("SELECT customer_id FROM carts WHERE customer_id = :cid"),
        {"cid": customer_id},
    )
    if result.fetchone() is None:
        return None

    lines = await session.execute(
        text("""
            SELECT sku, name, unit_price, quantity
            FROM cart_lines
            WHERE customer_id = :cid
            ORDER BY position ASC
        """),
        {"cid": customer_id},
    )
    return Cart(
        customer_id=customer_id,
        lines=[
            CartLine(
                sku=row.sku,
                name=row.name,
                unit_price=money(row.unit_price),
                quantity=row.quantity,
            )
            for row in lines.fetchall()
        ],
    )
