"""
Cart Service — schema

A cart row exists once a customer has added something; its lines keep the
order they were added in (``position``).
"""

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS carts (
        customer_id TEXT PRIMARY KEY,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_lines (
        customer_id TEXT NOT NULL,
        sku         TEXT NOT NULL,
        name        TEXT NOT NULL,
        unit_price  NUMERIC(18, 2) NOT NULL,
        quantity    INTEGER NOT NULL CHECK (quantity > 0),
        position    INTEGER NOT NULL,
        PRIMARY KEY (customer_id, sku)
    )
    """,
]
