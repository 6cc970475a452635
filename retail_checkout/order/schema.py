"""
Order Service — schema
"""

from ..event_store import EVENT_STORE_DDL

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                     TEXT PRIMARY KEY,
        customer_id            TEXT NOT NULL,
        status                 TEXT NOT NULL,
        total                  NUMERIC(18, 2) NOT NULL,
        currency               TEXT NOT NULL,
        payment_transaction_id TEXT,
        created_at             TEXT NOT NULL,
        updated_at             TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_lines (
        order_id   TEXT NOT NULL,
        line_no    INTEGER NOT NULL,
        sku        TEXT NOT NULL,
        name       TEXT NOT NULL,
        unit_price NUMERIC(18, 2) NOT NULL,
        quantity   INTEGER NOT NULL,
        PRIMARY KEY (order_id, line_no)
    )
    """,
    EVENT_STORE_DDL,
]
