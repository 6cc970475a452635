"""
Inventory Service — schema

``inventory_items.reserved`` is the running sum of Reserved reservations for
the SKU, so ``quantity - reserved`` is the available stock. ``version`` is
bumped by every write to the row and doubles as the event-store version of
the SKU aggregate.
"""

from ..event_store import EVENT_STORE_DDL

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        sku        TEXT PRIMARY KEY,
        quantity   INTEGER NOT NULL CHECK (quantity >= 0),
        reserved   INTEGER NOT NULL DEFAULT 0 CHECK (reserved >= 0),
        version    INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL,
        CHECK (reserved <= quantity)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id TEXT PRIMARY KEY,
        sku            TEXT NOT NULL,
        quantity       INTEGER NOT NULL CHECK (quantity > 0),
        status         TEXT NOT NULL,
        correlation_id TEXT,
        created_at     TEXT NOT NULL,
        expires_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_reservations_status_expires
        ON reservations (status, expires_at)
    """,
    EVENT_STORE_DDL,
]
