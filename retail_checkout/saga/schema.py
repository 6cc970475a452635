"""
Saga Service — schema

One row per checkout attempt. ``state`` holds the full SagaState as JSON;
the other columns are copies used for lookups.
"""

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sagas (
        saga_id     TEXT PRIMARY KEY,
        customer_id TEXT NOT NULL,
        status      TEXT NOT NULL,
        order_id    TEXT,
        state       TEXT NOT NULL,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sagas_status ON sagas (status, updated_at)",
]
