"""
Event store — append-only audit log of every state change.

Each service keeps its own ``event_store`` table. Events of one aggregate
are numbered by ``version``; the primary key on ``(aggregate_id, version)``
rejects a second writer that appends from a stale version.
Events are also published on a Redis pub/sub channel for other services.
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

EVENT_STORE_DDL = """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id   TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type     TEXT NOT NULL,
        event_data     TEXT NOT NULL,
        version        INTEGER NOT NULL,
        created_at     TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Fixed-width UTC timestamp; stored as text so it sorts lexically."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    new_version = expected_version + 1
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """),
        {
            "agg_id": aggregate_id,
            "agg_type": aggregate_type,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": new_version,
            "now": isoformat(utcnow()),
        },
    )
    return new_version


async def current_version(session: AsyncSession, aggregate_id: str) -> int:
    result = await session.execute(
        text("SELECT MAX(version) AS version FROM event_store WHERE aggregate_id = :agg_id"),
        {"agg_id": aggregate_id},
    )
    return result.scalar() or 0


def _event_record(row) -> dict:
    record = dict(row._mapping)
    record["event_data"] = json.loads(record["event_data"])
    return record


async def load_events(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """Events of one aggregate in version order."""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [_event_record(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT aggregate_id, aggregate_type, event_type, event_data, version, created_at
            FROM event_store
            ORDER BY created_at ASC, version ASC
        """),
    )
    return [_event_record(row) for row in result.fetchall()]


async def publish_event(
    redis: aioredis.Redis,
    channel: str,
    event_type: str,
    data: dict,
) -> None:
    """
    Publish an already-committed event.

    Pub/sub is fire-and-forget: a Redis outage is logged but does not fail the
    command, whose state change is already durable in the event store.
    """
    try:
        await redis.publish(
            channel,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.warning("Failed to publish %s on %s", event_type, channel, exc_info=True)
