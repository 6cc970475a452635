"""
Inventory Service — reservation ledger

Stock for a SKU moves through provisional holds:

    reserve ──▶ Reserved ──commit──▶ Committed   (quantity decremented)
                    │
                    └──release / TTL──▶ Released (hold given back)

    available = quantity - Σ(quantity of Reserved reservations)

Every write to a SKU goes through one compare-and-swap on
``inventory_items.version``: read the row, check, then
``UPDATE ... WHERE version = :seen``. A writer that lost the race sees zero
rows updated, rolls back and re-reads, so two concurrent reserves can never
both take the last unit. The expiry sweeper uses the same path, and a
reserve gives back the SKU's expired holds before it checks availability.
"""

import asyncio
import logging
import random
from datetime import timedelta

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .. import db
from ..config import LEDGER_CAS_ATTEMPTS, RESERVATION_TTL_SECONDS
from ..errors import (
    AlreadyTerminalError,
    DownstreamUnavailableError,
    IdempotencyConflictError,
    InsufficientStockError,
    ReservationNotFoundError,
    ValidationError,
)
from ..event_store import append_event, isoformat, publish_event, utcnow
from ..logs import correlation_id
from ..models import InventoryItem, Reservation, ReservationStatus
from .events import (
    InventoryCommitted,
    InventoryReleased,
    InventoryReserved,
    InventoryRestocked,
    ReservationExpired,
)
from .schema import SCHEMA

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Inventory"
CHANNEL = "inventory_events"

# Returned by a CAS attempt that lost the race and must be retried.
_CONFLICT = object()


class InventoryLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        *,
        reservation_ttl: timedelta = timedelta(seconds=RESERVATION_TTL_SECONDS),
        cas_attempts: int = LEDGER_CAS_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.reservation_ttl = reservation_ttl
        self.cas_attempts = cas_attempts

    async def create_schema(self) -> None:
        await db.create_schema(self.session_factory, SCHEMA)

    # ── Commands ─────────────────────────────────

    async def add_stock(self, sku: str, quantity: int) -> InventoryItem:
        """Add owned stock to a SKU, creating it if needed."""
        if quantity <= 0:
            raise ValidationError("Restock quantity must be positive", sku=sku, quantity=quantity)

        async def attempt(session: AsyncSession):
            item = await self._load_item(session, sku)
            now = utcnow()
            if item is None:
                result = await session.execute(
                    text("""
                        INSERT INTO inventory_items (sku, quantity, reserved, version, updated_at)
                        VALUES (:sku, :qty, 0, 1, :now)
                        ON CONFLICT (sku) DO NOTHING
                    """),
                    {"sku": sku, "qty": quantity, "now": isoformat(now)},
                )
                if result.rowcount != 1:
                    return _CONFLICT
                version, new_quantity, reserved = 0, quantity, 0
            else:
                if not await self._bump(session, item, now, quantity_delta=quantity):
                    return _CONFLICT
                version, new_quantity, reserved = item.version, item.quantity + quantity, item.reserved

            event = InventoryRestocked(
                sku=sku, quantity=quantity, new_quantity=new_quantity, timestamp=now
            ).model_dump(mode="json")
            await append_event(session, sku, AGGREGATE_TYPE, "InventoryRestocked", event, version)
            await session.commit()
            restocked = InventoryItem(sku=sku, quantity=new_quantity, reserved=reserved)
            return restocked, [("InventoryRestocked", event)]

        item = await self._run_cas("add_stock", sku, attempt)
        logger.info("Restocked %s +%d (quantity=%d)", sku, quantity, item.quantity)
        return item

    async def reserve(self, sku: str, quantity: int, reservation_id: str) -> Reservation:
        """
        Put ``quantity`` units of ``sku`` on hold.

        Idempotent by ``reservation_id``: a repeated call returns the stored
        reservation and leaves availability untouched.
        """
        if quantity <= 0:
            raise ValidationError("Reservation quantity must be positive", sku=sku, quantity=quantity)

        async def attempt(session: AsyncSession):
            existing = await self._load_reservation(session, reservation_id)
            if existing is not None:
                if existing.sku != sku or existing.quantity != quantity:
                    raise IdempotencyConflictError(
                        f"Reservation {reservation_id} already exists for "
                        f"{existing.sku} x{existing.quantity}",
                        reservation_id=reservation_id,
                    )
                return existing, []

            now = utcnow()
            item = await self._load_item(session, sku)
            expired = await self._load_expired(session, sku, now) if item is not None else []
            freed = sum(r.quantity for r in expired)
            available = item.quantity - item.reserved + freed if item is not None else 0
            if available < quantity:
                raise InsufficientStockError(
                    f"Out of stock: {sku} (requested={quantity}, available={available})",
                    sku=sku,
                    requested=quantity,
                    available=available,
                )

            # Expired holds are given back in the same write, one event each.
            if not await self._bump(
                session, item, now, reserved_delta=quantity - freed, versions=len(expired) + 1
            ):
                return _CONFLICT
            version = item.version
            events = []
            for old in expired:
                if not await self._set_status(session, old.reservation_id, ReservationStatus.RELEASED, now):
                    return _CONFLICT
                event = ReservationExpired(
                    sku=sku,
                    reservation_id=old.reservation_id,
                    quantity=old.quantity,
                    expires_at=old.expires_at,
                    timestamp=now,
                ).model_dump(mode="json")
                version = await append_event(session, sku, AGGREGATE_TYPE, "ReservationExpired", event, version)
                events.append(("ReservationExpired", event))

            reservation = Reservation(
                reservation_id=reservation_id,
                sku=sku,
                quantity=quantity,
                status=ReservationStatus.RESERVED,
                created_at=now,
                expires_at=now + self.reservation_ttl,
            )
            await session.execute(
                text("""
                    INSERT INTO reservations
                        (reservation_id, sku, quantity, status, correlation_id,
                         created_at, expires_at, updated_at)
                    VALUES
                        (:id, :sku, :qty, :status, :cid, :created, :expires, :created)
                """),
                {
                    "id": reservation_id,
                    "sku": sku,
                    "qty": quantity,
                    "status": ReservationStatus.RESERVED.value,
                    "cid": correlation_id.get(),
                    "created": isoformat(reservation.created_at),
                    "expires": isoformat(reservation.expires_at),
                },
            )
            event = InventoryReserved(
                sku=sku,
                reservation_id=reservation_id,
                quantity=quantity,
                expires_at=reservation.expires_at,
                correlation_id=correlation_id.get(),
                timestamp=now,
            ).model_dump(mode="json")
            await append_event(session, sku, AGGREGATE_TYPE, "InventoryReserved", event, version)
            await session.commit()
            if expired:
                logger.info("Expired %d hold(s) on %s while reserving", len(expired), sku)
            logger.info(
                "Reserved %s x%d (reservation=%s, available=%d)",
                sku, quantity, reservation_id, available - quantity,
            )
            return reservation, events + [("InventoryReserved", event)]

        return await self._run_cas("reserve", sku, attempt)

    async def commit(self, reservation_id: str) -> Reservation:
        """
        Turn a hold into a sale and decrement owned stock.

        This is the checkout's point of no return; the ledger offers no undo.
        Committing an already Committed reservation returns it unchanged.
        """

        async def attempt(session: AsyncSession):
            reservation = await self._load_reservation(session, reservation_id)
            if reservation is None:
                raise ReservationNotFoundError(
                    f"Reservation {reservation_id} not found", reservation_id=reservation_id
                )
            if reservation.status is ReservationStatus.COMMITTED:
                return reservation, []
            if reservation.status is ReservationStatus.RELEASED:
                raise AlreadyTerminalError(
                    f"Reservation {reservation_id} was released",
                    reservation_id=reservation_id,
                    status=reservation.status.value,
                )

            now = utcnow()
            if reservation.expires_at <= now:
                # Expired holds count as released even before the sweeper runs.
                raise AlreadyTerminalError(
                    f"Reservation {reservation_id} expired at {reservation.expires_at.isoformat()}",
                    reservation_id=reservation_id,
                    status=ReservationStatus.RELEASED.value,
                )

            item = await self._load_item(session, reservation.sku)
            if not await self._bump(
                session, item, now,
                quantity_delta=-reservation.quantity,
                reserved_delta=-reservation.quantity,
            ):
                return _CONFLICT
            if not await self._set_status(session, reservation_id, ReservationStatus.COMMITTED, now):
                return _CONFLICT

            event = InventoryCommitted(
                sku=reservation.sku,
                reservation_id=reservation_id,
                quantity=reservation.quantity,
                correlation_id=correlation_id.get(),
                timestamp=now,
            ).model_dump(mode="json")
            await append_event(
                session, reservation.sku, AGGREGATE_TYPE, "InventoryCommitted", event, item.version
            )
            await session.commit()
            logger.info(
                "Committed %s x%d (reservation=%s)",
                reservation.sku, reservation.quantity, reservation_id,
            )
            committed = reservation.model_copy(update={"status": ReservationStatus.COMMITTED})
            return committed, [("InventoryCommitted", event)]

        return await self._run_cas("commit", reservation_id, attempt)

    async def release(self, reservation_id: str) -> Reservation | None:
        """
        Give a hold back to the available pool.

        Never fails for an unknown or already terminal reservation: it is the
        compensation path and must be safe to call any number of times.
        """
        reservation, _ = await self._release(reservation_id, expired=False)
        return reservation

    async def sweep_expired(self, now=None) -> int:
        """Release every Reserved reservation past its TTL. Returns how many were released."""
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT reservation_id FROM reservations
                    WHERE status = :status AND expires_at <= :now
                    ORDER BY expires_at ASC
                """),
                {"status": ReservationStatus.RESERVED.value, "now": isoformat(now)},
            )
            expired_ids = [row.reservation_id for row in result.fetchall()]

        released = 0
        for reservation_id in expired_ids:
            try:
                _, transitioned = await self._release(reservation_id, expired=True)
            except DownstreamUnavailableError:
                logger.warning("Could not sweep reservation %s; will retry next run", reservation_id)
                continue
            if transitioned:
                released += 1
        if released:
            logger.info("Swept %d expired reservation(s)", released)
        return released

    # ── Queries ──────────────────────────────────

    async def get_item(self, sku: str) -> InventoryItem | None:
        async with self.session_factory() as session:
            row = await self._load_item(session, sku)
        if row is None:
            return None
        return InventoryItem(sku=row.sku, quantity=row.quantity, reserved=row.reserved)

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        async with self.session_factory() as session:
            return await self._load_reservation(session, reservation_id)

    # ── Internals ────────────────────────────────

    async def _release(self, reservation_id: str, expired: bool) -> tuple[Reservation | None, bool]:
        async def attempt(session: AsyncSession):
            reservation = await self._load_reservation(session, reservation_id)
            if reservation is None or reservation.status.is_terminal:
                return (reservation, False), []

            now = utcnow()
            item = await self._load_item(session, reservation.sku)
            if not await self._bump(session, item, now, reserved_delta=-reservation.quantity):
                return _CONFLICT
            if not await self._set_status(session, reservation_id, ReservationStatus.RELEASED, now):
                return _CONFLICT

            if expired:
                event_type = "ReservationExpired"
                event = ReservationExpired(
                    sku=reservation.sku,
                    reservation_id=reservation_id,
                    quantity=reservation.quantity,
                    expires_at=reservation.expires_at,
                    timestamp=now,
                ).model_dump(mode="json")
            else:
                event_type = "InventoryReleased"
                event = InventoryReleased(
                    sku=reservation.sku,
                    reservation_id=reservation_id,
                    quantity=reservation.quantity,
                    correlation_id=correlation_id.get(),
                    timestamp=now,
                ).model_dump(mode="json")
            await append_event(session, reservation.sku, AGGREGATE_TYPE, event_type, event, item.version)
            await session.commit()
            logger.info(
                "%s %s x%d (reservation=%s)",
                "Expired" if expired else "Released",
                reservation.sku, reservation.quantity, reservation_id,
            )
            released = reservation.model_copy(update={"status": ReservationStatus.RELEASED})
            return (released, True), [(event_type, event)]

        return await self._run_cas("release", reservation_id, attempt)

    async def _run_cas(self, operation: str, key: str, attempt):
        """
        Run ``attempt`` in a fresh session until it stops reporting a conflict.

        ``attempt`` commits its own session and returns ``(value, events)``;
        the events are published once the commit has succeeded.
        """
        for n in range(1, self.cas_attempts + 1):
            async with self.session_factory() as session:
                try:
                    outcome = await attempt(session)
                except IntegrityError:
                    await session.rollback()
                    outcome = _CONFLICT
                if outcome is _CONFLICT:
                    await session.rollback()

            if outcome is not _CONFLICT:
                value, events = outcome
                for event_type, data in events:
                    await publish_event(self.redis, CHANNEL, event_type, data)
                return value

            logger.debug("%s on %s lost a write race (attempt %d)", operation, key, n)
            await asyncio.sleep(random.uniform(0, 0.002 * n))

        raise DownstreamUnavailableError(
            f"Inventory {operation} on {key} gave up after {self.cas_attempts} contended attempts",
            operation=operation,
        )

    async def _bump(
        self,
        session: AsyncSession,
        item,
        now,
        quantity_delta: int = 0,
        reserved_delta: int = 0,
        versions: int = 1,
    ) -> bool:
        """CAS write on the item row; ``versions`` is the number of events the write appends."""
        result = await session.execute(
            text("""
                UPDATE inventory_items
                SET quantity = quantity + :dq,
                    reserved = reserved + :dr,
                    version = version + :dv,
                    updated_at = :now
                WHERE sku = :sku AND version = :version
            """),
            {
                "dq": quantity_delta,
                "dr": reserved_delta,
                "dv": versions,
                "now": isoformat(now),
                "sku": item.sku,
                "version": item.version,
            },
        )
        return result.rowcount == 1

    async def _set_status(
        self,
        session: AsyncSession,
        reservation_id: str,
        status: ReservationStatus,
        now,
    ) -> bool:
        result = await session.execute(
            text("""
                UPDATE reservations
                SET status = :status, updated_at = :now
                WHERE reservation_id = :id AND status = :reserved
            """),
            {
                "status": status.value,
                "now": isoformat(now),
                "id": reservation_id,
                "reserved": ReservationStatus.RESERVED.value,
            },
        )
        return result.rowcount == 1

    async def _load_item(self, session: AsyncSession, sku: str):
        result = await session.execute(
            text("SELECT sku, quantity, reserved, version FROM inventory_items WHERE sku = :sku"),
            {"sku": sku},
        )
        return result.fetchone()

    async def _load_expired(self, session: AsyncSession, sku: str, now):
        result = await session.execute(
            text("""
                SELECT reservation_id, quantity, expires_at FROM reservations
                WHERE sku = :sku AND status = :status AND expires_at <= :now
            """),
            {"sku": sku, "status": ReservationStatus.RESERVED.value, "now": isoformat(now)},
        )
        return result.fetchall()

    async def _load_reservation(self, session: AsyncSession, reservation_id: str) -> Reservation | None:
        result = await session.execute(
            text("""
                SELECT reservation_id, sku, quantity, status, created_at, expires_at
                FROM reservations WHERE reservation_id = :id
            """),
            {"id": reservation_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return Reservation(
            reservation_id=row.reservation_id,
            sku=row.sku,
            quantity=row.quantity,
            status=ReservationStatus(row.status),
            created_at=row.created_at,
            expires_at=row.expires_at,
        )
