"""
Tests for the inventory reservation ledger.
"""

import asyncio
from datetime import timedelta

import pytest

from retail_checkout.errors import (
    AlreadyTerminalError,
    IdempotencyConflictError,
    InsufficientStockError,
    ReservationNotFoundError,
    ValidationError,
)
from retail_checkout.event_store import load_events
from retail_checkout.inventory.ledger import InventoryLedger
from retail_checkout.models import ReservationStatus


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_holds_stock(self, ledger):
        await ledger.add_stock("WIDGET", 10)

        reservation = await ledger.reserve("WIDGET", 3, "r-1")

        assert reservation.status is ReservationStatus.RESERVED
        assert reservation.expires_at > reservation.created_at
        item = await ledger.get_item("WIDGET")
        assert (item.quantity, item.reserved, item.available) == (10, 3, 7)

    @pytest.mark.asyncio
    async def test_duplicate_reserve_changes_availability_once(self, ledger):
        await ledger.add_stock("WIDGET", 10)

        first = await ledger.reserve("WIDGET", 4, "r-dup")
        second = await ledger.reserve("WIDGET", 4, "r-dup")

        assert second == first
        assert (await ledger.get_item("WIDGET")).available == 6

    @pytest.mark.asyncio
    async def test_reusing_id_with_other_parameters_conflicts(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 4, "r-1")

        with pytest.raises(IdempotencyConflictError):
            await ledger.reserve("WIDGET", 5, "r-1")
        assert (await ledger.get_item("WIDGET")).available == 6

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, ledger):
        await ledger.add_stock("WIDGET", 3)

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve("WIDGET", 5, "r-1")

        assert exc_info.value.sku == "WIDGET"
        assert exc_info.value.details["available"] == 3
        assert await ledger.get_reservation("r-1") is None
        assert (await ledger.get_item("WIDGET")).reserved == 0

    @pytest.mark.asyncio
    async def test_unknown_sku_has_nothing_available(self, ledger):
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve("NOPE", 1, "r-1")
        assert exc_info.value.details["available"] == 0

    @pytest.mark.asyncio
    async def test_non_positive_quantity_is_rejected(self, ledger):
        await ledger.add_stock("WIDGET", 3)
        with pytest.raises(ValidationError):
            await ledger.reserve("WIDGET", 0, "r-1")

    @pytest.mark.asyncio
    async def test_concurrent_reserves_never_oversell(self, ledger):
        await ledger.add_stock("WIDGET", 5)

        results = await asyncio.gather(
            *(ledger.reserve("WIDGET", 1, f"r-{n}") for n in range(12)),
            return_exceptions=True,
        )

        won = [r for r in results if not isinstance(r, BaseException)]
        lost = [r for r in results if isinstance(r, BaseException)]
        assert len(won) == 5
        assert all(isinstance(e, InsufficientStockError) for e in lost)
        item = await ledger.get_item("WIDGET")
        assert item.reserved == 5
        assert item.available == 0


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_decrements_quantity(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 3, "r-1")

        committed = await ledger.commit("r-1")

        assert committed.status is ReservationStatus.COMMITTED
        item = await ledger.get_item("WIDGET")
        assert (item.quantity, item.reserved, item.available) == (7, 0, 7)

    @pytest.mark.asyncio
    async def test_repeated_commit_is_side_effect_free(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 3, "r-1")
        await ledger.commit("r-1")

        again = await ledger.commit("r-1")

        assert again.status is ReservationStatus.COMMITTED
        assert (await ledger.get_item("WIDGET")).quantity == 7

    @pytest.mark.asyncio
    async def test_commit_unknown_reservation(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            await ledger.commit("missing")

    @pytest.mark.asyncio
    async def test_commit_after_release_is_refused(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 3, "r-1")
        await ledger.release("r-1")

        with pytest.raises(AlreadyTerminalError):
            await ledger.commit("r-1")
        assert (await ledger.get_item("WIDGET")).quantity == 10

    @pytest.mark.asyncio
    async def test_commit_after_expiry_is_refused(self, sqlite, redis):
        ledger = InventoryLedger(sqlite("expiring"), redis, reservation_ttl=timedelta(0))
        await ledger.create_schema()
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 3, "r-1")

        with pytest.raises(AlreadyTerminalError):
            await ledger.commit("r-1")

    @pytest.mark.asyncio
    async def test_expired_hold_is_given_back_to_the_next_reserve(self, sqlite, redis):
        ledger = InventoryLedger(sqlite("expired"), redis, reservation_ttl=timedelta(seconds=-1))
        await ledger.create_schema()
        await ledger.add_stock("WIDGET", 3)
        await ledger.reserve("WIDGET", 3, "r-1")
        with pytest.raises(AlreadyTerminalError):
            await ledger.commit("r-1")

        await ledger.reserve("WIDGET", 1, "r-2")

        assert (await ledger.get_reservation("r-1")).status is ReservationStatus.RELEASED
        item = await ledger.get_item("WIDGET")
        assert (item.quantity, item.reserved) == (3, 1)
        assert await ledger.sweep_expired() == 1  # only r-2 is left to sweep

    @pytest.mark.asyncio
    async def test_expiry_on_reserve_is_recorded(self, sqlite, redis):
        ledger = InventoryLedger(sqlite("expired-events"), redis, reservation_ttl=timedelta(seconds=-1))
        await ledger.create_schema()
        await ledger.add_stock("WIDGET", 5)
        await ledger.reserve("WIDGET", 2, "r-1")
        await ledger.reserve("WIDGET", 2, "r-2")
        await ledger.reserve("WIDGET", 5, "r-3")

        async with ledger.session_factory() as session:
            events = await load_events(session, "WIDGET")
        assert [e["event_type"] for e in events] == [
            "InventoryRestocked",
            "InventoryReserved",
            "ReservationExpired",
            "InventoryReserved",
            "ReservationExpired",
            "InventoryReserved",
        ]
        assert [e["version"] for e in events] == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_live_holds_still_count_against_availability(self, ledger):
        await ledger.add_stock("WIDGET", 3)
        await ledger.reserve("WIDGET", 3, "r-1")

        with pytest.raises(InsufficientStockError):
            await ledger.reserve("WIDGET", 1, "r-2")


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_restores_availability_exactly(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 2, "r-a")
        await ledger.reserve("WIDGET", 3, "r-b")

        released = await ledger.release("r-b")

        assert released.status is ReservationStatus.RELEASED
        item = await ledger.get_item("WIDGET")
        assert (item.quantity, item.reserved, item.available) == (10, 2, 8)

    @pytest.mark.asyncio
    async def test_release_is_safe_to_repeat(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 2, "r-a")

        await ledger.release("r-a")
        again = await ledger.release("r-a")

        assert again.status is ReservationStatus.RELEASED
        assert (await ledger.get_item("WIDGET")).available == 10

    @pytest.mark.asyncio
    async def test_release_unknown_reservation_returns_none(self, ledger):
        assert await ledger.release("missing") is None

    @pytest.mark.asyncio
    async def test_release_after_commit_is_a_no_op(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 2, "r-a")
        await ledger.commit("r-a")

        reservation = await ledger.release("r-a")

        assert reservation.status is ReservationStatus.COMMITTED
        item = await ledger.get_item("WIDGET")
        assert (item.quantity, item.available) == (8, 8)


class TestSweep:
    @pytest.mark.asyncio
    async def test_expired_reservations_are_swept_to_released(self, sqlite, redis):
        ledger = InventoryLedger(sqlite("sweep"), redis, reservation_ttl=timedelta(0))
        await ledger.create_schema()
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 4, "r-old")

        assert await ledger.sweep_expired() == 1

        assert (await ledger.get_reservation("r-old")).status is ReservationStatus.RELEASED
        assert (await ledger.get_item("WIDGET")).available == 10
        assert await ledger.sweep_expired() == 0

    @pytest.mark.asyncio
    async def test_live_reservations_survive_the_sweep(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 4, "r-live")

        assert await ledger.sweep_expired() == 0
        assert (await ledger.get_reservation("r-live")).status is ReservationStatus.RESERVED

    @pytest.mark.asyncio
    async def test_sweep_at_a_later_time(self, ledger):
        await ledger.add_stock("WIDGET", 10)
        reservation = await ledger.reserve("WIDGET", 4, "r-1")

        released = await ledger.sweep_expired(now=reservation.expires_at + timedelta(seconds=1))

        assert released == 1
        assert (await ledger.get_item("WIDGET")).available == 10


class TestEvents:
    @pytest.mark.asyncio
    async def test_every_change_is_recorded_and_published(self, ledger, redis):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 2, "r-1")
        await ledger.commit("r-1")

        async with ledger.session_factory() as session:
            events = await load_events(session, "WIDGET")

        assert [e["event_type"] for e in events] == [
            "InventoryRestocked",
            "InventoryReserved",
            "InventoryCommitted",
        ]
        assert [e["version"] for e in events] == [1, 2, 3]
        channels = {call.args[0] for call in redis.publish.await_args_list}
        assert channels == {"inventory_events"}
        assert redis.publish.await_count == 3

    @pytest.mark.asyncio
    async def test_duplicate_reserve_publishes_nothing(self, ledger, redis):
        await ledger.add_stock("WIDGET", 10)
        await ledger.reserve("WIDGET", 2, "r-1")
        redis.publish.reset_mock()

        await ledger.reserve("WIDGET", 2, "r-1")

        redis.publish.assert_not_awaited()
