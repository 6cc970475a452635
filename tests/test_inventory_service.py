"""
Tests for the inventory service HTTP API and the client the saga uses for it.
"""

import pytest

from retail_checkout.errors import AlreadyTerminalError, InsufficientStockError, ReservationNotFoundError
from retail_checkout.models import ReservationStatus
from retail_checkout.saga.clients import InventoryClient


class TestInventoryEndpoints:
    @pytest.mark.asyncio
    async def test_restock_and_read(self, inventory_http):
        resp = await inventory_http.post("/inventory/WIDGET/stock", json={"quantity": 7})
        assert resp.status_code == 200

        body = (await inventory_http.get("/inventory/WIDGET")).json()

        assert body == {"sku": "WIDGET", "quantity": 7, "reserved": 0, "available": 7}

    @pytest.mark.asyncio
    async def test_reserve_commit_release(self, inventory_http, stocked):
        resp = await inventory_http.post(
            "/inventory/WIDGET/reserve", json={"reservationId": "r-1", "quantity": 2}
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "Reserved"

        resp = await inventory_http.post("/inventory/WIDGET/commit", json={"reservationId": "r-1"})
        assert resp.json()["status"] == "Committed"

        resp = await inventory_http.post("/inventory/WIDGET/release", json={"reservationId": "r-1"})
        assert resp.status_code == 200
        assert resp.json()["released"] is False
        assert resp.json()["reservation"]["status"] == "Committed"
        assert (await inventory_http.get("/inventory/WIDGET")).json()["quantity"] == 8

    @pytest.mark.asyncio
    async def test_release_unknown_reservation_succeeds(self, inventory_http):
        resp = await inventory_http.post("/inventory/WIDGET/release", json={"reservationId": "nope"})

        assert resp.status_code == 200
        assert resp.json() == {"released": False, "reservation": None}

    @pytest.mark.asyncio
    async def test_commit_under_the_wrong_sku_is_404(self, inventory_http, stocked):
        await inventory_http.post("/inventory/WIDGET/reserve", json={"reservationId": "r-1", "quantity": 2})

        resp = await inventory_http.post("/inventory/GADGET/commit", json={"reservationId": "r-1"})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_out_of_stock_is_409(self, inventory_http, stocked):
        resp = await inventory_http.post(
            "/inventory/GADGET/reserve", json={"reservationId": "r-1", "quantity": 6}
        )

        assert resp.status_code == 409
        body = resp.json()
        assert body["errorKind"] == "InsufficientStock"
        assert body["details"]["available"] == 5

    @pytest.mark.asyncio
    async def test_manual_sweep(self, inventory_http):
        resp = await inventory_http.post("/inventory/sweep")
        assert resp.json() == {"released": 0}

    @pytest.mark.asyncio
    async def test_events_carry_the_correlation_id(self, inventory_http, stocked):
        await inventory_http.post(
            "/inventory/WIDGET/reserve",
            json={"reservationId": "r-1", "quantity": 1},
            headers={"X-Correlation-ID": "saga-77"},
        )

        events = (await inventory_http.get("/events/WIDGET")).json()

        assert events[-1]["event_type"] == "InventoryReserved"
        assert events[-1]["event_data"]["correlation_id"] == "saga-77"


class TestInventoryClient:
    @pytest.mark.asyncio
    async def test_errors_come_back_as_the_same_exceptions(self, inventory_http, stocked):
        client = InventoryClient(inventory_http)

        with pytest.raises(InsufficientStockError) as exc_info:
            await client.reserve("GADGET", 9, "r-1")
        assert exc_info.value.sku == "GADGET"

        with pytest.raises(ReservationNotFoundError):
            await client.commit("WIDGET", "missing")

        await client.reserve("WIDGET", 1, "r-2")
        assert await client.release("WIDGET", "r-2") is True
        with pytest.raises(AlreadyTerminalError):
            await client.commit("WIDGET", "r-2")

    @pytest.mark.asyncio
    async def test_get_reservation(self, inventory_http, stocked):
        client = InventoryClient(inventory_http)
        await client.reserve("WIDGET", 1, "r-1", correlation_id="saga-1")

        reservation = await client.get_reservation("r-1")

        assert reservation.status is ReservationStatus.RESERVED
        assert await client.get_reservation("missing") is None
