"""
Inventory Service — FastAPI entry point

Owns stock and the reservation ledger. Reserve, commit and release are all
keyed by the caller's reservation id, so a retried call never holds or
decrements stock twice.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from pydantic import Field

from .. import api, db
from ..config import (
    AUTO_CREATE_SCHEMA,
    LOG_LEVEL,
    REDIS_URL,
    RESERVATION_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    database_url,
)
from ..errors import NotFoundError, ReservationNotFoundError
from ..event_store import load_all_events, load_events
from ..logs import configure_logging
from ..models import ApiModel, ReservationStatus
from .ledger import InventoryLedger
from .sweeper import run_sweeper

router = APIRouter()


def get_ledger(request: Request) -> InventoryLedger:
    return request.app.state.ledger


# ── Request Models ───────────────────────────────


class ReserveRequest(ApiModel):
    reservation_id: str
    quantity: int


class ReservationRequest(ApiModel):
    reservation_id: str


class RestockRequest(ApiModel):
    quantity: int = Field(gt=0)


# ── Command Endpoints ────────────────────────────


@router.post("/inventory/sweep")
async def cmd_sweep(ledger: InventoryLedger = Depends(get_ledger)):
    """Release expired reservations now instead of waiting for the sweeper."""
    return {"released": await ledger.sweep_expired()}


@router.post("/inventory/{sku}/reserve")
async def cmd_reserve(sku: str, req: ReserveRequest, ledger: InventoryLedger = Depends(get_ledger)):
    """Hold stock for a checkout"""
    reservation = await ledger.reserve(sku, req.quantity, req.reservation_id)
    return reservation.to_json()


@router.post("/inventory/{sku}/commit")
async def cmd_commit(sku: str, req: ReservationRequest, ledger: InventoryLedger = Depends(get_ledger)):
    """Turn a hold into a sale (point of no return)"""
    await _require_sku(ledger, sku, req.reservation_id)
    reservation = await ledger.commit(req.reservation_id)
    return reservation.to_json()


@router.post("/inventory/{sku}/release")
async def cmd_release(sku: str, req: ReservationRequest, ledger: InventoryLedger = Depends(get_ledger)):
    """Give a hold back (compensation). Always succeeds."""
    reservation = await ledger.get_reservation(req.reservation_id)
    if reservation is not None and reservation.sku != sku:
        return {"released": False, "reservation": None}
    reservation = await ledger.release(req.reservation_id)
    return {
        "released": reservation is not None and reservation.status is ReservationStatus.RELEASED,
        "reservation": reservation.to_json() if reservation else None,
    }


@router.post("/inventory/{sku}/stock")
async def cmd_restock(sku: str, req: RestockRequest, ledger: InventoryLedger = Depends(get_ledger)):
    item = await ledger.add_stock(sku, req.quantity)
    return item.to_json()


async def _require_sku(ledger: InventoryLedger, sku: str, reservation_id: str) -> None:
    reservation = await ledger.get_reservation(reservation_id)
    if reservation is not None and reservation.sku != sku:
        raise ReservationNotFoundError(
            f"Reservation {reservation_id} does not belong to {sku}",
            reservation_id=reservation_id,
        )


# ── Query Endpoints ──────────────────────────────


@router.get("/inventory/reservations/{reservation_id}")
async def query_reservation(reservation_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    reservation = await ledger.get_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFoundError(
            f"Reservation {reservation_id} not found", reservation_id=reservation_id
        )
    return reservation.to_json()


@router.get("/inventory/{sku}")
async def query_item(sku: str, ledger: InventoryLedger = Depends(get_ledger)):
    item = await ledger.get_item(sku)
    if item is None:
        raise NotFoundError(f"SKU {sku} not found", sku=sku)
    return item.to_json()


# ── Event Store (audit) ──────────────────────────


@router.get("/events")
async def get_all_events(ledger: InventoryLedger = Depends(get_ledger)):
    async with ledger.session_factory() as session:
        return await load_all_events(session)


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    async with ledger.session_factory() as session:
        return await load_events(session, aggregate_id)


def create_app(
    ledger: InventoryLedger | None = None,
    *,
    sweep_interval: float | None = SWEEP_INTERVAL_SECONDS,
) -> FastAPI:
    """
    Build the inventory service.

    ``ledger`` defaults to one backed by DATABASE_URL and REDIS_URL. The
    sweeper runs inside the lifespan; ``sweep_interval=None`` disables it.
    """
    if ledger is None:
        engine = db.create_engine(database_url("inventory"))
        ledger = InventoryLedger(
            db.create_session_factory(engine),
            aioredis.from_url(REDIS_URL, decode_responses=True),
            reservation_ttl=timedelta(seconds=RESERVATION_TTL_SECONDS),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LOG_LEVEL)
        if AUTO_CREATE_SCHEMA:
            await ledger.create_schema()
        shutdown_event = asyncio.Event()
        sweeper = None
        if sweep_interval:
            sweeper = asyncio.create_task(run_sweeper(ledger, sweep_interval, shutdown_event))
        yield
        shutdown_event.set()
        if sweeper is not None:
            await sweeper
        await ledger.redis.aclose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.ledger = ledger
    api.install(app, "inventory-service")
    app.include_router(router)
    return app


app = create_app()
