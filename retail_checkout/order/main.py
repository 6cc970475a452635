"""
Order Service — FastAPI entry point

Persists completed purchases. ``POST /orders`` is idempotent by order id:
201 when the order is written, 200 with the stored order on a repeat.
"""

from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from .. import api, db
from ..config import AUTO_CREATE_SCHEMA, LOG_LEVEL, REDIS_URL, database_url
from ..errors import OrderNotFoundError
from ..event_store import load_all_events, load_events
from ..logs import configure_logging
from ..models import ApiModel, OrderLine, OrderStatus
from . import commands, queries
from .schema import SCHEMA

router = APIRouter()


def get_sessions(request: Request) -> sessionmaker:
    return request.app.state.async_session


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


# ── Request Models ───────────────────────────────


class CreateOrderRequest(ApiModel):
    order_id: str
    customer_id: str
    lines: list[OrderLine]
    total: Decimal
    status: OrderStatus = OrderStatus.PAID
    currency: str = "GBP"
    payment_transaction_id: str | None = None


class MarkFailedRequest(ApiModel):
    reason: str = ""


# ── Command Endpoints ────────────────────────────


@router.post("/orders")
async def cmd_create_order(
    req: CreateOrderRequest,
    async_session: sessionmaker = Depends(get_sessions),
    redis: aioredis.Redis = Depends(get_redis),
):
    """Create an order, or return the one already stored under this id"""
    async with async_session() as session:
        order, created = await commands.create_order(
            session, redis,
            req.order_id, req.customer_id,
            req.lines, req.total,
            status=req.status,
            currency=req.currency,
            payment_transaction_id=req.payment_transaction_id,
        )
    return JSONResponse(status_code=201 if created else 200, content=order.to_json())


@router.post("/orders/{order_id}/fail")
async def cmd_mark_failed(
    order_id: str,
    req: MarkFailedRequest,
    async_session: sessionmaker = Depends(get_sessions),
    redis: aioredis.Redis = Depends(get_redis),
):
    """Mark a late failure (called by the checkout saga after a refund)"""
    async with async_session() as session:
        order = await commands.mark_failed(session, redis, order_id, req.reason)
    return order.to_json()


# ── Query Endpoints ──────────────────────────────


@router.get("/orders/{order_id}")
async def query_get_order(order_id: str, async_session: sessionmaker = Depends(get_sessions)):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
    return order.to_json()


# ── Event Store (audit) ──────────────────────────


@router.get("/events")
async def get_all_events(async_session: sessionmaker = Depends(get_sessions)):
    async with async_session() as session:
        return await load_all_events(session)


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: str, async_session: sessionmaker = Depends(get_sessions)):
    async with async_session() as session:
        return await load_events(session, aggregate_id)


def create_app(
    async_session: sessionmaker | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    if async_session is None:
        async_session = db.create_session_factory(db.create_engine(database_url("order")))
    if redis is None:
        redis = aioredis.from_url(REDIS_URL, decode_responses=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LOG_LEVEL)
        if AUTO_CREATE_SCHEMA:
            await db.create_schema(async_session, SCHEMA)
        yield
        await redis.aclose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.async_session = async_session
    app.state.redis = redis
    api.install(app, "order-service")
    app.include_router(router)
    return app


app = create_app()
