"""
Cart Service — FastAPI entry point

Holds pending line items per customer until checkout clears them.
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from sqlalchemy.orm import sessionmaker

from .. import api, db
from ..config import AUTO_CREATE_SCHEMA, LOG_LEVEL, REDIS_URL, database_url
from ..errors import CartNotFoundError
from ..logs import configure_logging
from ..models import CartLine
from . import commands, queries
from .schema import SCHEMA

router = APIRouter()


def get_sessions(request: Request) -> sessionmaker:
    return request.app.state.async_session


def get_redis(request: Request) -> aioredis.Redis:
    return request.app.state.redis


@router.get("/carts/{customer_id}")
async def query_get_cart(customer_id: str, async_session: sessionmaker = Depends(get_sessions)):
    async with async_session() as session:
        cart = await queries.get_cart(session, customer_id)
    if cart is None:
        raise CartNotFoundError(f"Cart for {customer_id} not found", customer_id=customer_id)
    return cart.to_json()


@router.post("/carts/{customer_id}/lines")
async def cmd_add_line(
    customer_id: str,
    line: CartLine,
    async_session: sessionmaker = Depends(get_sessions),
    redis: aioredis.Redis = Depends(get_redis),
):
    async with async_session() as session:
        cart = await commands.add_line(session, redis, customer_id, line)
    return cart.to_json()


@router.delete("/carts/{customer_id}")
async def cmd_clear_cart(
    customer_id: str,
    async_session: sessionmaker = Depends(get_sessions),
    redis: aioredis.Redis = Depends(get_redis),
):
    """Clear after checkout. Clearing a missing cart is a no-op."""
    async with async_session() as session:
        cleared = await commands.clear_cart(session, redis, customer_id)
    return {"customerId": customer_id, "cleared": cleared}


def create_app(
    async_session: sessionmaker | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    if async_session is None:
        async_session = db.create_session_factory(db.create_engine(database_url("cart")))
    if redis is None:
        redis = aioredis.from_url(REDIS_URL, decode_responses=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LOG_LEVEL)
        if AUTO_CREATE_SCHEMA:
            await db.create_schema(async_session, SCHEMA)
        yield
        await redis.aclose()

    app = FastAPI(title="Cart Service", lifespan=lifespan)
    app.state.async_session = async_session
    app.state.redis = redis
    api.install(app, "cart-service")
    app.include_router(router)
    return app


app = create_app()
