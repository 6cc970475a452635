"""
Saga Service — FastAPI entry point

Exposes the checkout saga over HTTP. ``POST /checkout`` runs a saga to its
end: 200 when paid, 202 while it is still processing (or waiting for an
operator), otherwise the error that failed it.
"""

from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .. import api, db
from ..config import (
    AUTO_CREATE_SCHEMA,
    CART_SERVICE_URL,
    HTTP_TIMEOUT_SECONDS,
    INVENTORY_SERVICE_URL,
    LOG_LEVEL,
    ORDER_SERVICE_URL,
    PAYMENT_GATEWAY_URL,
    REDIS_URL,
    database_url,
)
from ..errors import CheckoutError, NotFoundError
from ..logs import configure_logging
from ..models import ApiModel
from ..payment.gateway import HttpPaymentGateway, MockPaymentGateway
from .clients import CartClient, InventoryClient, OrderClient
from .orchestrator import CheckoutRequest, CheckoutSagaOrchestrator
from .store import SagaStore

router = APIRouter()


def get_orchestrator(request: Request) -> CheckoutSagaOrchestrator:
    return request.app.state.orchestrator


class CheckoutBody(ApiModel):
    customer_id: str
    payment_token: str
    saga_id: str | None = None
    order_id: str | None = None


@router.post("/checkout")
async def checkout(req: CheckoutBody, orchestrator: CheckoutSagaOrchestrator = Depends(get_orchestrator)):
    """
    Run the checkout saga for a customer's cart.

    Re-sending the same ``sagaId`` (or ``orderId``) returns the recorded
    outcome without charging again.
    """
    try:
        result = await orchestrator.checkout(
            CheckoutRequest(
                customer_id=req.customer_id,
                payment_token=req.payment_token,
                saga_id=req.saga_id,
                order_id=req.order_id,
            )
        )
    except CheckoutError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={**e.to_body(), "sagaId": e.details.get("saga_id")},
        )
    return JSONResponse(status_code=200 if result.status == "Paid" else 202, content=result.to_json())


@router.get("/checkout/interventions")
async def list_interventions(orchestrator: CheckoutSagaOrchestrator = Depends(get_orchestrator)):
    """Checkouts waiting for manual reconciliation"""
    return await orchestrator.list_interventions()


@router.get("/checkout/{saga_id}")
async def get_checkout(saga_id: str, orchestrator: CheckoutSagaOrchestrator = Depends(get_orchestrator)):
    state = await orchestrator.get(saga_id)
    if state is None:
        raise NotFoundError(f"Saga {saga_id} not found", saga_id=saga_id)
    return {
        "sagaId": state.saga_id,
        "status": state.status.public_status,
        "state": state.status.value,
        "orderId": state.order_id,
        "errorKind": state.error_kind,
        "errorMessage": state.error_message,
        "history": state.history,
    }


@router.post("/checkout/{saga_id}/cancel")
async def cancel_checkout(saga_id: str, orchestrator: CheckoutSagaOrchestrator = Depends(get_orchestrator)):
    state = await orchestrator.cancel(saga_id)
    return JSONResponse(status_code=202, content={"sagaId": state.saga_id, "status": "Cancelling"})


def create_app(orchestrator: CheckoutSagaOrchestrator | None = None) -> FastAPI:
    """
    Build the saga service.

    Without an injected orchestrator, one is wired to the service URLs from
    the environment, the saga store at DATABASE_URL, and the mock payment
    gateway unless PAYMENT_GATEWAY_URL is set.
    """
    http_clients: list[httpx.AsyncClient] = []

    def http_client(base_url: str) -> httpx.AsyncClient:
        client = httpx.AsyncClient(base_url=base_url, timeout=HTTP_TIMEOUT_SECONDS)
        http_clients.append(client)
        return client

    if orchestrator is None:
        if PAYMENT_GATEWAY_URL:
            payments = HttpPaymentGateway(http_client(PAYMENT_GATEWAY_URL))
        else:
            payments = MockPaymentGateway()
        orchestrator = CheckoutSagaOrchestrator(
            inventory=InventoryClient(http_client(INVENTORY_SERVICE_URL)),
            payments=payments,
            orders=OrderClient(http_client(ORDER_SERVICE_URL)),
            carts=CartClient(http_client(CART_SERVICE_URL)),
            store=SagaStore(db.create_session_factory(db.create_engine(database_url("saga")))),
            redis=aioredis.from_url(REDIS_URL, decode_responses=True),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(LOG_LEVEL)
        if AUTO_CREATE_SCHEMA:
            await orchestrator.store.create_schema()
        yield
        for client in http_clients:
            await client.aclose()
        await orchestrator.redis.aclose()

    app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    api.install(app, "saga-service")
    app.include_router(router)
    return app


app = create_app()
