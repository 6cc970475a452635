"""
Shared fixtures for the checkout services.

Every test gets its own SQLite files under ``tmp_path`` and an AsyncMock in
place of Redis. The FastAPI apps are driven in-process through
``httpx.ASGITransport``, so the saga talks to the real inventory, order and
cart services without a network.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from retail_checkout import db
from retail_checkout.cart.main import create_app as create_cart_app
from retail_checkout.cart.schema import SCHEMA as CART_SCHEMA
from retail_checkout.inventory.ledger import InventoryLedger
from retail_checkout.inventory.main import create_app as create_inventory_app
from retail_checkout.order.main import create_app as create_order_app
from retail_checkout.order.schema import SCHEMA as ORDER_SCHEMA
from retail_checkout.payment.gateway import MockPaymentGateway
from retail_checkout.saga.clients import CartClient, InventoryClient, OrderClient
from retail_checkout.saga.orchestrator import CheckoutSagaOrchestrator
from retail_checkout.saga.policy import StepPolicy
from retail_checkout.saga.store import SagaStore


@pytest.fixture
def redis():
    return AsyncMock()


@pytest.fixture
async def sqlite(tmp_path):
    """Factory for per-test SQLite session factories; engines are disposed afterwards."""
    engines = []

    def make(name: str):
        engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / name}.db")
        engines.append(engine)
        return db.create_session_factory(engine)

    yield make

    for engine in engines:
        await engine.dispose()


@pytest.fixture
async def ledger(sqlite, redis):
    ledger = InventoryLedger(sqlite("inventory"), redis, cas_attempts=50)
    await ledger.create_schema()
    return ledger


@pytest.fixture
async def order_sessions(sqlite):
    sessions = sqlite("order")
    await db.create_schema(sessions, ORDER_SCHEMA)
    return sessions


@pytest.fixture
async def cart_sessions(sqlite):
    sessions = sqlite("cart")
    await db.create_schema(sessions, CART_SCHEMA)
    return sessions


@pytest.fixture
async def saga_store(sqlite):
    store = SagaStore(sqlite("saga"))
    await store.create_schema()
    return store


def asgi_client(app, name: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=f"http://{name}")


@pytest.fixture
async def inventory_http(ledger):
    async with asgi_client(create_inventory_app(ledger, sweep_interval=None), "inventory") as client:
        yield client


@pytest.fixture
async def order_http(order_sessions, redis):
    async with asgi_client(create_order_app(order_sessions, redis), "order") as client:
        yield client


@pytest.fixture
async def cart_http(cart_sessions, redis):
    async with asgi_client(create_cart_app(cart_sessions, redis), "cart") as client:
        yield client


@pytest.fixture
def payments():
    return MockPaymentGateway()


@pytest.fixture
def policy():
    return StepPolicy(timeout=2.0, attempts=3, backoff=0.01, max_backoff=0.05)


@pytest.fixture
def build_orchestrator(inventory_http, order_http, cart_http, saga_store, redis, policy):
    """
    Build an orchestrator wired to the in-process services.

    Keyword arguments replace a collaborator, e.g. a client subclass that
    injects a failure.
    """

    def build(payments, *, inventory=None, orders=None, carts=None):
        return CheckoutSagaOrchestrator(
            inventory=inventory or InventoryClient(inventory_http),
            payments=payments,
            orders=orders or OrderClient(order_http),
            carts=carts or CartClient(cart_http),
            store=saga_store,
            redis=redis,
            policy=policy,
        )

    return build


@pytest.fixture
def orchestrator(build_orchestrator, payments):
    return build_orchestrator(payments)


@pytest.fixture
def fill_cart(cart_http):
    async def fill(customer_id: str, *lines: tuple[str, str, str, int]):
        for sku, name, unit_price, quantity in lines:
            resp = await cart_http.post(
                f"/carts/{customer_id}/lines",
                json={"sku": sku, "name": name, "unitPrice": unit_price, "quantity": quantity},
            )
            assert resp.status_code == 200, resp.text

    return fill


@pytest.fixture
async def stocked(ledger):
    """WIDGET x10 and GADGET x5 on hand."""
    await ledger.add_stock("WIDGET", 10)
    await ledger.add_stock("GADGET", 5)
    return ledger

