"""
Pytest configuration and fixtures.

Everything runs in-process: SQLite (aiosqlite) stands in for PostgreSQL,
fakeredis for Redis, and the order/payment services reach the inventory
endpoints through httpx's ASGI transport.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import AsyncMock

import fakeredis
import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.main import create_app
from config import Settings
from core.context import ServiceContext
from core.event_log import EventLog
from core.inventory import InventoryLedger
from database.connection import create_engine_from_settings, create_session_factory, init_db
from database.models import InventoryRecord, Product
from integrations.inventory_client import InventoryClient
from integrations.payment_provider import PaymentProviderClient, ProviderOrder
from integrations.webhook_handler import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_SECRET = "internal_test_secret"

CUSTOMER_HEADERS = {"x-user-id": "user-1", "x-user-role": "customer"}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        app_name="commerce-saga-test",
        app_env="test",
        log_level="DEBUG",
        service_role="all",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        create_tables_on_startup=False,
        redis_url="redis://localhost:6379/15",
        inventory_service_url="http://inventory",
        internal_service_secret=INTERNAL_SECRET,
        payment_webhook_secret=WEBHOOK_SECRET,
        event_stream_prefix="test:events",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, Any]:
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def event_log(redis_client: Any, test_settings: Settings) -> EventLog:
    return EventLog(redis_client, test_settings.event_stream_prefix)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> InventoryLedger:
    return InventoryLedger(session_factory)


async def seed_product(
    session_factory: async_sessionmaker[AsyncSession],
    product_id: str,
    price: str,
    stock: int,
    reserved: int = 0,
    discount_price: Optional[str] = None,
    is_active: bool = True,
    name: Optional[str] = None,
) -> None:
    """Insert a catalog product and its inventory record."""
    async with session_factory() as session:
        async with session.begin():
            session.add(
                Product(
                    id=product_id,
                    name=name or f"Product {product_id}",
                    price=Decimal(price),
                    discount_price=Decimal(discount_price) if discount_price else None,
                    is_active=is_active,
                )
            )
            session.add(
                InventoryRecord(
                    product_id=product_id,
                    stock_quantity=stock,
                    reserved_quantity=reserved,
                )
            )


async def get_record(
    session_factory: async_sessionmaker[AsyncSession], product_id: str
) -> InventoryRecord:
    async with session_factory() as session:
        return await session.get(InventoryRecord, product_id)


@pytest_asyncio.fixture
async def catalog(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, str]:
    """
    Seed a small catalog.

    P1: 100.00, stock 10
    P2: 50.00 discounted to 40.00, stock 5
    P3: inactive
    """
    await seed_product(session_factory, "P1", "100.00", stock=10, name="Ashwagandha")
    await seed_product(session_factory, "P2", "50.00", stock=5, discount_price="40.00", name="Triphala")
    await seed_product(session_factory, "P3", "10.00", stock=100, is_active=False, name="Retired")
    return {"P1": "100.00", "P2": "40.00"}


@pytest.fixture
def provider() -> AsyncMock:
    """Payment provider client that always creates order ``order_prov_1``."""
    mock = AsyncMock(spec=PaymentProviderClient)
    mock.create_order.side_effect = lambda amount_minor, currency, receipt, notes=None: ProviderOrder(
        id="order_prov_1", amount=amount_minor, currency=currency, status="created"
    )
    return mock


@pytest_asyncio.fixture
async def app_and_context(
    test_settings: Settings,
    engine: AsyncEngine,
    redis_client: Any,
    provider: AsyncMock,
) -> AsyncGenerator[tuple[FastAPI, ServiceContext], Any]:
    """
    App serving every role, whose order and payment services call its own
    inventory endpoints over HTTP.
    """
    app = create_app(test_settings)
    inventory_http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url=test_settings.inventory_service_url
    )
    inventory = InventoryClient(
        inventory_http,
        service_name="orders",
        secret=INTERNAL_SECRET,
        timeout_seconds=5.0,
    )
    context = ServiceContext.build(
        test_settings,
        engine,
        redis_client,
        inventory_http,
        inventory=inventory,
        provider=provider,
        owns_clients=False,
    )
    app.state.context = context
    yield app, context
    await inventory_http.aclose()


@pytest.fixture
def app(app_and_context: tuple[FastAPI, ServiceContext]) -> FastAPI:
    return app_and_context[0]


@pytest.fixture
def context(app_and_context: tuple[FastAPI, ServiceContext]) -> ServiceContext:
    return app_and_context[1]


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def webhook_body(
    event: str,
    payment_id: str,
    provider_order_id: str,
    amount_minor: int,
) -> bytes:
    """Serialized provider webhook payload."""
    return json.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": provider_order_id,
                        "amount": amount_minor,
                        "currency": "INR",
                    }
                }
            },
        }
    ).encode()


def signed_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> Dict[str, str]:
    return {
        "x-razorpay-signature": compute_signature(body, secret),
        "content-type": "application/json",
    }
