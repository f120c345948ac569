"""
Tests for payment intent creation and the provider API client.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select, update

from core.auth import AuthContext
from core.context import ServiceContext
from core.errors import AlreadyPaidError, InvalidStateError, NotFoundError
from core.inventory import StockItem
from core.payments import to_minor_units
from database.models import Order, Payment
from integrations.payment_provider import (
    PaymentProviderClient,
    ProviderError,
    ProviderErrorType,
)
from tests.conftest import CUSTOMER_HEADERS

CUSTOMER = AuthContext(user_id="user-1")


async def create_order(context: ServiceContext) -> Order:
    return await context.orders.create_order(
        CUSTOMER,
        "addr-1",
        [StockItem(product_id="P1", quantity=1), StockItem(product_id="P2", quantity=2)],
        "req-setup",
    )


async def set_order_state(context: ServiceContext, order: Order, **values) -> None:
    async with context.session_factory() as session:
        async with session.begin():
            await session.execute(update(Order).where(Order.id == order.id).values(**values))


class TestCreateIntent:
    """Intent amounts always come from the stored order total."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_intent_uses_stored_total(
        self, context: ServiceContext, provider: AsyncMock, catalog
    ) -> None:
        order = await create_order(context)

        intent = await context.payments.create_intent(str(order.id), CUSTOMER, "req-1")

        assert intent == {"providerOrderId": "order_prov_1", "amount": 18000, "currency": "INR"}
        provider.create_order.assert_awaited_once()
        assert provider.create_order.await_args.args == (18000, "INR")
        assert provider.create_order.await_args.kwargs["receipt"] == str(order.id)

        async with context.session_factory() as session:
            stored = await session.get(Order, order.id)
            payment = await session.scalar(select(Payment).where(Payment.order_id == order.id))
        assert stored.provider_order_id == "order_prov_1"
        assert payment.status == "initiated"
        assert payment.amount == Decimal("180.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_intent_reuses_provider_order(
        self, context: ServiceContext, provider: AsyncMock, catalog
    ) -> None:
        order = await create_order(context)

        first = await context.payments.create_intent(str(order.id), CUSTOMER, "req-1")
        second = await context.payments.create_intent(str(order.id), CUSTOMER, "req-2")

        assert first == second
        assert provider.create_order.await_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_users_order_not_found(self, context: ServiceContext, catalog) -> None:
        order = await create_order(context)

        with pytest.raises(NotFoundError):
            await context.payments.create_intent(
                str(order.id), AuthContext(user_id="user-2"), "req-1"
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, context: ServiceContext, catalog) -> None:
        order = await create_order(context)
        await set_order_state(context, order, status="confirmed", payment_status="paid")

        with pytest.raises(AlreadyPaidError):
            await context.payments.create_intent(str(order.id), CUSTOMER, "req-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_order_rejected(self, context: ServiceContext, catalog) -> None:
        order = await create_order(context)
        await set_order_state(context, order, status="failed", payment_status="failed")

        with pytest.raises(InvalidStateError):
            await context.payments.create_intent(str(order.id), CUSTOMER, "req-1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_failure_maps_to_dependency_error(
        self, client: httpx.AsyncClient, context: ServiceContext, provider: AsyncMock, catalog
    ) -> None:
        order = await create_order(context)
        provider.create_order.side_effect = ProviderError(
            "Provider answered 400", ProviderErrorType.PERMANENT, 400
        )

        response = await client.post(
            "/payments/intent", json={"orderId": str(order.id)}, headers=CUSTOMER_HEADERS
        )

        assert response.status_code == 502
        assert response.json() == {
            "success": False,
            "error": {"code": "DEPENDENCY_ERROR", "message": "Upstream service unavailable"},
        }

    @pytest.mark.unit
    def test_minor_units_rounding(self) -> None:
        assert to_minor_units(Decimal("19.99")) == 1999
        assert to_minor_units(Decimal("0.01")) == 1
        assert to_minor_units(Decimal("240.00")) == 24000


class TestPaymentProviderClient:
    """Retry and error classification against a mocked provider API."""

    @staticmethod
    def client_for(handler) -> PaymentProviderClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PaymentProviderClient(http, "https://provider.test/v1", "key", "secret")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(
                200, json={"id": "order_abc", "amount": 1000, "currency": "INR", "status": "created"}
            )

        order = await self.client_for(handler).create_order(1000, "INR", receipt="o-1")

        assert order.id == "order_abc"
        assert len(calls) == 3
        assert calls[0].url.path == "/v1/orders"
        assert calls[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"error": {"description": "bad amount"}})

        with pytest.raises(ProviderError) as exc_info:
            await self.client_for(handler).create_order(1000, "INR", receipt="o-1")

        assert exc_info.value.error_type == ProviderErrorType.PERMANENT
        assert exc_info.value.status_code == 400
        assert len(calls) == 1

    @pytest.mark.unit
    def test_status_classification(self) -> None:
        assert PaymentProviderClient._classify_status(429) == ProviderErrorType.RATE_LIMIT
        assert PaymentProviderClient._classify_status(502) == ProviderErrorType.TRANSIENT
        assert PaymentProviderClient._classify_status(401) == ProviderErrorType.PERMANENT
