"""
Tests for the payment provider webhook: verification, deduplication and
the order/inventory transitions it drives.
"""
import asyncio
import json

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from core.auth import AuthContext
from core.context import ServiceContext
from core.errors import WebhookPayloadError, WebhookSignatureError
from core.events import Topic
from core.inventory import StockItem
from database.models import Order, Payment
from integrations.webhook_handler import WebhookHandler, compute_signature
from tests.conftest import WEBHOOK_SECRET, get_record, signed_headers, webhook_body

CUSTOMER = AuthContext(user_id="user-1")


async def pending_order(context: ServiceContext) -> Order:
    """An order for 2 x P1 (200.00) with a provider order ``order_prov_1``."""
    order = await context.orders.create_order(
        CUSTOMER, "addr-1", [StockItem(product_id="P1", quantity=2)], "req-setup"
    )
    await context.payments.create_intent(str(order.id), CUSTOMER, "req-intent")
    return order


async def load_order(context: ServiceContext, order: Order) -> Order:
    async with context.session_factory() as session:
        return await session.get(Order, order.id)


async def load_payments(context: ServiceContext, order: Order) -> list:
    async with context.session_factory() as session:
        result = await session.execute(select(Payment).where(Payment.order_id == order.id))
        return list(result.scalars())


async def post_webhook(client: httpx.AsyncClient, body: bytes, headers: dict) -> httpx.Response:
    return await client.post("/webhooks/payment", content=body, headers=headers)


class TestPaymentCaptured:
    """Captured payments confirm the order and deduct its stock."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_captured_confirms_order_and_deducts_stock(
        self, client: httpx.AsyncClient, context: ServiceContext, session_factory, catalog
    ) -> None:
        order = await pending_order(context)
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}

        stored = await load_order(context, order)
        assert stored.status == "confirmed"
        assert stored.payment_status == "paid"
        assert stored.provider_payment_id == "pay_1"

        record = await get_record(session_factory, "P1")
        assert record.stock_quantity == 8
        assert record.reserved_quantity == 0

        [payment] = await load_payments(context, order)
        assert payment.status == "successful"
        assert payment.provider_payment_id == "pay_1"

        [entry] = await context.event_log.entries(Topic.PAYMENT)
        assert entry.fields["type"] == "PAYMENT_CAPTURED"
        assert entry.fields["orderId"] == str(order.id)
        assert entry.fields["paymentId"] == "pay_1"
        assert entry.fields["amount"] == "200.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_applied_once(
        self, client: httpx.AsyncClient, context: ServiceContext, session_factory, catalog
    ) -> None:
        await pending_order(context)
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        first = await post_webhook(client, body, signed_headers(body))
        second = await post_webhook(client, body, signed_headers(body))

        assert first.json() == {"status": "processed"}
        assert second.status_code == 200
        assert second.json() == {"status": "already_processed"}

        record = await get_record(session_factory, "P1")
        assert record.stock_quantity == 8
        assert len(await context.event_log.entries(Topic.PAYMENT)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_deliveries(
        self, client: httpx.AsyncClient, context: ServiceContext, session_factory, catalog
    ) -> None:
        await pending_order(context)
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        responses = await asyncio.gather(
            *[post_webhook(client, body, signed_headers(body)) for _ in range(5)]
        )

        statuses = sorted(r.json()["status"] for r in responses)
        assert statuses == ["already_processed"] * 4 + ["processed"]
        assert (await get_record(session_factory, "P1")).stock_quantity == 8

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_failure_does_not_undo_confirmed_order(
        self, client: httpx.AsyncClient, context: ServiceContext, session_factory, catalog
    ) -> None:
        order = await pending_order(context)
        captured = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)
        failed = webhook_body("payment.failed", "pay_2", "order_prov_1", 20000)

        await post_webhook(client, captured, signed_headers(captured))
        response = await post_webhook(client, failed, signed_headers(failed))

        assert response.json() == {"status": "processed"}
        stored = await load_order(context, order)
        assert stored.status == "confirmed"
        record = await get_record(session_factory, "P1")
        assert (record.stock_quantity, record.reserved_quantity) == (8, 0)


class TestPaymentFailed:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_fails_order_and_releases_stock(
        self, client: httpx.AsyncClient, context: ServiceContext, session_factory, catalog
    ) -> None:
        order = await pending_order(context)
        body = webhook_body("payment.failed", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, signed_headers(body))

        assert response.json() == {"status": "processed"}
        stored = await load_order(context, order)
        assert stored.status == "failed"
        assert stored.payment_status == "failed"

        record = await get_record(session_factory, "P1")
        assert (record.stock_quantity, record.reserved_quantity) == (10, 0)

        [payment] = await load_payments(context, order)
        assert payment.status == "failed"

        [entry] = await context.event_log.entries(Topic.PAYMENT)
        assert entry.fields["type"] == "PAYMENT_FAILED"


class TestWebhookRejections:
    """Nothing is parsed or applied unless the signature verifies."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_side_effects(
        self,
        client: httpx.AsyncClient,
        context: ServiceContext,
        redis_client,
        session_factory,
        catalog,
    ) -> None:
        order = await pending_order(context)
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, signed_headers(body, secret="wrong"))

        assert response.status_code == 400
        assert response.json() == {"status": "rejected"}
        assert (await load_order(context, order)).status == "pending"
        assert await redis_client.exists("payment:webhook:pay_1") == 0
        assert (await get_record(session_factory, "P1")).stock_quantity == 10

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_ascii_signature_rejected(
        self, client: httpx.AsyncClient, context: ServiceContext, redis_client, catalog
    ) -> None:
        order = await pending_order(context)
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(
            client,
            body,
            {"content-type": "application/json", "x-razorpay-signature": b"\xe9" * 64},
        )

        assert response.status_code == 400
        assert response.json() == {"status": "rejected"}
        assert (await load_order(context, order)).status == "pending"
        assert await redis_client.exists("payment:webhook:pay_1") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: httpx.AsyncClient, catalog) -> None:
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, {"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"status": "rejected"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_body_without_payment_entity_rejected(
        self, client: httpx.AsyncClient
    ) -> None:
        body = json.dumps({"event": "payment.captured", "payload": {}}).encode()

        response = await post_webhook(client, body, signed_headers(body))

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unhandled_event_type_ignored(
        self, client: httpx.AsyncClient, context: ServiceContext, catalog
    ) -> None:
        order = await pending_order(context)
        body = webhook_body("payment.authorized", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, signed_headers(body))

        assert response.json() == {"status": "ignored"}
        assert (await load_order(context, order)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider_order_acknowledged(
        self, client: httpx.AsyncClient, context: ServiceContext
    ) -> None:
        body = webhook_body("payment.captured", "pay_9", "order_unknown", 500)

        response = await post_webhook(client, body, signed_headers(body))

        assert response.json() == {"status": "processed"}
        assert await context.event_log.entries(Topic.PAYMENT) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_idempotency_store_down_asks_for_retry(
        self, client: httpx.AsyncClient, context: ServiceContext, redis_client, catalog, mocker
    ) -> None:
        order = await pending_order(context)
        mocker.patch.object(redis_client, "set", side_effect=RedisConnectionError("redis down"))
        body = webhook_body("payment.captured", "pay_1", "order_prov_1", 20000)

        response = await post_webhook(client, body, signed_headers(body))

        assert response.status_code == 503
        assert response.json() == {"status": "retry"}
        assert (await load_order(context, order)).status == "pending"


class TestWebhookHandler:
    """Signature helpers in isolation."""

    @pytest.mark.unit
    def test_verify_signature_accepts_matching_hmac(self) -> None:
        handler = WebhookHandler(WEBHOOK_SECRET, guard=None)
        body = b'{"event":"payment.captured"}'

        handler.verify_signature(body, compute_signature(body, WEBHOOK_SECRET))

    @pytest.mark.unit
    def test_verify_signature_rejects_tampered_body(self) -> None:
        handler = WebhookHandler(WEBHOOK_SECRET, guard=None)
        signature = compute_signature(b'{"amount":100}', WEBHOOK_SECRET)

        with pytest.raises(WebhookSignatureError):
            handler.verify_signature(b'{"amount":1}', signature)

    @pytest.mark.unit
    def test_parse_event_converts_minor_units(self) -> None:
        event = WebhookHandler.parse_event(
            webhook_body("payment.captured", "pay_1", "order_prov_1", 12345)
        )

        assert event.provider_payment_id == "pay_1"
        assert str(event.amount) == "123.45"

    @pytest.mark.unit
    def test_parse_event_rejects_non_json(self) -> None:
        with pytest.raises(WebhookPayloadError):
            WebhookHandler.parse_event(b"not json")

    @pytest.mark.unit
    def test_verify_signature_rejects_non_ascii_header(self) -> None:
        handler = WebhookHandler(WEBHOOK_SECRET, guard=None)

        with pytest.raises(WebhookSignatureError):
            handler.verify_signature(b"{}", "é" * 64)

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", [100.5, 100.0, "100", True, None])
    def test_parse_event_rejects_non_integer_amount(self, amount) -> None:
        entity = {"id": "pay_1", "order_id": "order_prov_1", "amount": amount}
        body = json.dumps(
            {"event": "payment.captured", "payload": {"payment": {"entity": entity}}}
        ).encode()

        with pytest.raises(WebhookPayloadError):
            WebhookHandler.parse_event(body)
