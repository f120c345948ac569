"""
Payment gateway adapter.

Creates payment intents against the provider and applies verified
provider webhooks to orders: a captured payment confirms the order and
deducts its reserved stock, a failed payment fails the order and releases
the stock.
"""
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.auth import AuthContext
from core.errors import AlreadyPaidError, InvalidStateError, NotFoundError
from core.event_log import EventLog
from core.events import PaymentCaptured, PaymentFailed
from core.inventory import InventoryGateway, StockItem
from database.models import Order, Payment, utc_now
from integrations.payment_provider import PaymentProviderClient
from integrations.webhook_handler import (
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    WebhookEvent,
    WebhookHandler,
)

logger = structlog.get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a 2-decimal amount to minor units (x100)."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway:
    """
    Adapter between the payment provider and the order saga.

    Args:
        session_factory: Session factory for the orders database
        provider: Payment provider API client
        inventory: Inventory gateway for deduct/release
        event_log: Event log receiving PAYMENT_* events
        webhook_handler: Verifier/deduplicator the webhook handlers register on
        provider_name: Name stored on payment records
        currency: Settlement currency
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: PaymentProviderClient,
        inventory: InventoryGateway,
        event_log: EventLog,
        webhook_handler: WebhookHandler,
        provider_name: str = "razorpay",
        currency: str = "INR",
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.inventory = inventory
        self.event_log = event_log
        self.webhook_handler = webhook_handler
        self.provider_name = provider_name
        self.currency = currency

        webhook_handler.register_handler(PAYMENT_CAPTURED, self.on_payment_captured)
        webhook_handler.register_handler(PAYMENT_FAILED, self.on_payment_failed)

    async def create_intent(
        self, order_id: str, auth: AuthContext, request_id: str
    ) -> Dict[str, Any]:
        """
        Create (or reuse) the provider order for one of the caller's orders.

        The amount is always the stored order total.

        Returns:
            Dict[str, Any]: ``{providerOrderId, amount, currency}``, amount in minor units

        Raises:
            NotFoundError: Unknown order or not the caller's
            AlreadyPaidError: Order already paid
            InvalidStateError: Order no longer awaiting payment
            DependencyError: Provider call failed
        """
        order = await self._load_own_order(order_id, auth)
        if order.payment_status == "paid":
            raise AlreadyPaidError()
        if order.status != "pending":
            raise InvalidStateError()

        amount_minor = to_minor_units(order.total_amount)
        log = logger.bind(order_id=str(order.id), request_id=request_id)

        if order.provider_order_id:
            log.info("payment_intent_reused", provider_order_id=order.provider_order_id)
            return {
                "providerOrderId": order.provider_order_id,
                "amount": amount_minor,
                "currency": self.currency,
            }

        provider_order = await self.provider.create_order(
            amount_minor,
            self.currency,
            receipt=str(order.id),
            notes={"orderId": str(order.id), "userId": order.user_id},
        )

        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id)
                    .values(provider_order_id=provider_order.id, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                session.add(
                    Payment(
                        order_id=order.id,
                        provider=self.provider_name,
                        provider_order_id=provider_order.id,
                        amount=order.total_amount,
                        currency=self.currency,
                        status="initiated",
                    )
                )

        log.info("payment_intent_created", provider_order_id=provider_order.id)
        return {
            "providerOrderId": provider_order.id,
            "amount": amount_minor,
            "currency": self.currency,
        }

    async def handle_webhook(
        self, payload: bytes, signature: Optional[str], request_id: str
    ) -> Dict[str, str]:
        """Verify, deduplicate and apply one provider webhook delivery."""
        return await self.webhook_handler.process(payload, signature, request_id)

    async def on_payment_captured(self, event: WebhookEvent, request_id: str) -> None:
        """Confirm the order, deduct its stock and emit PAYMENT_CAPTURED."""
        order = await self._transition(event, "confirmed", "paid", "successful")
        if order is None:
            return

        items = _order_items(order)
        try:
            await self.inventory.deduct(items, request_id)
        except Exception as e:
            logger.error(
                "payment_deduct_failed",
                order_id=str(order.id),
                request_id=request_id,
                error=str(e),
            )

        await self.event_log.publish(
            PaymentCaptured(
                order_id=str(order.id),
                user_id=order.user_id,
                payment_id=event.provider_payment_id,
                amount=f"{event.amount:.2f}",
                request_id=request_id,
            )
        )

    async def on_payment_failed(self, event: WebhookEvent, request_id: str) -> None:
        """Fail the order, release its stock and emit PAYMENT_FAILED."""
        order = await self._transition(event, "failed", "failed", "failed")
        if order is None:
            return

        items = _order_items(order)
        try:
            await self.inventory.release(items, request_id)
        except Exception as e:
            logger.error(
                "payment_release_failed",
                order_id=str(order.id),
                request_id=request_id,
                error=str(e),
            )

        await self.event_log.publish(
            PaymentFailed(
                order_id=str(order.id),
                user_id=order.user_id,
                payment_id=event.provider_payment_id,
                request_id=request_id,
            )
        )

    async def _transition(
        self,
        event: WebhookEvent,
        order_status: str,
        payment_status: str,
        record_status: str,
    ) -> Optional[Order]:
        """
        Move a pending order to its post-payment state and record the payment.

        Returns the order when this call performed the transition, ``None``
        when the order is unknown or no longer pending.
        """
        log = logger.bind(
            provider_order_id=event.provider_order_id,
            provider_payment_id=event.provider_payment_id,
        )

        async with self.session_factory() as session:
            async with session.begin():
                order = await session.scalar(
                    select(Order).where(Order.provider_order_id == event.provider_order_id)
                )
                if order is None:
                    log.warning("webhook_order_not_found")
                    return None

                result = await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == "pending")
                    .values(
                        status=order_status,
                        payment_status=payment_status,
                        provider_payment_id=event.provider_payment_id,
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    log.warning("webhook_order_not_pending", order_id=str(order.id), status=order.status)
                    return None

                if event.amount != order.total_amount:
                    log.warning(
                        "webhook_amount_mismatch",
                        order_id=str(order.id),
                        expected=f"{order.total_amount:.2f}",
                        received=f"{event.amount:.2f}",
                    )

                payment = await session.scalar(
                    select(Payment)
                    .where(
                        Payment.provider_order_id == event.provider_order_id,
                        Payment.status == "initiated",
                    )
                    .limit(1)
                )
                if payment is None:
                    payment = Payment(
                        id=uuid.uuid4(),
                        order_id=order.id,
                        provider=self.provider_name,
                        provider_order_id=event.provider_order_id,
                        amount=event.amount,
                        currency=self.currency,
                        status=record_status,
                    )
                    session.add(payment)
                payment.status = record_status
                payment.provider_payment_id = event.provider_payment_id
                payment.amount = event.amount

        log.info("order_payment_transitioned", order_id=str(order.id), status=order_status)
        return order

    async def _load_own_order(self, order_id: str, auth: AuthContext) -> Order:
        try:
            order_uuid = uuid.UUID(str(order_id))
        except ValueError:
            raise NotFoundError("Order not found") from None

        async with self.session_factory() as session:
            order = await session.scalar(
                select(Order).where(Order.id == order_uuid, Order.user_id == auth.user_id)
            )
        if order is None:
            raise NotFoundError("Order not found")
        return order


def _order_items(order: Order) -> List[StockItem]:
    return [StockItem(product_id=item.product_id, quantity=item.quantity) for item in order.items]
