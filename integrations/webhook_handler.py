"""
Payment provider webhook handler with signature verification and deduplication.

Implements:
- HMAC-SHA256 signature verification over the raw request body
- Event deduplication through the idempotency guard (SET NX EX)
- Event type routing to registered handlers
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from redis.exceptions import RedisError

from core.errors import ServiceUnavailableError, WebhookPayloadError, WebhookSignatureError
from core.idempotency import IdempotencyGuard
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"


class WebhookEvent(BaseModel):
    """The fields of a verified provider event the saga acts on."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    provider_payment_id: str
    provider_order_id: str
    amount_minor: int

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_minor) / 100).quantize(Decimal("0.01"))


WebhookEventHandler = Callable[[WebhookEvent, str], Awaitable[Any]]


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class WebhookHandler:
    """
    Handles provider webhook events.

    Nothing in the body is parsed until the signature has verified, and no
    handler runs unless this delivery created the idempotency key.
    """

    def __init__(self, secret: str, guard: IdempotencyGuard):
        self.secret = secret
        self.guard = guard
        self.event_handlers: Dict[str, WebhookEventHandler] = {}

    def register_handler(self, event_type: str, handler: WebhookEventHandler) -> None:
        """
        Register a handler for a specific event type.

        Example:
            async def on_captured(event, request_id):
                ...

            handler.register_handler("payment.captured", on_captured)
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the signature header against the raw body.

        Raises:
            WebhookSignatureError: If the signature is missing or wrong
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise WebhookSignatureError("Missing webhook signature")

        expected = compute_signature(payload, self.secret)
        # Header values may carry any latin-1 character; compare as bytes
        provided = signature.strip().encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode(), provided):
            logger.warning("webhook_signature_verification_failed")
            raise WebhookSignatureError()

    @staticmethod
    def parse_event(payload: bytes) -> WebhookEvent:
        """
        Extract the payment entity from a verified body.

        Raises:
            WebhookPayloadError: If required fields are missing
        """
        try:
            body = json.loads(payload)
            entity = body["payload"]["payment"]["entity"]
            amount = entity["amount"]
            # Minor units are whole numbers; 100.5 must not become 100
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise ValueError(f"amount must be an integer, got {amount!r}")
            return WebhookEvent(
                event_type=str(body["event"]),
                provider_payment_id=str(entity["id"]),
                provider_order_id=str(entity["order_id"]),
                amount_minor=amount,
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("webhook_payload_malformed", error=str(e))
            raise WebhookPayloadError() from e

    async def process(
        self, payload: bytes, signature: Optional[str], request_id: str
    ) -> Dict[str, str]:
        """
        Verify, deduplicate and dispatch one delivery.

        Returns:
            Dict[str, str]: ``{"status": ...}`` with one of ``processed``,
            ``already_processed`` or ``ignored``

        Raises:
            WebhookSignatureError: Bad or missing signature
            WebhookPayloadError: Verified body without a payment entity
            ServiceUnavailableError: Idempotency store unreachable
        """
        started = time.perf_counter()
        try:
            self.verify_signature(payload, signature)
            event = self.parse_event(payload)
        except (WebhookSignatureError, WebhookPayloadError):
            metrics.record_webhook_event("unknown", "rejected", time.perf_counter() - started)
            raise

        log = logger.bind(
            event_type=event.event_type,
            provider_payment_id=event.provider_payment_id,
            provider_order_id=event.provider_order_id,
        )

        try:
            claimed = await self.guard.claim(IdempotencyGuard.webhook_key(event.provider_payment_id))
        except RedisError as e:
            log.error("webhook_idempotency_unavailable", error=str(e))
            metrics.record_webhook_event(event.event_type, "retry", time.perf_counter() - started)
            raise ServiceUnavailableError("Idempotency store unavailable") from e

        if not claimed:
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(
                event.event_type, "already_processed", time.perf_counter() - started
            )
            return {"status": "already_processed"}

        handler = self.event_handlers.get(event.event_type)
        if handler is None:
            log.info("webhook_no_handler")
            metrics.record_webhook_event(event.event_type, "ignored", time.perf_counter() - started)
            return {"status": "ignored"}

        status = "processed"
        try:
            await handler(event, request_id)
            log.info("webhook_event_processed_successfully")
        except Exception as e:
            # Acknowledged anyway: the provider must not redeliver a verified event
            status = "failed"
            log.error(
                "webhook_event_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

        metrics.record_webhook_event(event.event_type, status, time.perf_counter() - started)
        return {"status": "processed"}
