"""
Notification background worker.

Consumes ORDER and PAYMENT events as a member of the notification
consumer group and sends one email per event.
"""
import asyncio
import signal
import socket
import uuid
from typing import Any, Optional

import httpx
import redis.asyncio as aioredis
import structlog

from config import Settings, get_settings
from core.consumer import EventConsumer
from core.event_log import EventLog
from core.events import Topic
from core.idempotency import IdempotencyGuard
from integrations.notifications import (
    EmailSender,
    HttpEmailSender,
    HttpRecipientDirectory,
    LoggingEmailSender,
    NotificationDispatcher,
)
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def consumer_name() -> str:
    """Unique name per process within the consumer group."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def build_consumer(
    settings: Settings,
    redis_client: aioredis.Redis,
    http_client: httpx.AsyncClient,
    name: Optional[str] = None,
) -> EventConsumer:
    """Wire the notification dispatcher onto an event consumer."""
    sender: EmailSender
    if settings.email_api_url:
        sender = HttpEmailSender(http_client, settings.email_api_url, settings.email_from)
    else:
        sender = LoggingEmailSender()

    dispatcher = NotificationDispatcher(
        directory=HttpRecipientDirectory(
            http_client,
            settings.user_service_url,
            settings.internal_service_secret,
            settings.internal_token_ttl_seconds,
            settings.internal_call_timeout_seconds,
        ),
        sender=sender,
        guard=IdempotencyGuard(redis_client, settings.notification_dedup_ttl_seconds),
        dedup_ttl_seconds=settings.notification_dedup_ttl_seconds,
    )

    return EventConsumer(
        EventLog(redis_client, settings.event_stream_prefix),
        topics=[Topic.ORDER, Topic.PAYMENT],
        group=settings.consumer_group,
        consumer_name=name or consumer_name(),
        handler=dispatcher,
        batch_size=settings.consumer_batch_size,
        block_ms=settings.consumer_block_ms,
        min_idle_ms=settings.consumer_min_idle_ms,
        max_deliveries=settings.consumer_max_deliveries,
    )


async def start_notification_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the notification worker.

    Runs until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    http_client = httpx.AsyncClient()
    consumer = build_consumer(settings, redis_client, http_client)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("notification_worker_shutdown_signal_received", signal=sig)
        consumer.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await consumer.run()
    finally:
        await http_client.aclose()
        await redis_client.aclose()
        logger.info("notification_worker_stopped")


def main() -> None:
    asyncio.run(start_notification_worker())


if __name__ == "__main__":
    main()
