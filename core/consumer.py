"""
Event log consumer loop.

One consumer is a member of a named group. Each poll first reclaims entries
that stayed unacknowledged past ``min_idle_ms``, then reads new ones. Entries
are handled one at a time and acknowledged individually; an entry whose
handler raised stays pending and comes back on a later poll. Entries that
keep failing, or cannot be decoded, go to the topic's dead-letter stream.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from core.event_log import EventLog, LogEntry
from core.events import DomainEvent, MalformedEventError, Topic, decode_event
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[LogEntry, DomainEvent], Awaitable[None]]


class EventConsumer:
    """Competing consumer over one or more topics."""

    def __init__(
        self,
        event_log: EventLog,
        topics: Sequence[Topic],
        group: str,
        consumer_name: str,
        handler: EventHandler,
        batch_size: int = 10,
        block_ms: Optional[int] = 2000,
        min_idle_ms: int = 60000,
        max_deliveries: int = 5,
        error_backoff_seconds: float = 1.0,
    ):
        self.event_log = event_log
        self.topics = list(topics)
        self.group = group
        self.consumer_name = consumer_name
        self.handler = handler
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.min_idle_ms = min_idle_ms
        self.max_deliveries = max_deliveries
        self.error_backoff_seconds = error_backoff_seconds
        self.running = False
        self._groups_ready = False

    async def ensure_groups(self) -> None:
        if self._groups_ready:
            return
        for topic in self.topics:
            await self.event_log.ensure_group(topic, self.group)
        self._groups_ready = True

    async def poll_once(self) -> int:
        """
        Run one poll cycle.

        Returns:
            int: Number of entries acknowledged
        """
        await self.ensure_groups()

        batch: List[LogEntry] = []
        for topic in self.topics:
            batch.extend(
                await self.event_log.claim_stale(
                    topic, self.group, self.consumer_name, self.min_idle_ms, self.batch_size
                )
            )
        batch.extend(
            await self.event_log.read_group(
                self.topics, self.group, self.consumer_name, self.batch_size, self.block_ms
            )
        )

        acked = 0
        for entry in batch:
            if await self._process(entry):
                acked += 1
        return acked

    async def _process(self, entry: LogEntry) -> bool:
        attempts = await self.event_log.record_delivery(entry, self.group)
        log = logger.bind(
            topic=entry.topic.value,
            entry_id=entry.entry_id,
            attempts=attempts,
            consumer=self.consumer_name,
        )

        if attempts > self.max_deliveries:
            await self.event_log.dead_letter(entry, self.group, attempts, "max_deliveries")
            return False

        try:
            event = decode_event(entry.fields)
        except MalformedEventError as e:
            log.error("event_malformed", error=str(e))
            await self.event_log.dead_letter(entry, self.group, attempts, "malformed")
            return False

        try:
            await self.handler(entry, event)
        except Exception as e:
            # Left pending; reclaimed after min_idle_ms
            metrics.record_event_consumed(entry.topic.value, "failed")
            log.error(
                "event_handler_failed",
                event_type=event.type,
                request_id=event.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        await self.event_log.ack(entry, self.group)
        metrics.record_event_consumed(entry.topic.value, "acked")
        log.info("event_acknowledged", event_type=event.type, request_id=event.request_id)
        return True

    async def run(self) -> None:
        """Poll until ``stop()`` is called."""
        self.running = True
        logger.info(
            "event_consumer_started",
            group=self.group,
            consumer=self.consumer_name,
            topics=[topic.value for topic in self.topics],
        )

        while self.running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_consumer_loop_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(self.error_backoff_seconds)

        logger.info("event_consumer_stopped", consumer=self.consumer_name)

    def stop(self) -> None:
        self.running = False
