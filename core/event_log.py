"""
Append-only per-topic event log backed by Redis Streams.

Each topic is one stream; Redis assigns strictly increasing entry ids.
Consumer groups give competing-consumer, at-least-once delivery: an entry
stays pending for its group until acknowledged.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import ResponseError

from core.events import DomainEvent, Topic
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEAD_LETTER_SUFFIX = ":dead"


@dataclass(frozen=True)
class LogEntry:
    """One entry read from a topic stream."""

    topic: Topic
    entry_id: str
    fields: Dict[str, str] = field(default_factory=dict)


class EventLog:
    """
    Redis Streams event log.

    Args:
        redis_client: Client created with ``decode_responses=True``
        prefix: Stream name prefix; streams are ``<prefix>:<topic>``
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str):
        self.redis = redis_client
        self.prefix = prefix
        self._streams = {self.stream_name(topic): topic for topic in Topic}

    def stream_name(self, topic: Topic) -> str:
        return f"{self.prefix}:{topic.value}"

    def dead_letter_stream(self, topic: Topic) -> str:
        return self.stream_name(topic) + DEAD_LETTER_SUFFIX

    def _attempts_key(self, topic: Topic, group: str) -> str:
        return f"{self.stream_name(topic)}:attempts:{group}"

    async def append(self, event: DomainEvent) -> str:
        """
        Append an event to its topic.

        Returns:
            str: Server-assigned entry id

        Raises:
            redis.RedisError: If the append fails
        """
        entry_id = await self.redis.xadd(self.stream_name(event.topic), event.to_fields())
        metrics.record_event_published(event.topic.value, "ok")
        logger.info(
            "event_published",
            event_type=event.type,
            topic=event.topic.value,
            entry_id=entry_id,
            order_id=event.order_id,
        )
        return entry_id

    async def publish(self, event: DomainEvent) -> Optional[str]:
        """
        Append an event without ever raising.

        Event emission is a best-effort side effect of the saga; a failure
        here is logged and reported as ``None``.
        """
        try:
            return await self.append(event)
        except Exception as e:
            metrics.record_event_published(event.topic.value, "failed")
            logger.error(
                "event_publish_failed",
                event_type=event.type,
                topic=event.topic.value,
                order_id=event.order_id,
                request_id=event.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def entries(self, topic: Topic) -> List[LogEntry]:
        """Read a whole topic in order."""
        raw = await self.redis.xrange(self.stream_name(topic))
        return [LogEntry(topic=topic, entry_id=entry_id, fields=fields) for entry_id, fields in raw]

    async def dead_letters(self, topic: Topic) -> List[Dict[str, str]]:
        raw = await self.redis.xrange(self.dead_letter_stream(topic))
        return [fields for _, fields in raw]

    async def ensure_group(self, topic: Topic, group: str) -> None:
        """Create a consumer group from the start of the topic if missing."""
        try:
            await self.redis.xgroup_create(self.stream_name(topic), group, id="0", mkstream=True)
            logger.info("consumer_group_created", topic=topic.value, group=group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read_group(
        self,
        topics: Iterable[Topic],
        group: str,
        consumer: str,
        count: int,
        block_ms: Optional[int] = None,
    ) -> List[LogEntry]:
        """Read entries never delivered to this group."""
        streams = {self.stream_name(topic): ">" for topic in topics}
        response = await self.redis.xreadgroup(
            group, consumer, streams, count=count, block=block_ms
        )
        return self._parse_read(response)

    async def claim_stale(
        self, topic: Topic, group: str, consumer: str, min_idle_ms: int, count: int
    ) -> List[LogEntry]:
        """
        Take over entries left unacknowledged for at least ``min_idle_ms``.

        Covers both entries whose handler failed and entries owned by a
        consumer that died.
        """
        response = await self.redis.xautoclaim(
            self.stream_name(topic), group, consumer, min_idle_ms, start_id="0-0", count=count
        )
        messages = response[1] if response and len(response) > 1 else []
        return [
            LogEntry(topic=topic, entry_id=entry_id, fields=fields or {})
            for entry_id, fields in messages
            if entry_id is not None
        ]

    async def record_delivery(self, entry: LogEntry, group: str) -> int:
        """Count one more delivery of an entry to a group, returning the total."""
        return await self.redis.hincrby(self._attempts_key(entry.topic, group), entry.entry_id, 1)

    async def ack(self, entry: LogEntry, group: str) -> None:
        await self.redis.xack(self.stream_name(entry.topic), group, entry.entry_id)
        await self.redis.hdel(self._attempts_key(entry.topic, group), entry.entry_id)

    async def dead_letter(self, entry: LogEntry, group: str, attempts: int, reason: str) -> None:
        """Move an entry to the topic's dead-letter stream and acknowledge it."""
        fields = dict(entry.fields)
        fields.update(
            {
                "originalId": entry.entry_id,
                "originalTopic": entry.topic.value,
                "group": group,
                "attempts": str(attempts),
                "reason": reason,
            }
        )
        await self.redis.xadd(self.dead_letter_stream(entry.topic), fields)
        await self.ack(entry, group)
        metrics.record_event_dead_lettered(entry.topic.value, reason)
        logger.warning(
            "event_dead_lettered",
            topic=entry.topic.value,
            entry_id=entry.entry_id,
            attempts=attempts,
            reason=reason,
        )

    async def pending_count(self, topic: Topic, group: str) -> int:
        """Number of delivered but unacknowledged entries for a group."""
        summary = await self.redis.xpending(self.stream_name(topic), group)
        return int(summary["pending"]) if summary else 0

    def _parse_read(self, response: Any) -> List[LogEntry]:
        # RESP2 answers [[stream, messages], ...]; RESP3 answers {stream: [messages]}
        if not response:
            return []
        if isinstance(response, dict):
            pairs = [
                (stream, value[0] if value and isinstance(value[0], list) else value)
                for stream, value in response.items()
            ]
        else:
            pairs = [(stream, messages) for stream, messages in response]

        entries: List[LogEntry] = []
        for stream, messages in pairs:
            topic = self._streams[stream]
            for entry_id, fields in messages or []:
                if entry_id is None:
                    continue
                entries.append(LogEntry(topic=topic, entry_id=entry_id, fields=fields or {}))
        return entries
