"""
Tests for the Redis Streams event log and its consumer loop.
"""
from typing import List
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.consumer import EventConsumer
from core.event_log import EventLog, LogEntry
from core.events import (
    MalformedEventError,
    OrderCreated,
    PaymentFailed,
    Topic,
    decode_event,
)

GROUP = "notification-service"


def order_created(n: int) -> OrderCreated:
    return OrderCreated(
        order_id=f"order-{n}", user_id="user-1", total_amount="10.00", request_id=f"req-{n}"
    )


def consumer(event_log: EventLog, handler, name: str = "c1", **kwargs) -> EventConsumer:
    options = {"batch_size": 10, "block_ms": None, "min_idle_ms": 0, "max_deliveries": 3}
    options.update(kwargs)
    return EventConsumer(
        event_log,
        topics=[Topic.ORDER, Topic.PAYMENT],
        group=GROUP,
        consumer_name=name,
        handler=handler,
        **options,
    )


def handled_order_ids(handler: AsyncMock) -> List[str]:
    return [c.args[1].order_id for c in handler.await_args_list]


class TestEventLog:
    """Append and read."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entries_keep_append_order(self, event_log: EventLog) -> None:
        ids = [await event_log.append(order_created(n)) for n in range(3)]

        entries = await event_log.entries(Topic.ORDER)

        assert [e.entry_id for e in entries] == ids
        assert [e.fields["orderId"] for e in entries] == ["order-0", "order-1", "order-2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_topics_are_separate_streams(self, event_log: EventLog) -> None:
        await event_log.append(order_created(1))
        await event_log.append(PaymentFailed(order_id="order-1", user_id="user-1", request_id="r"))

        assert len(await event_log.entries(Topic.ORDER)) == 1
        [payment] = await event_log.entries(Topic.PAYMENT)
        assert payment.fields["type"] == "PAYMENT_FAILED"
        assert "paymentId" not in payment.fields

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_swallows_append_failure(self, event_log: EventLog, mocker) -> None:
        mocker.patch.object(event_log.redis, "xadd", side_effect=RedisConnectionError("down"))

        assert await event_log.publish(order_created(1)) is None

    @pytest.mark.unit
    def test_decode_rejects_unknown_type(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_event({"type": "ORDER_SHIPPED", "orderId": "o", "userId": "u"})

    @pytest.mark.unit
    def test_decode_rejects_missing_fields(self) -> None:
        with pytest.raises(MalformedEventError):
            decode_event({"type": "ORDER_CREATED", "orderId": "o"})


class TestEventConsumer:
    """At-least-once delivery through a consumer group."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entries_handled_in_order_and_acked(self, event_log: EventLog) -> None:
        for n in range(3):
            await event_log.append(order_created(n))
        handler = AsyncMock()

        acked = await consumer(event_log, handler).poll_once()

        assert acked == 3
        assert handled_order_ids(handler) == ["order-0", "order-1", "order-2"]
        assert await event_log.pending_count(Topic.ORDER, GROUP) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_group_created_from_start_of_topic(self, event_log: EventLog) -> None:
        """Entries appended before the group existed are still delivered."""
        await event_log.append(order_created(1))
        handler = AsyncMock()

        await consumer(event_log, handler).poll_once()

        assert handled_order_ids(handler) == ["order-1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_entry_is_redelivered(self, event_log: EventLog) -> None:
        await event_log.append(order_created(1))
        handler = AsyncMock(side_effect=[RuntimeError("smtp down"), None])
        c = consumer(event_log, handler)

        assert await c.poll_once() == 0
        assert await event_log.pending_count(Topic.ORDER, GROUP) == 1

        assert await c.poll_once() == 1
        assert handler.await_count == 2
        assert await event_log.pending_count(Topic.ORDER, GROUP) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entry_dead_lettered_after_max_deliveries(self, event_log: EventLog) -> None:
        await event_log.append(order_created(1))
        handler = AsyncMock(side_effect=RuntimeError("always failing"))
        c = consumer(event_log, handler, max_deliveries=2)

        for _ in range(3):
            await c.poll_once()

        assert handler.await_count == 2
        assert await event_log.pending_count(Topic.ORDER, GROUP) == 0
        [dead] = await event_log.dead_letters(Topic.ORDER)
        assert dead["reason"] == "max_deliveries"
        assert dead["attempts"] == "3"
        assert dead["orderId"] == "order-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_entry_dead_lettered_without_handler(
        self, event_log: EventLog, redis_client
    ) -> None:
        await redis_client.xadd(event_log.stream_name(Topic.ORDER), {"type": "GARBAGE"})
        await event_log.append(order_created(2))
        handler = AsyncMock()

        acked = await consumer(event_log, handler).poll_once()

        assert acked == 1
        assert handled_order_ids(handler) == ["order-2"]
        [dead] = await event_log.dead_letters(Topic.ORDER)
        assert dead["reason"] == "malformed"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_competing_consumers_split_entries(self, event_log: EventLog) -> None:
        for n in range(5):
            await event_log.append(order_created(n))
        first_handler, second_handler = AsyncMock(), AsyncMock()

        await consumer(event_log, first_handler, name="c1", batch_size=2).poll_once()
        await consumer(event_log, second_handler, name="c2").poll_once()

        first, second = handled_order_ids(first_handler), handled_order_ids(second_handler)
        assert first == ["order-0", "order-1"]
        assert second == ["order-2", "order-3", "order-4"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_each_group_sees_every_entry(self, event_log: EventLog) -> None:
        await event_log.append(order_created(1))
        notifications, analytics = AsyncMock(), AsyncMock()

        await consumer(event_log, notifications).poll_once()
        await EventConsumer(
            event_log,
            topics=[Topic.ORDER],
            group="analytics",
            consumer_name="a1",
            handler=analytics,
            block_ms=None,
        ).poll_once()

        assert handled_order_ids(notifications) == ["order-1"]
        assert handled_order_ids(analytics) == ["order-1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_receives_log_entry(self, event_log: EventLog) -> None:
        entry_id = await event_log.append(order_created(1))
        handler = AsyncMock()

        await consumer(event_log, handler).poll_once()

        entry: LogEntry = handler.await_args.args[0]
        assert entry.entry_id == entry_id
        assert entry.topic == Topic.ORDER
