"""Tests for events/bus.py -- async pub/sub for generation status channels.

Covers publish/subscribe, buffering before the first subscriber, the
close_channel sentinel and buffer release, stream() termination on terminal events,
error isolation between subscribers and the global singleton accessor.
"""

import asyncio

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import StatusEvent, StatusEventType

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    channel_id: str = "gen_test",
    event_type: StatusEventType = StatusEventType.STATUS,
) -> StatusEvent:
    return StatusEvent(
        type=event_type,
        channel_id=channel_id,
        data={"message": "Creating sandbox...", "type": "info"},
    )


# =========================================================================
# Event types
# =========================================================================


class TestStatusEvent:
    def test_sse_frame(self) -> None:
        frame = _make_event().to_sse()
        assert frame == (
            "event: status\n"
            'data: {"message": "Creating sandbox...", "type": "info"}\n\n'
        )

    def test_terminal_types(self) -> None:
        assert _make_event(event_type=StatusEventType.COMPLETE).is_terminal
        assert _make_event(event_type=StatusEventType.ERROR).is_terminal
        assert not _make_event(event_type=StatusEventType.TEXT).is_terminal


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("gen_1")
        assert isinstance(queue, asyncio.Queue)

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("gen_1")
        await event_bus.publish(_make_event("gen_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == StatusEventType.STATUS
        assert received.channel_id == "gen_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("gen_1")
        q2 = event_bus.subscribe("gen_1")
        await event_bus.publish(_make_event("gen_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1.type == r2.type == StatusEventType.STATUS

    async def test_publish_does_not_cross_channels(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("gen_1")
        q2 = event_bus.subscribe("gen_2")
        await event_bus.publish(_make_event("gen_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.channel_id == "gen_1"
        assert q2.empty()


# =========================================================================
# Event Buffering
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("gen_1", StatusEventType.STATUS))
        await event_bus.publish(_make_event("gen_1", StatusEventType.TEXT))

        queue = event_bus.subscribe("gen_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == StatusEventType.STATUS
        assert r2.type == StatusEventType.TEXT

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("gen_1"))
        q1 = event_bus.subscribe("gen_1")
        assert not q1.empty()
        # A second subscriber should NOT get the already-delivered buffer
        q2 = event_bus.subscribe("gen_1")
        assert q2.empty()

    async def test_close_drops_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("gen_1", StatusEventType.COMPLETE))
        await event_bus.close_channel("gen_1")

        assert event_bus.get_buffered_count("gen_1") == 0
        assert event_bus.get_open_channels() == set()

    async def test_buffer_is_bounded(self, event_bus: EventBus) -> None:
        event_bus.MAX_BUFFER_PER_CHANNEL = 3
        for event_type in (
            StatusEventType.STATUS,
            StatusEventType.TEXT,
            StatusEventType.TOOL_START,
            StatusEventType.TOOL_COMPLETE,
        ):
            await event_bus.publish(_make_event("gen_1", event_type))

        queue = event_bus.subscribe("gen_1")
        received = [queue.get_nowait().type for _ in range(queue.qsize())]
        assert received == [
            StatusEventType.TEXT,
            StatusEventType.TOOL_START,
            StatusEventType.TOOL_COMPLETE,
        ]


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("gen_1")
        event_bus.unsubscribe("gen_1", queue)
        assert event_bus.get_subscriber_count("gen_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[StatusEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_channel", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("gen_1")
        wrong_queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        event_bus.unsubscribe("gen_1", wrong_queue)
        assert event_bus.get_subscriber_count("gen_1") == 1


# =========================================================================
# close_channel -- sentinel
# =========================================================================


class TestCloseChannel:
    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("gen_1")
        await event_bus.close_channel("gen_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == StatusEventType.CHANNEL_CLOSED
        assert sentinel.channel_id == "gen_1"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("gen_1")
        await event_bus.close_channel("gen_1")
        assert event_bus.get_subscriber_count("gen_1") == 0

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_channel("no_such_channel")

    async def test_closed_channel_holds_nothing(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("gen_1")
        await event_bus.publish(_make_event("gen_1"))
        event_bus.unsubscribe("gen_1", queue)
        # Published after the only reader left: buffered until close.
        await event_bus.publish(_make_event("gen_1", StatusEventType.COMPLETE))
        assert event_bus.get_buffered_count("gen_1") == 1

        await event_bus.close_channel("gen_1")

        assert event_bus.get_open_channels() == set()


# =========================================================================
# stream()
# =========================================================================


class TestStream:
    async def test_stream_ends_after_terminal_event(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("gen_1", StatusEventType.STATUS))
        await event_bus.publish(_make_event("gen_1", StatusEventType.ERROR))
        await event_bus.publish(_make_event("gen_1", StatusEventType.TEXT))

        types = [e.type async for e in event_bus.stream("gen_1")]

        assert types == [StatusEventType.STATUS, StatusEventType.ERROR]
        assert event_bus.get_subscriber_count("gen_1") == 0

    async def test_stream_ends_on_close(self, event_bus: EventBus) -> None:
        async def _consume() -> list[StatusEvent]:
            return [e async for e in event_bus.stream("gen_1")]

        consumer = asyncio.create_task(_consume())
        await asyncio.sleep(0)
        await event_bus.publish(_make_event("gen_1"))
        await event_bus.close_channel("gen_1")

        events = await asyncio.wait_for(consumer, timeout=1.0)
        assert [e.type for e in events] == [StatusEventType.STATUS]

    async def test_discard_channel_forgets_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("gen_1"))
        event_bus.discard_channel("gen_1")
        assert event_bus.get_buffered_count("gen_1") == 0
        assert event_bus.subscribe("gen_1").empty()


# =========================================================================
# Error isolation
# =========================================================================


class TestErrorIsolation:
    """A failing subscriber should not prevent delivery to other subscribers."""

    async def test_error_does_not_block_other_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("gen_1")
        q2 = event_bus.subscribe("gen_1")
        call_count = 0

        async def failing_put(item: StatusEvent) -> None:
            nonlocal call_count
            call_count += 1
            raise RuntimeError("subscriber error")

        q1.put = failing_put  # type: ignore[assignment]

        await event_bus.publish(_make_event("gen_1"))

        assert not q2.empty()
        assert q2.get_nowait().type == StatusEventType.STATUS
        assert call_count == 1


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    def test_get_event_bus_returns_same_instance(self) -> None:
        reset_event_bus()
        assert get_event_bus() is get_event_bus()

    def test_reset_event_bus_creates_new_instance(self) -> None:
        reset_event_bus()
        bus1 = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not bus1
