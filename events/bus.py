"""Async event bus for generation status channels.

This module provides an EventBus class that relays status events from
running generations to any number of consumers (SSE responses, pollers).

The event bus supports:
- Multiple subscribers per channel
- Async event delivery via asyncio.Queue
- Bounded buffering of events published before the first subscriber connects
- Channel lifecycle management (closing a channel terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict, deque
from collections.abc import AsyncIterator

import structlog

from events.types import StatusEvent, StatusEventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus keyed by channel id.

    Event Buffering:
        Events published before any subscriber connects are buffered (at
        most MAX_BUFFER_PER_CHANNEL, oldest dropped first). When the first
        subscriber connects, all buffered events are delivered immediately.
        Closing a channel drops its buffer, so a finished channel holds no
        memory whether or not anyone listened.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("gen_123")
        >>> await bus.publish(StatusEvent(
        ...     type=StatusEventType.STATUS,
        ...     channel_id="gen_123",
        ...     data={"message": "Creating sandbox...", "type": "info"},
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_channel("gen_123")

    Attributes:
        _subscribers: Dict mapping channel_id to list of subscriber queues
        _event_buffer: Dict mapping channel_id to events awaiting a subscriber
        _lock: Lock for subscriber management
    """

    # Maximum number of events held for a channel nobody has subscribed to.
    MAX_BUFFER_PER_CHANNEL = 500

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[StatusEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, deque[StatusEvent]] = {}
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, channel_id: str) -> asyncio.Queue[StatusEvent]:
        """Subscribe to events for a channel.

        Buffered events (published before any subscriber connected) are
        delivered to the new subscriber immediately.

        Returns:
            An asyncio.Queue that will receive StatusEvent objects.
        """
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        buffered_events: list[StatusEvent] = []

        with self._lock:
            self._subscribers[channel_id].append(queue)
            subscriber_count = len(self._subscribers[channel_id])
            if channel_id in self._event_buffer:
                buffered_events = list(self._event_buffer.pop(channel_id))

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            channel_id=channel_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, channel_id: str, queue: asyncio.Queue[StatusEvent]) -> None:
        """Remove a queue from a channel; unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(channel_id)
            if not queues:
                return
            try:
                queues.remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", channel_id=channel_id)
                return
            if not queues:
                del self._subscribers[channel_id]

    async def publish(self, event: StatusEvent) -> None:
        """Publish an event to all subscribers of its channel.

        With no subscribers the event is buffered until one connects or the
        channel is closed.
        """
        with self._lock:
            subscribers = list(self._subscribers.get(event.channel_id, []))
            if not subscribers:
                buffer = self._event_buffer.get(event.channel_id)
                if buffer is None:
                    buffer = deque(maxlen=self.MAX_BUFFER_PER_CHANNEL)
                    self._event_buffer[event.channel_id] = buffer
                buffer.append(event)
                return

        # Bounded wait so a stalled consumer cannot block the generation.
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    channel_id=event.channel_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    channel_id=event.channel_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            channel_id=event.channel_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    async def close_channel(self, channel_id: str) -> None:
        """Close a channel, signal every subscriber with a sentinel and drop its buffer."""
        with self._lock:
            queues_to_signal = self._subscribers.pop(channel_id, [])
            dropped = self._event_buffer.pop(channel_id, None)

        sentinel = StatusEvent(type=StatusEventType.CHANNEL_CLOSED, channel_id=channel_id)
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        logger.debug(
            "channel_closed",
            channel_id=channel_id,
            subscribers_signalled=len(queues_to_signal),
            buffered_events_dropped=len(dropped) if dropped else 0,
        )

    async def stream(
        self,
        channel_id: str,
        queue: asyncio.Queue[StatusEvent] | None = None,
    ) -> AsyncIterator[StatusEvent]:
        """Yield a channel's events up to and including its terminal event.

        Pass a ``queue`` from an earlier ``subscribe`` call to attach before
        the publisher starts; it is unsubscribed when the stream ends.
        """
        if queue is None:
            queue = self.subscribe(channel_id)
        try:
            while True:
                event = await queue.get()
                if event.type == StatusEventType.CHANNEL_CLOSED:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self.unsubscribe(channel_id, queue)

    def discard_channel(self, channel_id: str) -> None:
        """Forget buffered events for a channel."""
        with self._lock:
            self._event_buffer.pop(channel_id, None)

    def get_subscriber_count(self, channel_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel_id, []))

    def get_buffered_count(self, channel_id: str) -> int:
        with self._lock:
            return len(self._event_buffer.get(channel_id, ()))

    def get_open_channels(self) -> set[str]:
        """Channels that still hold subscribers or buffered events."""
        with self._lock:
            return set(self._subscribers) | set(self._event_buffer)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
