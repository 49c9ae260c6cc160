"""Status events for running generations.

Key Components:
    - StatusEventType: Enum of all event types on a status channel
    - StatusEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation keyed by channel id

Event Flow:
    1. CodeGenerationPipeline publishes events for its generation id
    2. SSE responses (or any other consumer) subscribe to the channel
    3. The stream ends with exactly one ``complete`` or ``error`` event
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    TERMINAL_EVENT_TYPES,
    StatusEvent,
    StatusEventType,
    StatusLevel,
)

__all__ = [
    # Event types
    "StatusEventType",
    "StatusEvent",
    "StatusLevel",
    "TERMINAL_EVENT_TYPES",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
