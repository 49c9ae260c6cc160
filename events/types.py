"""Event type definitions for the generation status channel.

Every generation publishes an ordered stream of status events. The stream
always ends with exactly one terminal event (``complete`` or ``error``),
after which the channel is closed.
"""

import json
import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class StatusEventType(StrEnum):
    """All event types on the status channel.

    - Progress: status messages, assistant text, tool start/complete
    - Terminal: complete or error
    - Sentinel: closed, delivered to subscribers when a channel shuts
    """

    # Progress
    STATUS = "status"
    TEXT = "text"
    TOOL_START = "tool_start"
    TOOL_COMPLETE = "tool_complete"

    # Terminal
    ERROR = "error"
    COMPLETE = "complete"

    # Sentinel
    CHANNEL_CLOSED = "closed"


TERMINAL_EVENT_TYPES = frozenset({StatusEventType.COMPLETE, StatusEventType.ERROR})


class StatusLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"


class StatusEvent(BaseModel):
    """An event emitted while a generation runs.

    Payload schemas by event type:

    STATUS:
        - message: str - Human-readable progress message
        - type: str - info, success or warning

    TEXT:
        - content: str - Assistant text from the coding agent

    TOOL_START:
        - tool: str - Tool name
        - path: Optional[str] - File path for file tools

    TOOL_COMPLETE:
        - tool: str - Tool name
        - path: Optional[str] - File path for file tools
        - success: bool - Whether the tool call succeeded

    ERROR:
        - message: str - Why the generation failed

    COMPLETE:
        - message: str
        - generation_id, sandbox_id, sandbox_url: str
        - files_created: list[str]
        - commit_sha, commit_url, branch_name, warning: Optional[str]
    """

    type: StatusEventType
    timestamp: float = Field(default_factory=time.time)
    channel_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "status",
                    "timestamp": 1699876543.123,
                    "channel_id": "gen_3f2a9c1b7d4e",
                    "data": {"message": "Creating sandbox...", "type": "info"},
                }
            ]
        }
    }

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_sse(self) -> str:
        """Render as a server-sent event frame: ``event: <type>`` plus JSON data."""
        return f"event: {self.type.value}\ndata: {json.dumps(self.data)}\n\n"
