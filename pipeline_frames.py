"""Typed dataclass frames that flow into the LiveAgent event loop via asyncio.Queue."""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class FrameType(Enum):
    AUDIO_CHUNK = auto()      # PCM16 bytes from the agent (24kHz)
    TRANSCRIPT = auto()       # Transcript fragment; metadata["role"] is user/agent
    TOOL_CALL_BATCH = auto()  # list[ToolCall] from the service
    INTERRUPTED = auto()      # Service detected barge-in, drop agent audio
    TURN_COMPLETE = auto()    # Agent finished generating its turn
    CLOSED = auto()           # Connection ended normally
    TRANSPORT_ERROR = auto()  # Connection failed mid-session; data is the reason
    PLAYBACK_IDLE = auto()    # Playback pending set emptied (posted by scheduler)
    TURN_TIMEOUT = auto()     # Speaking watchdog fired


@dataclass
class PipelineFrame:
    type: FrameType
    generation_id: int = 0
    data: Any = None
    metadata: dict = field(default_factory=dict)
