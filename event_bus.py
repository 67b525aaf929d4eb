"""
In-process event bus between the caseworker core and its presentation layer.

The core emits state changes (agent state, draft snapshots, transcript entries,
mic volume, errors) and any number of subscribers render them. Nothing is
written to disk: the bus lives exactly as long as the session that owns it.
A short in-memory history lets a late subscriber catch up.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)

# Event types excluded from the history (high-frequency, no replay value)
_HISTORY_EXCLUDE = {"volume"}

_HISTORY_SIZE = 200


def _type_name(event_type) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


class EventType(str, Enum):
    """All event types in the bus catalog."""
    STATE = "state"
    DRAFT = "draft"
    TRANSCRIPT = "transcript"
    VOLUME = "volume"
    ERROR = "error"
    TOOL_CALL = "tool_call"


@dataclass
class BusEvent:
    """A single event on the bus."""
    ts: float
    src: str
    type: str
    sid: str
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, sid: str, **kwargs):
        self.ts = ts
        self.src = src
        self.type = type
        self.sid = sid
        self.payload = kwargs

    def to_dict(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type,
                "sid": self.sid, **self.payload}


class EventBus:
    """In-process publish/subscribe with a bounded replay history.

    Usage:
        bus = EventBus("live_agent", session_id)
        bus.on("*", my_callback)                  # Register listener
        bus.emit("state", state="listening")      # Record + callbacks
        bus.emit("volume", level=0.4)             # Callbacks only (excluded from history)
        events = bus.recent(last_n=10)
    """

    def __init__(self, src: str, sid: str = ""):
        self._src = src
        self._sid = sid
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]
        self._history: deque = deque(maxlen=_HISTORY_SIZE)

    @property
    def sid(self) -> str:
        return self._sid

    @sid.setter
    def sid(self, value: str):
        self._sid = value

    def on(self, event_type: str, callback: Callable):
        """Register a callback for an event type, or "*" for all events."""
        self._callbacks.setdefault(_type_name(event_type), []).append(callback)

    def off(self, event_type: str, callback: Callable):
        callbacks = self._callbacks.get(_type_name(event_type), [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _fire_callbacks(self, evt: BusEvent):
        """Fire registered callbacks for an event.

        A failing subscriber is logged and skipped; it must never break the
        audio pipeline that emitted the event.
        """
        for cb_type in (evt.type, "*"):
            for cb in list(self._callbacks.get(cb_type, [])):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def emit(self, event_type: str, **payload) -> BusEvent:
        """Record the event (unless high-frequency) and fire callbacks."""
        type_name = _type_name(event_type)
        evt = BusEvent(ts=time.time(), src=self._src, type=type_name,
                       sid=self._sid, **payload)
        if type_name not in _HISTORY_EXCLUDE:
            self._history.append(evt)
        self._fire_callbacks(evt)
        return evt

    def recent(self, last_n: int = 50, event_type: str | None = None) -> list[BusEvent]:
        """Return up to last_n recorded events, optionally of one type."""
        type_name = _type_name(event_type) if event_type else None
        events = [e for e in self._history if not type_name or e.type == type_name]
        if last_n:
            events = events[-last_n:]
        return events

    def clear(self):
        self._history.clear()
