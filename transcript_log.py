"""Append-only conversation transcript for a live caseworker session.

Provides:
- LogEntry: frozen dataclass for one line of the transcript
- TranscriptLog: append-only log with tuple snapshots for readers
- FragmentAccumulator: joins streamed transcription fragments into entries

No external dependencies beyond stdlib.
"""

import itertools
import time
from dataclasses import dataclass

ROLES = ("user", "agent", "system")


@dataclass(frozen=True)
class LogEntry:
    """A single transcript line."""
    id: str
    role: str  # "user", "agent", "system"
    text: str
    timestamp: float  # time.time() when appended


class TranscriptLog:
    """Append-only ordered transcript.

    Every append builds a new tuple and swaps it in, so snapshot() handed to
    the presentation layer is never mutated underneath it.

    Args:
        on_append: called with each new LogEntry
    """

    def __init__(self, on_append=None):
        self._entries: tuple = ()
        self._ids = itertools.count(1)
        self._session_tag = f"{int(time.time() * 1000):x}"
        self._on_append = on_append or (lambda e: None)

    def append(self, role: str, text: str) -> LogEntry:
        if role not in ROLES:
            raise ValueError(f"Unknown transcript role: {role!r}")
        entry = LogEntry(
            id=f"{self._session_tag}-{next(self._ids)}",
            role=role,
            text=text,
            timestamp=time.time(),
        )
        self._entries = self._entries + (entry,)
        self._on_append(entry)
        return entry

    def snapshot(self) -> tuple:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)


class FragmentAccumulator:
    """Collects streamed transcription fragments until the speaker's turn ends.

    The service sends transcription a few words at a time. Fragments of the
    same role are joined and written to the log as one entry when flush() is
    called or the role changes.
    """

    def __init__(self, log: TranscriptLog):
        self._log = log
        self._role: str | None = None
        self._parts: list[str] = []

    def add(self, role: str, text: str):
        if not text:
            return
        if self._role is not None and role != self._role:
            self.flush()
        self._role = role
        self._parts.append(text)

    def flush(self) -> LogEntry | None:
        text = "".join(self._parts).strip()
        role = self._role
        self._role = None
        self._parts = []
        if not text or role is None:
            return None
        # Collapse the double spaces left by fragment boundaries
        return self._log.append(role, " ".join(text.split()))

    @property
    def pending(self) -> bool:
        return bool(self._parts)
