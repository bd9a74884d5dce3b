"""Shared data models for donecall."""

from __future__ import annotations

import time
from enum import Enum
from typing import Union

from pydantic import BaseModel, Field

MAX_COMPLETION_HISTORY = 5


def now_ms() -> float:
    """Wall-clock time in milliseconds since the epoch."""
    return time.time() * 1000.0


class SessionState(str, Enum):
    """Detailed state of a tracked generation session."""

    IDLE = "idle"
    GENERATING = "generating"
    THINKING = "thinking"
    WRITING = "writing"
    COMPLETED = "completed"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


ACTIVE_STATES = frozenset({SessionState.GENERATING, SessionState.THINKING, SessionState.WRITING})


class SessionMetadata(BaseModel):
    """Display metadata reported by the signal source for one session."""

    title: str = "Chat"
    locator: str = ""
    window_group: str | None = None
    last_accessed: float | None = None


class CompletionRecord(BaseModel):
    """One entry of a session's completion history."""

    timestamp: float
    duration_ms: float = 0.0
    preview: str = ""


class Session(BaseModel):
    """A tracked generation context, e.g. one browser tab hosting a chat."""

    session_id: str
    window_group: str | None = None
    title: str = "Chat"
    locator: str = ""
    monitored: bool = False
    state: SessionState = SessionState.IDLE
    state_changed_at: float = Field(default_factory=now_ms)
    last_signal_timestamp: float | None = None
    timestamp_authoritative: bool = False
    generation_started_at: float | None = None
    completion_history: list[CompletionRecord] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    def add_completion(self, record: CompletionRecord) -> None:
        """Prepend a completion, evicting the oldest beyond the history limit."""
        self.completion_history.insert(0, record)
        del self.completion_history[MAX_COMPLETION_HISTORY:]

    def to_display_name(self) -> str:
        """Short display name for the session."""
        return f"{self.title or 'session'} [{self.session_id}]"


class StateChangedEvent(BaseModel):
    """Emitted by a detector on every detailed state transition."""

    session_id: str
    state: SessionState
    observed_at: float
    generation_started_at: float | None = None
    epoch: int = 0


class CompletionEvent(BaseModel):
    """Emitted by a detector exactly once per observed completion."""

    session_id: str
    preview: str = ""
    duration_ms: float | None = None
    emitted_at: float
    epoch: int = 0


class TimestampEvent(BaseModel):
    """An out-of-band, authoritative activity timestamp for a session."""

    session_id: str
    timestamp: float
    epoch: int = 0


DetectorEvent = Union[StateChangedEvent, CompletionEvent, TimestampEvent]


class Notification(BaseModel):
    """A notification intent built by the dispatcher."""

    notification_id: str
    session_id: str
    window_group: str | None = None
    title: str
    message: str
    subtitle: str | None = None
    created_at: float = Field(default_factory=now_ms)
