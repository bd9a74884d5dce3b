"""Detection engine — decides when a session has finished generating."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Optional

from donecall.models import (
    CompletionEvent,
    DetectorEvent,
    SessionState,
    StateChangedEvent,
    TimestampEvent,
)
from donecall.validation import normalize_timestamp
from donecall.watcher.clock import Scheduler, TimerHandle
from donecall.watcher.signals import SignalReading, SignalSource, sample

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_STABILITY_WINDOW_MS = 1500
DEFAULT_COMPLETION_GRACE_MS = 3000
DEFAULT_PREVIEW_CHARS = 100


def make_preview(text: str, limit: int = DEFAULT_PREVIEW_CHARS) -> str:
    """First ``limit`` characters of ``text``, with an ellipsis if cut."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class SessionDetector:
    """
    Completion detector for a single session.

    Samples a signal source on every tick and runs a small state machine:

    - a rising edge of the activity flag records the generation start;
    - a falling edge arms a stability timer, but only if a start was seen
      while monitoring (a stale indicator on page load is not a completion);
    - while the timer is pending, any content change restarts it and an
      inactive tick is classified ``Completed``;
    - when it fires, one ``CompletionEvent`` is emitted, the session reports
      ``Completed`` and falls back to ``Idle`` after a grace period.

    Every detailed state change is emitted as a ``StateChangedEvent``.
    Nothing is emitted after ``stop()``.
    """

    def __init__(
        self,
        session_id: str,
        source: SignalSource,
        emit: Callable[[DetectorEvent], None],
        scheduler: Scheduler,
        *,
        stability_window_ms: int = DEFAULT_STABILITY_WINDOW_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        completion_grace_ms: int = DEFAULT_COMPLETION_GRACE_MS,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        epoch: int = 0,
        initial_state: SessionState = SessionState.IDLE,
        resume_started_at: Optional[float] = None,
    ):
        self.session_id = session_id
        self.source = source
        self.scheduler = scheduler
        self.stability_window_ms = stability_window_ms
        self.poll_interval_ms = poll_interval_ms
        self.completion_grace_ms = completion_grace_ms
        self.preview_chars = preview_chars
        self.epoch = epoch
        self._emit_fn = emit

        # Resuming after a restart: the first tick reconciles against this
        self._state = initial_state
        self._monitoring = False
        self._cancelled = False
        self._was_active = False
        self._last_content = ""
        self._last_timestamp: Optional[float] = None
        self._started_at: Optional[float] = (
            resume_started_at if initial_state.is_active else None
        )
        self._quiet_since: Optional[float] = None
        self._stability_timer: Optional[TimerHandle] = None
        self._grace_timer: Optional[TimerHandle] = None

    # ── Introspection ───────────────────────────────────────

    @property
    def state(self) -> SessionState:
        """Last reported detailed state."""
        return self._state

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    @property
    def generation_started_at(self) -> Optional[float]:
        """Start of the current generation, only while in an active state."""
        return self._started_at if self._state.is_active else None

    @property
    def stability_pending(self) -> bool:
        return self._stability_timer is not None and self._stability_timer.pending

    @property
    def grace_pending(self) -> bool:
        return self._grace_timer is not None and self._grace_timer.pending

    # ── Lifecycle ───────────────────────────────────────────

    def start(self) -> None:
        """Take a baseline reading and begin monitoring."""
        if self._monitoring or self._cancelled:
            return
        baseline = sample(self.source, self.session_id)
        self._was_active = baseline.active
        self._last_content = baseline.content
        if not baseline.active:
            self._started_at = None
        self._monitoring = True
        logger.debug(
            "Monitoring %s (active=%s, stability=%dms)",
            self.session_id, baseline.active, self.stability_window_ms,
        )

    def stop(self) -> None:
        """Stop monitoring. Timers are cancelled before this returns."""
        self._monitoring = False
        self._cancelled = True
        self._cancel_timer(self._stability_timer)
        self._cancel_timer(self._grace_timer)
        self._stability_timer = None
        self._grace_timer = None

    async def run(self) -> None:
        """Poll until stopped or cancelled."""
        self.start()
        try:
            while self._monitoring:
                self.tick()
                await asyncio.sleep(self.poll_interval_ms / 1000.0)
        finally:
            self.stop()

    # ── Sampling ────────────────────────────────────────────

    def tick(self) -> None:
        """Sample the signal source once and advance the state machine."""
        if not self._monitoring:
            return

        now = self.scheduler.now()
        reading = sample(self.source, self.session_id)
        content_changed = reading.content != self._last_content

        # Classified against the timers as they were before this tick's edge
        state = self._classify(reading, content_changed)

        if reading.active and not self._was_active:
            self._on_rising_edge(now)
        elif self._was_active and not reading.active:
            self._on_falling_edge()
        elif content_changed and self.stability_pending:
            # Output still moving: completion waits for a full quiet window
            self._arm_stability_timer()

        self._report(state, now)

        self._was_active = reading.active
        self._last_content = reading.content

        if reading.timestamp is not None:
            self._offer_timestamp(reading.timestamp)

    def push_timestamp(self, timestamp: float) -> None:
        """Accept an unsolicited authoritative timestamp from the source."""
        if self._monitoring:
            self._offer_timestamp(timestamp)

    def _classify(self, reading: SignalReading, content_changed: bool) -> SessionState:
        if not reading.active:
            if self.stability_pending or self.grace_pending:
                return SessionState.COMPLETED
            return SessionState.IDLE
        if reading.intermediate:
            return SessionState.THINKING
        if content_changed and reading.content:
            return SessionState.WRITING
        return SessionState.GENERATING

    def _on_rising_edge(self, now: float) -> None:
        self._cancel_timer(self._stability_timer)
        self._cancel_timer(self._grace_timer)
        if self._started_at is None:
            self._started_at = now
            logger.info("Generation started in %s", self.session_id)

    def _on_falling_edge(self) -> None:
        if self._started_at is None:
            logger.debug(
                "Ignoring stop in %s: no generation start observed", self.session_id
            )
            return
        self._arm_stability_timer()

    # ── Timers ──────────────────────────────────────────────

    @staticmethod
    def _cancel_timer(timer: Optional[TimerHandle]) -> None:
        if timer is not None:
            timer.cancel()

    def _arm_stability_timer(self) -> None:
        self._cancel_timer(self._stability_timer)
        self._quiet_since = self.scheduler.now()
        self._stability_timer = self.scheduler.call_later(
            self.stability_window_ms, self._on_stable
        )

    def _on_stable(self) -> None:
        if not self._monitoring or self._started_at is None:
            return
        now = self.scheduler.now()
        reading = sample(self.source, self.session_id)
        content = reading.content if reading.available else self._last_content
        # Measured up to the moment output went quiet, not to the end of the window
        quiet_since = self._quiet_since if self._quiet_since is not None else now
        duration = max(quiet_since - self._started_at, 0.0)
        self._started_at = None

        self._grace_timer = self.scheduler.call_later(self.completion_grace_ms, self._on_grace_elapsed)
        self._report(SessionState.COMPLETED, now)
        logger.info("Generation complete in %s after %.0fms", self.session_id, duration)
        self._emit(
            CompletionEvent(
                session_id=self.session_id,
                preview=make_preview(content, self.preview_chars),
                duration_ms=duration,
                emitted_at=now,
                epoch=self.epoch,
            )
        )

    def _on_grace_elapsed(self) -> None:
        if self._monitoring and self._state is SessionState.COMPLETED:
            self._report(SessionState.IDLE, self.scheduler.now())

    # ── Emission ────────────────────────────────────────────

    def _report(self, state: SessionState, now: float) -> None:
        if state is self._state:
            return
        old, self._state = self._state, state
        logger.debug("%s: %s -> %s", self.session_id, old.value, state.value)
        self._emit(
            StateChangedEvent(
                session_id=self.session_id,
                state=state,
                observed_at=now,
                generation_started_at=self.generation_started_at,
                epoch=self.epoch,
            )
        )

    def _offer_timestamp(self, value: float) -> None:
        timestamp = normalize_timestamp(value)
        if timestamp is None or timestamp == self._last_timestamp:
            return
        self._last_timestamp = timestamp
        self._emit(TimestampEvent(session_id=self.session_id, timestamp=timestamp, epoch=self.epoch))

    def _emit(self, event: DetectorEvent) -> None:
        if self._cancelled:
            return
        try:
            self._emit_fn(event)
        except Exception as e:
            logger.warning("Dropping %s for %s: %r", type(event).__name__, self.session_id, e)
