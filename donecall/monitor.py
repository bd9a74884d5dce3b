"""Monitor — runs one detector per session and feeds the registry.

All registry mutations happen on the event loop: discovery runs there and
detector events go through a single FIFO queue drained by one consumer
task, so events for a session are applied in the order they were emitted.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Optional

from donecall.config import DetectionConfig, Settings, sanitize_settings
from donecall.errors import SignalUnavailable
from donecall.models import (
    CompletionEvent,
    DetectorEvent,
    StateChangedEvent,
    TimestampEvent,
)
from donecall.notifier.dispatcher import Dispatcher
from donecall.registry import SessionRegistry
from donecall.watcher.clock import AsyncioScheduler, Scheduler
from donecall.watcher.detector import SessionDetector
from donecall.watcher.signals import SessionEnumerator

logger = logging.getLogger(__name__)


class Monitor:
    """Glue between a session enumerator, per-session detectors and the registry."""

    def __init__(
        self,
        enumerator: SessionEnumerator,
        registry: SessionRegistry,
        dispatcher: Optional[Dispatcher] = None,
        settings: Optional[Settings] = None,
        detection: Optional[DetectionConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.enumerator = enumerator
        self.registry = registry
        self.dispatcher = dispatcher or registry.dispatcher
        self.settings = settings or registry.settings
        self.detection = detection or DetectionConfig()
        self.scheduler = scheduler or AsyncioScheduler()

        self._queue: Optional[asyncio.Queue[DetectorEvent]] = None
        self._detectors: dict[str, SessionDetector] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._epochs = itertools.count(1)
        self._consumer: Optional[asyncio.Task] = None
        self._discovery: Optional[asyncio.Task] = None
        self._reconciled = False

    # ── Lifecycle ───────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._consumer is not None

    async def start(self) -> None:
        """Restore persisted state, discover sessions and start background tasks."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self.registry.restore()
        self.discover_once()
        self._consumer = asyncio.create_task(self._consume(), name="donecall-consumer")
        self._discovery = asyncio.create_task(self._discover_loop(), name="donecall-discovery")
        logger.info("Monitor started with %d session(s)", len(self.registry))

    async def stop(self) -> None:
        """Stop every detector and background task."""
        pending = list(self._tasks.values())
        for session_id in list(self._detectors):
            self._stop_detector(session_id)
        for task in (self._discovery, self._consumer):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._discovery = None
        self._consumer = None
        logger.info("Monitor stopped")

    # ── Discovery ───────────────────────────────────────────

    def discover_once(self) -> bool:
        """
        Reconcile the registry with the enumerator's live sessions.

        Returns False if the enumeration itself failed; nothing is removed
        in that case.
        """
        try:
            live = self.enumerator.list_sessions()
        except SignalUnavailable as e:
            logger.warning("Discovery skipped: %s", e)
            return False
        except Exception as e:
            logger.warning("Discovery failed: %r", e)
            return False

        for session_id, metadata in live.items():
            if session_id not in self.registry:
                self.registry.discover(session_id, metadata)
            elif metadata is not None:
                self.registry.update_metadata(session_id, metadata)
            if session_id not in self._detectors:
                self._start_detector(session_id)

        for session_id in self.registry.session_ids() - set(live):
            self.end_session(session_id)

        if not self._reconciled:
            self.registry.drop_unclaimed_restored()
            self._reconciled = True
        return True

    async def _discover_loop(self) -> None:
        interval = self.detection.discovery_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.discover_once()

    def end_session(self, session_id: str) -> None:
        """Stop detection for a session and remove it from the registry."""
        self._stop_detector(session_id)
        self.registry.remove(session_id)

    # ── Detectors ───────────────────────────────────────────

    def _start_detector(self, session_id: str) -> Optional[SessionDetector]:
        if self._queue is None:
            return None
        session = self.registry.get(session_id)
        if session is None:
            return None
        detector = SessionDetector(
            session_id,
            self.enumerator.source_for(session_id),
            self._queue.put_nowait,
            self.scheduler,
            stability_window_ms=self.settings.stability_window_ms,
            poll_interval_ms=self.detection.poll_interval_ms,
            completion_grace_ms=self.detection.completion_grace_ms,
            preview_chars=self.detection.content_preview_chars,
            epoch=next(self._epochs),
            initial_state=session.state,
            resume_started_at=session.generation_started_at,
        )
        # Baseline now, so activity starting before the task first runs is an edge
        detector.start()
        self._detectors[session_id] = detector
        self._tasks[session_id] = asyncio.create_task(
            detector.run(), name=f"donecall-detector-{session_id}"
        )
        return detector

    def _stop_detector(self, session_id: str) -> None:
        detector = self._detectors.pop(session_id, None)
        if detector is not None:
            detector.stop()
        task = self._tasks.pop(session_id, None)
        if task is not None:
            task.cancel()

    def restart_detector(self, session_id: str) -> bool:
        """Restart detection for a session, picking up the current settings."""
        if session_id not in self._detectors:
            return False
        self._stop_detector(session_id)
        return self._start_detector(session_id) is not None

    def detector(self, session_id: str) -> Optional[SessionDetector]:
        return self._detectors.get(session_id)

    # ── Event application ───────────────────────────────────

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                self.apply(event)
            except Exception:
                logger.exception("Failed to apply %s", type(event).__name__)
            finally:
                self._queue.task_done()

    def apply(self, event: DetectorEvent) -> None:
        """Apply one detector event, unless its detector has since been stopped."""
        detector = self._detectors.get(event.session_id)
        if detector is None or detector.epoch != event.epoch:
            logger.debug("Discarding %s from a stopped detector", type(event).__name__)
            return

        if isinstance(event, StateChangedEvent):
            self.registry.apply_state_change(
                event.session_id, event.state, event.observed_at, event.generation_started_at
            )
        elif isinstance(event, CompletionEvent):
            self.registry.apply_completion(
                event.session_id, event.preview, event.duration_ms, event.emitted_at
            )
        elif isinstance(event, TimestampEvent):
            self.registry.apply_timestamp(event.session_id, event.timestamp)

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        if self._queue is not None:
            await self._queue.join()

    # ── Control ─────────────────────────────────────────────

    def update_settings(self, changes: dict) -> Settings:
        """
        Merge a partial settings update. A new stability window only applies
        to detectors started afterwards.
        """
        settings = sanitize_settings(changes, base=self.settings)
        self.settings = settings
        self.registry.settings = settings
        if self.dispatcher is not None:
            self.dispatcher.settings = settings
        return settings

    def set_monitored(self, session_id: str, flag: bool) -> Optional[bool]:
        return self.registry.set_monitored(session_id, flag)

    def focus(self, session_id: str) -> bool:
        """Bring a session to front. Returns False if it is unknown."""
        target = self.registry.resolve(session_id)
        if target is None or self.dispatcher is None:
            return False
        self.dispatcher.focus(*target)
        return True
