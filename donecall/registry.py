"""The session registry, single owner of all tracked sessions."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from functools import partial
from typing import Any, Optional

from donecall.config import Settings
from donecall.errors import DeliveryFailure, DuplicateCompletion
from donecall.models import (
    CompletionRecord,
    Notification,
    Session,
    SessionMetadata,
    SessionState,
    now_ms,
)
from donecall.notifier.dispatcher import Dispatcher
from donecall.persistence import PersistenceBridge, durable_record, ephemeral_record
from donecall.validation import normalize_timestamp, restore_durable, restore_ephemeral

logger = logging.getLogger(__name__)

DEFAULT_DEDUPE_WINDOW_MS = 1000

Observer = Callable[[list[Session], int], None]
Write = Callable[[], None]


class SessionRegistry:
    """
    Authoritative mapping of session id to ``Session``.

    Every mutation takes the registry lock, so mutations are serialized and
    snapshots never see a half-applied change. Persistence writes and
    observer pushes happen after the lock is released and never fail the
    in-memory change.
    Sessions handed out are copies; only the registry mutates the originals.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceBridge] = None,
        dispatcher: Optional[Dispatcher] = None,
        settings: Optional[Settings] = None,
        dedupe_window_ms: float = DEFAULT_DEDUPE_WINDOW_MS,
        clock: Callable[[], float] = now_ms,
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.dedupe_window_ms = dedupe_window_ms
        self.clock = clock

        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._active_count = 0
        self._last_completion: dict[str, float] = {}
        self._restored_ephemeral: dict[str, Any] = {}
        self._restored_durable: dict[str, Any] = {}
        self._observers: list[Observer] = []

    # ── Restart recovery ────────────────────────────────────

    def restore(self) -> int:
        """Load both persisted subsets; they are merged as sessions are discovered."""
        if self.persistence is None:
            return 0
        with self._lock:
            self._restored_ephemeral = self.persistence.load_ephemeral()
            self._restored_durable = self.persistence.load_durable()
            count = len(set(self._restored_ephemeral) | set(self._restored_durable))
        logger.info("Restored state for %d session(s)", count)
        return count

    def drop_unclaimed_restored(self) -> list[str]:
        """Purge restored records whose session did not come back."""
        with self._lock:
            unclaimed = sorted(set(self._restored_ephemeral) | set(self._restored_durable))
            unclaimed = [sid for sid in unclaimed if sid not in self._sessions]
            self._restored_ephemeral.clear()
            self._restored_durable.clear()
            writes = [w for sid in unclaimed for w in self._purge_writes(sid)]
        self._flush(writes)
        if unclaimed:
            logger.info("Dropped state of %d closed session(s)", len(unclaimed))
        return unclaimed

    # ── Observers ───────────────────────────────────────────

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _broadcast(self) -> None:
        with self._lock:
            sessions = self._snapshot_locked()
            active = self._active_count
        for observer in list(self._observers):
            try:
                observer(sessions, active)
            except Exception as e:
                logger.debug("%s", DeliveryFailure(f"observer {observer!r}: {e!r}"))

    # ── Reads ───────────────────────────────────────────────

    def _snapshot_locked(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    def snapshot(self) -> list[Session]:
        """Point-in-time copy of every session."""
        with self._lock:
            return self._snapshot_locked()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def session_ids(self) -> set[str]:
        with self._lock:
            return set(self._sessions)

    def resolve(self, session_id: str) -> Optional[tuple[str, Optional[str]]]:
        """Return ``(session_id, window_group)`` for a live session."""
        with self._lock:
            session = self._sessions.get(session_id)
            return (session.session_id, session.window_group) if session else None

    def aggregate_active_count(self) -> int:
        """Number of sessions currently generating, thinking or writing."""
        with self._lock:
            return self._active_count

    def _recount(self) -> None:
        self._active_count = sum(1 for s in self._sessions.values() if s.is_active)

    # ── Mutations ───────────────────────────────────────────

    def discover(
        self,
        session_id: str,
        metadata: Optional[SessionMetadata] = None,
        restored: Optional[dict[str, Any]] = None,
    ) -> Session:
        """
        Create the session if it is not known yet and return it.

        ``restored`` is an ephemeral snapshot for this id; when omitted, the
        snapshot loaded by ``restore()`` is used. Invalid restored fields
        fall back to defaults.
        """
        metadata = metadata or SessionMetadata()
        with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing.model_copy(deep=True)

            raw_ephemeral = self._restored_ephemeral.pop(session_id, None)
            if restored is not None:
                raw_ephemeral = restored
            raw_durable = self._restored_durable.pop(session_id, None)
            ephemeral = restore_ephemeral(raw_ephemeral)
            durable = restore_durable(raw_durable)

            baseline = normalize_timestamp(metadata.last_accessed) or self.clock()
            monitored = durable.monitored
            if monitored is None:
                monitored = self.settings.auto_enable_enabled

            session = Session(
                session_id=session_id,
                window_group=metadata.window_group,
                title=metadata.title,
                locator=metadata.locator,
                monitored=monitored,
                state=ephemeral.state or SessionState.IDLE,
                state_changed_at=ephemeral.state_changed_at or baseline,
                last_signal_timestamp=ephemeral.last_signal_timestamp,
                timestamp_authoritative=ephemeral.timestamp_authoritative,
                generation_started_at=ephemeral.generation_started_at,
                completion_history=durable.completion_history,
            )
            self._sessions[session_id] = session
            self._recount()
            writes = self._ephemeral_writes(session) + self._durable_writes()
            result = session.model_copy(deep=True)

        self._flush(writes)
        logger.info(
            "Discovered %s (state=%s, monitored=%s)",
            result.to_display_name(), result.state.value, result.monitored,
        )
        self._broadcast()
        return result

    def update_metadata(self, session_id: str, metadata: SessionMetadata) -> bool:
        """Refresh display metadata. Returns True if anything changed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            changed = (
                session.title != metadata.title
                or session.locator != metadata.locator
                or session.window_group != metadata.window_group
            )
            if changed:
                session.title = metadata.title
                session.locator = metadata.locator
                session.window_group = metadata.window_group
        if changed:
            self._broadcast()
        return changed

    def apply_state_change(
        self,
        session_id: str,
        new_state: SessionState,
        observed_at: Optional[float] = None,
        generation_started_at: Optional[float] = None,
    ) -> bool:
        """Apply a detector state change. Returns False when it was a no-op."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state == new_state:
                return False

            changed_at = normalize_timestamp(observed_at) or self.clock()
            session.state = new_state
            session.state_changed_at = changed_at
            if new_state.is_active:
                # Keep the first start so elapsed-time displays stay stable
                if session.generation_started_at is None:
                    session.generation_started_at = normalize_timestamp(generation_started_at)
            else:
                session.generation_started_at = None
            if not session.timestamp_authoritative:
                session.last_signal_timestamp = changed_at
            self._recount()
            writes = self._ephemeral_writes(session)

        self._flush(writes)
        logger.info("%s is now %s", session_id, new_state.value)
        self._broadcast()
        return True

    def apply_timestamp(self, session_id: str, timestamp: float) -> bool:
        """Record an authoritative activity timestamp."""
        ts = normalize_timestamp(timestamp)
        if ts is None:
            return False
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_signal_timestamp = ts
            session.timestamp_authoritative = True
            writes = self._ephemeral_writes(session)
        self._flush(writes)
        self._broadcast()
        return True

    def apply_completion(
        self,
        session_id: str,
        preview: str = "",
        duration_ms: Optional[float] = None,
        emitted_at: Optional[float] = None,
    ) -> Optional[Notification]:
        """
        Record a completion and, for monitored sessions, dispatch it.

        A second completion for the same session within the dedupe window is
        dropped. Returns the dispatched notification, if any.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None

            key_time = emitted_at if emitted_at is not None else self.clock()
            previous = self._last_completion.get(session_id)
            if previous is not None and abs(key_time - previous) <= self.dedupe_window_ms:
                logger.info("%s", DuplicateCompletion(session_id, key_time))
                return None
            self._last_completion[session_id] = key_time

            session.add_completion(
                CompletionRecord(
                    timestamp=self.clock(),
                    duration_ms=duration_ms or 0.0,
                    preview=preview or "",
                )
            )
            writes = self._durable_writes()
            monitored = session.monitored
            window_group = session.window_group
            title = session.title

        self._flush(writes)
        self._broadcast()
        if not monitored or self.dispatcher is None:
            return None
        return self.dispatcher.dispatch(
            session_id, preview, duration_ms, window_group=window_group, subtitle=title
        )

    def set_monitored(self, session_id: str, flag: bool) -> Optional[bool]:
        """Toggle notifications for a session. Returns the new flag, or None if unknown."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.monitored = bool(flag)
            writes = self._durable_writes()
            result = session.monitored
        self._flush(writes)
        logger.info("Monitoring %s for %s", "enabled" if result else "disabled", session_id)
        self._broadcast()
        return result

    def remove(self, session_id: str) -> bool:
        """Forget a session and purge its persisted state. Safe to repeat."""
        with self._lock:
            self._restored_ephemeral.pop(session_id, None)
            self._restored_durable.pop(session_id, None)
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            self._last_completion.pop(session_id, None)
            self._recount()
            writes = self._purge_writes(session_id)

        self._flush(writes)
        logger.info("Removed %s", session.to_display_name())
        self._broadcast()
        return True

    # ── Persistence ─────────────────────────────────────────
    #
    # Records are built under the lock; the writes run after it is released.

    def _ephemeral_writes(self, session: Session) -> list[Write]:
        if self.persistence is None:
            return []
        return [partial(self.persistence.upsert_ephemeral, session.session_id, ephemeral_record(session))]

    def _durable_writes(self) -> list[Write]:
        if self.persistence is None:
            return []
        # Restored records not rediscovered yet stay underneath the live ones
        records = dict(self._restored_durable)
        records.update({sid: durable_record(s) for sid, s in self._sessions.items()})
        return [partial(self.persistence.save_durable, records)]

    def _purge_writes(self, session_id: str) -> list[Write]:
        if self.persistence is None:
            return []
        return [partial(self.persistence.purge, session_id)]

    @staticmethod
    def _flush(writes: list[Write]) -> None:
        for write in writes:
            write()
