"""Durable and ephemeral session state.

The durable subset (``monitored``, ``completion_history``) survives full
restarts. The ephemeral subset (``state``, ``state_changed_at``,
``last_signal_timestamp``, ``generation_started_at``) only survives a
restart of the monitor process. Both are stored as a mapping from session
id to a flat record. Writes are best-effort and never raise, and can be
moved off the caller's thread with an executor.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from donecall.models import Session

logger = logging.getLogger(__name__)

DURABLE_KEY = "sessions_durable"
EPHEMERAL_KEY = "sessions_ephemeral"

EPHEMERAL_FIELDS = (
    "state",
    "state_changed_at",
    "last_signal_timestamp",
    "timestamp_authoritative",
    "generation_started_at",
)
DURABLE_FIELDS = ("monitored", "completion_history")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryStore:
    """In-process key-value store."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self.data: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value


class YamlFileStore:
    """Key-value store kept in a single YAML file, replaced atomically on write."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                os.unlink(tmp)
                raise


def ephemeral_record(session: Session) -> dict[str, Any]:
    return session.model_dump(mode="json", include=set(EPHEMERAL_FIELDS))


def durable_record(session: Session) -> dict[str, Any]:
    return session.model_dump(mode="json", include=set(DURABLE_FIELDS))


class PersistenceBridge:
    """
    Splits session state between a durable and an ephemeral store.

    Writes take records that were already built by the caller. With an
    ``executor`` they run on it in submission order, so disk I/O never
    holds up the caller; a single worker keeps read-modify-writes serial.
    """

    def __init__(
        self,
        durable: KeyValueStore,
        ephemeral: KeyValueStore,
        executor: Optional[Executor] = None,
    ):
        self.durable = durable
        self.ephemeral = ephemeral
        self.executor = executor

    @staticmethod
    def _load(store: KeyValueStore, key: str) -> dict[str, Any]:
        try:
            data = store.get(key)
        except Exception as e:
            logger.warning("Could not load %s: %r", key, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items()}

    @staticmethod
    def _store(store: KeyValueStore, key: str, value: dict[str, Any]) -> None:
        try:
            store.set(key, value)
        except Exception as e:
            logger.warning("Could not save %s: %r", key, e)

    def _submit(self, fn: Callable[..., None], *args: Any) -> None:
        if self.executor is None:
            fn(*args)
            return
        try:
            self.executor.submit(fn, *args)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning("Dropped state write: %r", e)

    def load_durable(self) -> dict[str, Any]:
        return self._load(self.durable, DURABLE_KEY)

    def load_ephemeral(self) -> dict[str, Any]:
        return self._load(self.ephemeral, EPHEMERAL_KEY)

    def upsert_ephemeral(self, session_id: str, record: dict[str, Any]) -> None:
        """Merge one session's ephemeral fields into the ephemeral store."""
        self._submit(self._upsert_ephemeral, session_id, dict(record))

    def _upsert_ephemeral(self, session_id: str, record: dict[str, Any]) -> None:
        data = self.load_ephemeral()
        existing = data.get(session_id)
        merged = dict(existing) if isinstance(existing, dict) else {}
        merged.update(record)
        data[session_id] = merged
        self._store(self.ephemeral, EPHEMERAL_KEY, data)

    def save_durable(self, records: dict[str, Any]) -> None:
        """Replace the durable map with ``records``, keyed by session id."""
        self._submit(self._store, self.durable, DURABLE_KEY, dict(records))

    def purge(self, session_id: str) -> None:
        """Drop every record keyed by ``session_id``."""
        self._submit(self._purge, session_id)

    def _purge(self, session_id: str) -> None:
        for store, key in ((self.ephemeral, EPHEMERAL_KEY), (self.durable, DURABLE_KEY)):
            data = self._load(store, key)
            if session_id in data:
                del data[session_id]
                self._store(store, key, data)
