"""Validators for session records restored from persistent storage.

Restored records are untyped and may come from an older version or a
half-written file. Every field is checked on its own; a field that fails
is dropped and the default takes its place.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from pydantic import BaseModel, ValidationError

from donecall.errors import StaleRestoredState
from donecall.models import MAX_COMPLETION_HISTORY, CompletionRecord, SessionState

logger = logging.getLogger(__name__)


class EphemeralRecord(BaseModel):
    """Session fields that survive a worker restart but not a full restart."""

    state: SessionState | None = None
    state_changed_at: float | None = None
    last_signal_timestamp: float | None = None
    timestamp_authoritative: bool = False
    generation_started_at: float | None = None


class DurableRecord(BaseModel):
    """Session fields that survive a full restart."""

    monitored: bool | None = None
    completion_history: list[CompletionRecord] = []


def normalize_state(value: Any) -> SessionState | None:
    """Return the matching state for ``value`` (case-insensitive), else None."""
    if isinstance(value, SessionState):
        return value
    if not isinstance(value, str):
        return None
    try:
        return SessionState(value.strip().lower())
    except ValueError:
        return None


def normalize_timestamp(value: Any) -> float | None:
    """Return ``value`` as a finite, positive float, else None."""
    if isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num) or num <= 0:
        return None
    return num


def _report(field: str, value: Any) -> None:
    logger.info("%s", StaleRestoredState(field, value))


def _restore_timestamp(raw: dict[str, Any], field: str) -> float | None:
    if raw.get(field) is None:
        return None
    ts = normalize_timestamp(raw[field])
    if ts is None:
        _report(field, raw[field])
    return ts


def restore_ephemeral(raw: Any) -> EphemeralRecord:
    """Build an ephemeral record from an untyped mapping, field by field."""
    if not isinstance(raw, dict):
        if raw is not None:
            _report("ephemeral record", raw)
        return EphemeralRecord()

    state = None
    if raw.get("state") is not None:
        state = normalize_state(raw["state"])
        if state is None:
            _report("state", raw["state"])

    authoritative = raw.get("timestamp_authoritative", False)
    if not isinstance(authoritative, bool):
        _report("timestamp_authoritative", authoritative)
        authoritative = False

    record = EphemeralRecord(
        state=state,
        state_changed_at=_restore_timestamp(raw, "state_changed_at"),
        last_signal_timestamp=_restore_timestamp(raw, "last_signal_timestamp"),
        timestamp_authoritative=authoritative,
        generation_started_at=_restore_timestamp(raw, "generation_started_at"),
    )
    if record.last_signal_timestamp is None:
        record.timestamp_authoritative = False
    # A start time only makes sense while generating
    if record.generation_started_at is not None and not (record.state and record.state.is_active):
        _report("generation_started_at", record.generation_started_at)
        record.generation_started_at = None
    return record


def restore_durable(raw: Any) -> DurableRecord:
    """Build a durable record from an untyped mapping, field by field."""
    if not isinstance(raw, dict):
        if raw is not None:
            _report("durable record", raw)
        return DurableRecord()

    monitored = raw.get("monitored")
    if monitored is not None and not isinstance(monitored, bool):
        _report("monitored", monitored)
        monitored = None

    history: list[CompletionRecord] = []
    entries = raw.get("completion_history") or []
    if not isinstance(entries, list):
        _report("completion_history", entries)
        entries = []
    for entry in entries:
        try:
            item = CompletionRecord.model_validate(entry)
        except ValidationError:
            _report("completion", entry)
            continue
        if normalize_timestamp(item.timestamp) is None:
            _report("completion", entry)
            continue
        history.append(item)

    return DurableRecord(monitored=monitored, completion_history=history[:MAX_COMPLETION_HISTORY])
