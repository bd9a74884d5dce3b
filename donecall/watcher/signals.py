"""Signal sources: where detectors get their (noisy) view of a session."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from donecall.errors import DeliveryFailure, SignalUnavailable
from donecall.models import SessionMetadata, now_ms

logger = logging.getLogger(__name__)


class SignalSource(Protocol):
    """Per-session view of the external activity indicators."""

    def is_active(self) -> bool: ...

    def is_intermediate_phase(self) -> bool: ...

    def current_content_snapshot(self) -> str: ...

    def authoritative_timestamp(self) -> Optional[float]: ...


class SessionEnumerator(Protocol):
    """Lists live sessions and hands out a signal source for each."""

    def list_sessions(self) -> dict[str, Optional[SessionMetadata]]: ...

    def source_for(self, session_id: str) -> SignalSource: ...


@dataclass(frozen=True)
class SignalReading:
    """One sample of a signal source."""

    active: bool = False
    intermediate: bool = False
    content: str = ""
    timestamp: Optional[float] = None
    available: bool = True


UNAVAILABLE = SignalReading(available=False)


def sample(source: SignalSource, session_id: str = "") -> SignalReading:
    """
    Read every indicator from ``source``.

    Never raises: a failed read yields an inactive, empty reading and is
    retried on the next tick.
    """
    try:
        active = bool(source.is_active())
        intermediate = bool(source.is_intermediate_phase()) if active else False
        content = source.current_content_snapshot() or ""
        timestamp = source.authoritative_timestamp()
    except SignalUnavailable as e:
        logger.debug("Signal unavailable for %s: %s", session_id, e)
        return UNAVAILABLE
    except Exception as e:
        logger.debug("Signal read failed for %s: %r", session_id, e)
        return UNAVAILABLE
    return SignalReading(
        active=active,
        intermediate=intermediate,
        content=str(content),
        timestamp=timestamp,
    )


# ── State directory source ─────────────────────────────────


class SignalFile(BaseModel):
    """Contents of one ``<session_id>.json`` file in the signals directory."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    active: bool = False
    intermediate: bool = False
    content: str = ""
    updated_at: Optional[float] = None
    title: str = "Chat"
    locator: str = ""
    window_group: Optional[str] = None
    last_accessed: Optional[float] = None

    def metadata(self) -> SessionMetadata:
        return SessionMetadata(
            title=self.title,
            locator=self.locator,
            window_group=self.window_group,
            last_accessed=self.last_accessed,
        )


def _read_signal_file(path: Path) -> SignalFile:
    try:
        return SignalFile.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError, ValueError) as e:
        raise SignalUnavailable(f"{path.name}: {e}") from e


class FileSignalSource:
    """Signal source for one session backed by a JSON file.

    The file is re-parsed only when its modification time changes.
    """

    def __init__(self, path: Path):
        self.path = path
        self._mtime: Optional[int] = None
        self._cached: Optional[SignalFile] = None

    def _load(self) -> SignalFile:
        try:
            mtime = self.path.stat().st_mtime_ns
        except OSError as e:
            raise SignalUnavailable(f"{self.path.name}: {e}") from e
        if self._cached is None or mtime != self._mtime:
            self._cached = _read_signal_file(self.path)
            self._mtime = mtime
        return self._cached

    def is_active(self) -> bool:
        return self._load().active

    def is_intermediate_phase(self) -> bool:
        return self._load().intermediate

    def current_content_snapshot(self) -> str:
        return self._load().content

    def authoritative_timestamp(self) -> Optional[float]:
        return self._load().updated_at


class StateDirectorySource:
    """
    Enumerates sessions from a directory of ``<session_id>.json`` files.

    Any agent (a browser bridge, a CLI wrapper) can publish a session by
    writing its file and end it by deleting the file.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def list_sessions(self) -> dict[str, Optional[SessionMetadata]]:
        """
        Map live session ids to their metadata.

        A file that exists but cannot be parsed right now is still listed,
        with ``None`` metadata.
        """
        if not self.directory.is_dir():
            raise SignalUnavailable(f"signals directory {self.directory} does not exist")

        found: dict[str, Optional[SessionMetadata]] = {}
        for path in sorted(self.directory.glob("*.json")):
            try:
                found[path.stem] = _read_signal_file(path).metadata()
            except SignalUnavailable as e:
                logger.debug("Metadata unavailable: %s", e)
                found[path.stem] = None
        return found

    def source_for(self, session_id: str) -> FileSignalSource:
        return FileSignalSource(self.directory / f"{session_id}.json")

    def request_focus(self, session_id: str, window_group: Optional[str]) -> None:
        """Leave a ``<session_id>.focus`` request for the agent owning the session."""
        payload = {
            "sessionId": session_id,
            "windowGroup": window_group,
            "requestedAt": now_ms(),
        }
        path = self.directory / f"{session_id}.focus"
        try:
            path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as e:
            raise DeliveryFailure(f"focus request for {session_id}: {e}") from e
