"""macOS notification and sound support via osascript, terminal-notifier and afplay."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from donecall.config import DONECALL_DIR
from donecall.errors import DeliveryFailure
from donecall.models import Notification

logger = logging.getLogger(__name__)

SYSTEM_SOUNDS_DIR = Path("/System/Library/Sounds")
USER_SOUNDS_DIR = DONECALL_DIR / "sounds"
_SOUND_EXTENSIONS = (".mp3", ".wav", ".aiff", ".m4a")
# Used when a configured sound id has no file of its own
_FALLBACK_SOUNDS = {"success": "Glass", "chime": "Ping", "bell": "Tink"}


def _has_terminal_notifier() -> bool:
    """Check if terminal-notifier is installed."""
    return shutil.which("terminal-notifier") is not None


def _run(cmd: list[str], timeout: float = 5) -> None:
    try:
        subprocess.run(cmd, capture_output=True, timeout=timeout, check=True)
    except (subprocess.TimeoutExpired, subprocess.CalledProcessError, FileNotFoundError, OSError) as e:
        raise DeliveryFailure(f"{cmd[0]}: {e}") from e


def _sanitize(text: str) -> str:
    """Sanitize text for use in osascript/shell commands."""
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ⏎ ")


def resolve_sound(sound: str) -> Optional[Path]:
    """Find the file for a sound id: user sounds first, then system sounds."""
    for directory in (USER_SOUNDS_DIR, SYSTEM_SOUNDS_DIR):
        for ext in _SOUND_EXTENSIONS:
            candidate = directory / f"{sound}{ext}"
            if candidate.exists():
                return candidate
    fallback = _FALLBACK_SOUNDS.get(sound)
    if fallback:
        candidate = SYSTEM_SOUNDS_DIR / f"{fallback}.aiff"
        if candidate.exists():
            return candidate
    return None


class MacOSSurface:
    """
    Shows notifications in Notification Center and plays sounds.

    Uses terminal-notifier if available (click actions, grouping), falls
    back to osascript. With a ``server_url``, clicking a terminal-notifier
    notification posts to the server's activate endpoint; osascript
    notifications have no click action. Focus requests are handed to
    ``on_focus`` because only the agent owning a session knows how to bring
    it to front.
    """

    def __init__(
        self,
        on_focus: Optional[Callable[[str, Optional[str]], None]] = None,
        server_url: Optional[str] = None,
    ):
        self.on_focus = on_focus
        self.server_url = server_url.rstrip("/") if server_url else None

    def click_command(self, notification_id: str) -> Optional[str]:
        """Shell command that reports a click on ``notification_id``."""
        if self.server_url is None:
            return None
        url = f"{self.server_url}/api/notifications/{quote(notification_id, safe='')}/activate"
        return f"curl -s -X POST {shlex.quote(url)}"

    def notify(self, notification: Notification) -> None:
        title = _sanitize(notification.title)
        message = _sanitize(notification.message)
        subtitle = _sanitize(notification.subtitle) if notification.subtitle else None

        if _has_terminal_notifier():
            cmd = [
                "terminal-notifier",
                "-title", title,
                "-message", message,
                "-group", notification.notification_id,
            ]
            if subtitle:
                cmd += ["-subtitle", subtitle]
            on_click = self.click_command(notification.notification_id)
            if on_click:
                cmd += ["-execute", on_click]
            try:
                _run(cmd)
                return
            except DeliveryFailure as e:
                logger.debug("terminal-notifier failed, using osascript: %s", e)

        parts = [f'display notification "{message}"', f'with title "{title}"']
        if subtitle:
            parts.append(f'subtitle "{subtitle}"')
        _run(["osascript", "-e", " ".join(parts)])

    def focus(self, session_id: str, window_group: Optional[str]) -> None:
        if self.on_focus is None:
            raise DeliveryFailure(f"no focus handler for {session_id}")
        self.on_focus(session_id, window_group)

    def play(self, sound: str, volume: float) -> None:
        path = resolve_sound(sound)
        if path is None:
            raise DeliveryFailure(f"unknown sound {sound!r}")
        _run(["afplay", "-v", f"{volume:.2f}", str(path)], timeout=15)
