"""Turns completions into notifications and sound requests."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Executor
from typing import Any, Optional, Protocol

from donecall.config import Settings
from donecall.errors import DeliveryFailure
from donecall.models import Notification, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Response ready"
DEFAULT_MESSAGE = "Your response is complete!"
MAX_TRACKED_NOTIFICATIONS = 100

Resolver = Callable[[str], Optional[tuple[str, Optional[str]]]]


class NotificationSurface(Protocol):
    """Where notifications are shown and sessions are brought to front."""

    def notify(self, notification: Notification) -> None: ...

    def focus(self, session_id: str, window_group: Optional[str]) -> None: ...


class SoundSurface(Protocol):
    def play(self, sound: str, volume: float) -> None: ...


def format_duration(ms: float) -> str:
    """``m:ss`` from one minute up, ``Ns`` below."""
    seconds = int(ms // 1000)
    mins, secs = divmod(seconds, 60)
    if mins > 0:
        return f"{mins}:{secs:02d}"
    return f"{secs}s"


def build_message(preview: str, duration_ms: Optional[float], preview_length: int) -> str:
    """Notification body: optional ``(duration)`` prefix plus the truncated preview."""
    message = DEFAULT_MESSAGE
    if preview and preview_length > 0:
        if len(preview) > preview_length:
            message = preview[:preview_length] + "..."
        else:
            message = preview
    if duration_ms:
        message = f"({format_duration(duration_ms)}) {message}"
    return message


class Dispatcher:
    """
    Delivers notifications and sound requests for completed sessions.

    Delivery goes through ``executor`` when one is given so a slow surface
    never holds up the registry. Failures are logged and dropped.
    """

    def __init__(
        self,
        surface: Optional[NotificationSurface] = None,
        sound: Optional[SoundSurface] = None,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        resolver: Optional[Resolver] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.surface = surface
        self.sound = sound
        self.settings = settings or Settings()
        self.executor = executor
        self.resolver = resolver
        self.clock = clock
        self._delivered: OrderedDict[str, tuple[str, Optional[str]]] = OrderedDict()

    def dispatch(
        self,
        session_id: str,
        preview: str = "",
        duration_ms: Optional[float] = None,
        window_group: Optional[str] = None,
        subtitle: Optional[str] = None,
    ) -> Optional[Notification]:
        """Show one notification and request one sound, as the settings allow."""
        settings = self.settings
        notification = None

        if settings.notifications_enabled:
            created_at = self.clock()
            notification = Notification(
                notification_id=f"donecall-{session_id}-{int(created_at)}",
                session_id=session_id,
                window_group=window_group,
                title=DEFAULT_TITLE,
                subtitle=subtitle,
                message=build_message(preview, duration_ms, settings.preview_length),
                created_at=created_at,
            )
            self._remember(notification)
            if self.surface is not None:
                self._submit(self.surface.notify, notification)

        if settings.sound_enabled:
            self.play_sound()

        return notification

    def play_sound(self, sound: Optional[str] = None, volume: Optional[float] = None) -> None:
        """Request one sound, defaulting to the configured sound and volume."""
        if self.sound is None:
            return
        sound = sound or self.settings.selected_sound
        volume = self.settings.sound_volume if volume is None else volume
        self._submit(self.sound.play, sound, min(max(float(volume), 0.0), 1.0))

    def activate(self, notification_id: str) -> Optional[tuple[str, Optional[str]]]:
        """
        Handle a click on a delivered notification.

        Resolves to ``(session_id, window_group)`` and asks the surface to
        focus it. Unknown notifications and removed sessions are ignored.
        """
        target = self._delivered.pop(notification_id, None)
        if target is None:
            return None
        session_id, window_group = target
        if self.resolver is not None:
            resolved = self.resolver(session_id)
            if resolved is None:
                logger.debug("Session %s is gone, ignoring activation", session_id)
                return None
            session_id, window_group = resolved
        self.focus(session_id, window_group)
        return session_id, window_group

    def focus(self, session_id: str, window_group: Optional[str]) -> None:
        if self.surface is not None:
            self._submit(self.surface.focus, session_id, window_group)

    def lookup(self, notification_id: str) -> Optional[tuple[str, Optional[str]]]:
        return self._delivered.get(notification_id)

    def _remember(self, notification: Notification) -> None:
        self._delivered[notification.notification_id] = (
            notification.session_id,
            notification.window_group,
        )
        while len(self._delivered) > MAX_TRACKED_NOTIFICATIONS:
            self._delivered.popitem(last=False)

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.executor is not None:
            try:
                self.executor.submit(self._deliver, fn, *args)
                return
            except RuntimeError as e:
                # Executor already shut down
                logger.debug("%s", DeliveryFailure(repr(e)))
                return
        self._deliver(fn, *args)

    @staticmethod
    def _deliver(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.debug("%s", DeliveryFailure(f"{getattr(fn, '__qualname__', fn)}: {e!r}"))
