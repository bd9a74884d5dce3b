"""HTTP client for talking to a running donecall server."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Optional


class ServerClient:
    """
    Lightweight HTTP client for the donecall server.

    Uses stdlib urllib to avoid adding httpx/requests as a dependency.
    Every method returns None when the server cannot be reached.
    """

    def __init__(self, base_url: str = "http://localhost:9484"):
        self.base_url = base_url.rstrip("/")

    def _request(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None, timeout: float = 3
    ) -> Optional[dict[str, Any]]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            f"{self.base_url}{path}",
            data=data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read() or b"{}")
        except (urllib.error.URLError, OSError, TimeoutError, ValueError):
            return None

    def is_server_running(self) -> bool:
        """Check if the server is reachable."""
        return self._request("GET", "/api/health", timeout=2) is not None

    def list_sessions(self) -> Optional[dict[str, Any]]:
        return self._request("GET", "/api/sessions")

    def set_monitoring(self, session_id: str, monitored: bool) -> Optional[bool]:
        """Returns the flag the server settled on."""
        result = self._request(
            "POST", f"/api/sessions/{session_id}/monitoring", {"monitored": monitored}
        )
        return None if result is None else result.get("monitored")

    def focus(self, session_id: str) -> bool:
        return self._request("POST", f"/api/sessions/{session_id}/focus", {}) is not None

    def get_settings(self) -> Optional[dict[str, Any]]:
        return self._request("GET", "/api/settings")

    def update_settings(self, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        return self._request("PUT", "/api/settings", changes)

    def preview_sound(self, sound: Optional[str] = None, volume: Optional[float] = None) -> bool:
        return self._request("POST", "/api/sound/preview", {"sound": sound, "volume": volume}) is not None
