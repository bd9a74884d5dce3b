"""FastAPI server — exposes the session registry to dashboards and the CLI."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from donecall import __version__
from donecall.config import Settings
from donecall.monitor import Monitor
from donecall.server.ws_manager import ConnectionManager, sessions_payload


class MonitoringRequest(BaseModel):
    monitored: bool


class SoundPreviewRequest(BaseModel):
    sound: Optional[str] = None
    volume: Optional[float] = None


def create_app(
    monitor: Monitor,
    on_settings_changed: Optional[Callable[[Settings], None]] = None,
) -> FastAPI:
    """Build the app around ``monitor``; the monitor runs with the server lifecycle."""
    manager = ConnectionManager()
    registry = monitor.registry

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.add_observer(manager.observer)
        await monitor.start()
        yield
        await monitor.stop()
        registry.remove_observer(manager.observer)

    app = FastAPI(
        title="donecall",
        description="Completion notifications for AI chat sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.monitor = monitor
    app.state.manager = manager

    # Dashboards are served from other origins (browser extensions, local files)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST Endpoints ──────────────────────────────────────

    @app.get("/api/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "clients": manager.client_count,
            "sessions": len(registry),
            "active_count": registry.aggregate_active_count(),
        }

    @app.get("/api/sessions")
    async def list_sessions():
        """Snapshot of every tracked session plus the active count."""
        return sessions_payload(registry.snapshot(), registry.aggregate_active_count())

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        session = registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return session.model_dump(mode="json")

    @app.post("/api/sessions/{session_id}/monitoring")
    async def set_monitoring(session_id: str, req: MonitoringRequest):
        """Enable or disable notifications for a session; returns the new flag."""
        flag = monitor.set_monitored(session_id, req.monitored)
        if flag is None:
            raise HTTPException(status_code=404, detail="Unknown session")
        return {"session_id": session_id, "monitored": flag}

    @app.post("/api/sessions/{session_id}/focus")
    async def focus_session(session_id: str):
        if not monitor.focus(session_id):
            raise HTTPException(status_code=404, detail="Unknown session")
        return {"status": "ok"}

    @app.post("/api/notifications/{notification_id}/activate")
    async def activate_notification(notification_id: str):
        """Focus the session behind a clicked notification, if it still exists."""
        target = monitor.dispatcher.activate(notification_id) if monitor.dispatcher else None
        if target is None:
            return {"status": "ignored"}
        session_id, window_group = target
        return {"status": "ok", "session_id": session_id, "window_group": window_group}

    @app.get("/api/settings")
    async def get_settings():
        return monitor.settings.model_dump(by_alias=True)

    @app.put("/api/settings")
    async def put_settings(changes: dict[str, Any] = Body(...)):
        """Apply a partial settings update. Invalid fields are ignored."""
        settings = monitor.update_settings(changes)
        if on_settings_changed is not None:
            on_settings_changed(settings)
        return settings.model_dump(by_alias=True)

    @app.post("/api/sound/preview")
    async def preview_sound(req: SoundPreviewRequest):
        if monitor.dispatcher is not None:
            monitor.dispatcher.play_sound(req.sound, req.volume)
        return {"status": "ok"}

    # ── WebSocket Endpoint ──────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Push the session snapshot on connect and after every change."""
        await manager.connect(websocket)

        try:
            await websocket.send_json({
                **sessions_payload(registry.snapshot(), registry.aggregate_active_count()),
                "server_version": __version__,
            })

            while True:
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                except asyncio.TimeoutError:
                    try:
                        await websocket.send_json({"type": "heartbeat"})
                    except Exception:
                        break
        except WebSocketDisconnect:
            pass
        finally:
            await manager.disconnect(websocket)

    return app
