"""donecall CLI — command-line interface."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from donecall import __version__

app = typer.Typer(
    name="donecall",
    help="Notifications when your AI chat sessions finish answering.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()

_STATE_STYLES = {
    "idle": "dim",
    "generating": "yellow",
    "thinking": "magenta",
    "writing": "cyan",
    "completed": "green",
}


def version_callback(value: bool):
    if value:
        console.print(f"[bold cyan]donecall[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """donecall — know when your AI chat has finished answering."""
    pass


def _server_url(port: Optional[int]) -> str:
    from donecall.config import load_config

    if port is None:
        port = load_config().server.port
    return f"http://localhost:{port}"


def _client(port: Optional[int]):
    from donecall.server.client import ServerClient

    client = ServerClient(_server_url(port))
    if not client.is_server_running():
        console.print("[red]✗[/red] Cannot connect to server.")
        console.print("  Start it with: [cyan]donecall run[/cyan]")
        raise typer.Exit(1)
    return client


# ── Run Command ─────────────────────────────────────────────


def build_monitor(config, executor=None, persist_executor=None):
    """
    Wire stores, registry, dispatcher and monitor from ``config``.

    ``executor`` delivers notifications and sounds; ``persist_executor``
    should have a single worker so state writes stay in order.
    """
    from donecall.monitor import Monitor
    from donecall.notifier.dispatcher import Dispatcher
    from donecall.notifier.macos import MacOSSurface
    from donecall.persistence import PersistenceBridge, YamlFileStore
    from donecall.registry import SessionRegistry
    from donecall.watcher.signals import StateDirectorySource

    source = StateDirectorySource(config.paths.signals_dir)
    host = "127.0.0.1" if config.server.bind in ("0.0.0.0", "::") else config.server.bind
    surface = MacOSSurface(
        on_focus=source.request_focus,
        server_url=f"http://{host}:{config.server.port}",
    )
    persistence = PersistenceBridge(
        durable=YamlFileStore(config.paths.state_dir / "sessions.yaml"),
        ephemeral=YamlFileStore(config.paths.runtime_dir / "sessions.yaml"),
        executor=persist_executor,
    )
    dispatcher = Dispatcher(
        surface=surface,
        sound=surface,
        settings=config.settings,
        executor=executor,
    )
    registry = SessionRegistry(
        persistence=persistence,
        dispatcher=dispatcher,
        settings=config.settings,
        dedupe_window_ms=config.detection.dedupe_window_ms,
    )
    dispatcher.resolver = registry.resolve
    return Monitor(source, registry, dispatcher, config.settings, config.detection)


@app.command()
def run(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    signals_dir: Optional[str] = typer.Option(
        None, "--signals", "-s", help="Directory of per-session signal files."
    ),
    stability: Optional[int] = typer.Option(
        None, "--stability", help="Override the stability window in milliseconds."
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log debug details."),
):
    """
    Watch sessions and notify when they complete.

    Usage:
        donecall run
        donecall run --signals ~/chat-signals --port 9500
    """
    from pathlib import Path

    import uvicorn

    from donecall.config import LOG_DIR, ensure_dirs, load_config, save_config, sanitize_settings
    from donecall.logging_utils import setup_logging
    from donecall.server.app import create_app

    config = load_config()
    if port is not None:
        config.server.port = port
    if host is not None:
        config.server.bind = host
    if signals_dir is not None:
        config.paths.signals_dir = Path(signals_dir).expanduser()
    if stability is not None:
        config.settings = sanitize_settings({"stability_window_ms": stability}, base=config.settings)

    ensure_dirs(config)
    _, log_path = setup_logging(LOG_DIR, logging.DEBUG if verbose else logging.INFO)

    def on_settings_changed(settings) -> None:
        stored = load_config()
        stored.settings = settings
        save_config(stored)

    console.print("\n[bold cyan]⚡ donecall[/bold cyan]")
    console.print(f"  [dim]Signals: {config.paths.signals_dir}[/dim]")
    console.print(f"  [dim]API:     http://{config.server.bind}:{config.server.port}[/dim]")
    console.print(f"  [dim]WS:      ws://{config.server.bind}:{config.server.port}/ws[/dim]")
    console.print(f"  [dim]Log:     {log_path}[/dim]")
    console.print()

    with (
        ThreadPoolExecutor(max_workers=2, thread_name_prefix="donecall-notify") as executor,
        ThreadPoolExecutor(max_workers=1, thread_name_prefix="donecall-persist") as persist_executor,
    ):
        monitor = build_monitor(config, executor=executor, persist_executor=persist_executor)
        uvicorn.run(
            create_app(monitor, on_settings_changed=on_settings_changed),
            host=config.server.bind,
            port=config.server.port,
            log_level="warning",
        )


# ── Session Commands ────────────────────────────────────────


def _format_time(ms: Optional[float]) -> str:
    if not ms:
        return ""
    return datetime.fromtimestamp(ms / 1000).strftime("%H:%M:%S")


@app.command()
def sessions(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
):
    """List tracked sessions (requires server running)."""
    data = _client(port).list_sessions() or {}
    sess_list = data.get("sessions", [])

    if not sess_list:
        console.print("[dim]No sessions.[/dim]")
        return

    table = Table(title=f"Sessions — {data.get('active_count', 0)} active")
    table.add_column("Session ID", style="yellow")
    table.add_column("Title", style="cyan")
    table.add_column("State")
    table.add_column("Since", style="dim")
    table.add_column("Monitored")
    table.add_column("Last completion", style="dim")

    for s in sess_list:
        state = s.get("state", "?")
        style = _STATE_STYLES.get(state, "white")
        history = s.get("completion_history") or []
        last = history[0].get("preview", "") if history else ""
        table.add_row(
            s.get("session_id", "?"),
            s.get("title", ""),
            f"[{style}]{state}[/{style}]",
            _format_time(s.get("state_changed_at")),
            "[green]✓[/green]" if s.get("monitored") else "[dim]–[/dim]",
            last[:40],
        )

    console.print(table)


@app.command()
def monitor(
    session_id: str = typer.Argument(..., help="Session to change."),
    off: bool = typer.Option(False, "--off", help="Disable notifications instead."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
):
    """Enable (or with --off disable) notifications for a session."""
    flag = _client(port).set_monitoring(session_id, not off)
    if flag is None:
        console.print(f"[red]✗[/red] Unknown session [yellow]{session_id}[/yellow]")
        raise typer.Exit(1)
    state = "[green]enabled[/green]" if flag else "[yellow]disabled[/yellow]"
    console.print(f"Notifications {state} for [yellow]{session_id}[/yellow]")


@app.command()
def focus(
    session_id: str = typer.Argument(..., help="Session to bring to front."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
):
    """Ask the session's owner to bring it to the foreground."""
    if not _client(port).focus(session_id):
        console.print(f"[red]✗[/red] Unknown session [yellow]{session_id}[/yellow]")
        raise typer.Exit(1)


@app.command()
def chime(
    sound: Optional[str] = typer.Option(None, "--sound", help="Sound id to play."),
    volume: Optional[float] = typer.Option(None, "--volume", help="Volume from 0 to 1."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
):
    """Play the notification sound through the running server."""
    _client(port).preview_sound(sound, volume)


# ── Config Commands ─────────────────────────────────────────


config_app = typer.Typer(help="Manage donecall configuration.")
app.add_typer(config_app, name="config")


@config_app.command("init")
def config_init():
    """Create the default configuration file."""
    from donecall.config import CONFIG_FILE, save_default_config

    if CONFIG_FILE.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {CONFIG_FILE}")
    else:
        path = save_default_config()
        console.print(f"[green]✓[/green] Created config: {path}")


@config_app.command("show")
def config_show():
    """Show current configuration."""
    from donecall.config import load_config

    config = load_config()
    console.print_json(data=config.model_dump(mode="json", by_alias=True))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name, e.g. soundVolume or preview_length."),
    value: str = typer.Argument(..., help="New value."),
):
    """Change one setting. Invalid values are rejected."""
    from donecall.config import load_config, sanitize_settings, save_config

    config = load_config()
    updated = sanitize_settings({key: value}, base=config.settings)
    if updated == config.settings:
        console.print(f"[red]✗[/red] Setting [cyan]{key}[/cyan] unchanged (unknown key or invalid value)")
        raise typer.Exit(1)
    config.settings = updated
    path = save_config(config)
    console.print(f"[green]✓[/green] Saved {key} to {path}")
    console.print("  [dim]A running server picks this up on restart.[/dim]")


if __name__ == "__main__":
    app()
