"""Configuration management for donecall."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DONECALL_DIR = Path.home() / ".donecall"
CONFIG_FILE = DONECALL_DIR / "config.yaml"
LOG_DIR = DONECALL_DIR / "logs"
DEFAULT_SIGNALS_DIR = DONECALL_DIR / "signals"
DEFAULT_STATE_DIR = DONECALL_DIR / "state"
# Lives under the temp dir so it is gone after a reboot
DEFAULT_RUNTIME_DIR = Path(tempfile.gettempdir()) / "donecall"


class Settings(BaseModel):
    """User-facing settings. Serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    sound_enabled: bool = True
    sound_volume: float = Field(default=0.5, ge=0.0, le=1.0)
    selected_sound: str = "success"
    notifications_enabled: bool = True
    preview_length: int = Field(default=100, ge=0)
    auto_enable_enabled: bool = True
    stability_window_ms: int = Field(default=1500, gt=0)


class DetectionConfig(BaseModel):
    """Detection engine timing."""

    poll_interval_ms: int = Field(default=500, gt=0)
    completion_grace_ms: int = Field(default=3000, ge=0)
    dedupe_window_ms: int = Field(default=1000, ge=0)
    discovery_interval_ms: int = Field(default=2000, gt=0)
    content_preview_chars: int = Field(default=100, gt=0)


class ServerConfig(BaseModel):
    """Server settings."""

    port: int = 9484
    bind: str = "127.0.0.1"


class PathsConfig(BaseModel):
    """Where signals are read from and state is written to."""

    signals_dir: Path = DEFAULT_SIGNALS_DIR
    state_dir: Path = DEFAULT_STATE_DIR
    runtime_dir: Path = DEFAULT_RUNTIME_DIR


class DonecallConfig(BaseModel):
    """Root configuration model."""

    settings: Settings = Field(default_factory=Settings)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


def sanitize_settings(raw: Any, base: Settings | None = None) -> Settings:
    """
    Copy recognized, valid fields from ``raw`` over ``base``.

    Unknown keys are ignored and invalid values are dropped one field at a
    time, so a single bad value never discards the rest of the record.
    Accepts both camelCase and snake_case keys.
    """
    merged = (base or Settings()).model_dump()
    if not isinstance(raw, dict):
        return Settings(**merged)

    for name, field in Settings.model_fields.items():
        for key in (field.alias, name):
            if key is None or key not in raw:
                continue
            try:
                candidate = Settings(**{**merged, name: raw[key]})
            except ValidationError:
                logger.info("Ignoring invalid setting %s=%r", key, raw[key])
            else:
                merged[name] = getattr(candidate, name)
            break

    return Settings(**merged)


def ensure_dirs(config: DonecallConfig | None = None) -> None:
    """Create donecall directories if they don't exist."""
    DONECALL_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    if config is not None:
        for path in (config.paths.signals_dir, config.paths.state_dir, config.paths.runtime_dir):
            path.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = CONFIG_FILE) -> DonecallConfig:
    """Load configuration from ~/.donecall/config.yaml, falling back to defaults."""
    raw = load_yaml(path)
    settings = sanitize_settings(raw.pop("settings", None))
    try:
        return DonecallConfig(settings=settings, **raw)
    except (ValidationError, TypeError) as e:
        logger.warning("Invalid config in %s, using defaults: %s", path, e)
        return DonecallConfig(settings=settings)


def save_config(config: DonecallConfig, path: Path = CONFIG_FILE) -> Path:
    """Write ``config`` as YAML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", by_alias=True)
    with open(path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    return path


def save_default_config(path: Path = CONFIG_FILE) -> Path:
    """Write default config to ~/.donecall/config.yaml."""
    ensure_dirs()
    return save_config(DonecallConfig(), path)


def load_yaml(path: Path) -> dict[str, Any]:
    """Safely load a YAML mapping, returning empty dict on failure."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}
