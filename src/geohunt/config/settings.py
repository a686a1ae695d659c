# src/geohunt/config/settings.py
"""
Engine settings (Pydantic).

Settings are loaded from `src/geohunt/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `GEOHUNT_LOG_LEVEL`, `GEOHUNT_LEDGER_PATH`, `GEOHUNT_ADMIN_TOKEN`)
- an external YAML file via `GEOHUNT_CONFIG_PATH`

Design rule:
- Thresholds are policy and live in YAML, not hard-coded at call sites.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from geohunt.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `geohunt.config`."""
    text = resources.files("geohunt.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "GeoHunt"
    timezone: str = "UTC"
    log_level: str = "INFO"
    # Operator credential for per-session policy overrides; unset disables them over HTTP.
    admin_token: str | None = None


class IngestSettings(BaseModel):
    max_accuracy_m: float = Field(50.0, gt=0)
    min_distance_m: float = Field(2.0, ge=0)
    max_interval_seconds: float = Field(10.0, gt=0)
    fresh_seconds: float = Field(30.0, gt=0)
    last_known_good_max_age_seconds: float = Field(300.0, gt=0)
    history_size: int = Field(20, ge=2)


class ProximitySettings(BaseModel):
    hide_margin_m: float = Field(5.0, gt=0)
    abandon_radius_m: float = Field(500.0, gt=0)


class MovementThresholds(BaseModel):
    walking_kmh: float = 6.0
    running_kmh: float = 20.0
    driving_kmh: float = 120.0

    @model_validator(mode="after")
    def _validate_order(self) -> "MovementThresholds":
        if not (self.walking_kmh <= self.running_kmh <= self.driving_kmh):
            raise ValueError("movement thresholds must satisfy walking <= running <= driving")
        return self


class AntiCheatSettings(BaseModel):
    impossible_speed_kmh: float = Field(200.0, gt=0)
    teleportation_kmh: float = Field(1000.0, gt=0)
    spoofing_accuracy_m: float = Field(100.0, gt=0)
    mock_dedup_seconds: float = Field(3600.0, ge=0)
    speed_decimals: int = Field(2, ge=0, le=9)
    movement: MovementThresholds = Field(default_factory=MovementThresholds)

    @model_validator(mode="after")
    def _validate_order(self) -> "AntiCheatSettings":
        if self.teleportation_kmh < self.impossible_speed_kmh:
            raise ValueError("anticheat.teleportation_kmh must be >= anticheat.impossible_speed_kmh")
        return self


class SessionSettings(BaseModel):
    idle_timeout_seconds: float = Field(600.0, gt=0)
    queue_size: int = Field(64, ge=1)


class SinkSettings(BaseModel):
    max_pending_events: int = Field(1000, ge=1)
    flag_queue_size: int = Field(1000, ge=1)
    flag_put_timeout_seconds: float = Field(1.0, gt=0)
    forward_url: str | None = None
    forward_timeout_seconds: float = Field(5.0, gt=0)


class LedgerSettings(BaseModel):
    path: str | None = None


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)
    proximity: ProximitySettings = Field(default_factory=ProximitySettings)
    anticheat: AntiCheatSettings = Field(default_factory=AntiCheatSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    sink: SinkSettings = Field(default_factory=SinkSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("GEOHUNT_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    ledger_path = os.getenv("GEOHUNT_LEDGER_PATH")
    if ledger_path:
        data.setdefault("ledger", {})["path"] = ledger_path

    forward_url = os.getenv("GEOHUNT_FORWARD_URL")
    if forward_url:
        data.setdefault("sink", {})["forward_url"] = forward_url

    admin_token = os.getenv("GEOHUNT_ADMIN_TOKEN")
    if admin_token:
        data.setdefault("app", {})["admin_token"] = admin_token

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("GEOHUNT_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
