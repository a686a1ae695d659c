"""
Domain models (Pydantic).

These types represent the stable "contract" between layers:
- engine inputs (`LocationFix`, `Target`)
- engine outputs (`ProximityEvent`, `CheatFlag`)
- moderation records (`FlagReview`, `AntiCheatStats`)
- HTTP payloads (`LocationUpdateRequest`, `LocationUpdateResponse`, ...)

Wire payloads use camelCase aliases (the mobile client's convention); Python code
uses snake_case field names.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from geohunt.core.geo import GeoPoint

ProximityState = Literal["dormant", "approaching", "materialized", "collectible", "collected"]
ProximityEventKind = Literal["materialize", "dematerialize", "became_collectible", "collected"]
MovementType = Literal["walking", "running", "driving", "suspicious"]
ValueCategory = Literal["bronze", "silver", "gold", "platinum", "diamond", "unknown"]

CheatReason = Literal[
    "gps_spoofing",
    "impossible_speed",
    "teleportation",
    "mock_location",
    "device_tampering",
    "emulator_detected",
    "app_tampering",
    "suspicious_pattern",
    "multiple_devices",
    "location_inconsistency",
]
CheatSeverity = Literal["low", "medium", "high", "critical"]
FlagStatus = Literal["pending", "investigating", "confirmed", "false_positive", "resolved"]
PlayerAction = Literal["none", "warned", "suspended", "banned", "cleared"]

CHEAT_REASONS: tuple[str, ...] = CheatReason.__args__  # type: ignore[attr-defined]
CHEAT_SEVERITIES: tuple[str, ...] = CheatSeverity.__args__  # type: ignore[attr-defined]


def _new_id() -> str:
    return str(uuid.uuid4())


class LocationFix(BaseModel):
    """A single timestamped GPS reading (immutable)."""

    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    timestamp: datetime
    altitude: float | None = None
    horizontal_accuracy_m: float = 10.0
    heading_deg: float | None = None
    speed_mps: float | None = None
    is_mock_location: bool = False

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.latitude, lon=self.longitude)


class Target(BaseModel):
    """A coin candidate placed by the content layer; the engine only reads its geometry."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    value_category: ValueCategory = "unknown"
    collection_radius_m: float = Field(5.0, gt=0)
    materialization_radius_m: float = Field(20.0, gt=0)
    hide_radius_m: float = Field(30.0, gt=0)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.latitude, lon=self.longitude)


class ProximityEvent(BaseModel):
    """Outbound fact for the rendering layer: where a target is and what just happened to it."""

    kind: ProximityEventKind
    session_id: str
    target_id: str
    local_east: float
    local_north: float
    distance_m: float
    fix_timestamp: datetime


class FixSnapshot(BaseModel):
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy_meters: float | None = None

    @classmethod
    def of(cls, fix: LocationFix) -> "FixSnapshot":
        return cls(
            latitude=fix.latitude,
            longitude=fix.longitude,
            timestamp=fix.timestamp,
            accuracy_meters=fix.horizontal_accuracy_m,
        )


class CheatEvidence(BaseModel):
    previous_location: FixSnapshot | None = None
    current_location: FixSnapshot
    distance_meters: float | None = None
    time_seconds: float | None = None
    calculated_speed_kmh: float | None = None
    reported_speed_kmh: float | None = None
    accuracy_meters: float | None = None
    is_mock_location: bool = False
    device_id: str | None = None
    device_model: str | None = None


class CheatFlag(BaseModel):
    """An append-only suspicion record; moderation reviews live in `FlagReview`."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    session_id: str
    user_id: str
    reason: CheatReason
    severity: CheatSeverity
    evidence: CheatEvidence
    detected_at: datetime
    detected_by: str = "system"


class FlagReview(BaseModel):
    """A moderation decision about one flag. Later reviews supersede earlier ones."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    flag_id: str = ""
    status: FlagStatus
    action_taken: PlayerAction = "none"
    reviewed_by: str
    reviewed_at: datetime | None = None
    notes: str | None = None


class AntiCheatStats(BaseModel):
    total_flags: int
    pending_flags: int
    confirmed_cheaters: int
    false_positives: int
    flags_by_reason: dict[str, int]
    flags_by_severity: dict[str, int]
    players_warned: int
    players_suspended: int
    players_banned: int
    flags_today: int
    flags_this_week: int
    flags_this_month: int


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LocationUpdateRequest(_CamelModel):
    """Inbound location update from the mobile client (~every 5 s while hunting)."""

    user_id: str = Field(..., min_length=1)
    latitude: float
    longitude: float
    altitude: float | None = None
    accuracy_meters: float | None = Field(default=None, ge=0)
    heading: float | None = None
    speed_mps: float | None = Field(default=None, ge=0)
    device_id: str | None = None
    device_model: str | None = None
    app_version: str | None = None
    session_id: str | None = None
    is_ar_active: bool = False
    is_mock_location: bool = False
    client_timestamp: datetime | None = None


class LocationUpdateResponse(_CamelModel):
    success: bool
    location_id: str | None = None
    movement_type: MovementType
    timestamp: datetime
    accepted: bool = True
    warnings: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)


class StartSessionRequest(_CamelModel):
    user_id: str = Field(..., min_length=1)
    device_id: str | None = None
    device_model: str | None = None
    session_id: str | None = None
    settings_overrides: dict[str, Any] | None = None


class SessionInfo(_CamelModel):
    session_id: str
    user_id: str
    device_id: str | None = None
    started_at: datetime


class TargetRequest(_CamelModel):
    target: Target
    activate: bool = False


class TargetStatus(_CamelModel):
    target_id: str
    state: ProximityState
    distance_m: float | None = None
    bearing_deg: float | None = None
    cardinal: str | None = None


class CollectResponse(_CamelModel):
    success: bool
    target_id: str
    state: ProximityState
    distance_m: float


class SessionSnapshot(_CamelModel):
    session: SessionInfo
    current_fix: LocationFix | None = None
    last_known_good: LocationFix | None = None
    targets: list[TargetStatus] = Field(default_factory=list)
    nearest: TargetStatus | None = None
