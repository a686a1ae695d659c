"""
Anti-cheat detector.

Screens each validated fix against the previous one for the same session:
- implied speed between fixes (teleportation / impossible speed tiers),
- the device's mock-location hint (deduplicated per session within a rolling window),
- very poor reported accuracy, a common side effect of spoofing tools.

Signals are independent; one fix can raise several flags. The detector only
reports; enforcement is up to moderation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from geohunt.config.settings import AntiCheatSettings, MovementThresholds
from geohunt.core.geo import haversine_m
from geohunt.core.time import seconds_between, utc_now
from geohunt.domain.models import (
    CheatEvidence,
    CheatFlag,
    CheatReason,
    CheatSeverity,
    FixSnapshot,
    LocationFix,
    MovementType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeedSample:
    distance_m: float
    time_s: float
    speed_kmh: float


@dataclass
class Detection:
    movement_type: MovementType
    speed: SpeedSample | None = None
    flags: list[CheatFlag] = field(default_factory=list)


def implied_speed(prev: LocationFix, curr: LocationFix, *, decimals: int = 2) -> SpeedSample | None:
    """Speed implied by two fixes, or None when time does not move forward."""
    dt = seconds_between(prev.timestamp, curr.timestamp)
    if dt <= 0:
        return None
    distance = haversine_m(prev.point, curr.point)
    return SpeedSample(distance_m=distance, time_s=dt, speed_kmh=round(distance / dt * 3.6, decimals))


def classify_movement(
    speed_kmh: float | None, *, is_mock_location: bool = False, thresholds: MovementThresholds
) -> MovementType:
    if is_mock_location:
        return "suspicious"
    if speed_kmh is None or speed_kmh <= thresholds.walking_kmh:
        return "walking"
    if speed_kmh <= thresholds.running_kmh:
        return "running"
    if speed_kmh <= thresholds.driving_kmh:
        return "driving"
    return "suspicious"


def speed_tier(speed_kmh: float, settings: AntiCheatSettings) -> tuple[CheatReason, CheatSeverity] | None:
    if speed_kmh > settings.teleportation_kmh:
        return "teleportation", "critical"
    if speed_kmh > settings.impossible_speed_kmh:
        return "impossible_speed", "high"
    return None


class AntiCheatDetector:
    """Per-session detector; its only state is the mock-location dedup clock."""

    def __init__(
        self,
        *,
        session_id: str,
        user_id: str,
        settings: AntiCheatSettings,
        device_id: str | None = None,
        device_model: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.device_id = device_id
        self.device_model = device_model
        self._settings = settings
        self._clock = clock
        self._last_mock_flag_at: datetime | None = None

    def evaluate(self, prev: LocationFix | None, curr: LocationFix) -> Detection:
        speed = implied_speed(prev, curr, decimals=self._settings.speed_decimals) if prev else None
        if speed is None and curr.speed_mps is not None:
            movement_speed: float | None = curr.speed_mps * 3.6
        else:
            movement_speed = speed.speed_kmh if speed else None
        detection = Detection(
            movement_type=classify_movement(
                movement_speed,
                is_mock_location=curr.is_mock_location,
                thresholds=self._settings.movement,
            ),
            speed=speed,
        )

        if speed is not None:
            tier = speed_tier(speed.speed_kmh, self._settings)
            if tier is not None:
                reason, severity = tier
                detection.flags.append(self._flag(reason, severity, prev=prev, curr=curr, speed=speed))

        if curr.is_mock_location and self._mock_flag_due(curr):
            self._last_mock_flag_at = curr.timestamp
            detection.flags.append(self._flag("mock_location", "medium", prev=None, curr=curr, speed=None))

        if curr.horizontal_accuracy_m > self._settings.spoofing_accuracy_m:
            detection.flags.append(self._flag("gps_spoofing", "high", prev=None, curr=curr, speed=None))

        for flag in detection.flags:
            logger.warning(
                "Cheat flag %s/%s for user %s session %s (%s)",
                flag.reason,
                flag.severity,
                self.user_id,
                self.session_id,
                f"{speed.speed_kmh:.1f} km/h" if speed else "no speed sample",
            )
        return detection

    def _mock_flag_due(self, curr: LocationFix) -> bool:
        last = self._last_mock_flag_at
        if last is None:
            return True
        return seconds_between(last, curr.timestamp) >= self._settings.mock_dedup_seconds

    def _flag(
        self,
        reason: CheatReason,
        severity: CheatSeverity,
        *,
        prev: LocationFix | None,
        curr: LocationFix,
        speed: SpeedSample | None,
    ) -> CheatFlag:
        evidence = CheatEvidence(
            previous_location=FixSnapshot.of(prev) if prev is not None else None,
            current_location=FixSnapshot.of(curr),
            distance_meters=speed.distance_m if speed else None,
            time_seconds=speed.time_s if speed else None,
            calculated_speed_kmh=speed.speed_kmh if speed else None,
            reported_speed_kmh=curr.speed_mps * 3.6 if curr.speed_mps is not None else None,
            accuracy_meters=curr.horizontal_accuracy_m,
            is_mock_location=curr.is_mock_location,
            device_id=self.device_id,
            device_model=self.device_model,
        )
        return CheatFlag(
            session_id=self.session_id,
            user_id=self.user_id,
            reason=reason,
            severity=severity,
            evidence=evidence,
            detected_at=self._clock(),
        )
