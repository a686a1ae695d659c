"""
Location ingest.

Turns raw device fixes into a validated, ordered stream for one session:
- rejects impossible coordinates (`InvalidCoordinate`) and non-increasing timestamps (`StaleFix`),
- marks inaccurate fixes as low-confidence instead of dropping them (poor accuracy is
  anti-cheat evidence in its own right),
- applies a movement filter so "current" only changes on real movement or on a heartbeat.

Every validated fix is handed to the anti-cheat detector; only promoted fixes drive
proximity.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from geohunt.config.settings import IngestSettings
from geohunt.core.geo import haversine_m
from geohunt.core.time import seconds_between, utc_now
from geohunt.domain.errors import InvalidCoordinate, StaleFix
from geohunt.domain.models import LocationFix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoorAccuracy:
    """Warning attached to a fix whose reported accuracy exceeds the configured ceiling."""

    accuracy_m: float
    ceiling_m: float

    code = "POOR_ACCURACY"

    def __str__(self) -> str:
        return f"accuracy {self.accuracy_m:.0f}m exceeds {self.ceiling_m:.0f}m"


@dataclass(frozen=True)
class IngestResult:
    fix: LocationFix
    previous: LocationFix | None
    promoted: bool
    low_confidence: bool
    warnings: list[PoorAccuracy] = field(default_factory=list)


def check_coordinates(latitude: float, longitude: float) -> None:
    """Raise `InvalidCoordinate` unless the pair is a plausible position on Earth."""
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise InvalidCoordinate("coordinates must be finite numbers", latitude=latitude, longitude=longitude)
    if not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinate(f"latitude {latitude} out of range [-90, 90]", latitude=latitude)
    if not -180.0 <= longitude <= 180.0:
        raise InvalidCoordinate(f"longitude {longitude} out of range [-180, 180]", longitude=longitude)
    # Uninitialized location providers report (0, 0).
    if latitude == 0.0 and longitude == 0.0:
        raise InvalidCoordinate("coordinates (0, 0) are treated as an unset location")


class LocationIngest:
    """Per-session fix validator and movement filter."""

    def __init__(self, settings: IngestSettings, *, clock: Callable[[], datetime] = utc_now):
        self._settings = settings
        self._clock = clock
        self._current: LocationFix | None = None
        self._last_accepted: LocationFix | None = None
        # (fix, low_confidence) pairs, newest last.
        self._history: deque[tuple[LocationFix, bool]] = deque(maxlen=settings.history_size)

    def accept(self, fix: LocationFix) -> IngestResult:
        check_coordinates(fix.latitude, fix.longitude)

        previous = self._last_accepted
        if previous is not None and fix.timestamp <= previous.timestamp:
            raise StaleFix(
                f"fix at {fix.timestamp.isoformat()} is not after {previous.timestamp.isoformat()}",
                timestamp=fix.timestamp.isoformat(),
                last_timestamp=previous.timestamp.isoformat(),
            )

        warnings: list[PoorAccuracy] = []
        ceiling = self._settings.max_accuracy_m
        if fix.horizontal_accuracy_m > ceiling:
            warnings.append(PoorAccuracy(accuracy_m=fix.horizontal_accuracy_m, ceiling_m=ceiling))
            logger.info("Low-confidence fix: accuracy %.0fm > %.0fm", fix.horizontal_accuracy_m, ceiling)
        low_confidence = bool(warnings)

        promoted = not low_confidence and self._passes_movement_filter(fix)
        if promoted:
            self._current = fix

        self._last_accepted = fix
        self._history.append((fix, low_confidence))
        return IngestResult(
            fix=fix,
            previous=previous,
            promoted=promoted,
            low_confidence=low_confidence,
            warnings=warnings,
        )

    def _passes_movement_filter(self, fix: LocationFix) -> bool:
        current = self._current
        if current is None:
            return True
        if haversine_m(current.point, fix.point) >= self._settings.min_distance_m:
            return True
        return seconds_between(current.timestamp, fix.timestamp) >= self._settings.max_interval_seconds

    def current(self) -> LocationFix | None:
        return self._current

    def last_accepted(self) -> LocationFix | None:
        return self._last_accepted

    def last_known_good(self, now: datetime | None = None) -> LocationFix | None:
        """Best position to act on right now, or None if everything is too old.

        Prefers `current` while it is fresh; otherwise the newest confident fix in the
        rolling window that is still within the last-known-good age limit.
        """
        now = now or self._clock()
        current = self._current
        if current is not None and seconds_between(current.timestamp, now) <= self._settings.fresh_seconds:
            return current

        max_age = self._settings.last_known_good_max_age_seconds
        for fix, low_confidence in reversed(self._history):
            if low_confidence:
                continue
            if seconds_between(fix.timestamp, now) <= max_age:
                return fix
            # History is time-ordered; everything further back is older still.
            break
        return None

    def history(self) -> list[LocationFix]:
        return [fix for fix, _ in self._history]
