"""
Proximity engine.

One state machine per (session, target):

    dormant -> approaching -> materialized -> collectible -> collected
         ^         |  ^            |               |
         +---------+  +------------+---------------+   (walked away / past hide radius)

`dormant -> approaching` is an external trigger (the target becomes the hunt goal);
`collectible -> collected` is an external collect action. Every other edge is driven
by the distance from the session's current fix. Transitions fire only when the
computed state differs from the stored one, so re-delivering a fix is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from geohunt.config.settings import ProximitySettings
from geohunt.core.geo import cardinal_direction, haversine_m, initial_bearing_deg, to_local_east_north
from geohunt.domain.errors import NotCollectible, OutOfRange, TargetNotFound
from geohunt.domain.models import (
    LocationFix,
    ProximityEvent,
    ProximityEventKind,
    ProximityState,
    Target,
    TargetStatus,
)

logger = logging.getLogger(__name__)

_EVENT_FOR_TRANSITION: dict[tuple[ProximityState, ProximityState], ProximityEventKind] = {
    ("approaching", "materialized"): "materialize",
    ("materialized", "collectible"): "became_collectible",
    ("materialized", "approaching"): "dematerialize",
    ("collectible", "approaching"): "dematerialize",
    ("materialized", "dormant"): "dematerialize",
    ("collectible", "dormant"): "dematerialize",
    ("collectible", "collected"): "collected",
}


@dataclass
class TargetTracker:
    target: Target
    state: ProximityState = "dormant"
    last_distance_m: float | None = None


def normalize_target(target: Target, *, hide_margin_m: float) -> Target:
    """Return `target` with hide radius pushed past the materialization radius if needed.

    Without the gap a player standing on the boundary would flicker the coin in and out.
    """
    if target.hide_radius_m > target.materialization_radius_m:
        return target
    corrected = target.materialization_radius_m + hide_margin_m
    logger.warning(
        "Target %s hide radius %.1fm <= materialization radius %.1fm; using %.1fm",
        target.id,
        target.hide_radius_m,
        target.materialization_radius_m,
        corrected,
    )
    return target.model_copy(update={"hide_radius_m": corrected})


def next_state(
    state: ProximityState, distance_m: float, target: Target, *, abandon_radius_m: float
) -> ProximityState:
    """Single distance-driven step from `state`; returns `state` when nothing applies."""
    if state == "approaching":
        if distance_m <= target.materialization_radius_m:
            return "materialized"
        if distance_m > max(abandon_radius_m, target.hide_radius_m):
            return "dormant"
    elif state == "materialized":
        if distance_m > target.hide_radius_m:
            return "approaching"
        if distance_m <= target.collection_radius_m:
            return "collectible"
    elif state == "collectible":
        if distance_m > target.hide_radius_m:
            return "approaching"
    return state


class ProximityEngine:
    """Keyed store of target state machines for one session."""

    def __init__(self, session_id: str, settings: ProximitySettings):
        self.session_id = session_id
        self._settings = settings
        self._trackers: dict[str, TargetTracker] = {}

    def track(self, target: Target) -> TargetTracker:
        """Register a target as known to the player (e.g. placed on the map)."""
        existing = self._trackers.get(target.id)
        if existing is not None:
            return existing
        tracker = TargetTracker(target=normalize_target(target, hide_margin_m=self._settings.hide_margin_m))
        self._trackers[target.id] = tracker
        return tracker

    def untrack(self, target_id: str) -> None:
        self._trackers.pop(target_id, None)

    def _tracker(self, target_id: str) -> TargetTracker:
        tracker = self._trackers.get(target_id)
        if tracker is None:
            raise TargetNotFound(f"target {target_id} is not tracked in session {self.session_id}")
        return tracker

    def state(self, target_id: str) -> ProximityState:
        return self._tracker(target_id).state

    def targets(self) -> list[Target]:
        return [t.target for t in self._trackers.values()]

    def activate(self, target_id: str, fix: LocationFix | None = None) -> list[ProximityEvent]:
        """Make a tracked target the active hunt goal (dormant -> approaching)."""
        tracker = self._tracker(target_id)
        if tracker.state != "dormant":
            return []
        self._transition(tracker, "approaching", fix=None, distance_m=tracker.last_distance_m)
        if fix is None:
            return []
        return self._evaluate(tracker, fix)

    def deactivate(self, target_id: str, fix: LocationFix | None = None) -> list[ProximityEvent]:
        """Drop a target as hunt goal; a visible coin re-hides."""
        tracker = self._tracker(target_id)
        if tracker.state in ("dormant", "collected"):
            return []
        event = self._transition(tracker, "dormant", fix=fix, distance_m=tracker.last_distance_m)
        return [event] if event else []

    def update(self, fix: LocationFix) -> list[ProximityEvent]:
        """Re-evaluate every tracked target against a newly promoted fix."""
        events: list[ProximityEvent] = []
        for tracker in self._trackers.values():
            events.extend(self._evaluate(tracker, fix))
        return events

    def _evaluate(self, tracker: TargetTracker, fix: LocationFix) -> list[ProximityEvent]:
        distance = haversine_m(fix.point, tracker.target.point)
        tracker.last_distance_m = distance
        events: list[ProximityEvent] = []
        # Cascade so a player who jumps straight into the collection radius still
        # passes through materialized. Each state can only move one way for a
        # given distance, so this terminates within three steps.
        while True:
            new_state = next_state(
                tracker.state, distance, tracker.target, abandon_radius_m=self._settings.abandon_radius_m
            )
            if new_state == tracker.state:
                return events
            event = self._transition(tracker, new_state, fix=fix, distance_m=distance)
            if event is not None:
                events.append(event)

    def collect(self, target_id: str, fix: LocationFix | None) -> ProximityEvent:
        """Accept an external collect action (collectible -> collected).

        Distance is re-checked against `fix` so a client acting on stale state
        cannot collect from outside the collection radius.
        """
        tracker = self._tracker(target_id)
        if tracker.state != "collectible":
            raise NotCollectible(
                f"target {target_id} is {tracker.state}, not collectible",
                target_id=target_id,
                state=tracker.state,
            )
        if fix is None:
            raise OutOfRange(f"no current position to verify distance to {target_id}", target_id=target_id)
        distance = haversine_m(fix.point, tracker.target.point)
        tracker.last_distance_m = distance
        if distance > tracker.target.collection_radius_m:
            raise OutOfRange(
                f"target {target_id} is {distance:.1f}m away; collection radius is "
                f"{tracker.target.collection_radius_m:.1f}m",
                target_id=target_id,
                distance_m=round(distance, 2),
            )
        self._transition(tracker, "collected", fix=None, distance_m=distance)
        return self._event(tracker, "collected", fix, distance)

    def _transition(
        self,
        tracker: TargetTracker,
        new_state: ProximityState,
        *,
        fix: LocationFix | None,
        distance_m: float | None,
    ) -> ProximityEvent | None:
        old_state = tracker.state
        tracker.state = new_state
        logger.info(
            "Session %s target %s: %s -> %s (%s)",
            self.session_id,
            tracker.target.id,
            old_state,
            new_state,
            f"{distance_m:.1f}m" if distance_m is not None else "no fix",
        )
        kind = _EVENT_FOR_TRANSITION.get((old_state, new_state))
        if kind is None or fix is None:
            return None
        return self._event(tracker, kind, fix, distance_m)

    def _event(
        self,
        tracker: TargetTracker,
        kind: ProximityEventKind,
        fix: LocationFix,
        distance_m: float | None,
    ) -> ProximityEvent:
        offset = to_local_east_north(fix.point, tracker.target.point)
        return ProximityEvent(
            kind=kind,
            session_id=self.session_id,
            target_id=tracker.target.id,
            local_east=offset.east,
            local_north=offset.north,
            distance_m=distance_m if distance_m is not None else offset.range_m,
            fix_timestamp=fix.timestamp,
        )

    def status(self, fix: LocationFix | None) -> list[TargetStatus]:
        out: list[TargetStatus] = []
        for tracker in self._trackers.values():
            if fix is None:
                out.append(TargetStatus(target_id=tracker.target.id, state=tracker.state))
                continue
            bearing = initial_bearing_deg(fix.point, tracker.target.point)
            out.append(
                TargetStatus(
                    target_id=tracker.target.id,
                    state=tracker.state,
                    distance_m=haversine_m(fix.point, tracker.target.point),
                    bearing_deg=bearing,
                    cardinal=cardinal_direction(bearing),
                )
            )
        return out

    def nearest(self, fix: LocationFix | None) -> TargetStatus | None:
        """Nearest target that can still be collected, with direction hints for the HUD."""
        candidates = [s for s in self.status(fix) if s.state != "collected" and s.distance_m is not None]
        if not candidates:
            return None
        return min(candidates, key=lambda s: s.distance_m)
