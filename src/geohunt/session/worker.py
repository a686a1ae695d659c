"""
Per-session worker.

Each active hunt session owns exactly one worker task. Fixes arrive on an ordered
queue; the worker validates them (ingest), screens them (anti-cheat) and, for
promoted fixes, advances the target state machines (proximity). All computation
is synchronous; the only suspension points are waiting for the next fix, the
ledger append (run in a thread so fsync never blocks the loop) and handing
results to the shared sink.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from geohunt.anticheat.detector import AntiCheatDetector
from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.config.settings import Settings
from geohunt.core.time import utc_now
from geohunt.domain.errors import InvalidCoordinate, SessionNotFound, StaleFix
from geohunt.domain.models import (
    CheatFlag,
    LocationFix,
    MovementType,
    ProximityEvent,
    SessionInfo,
    SessionSnapshot,
    Target,
)
from geohunt.events.sink import EventSink
from geohunt.proximity.engine import ProximityEngine
from geohunt.tracking.ingest import LocationIngest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    session_id: str
    user_id: str
    settings: Settings
    started_at: datetime
    device_id: str | None = None
    device_model: str | None = None

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            user_id=self.user_id,
            device_id=self.device_id,
            started_at=self.started_at,
        )


@dataclass
class FixOutcome:
    accepted: bool
    movement_type: MovementType
    promoted: bool = False
    low_confidence: bool = False
    speed_kmh: float | None = None
    warnings: list[str] = field(default_factory=list)
    flags: list[CheatFlag] = field(default_factory=list)
    events: list[ProximityEvent] = field(default_factory=list)


class SessionWorker:
    def __init__(
        self,
        session: Session,
        *,
        ledger: CheatFlagLedger,
        sink: EventSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self._ledger = ledger
        self._sink = sink
        settings = session.settings
        self.ingest = LocationIngest(settings.ingest, clock=clock)
        self.proximity = ProximityEngine(session.session_id, settings.proximity)
        self.detector = AntiCheatDetector(
            session_id=session.session_id,
            user_id=session.user_id,
            settings=settings.anticheat,
            device_id=session.device_id,
            device_model=session.device_model,
            clock=clock,
        )
        self._queue: asyncio.Queue[tuple[LocationFix, asyncio.Future] | None] = asyncio.Queue(
            maxsize=settings.sessions.queue_size
        )
        self._task: asyncio.Task | None = None
        self._closed = False
        self._in_flight: asyncio.Future | None = None
        self.movement_type: MovementType = "walking"

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"geohunt-session-{self.session_id}")
        return self._task

    async def submit(self, fix: LocationFix) -> FixOutcome:
        """Queue a fix and wait until the worker has processed it."""
        if self._closed:
            raise SessionNotFound(f"session {self.session_id} has ended")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((fix, future))
        if self._closed:
            # The worker ended while this put was waiting for room.
            self._discard_in_flight()
        return await future

    async def run(self) -> None:
        idle_timeout = self.session.settings.sessions.idle_timeout_seconds
        try:
            while True:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    logger.info("Session %s idle for %.0fs; ending", self.session_id, idle_timeout)
                    return
                if item is None:
                    return
                fix, future = item
                self._in_flight = future
                try:
                    outcome = await self.process(fix)
                except InvalidCoordinate as e:
                    logger.warning("Session %s rejected fix: %s", self.session_id, e)
                    if not future.done():
                        future.set_exception(e)
                    continue
                except Exception as e:
                    # Ledger or sink failure: evidence could be lost, so the session stops.
                    logger.critical("Session %s worker failed: %s", self.session_id, e)
                    if not future.done():
                        future.set_exception(e)
                    raise
                if not future.done():
                    future.set_result(outcome)
                self._in_flight = None
        finally:
            self._closed = True
            self._discard_in_flight()

    def _discard_in_flight(self) -> None:
        in_flight, self._in_flight = self._in_flight, None
        if in_flight is not None and not in_flight.done():
            in_flight.set_exception(SessionNotFound(f"session {self.session_id} has ended"))
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                continue
            _, future = item
            if not future.done():
                future.set_exception(SessionNotFound(f"session {self.session_id} has ended"))

    async def stop(self) -> None:
        """Tear down the worker; queued fixes are discarded."""
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._discard_in_flight()

    async def process(self, fix: LocationFix) -> FixOutcome:
        try:
            result = self.ingest.accept(fix)
        except StaleFix as e:
            logger.info("Session %s: %s", self.session_id, e)
            return FixOutcome(accepted=False, movement_type=self.movement_type, warnings=[e.code])

        detection = self.detector.evaluate(result.previous, fix)
        self.movement_type = detection.movement_type
        for flag in detection.flags:
            await asyncio.to_thread(self._ledger.append, flag)
            await self._sink.publish_flag(flag)

        events = self.proximity.update(fix) if result.promoted else []
        for event in events:
            self._sink.publish_event(event)

        return FixOutcome(
            accepted=True,
            movement_type=detection.movement_type,
            promoted=result.promoted,
            low_confidence=result.low_confidence,
            speed_kmh=detection.speed.speed_kmh if detection.speed else None,
            warnings=[w.code for w in result.warnings],
            flags=detection.flags,
            events=events,
        )

    def add_target(self, target: Target, *, activate: bool = False) -> list[ProximityEvent]:
        self.proximity.track(target)
        if not activate:
            return []
        return self.activate(target.id)

    def activate(self, target_id: str) -> list[ProximityEvent]:
        events = self.proximity.activate(target_id, self.ingest.last_known_good())
        for event in events:
            self._sink.publish_event(event)
        return events

    def deactivate(self, target_id: str) -> list[ProximityEvent]:
        events = self.proximity.deactivate(target_id, self.ingest.last_known_good())
        for event in events:
            self._sink.publish_event(event)
        return events

    def collect(self, target_id: str) -> ProximityEvent:
        event = self.proximity.collect(target_id, self.ingest.last_known_good())
        self._sink.publish_event(event)
        return event

    def snapshot(self) -> SessionSnapshot:
        current = self.ingest.current()
        return SessionSnapshot(
            session=self.session.info(),
            current_fix=current,
            last_known_good=self.ingest.last_known_good(),
            targets=self.proximity.status(current),
            nearest=self.proximity.nearest(current),
        )
