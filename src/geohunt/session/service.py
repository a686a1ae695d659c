"""
Hunt service: the registry of live sessions.

Explicitly constructed and passed to the API/CLI (no global managers). It owns the
shared ledger and event sink, starts one `SessionWorker` per session, and keeps a
user -> session index so location updates and offline signals can be routed by
user id. One live session per user, mirroring the live-tracking map.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Mapping

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.config.overrides import apply_settings_overrides, override_paths
from geohunt.config.settings import Settings
from geohunt.core.env import resolve_project_path
from geohunt.core.time import ensure_tz, utc_now
from geohunt.domain.errors import InvalidCoordinate, SessionConflict, SessionNotFound
from geohunt.domain.models import (
    LocationFix,
    LocationUpdateRequest,
    LocationUpdateResponse,
)
from geohunt.events.sink import EventSink, build_forwarders
from geohunt.session.worker import Session, SessionWorker
from geohunt.tracking.ingest import check_coordinates

logger = logging.getLogger(__name__)

# Mobile clients omit accuracy when the OS does not report it.
DEFAULT_ACCURACY_M = 10.0


def build_ledger(settings: Settings, *, clock: Callable[[], datetime] = utc_now) -> CheatFlagLedger:
    path = resolve_project_path(settings.ledger.path) if settings.ledger.path else None
    return CheatFlagLedger(path, clock=clock)


class HuntService:
    def __init__(
        self,
        settings: Settings,
        *,
        ledger: CheatFlagLedger | None = None,
        sink: EventSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.ledger = ledger if ledger is not None else build_ledger(settings, clock=clock)
        self.sink = sink if sink is not None else EventSink(settings.sink, build_forwarders(settings.sink))
        self._clock = clock
        self._sessions: dict[str, SessionWorker] = {}
        self._by_user: dict[str, str] = {}
        self._known_users: set[str] = set()

    async def start(self) -> None:
        self.sink.start()

    async def close(self) -> None:
        for worker in list(self._sessions.values()):
            await self._end(worker)
        await self.sink.stop()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> SessionWorker:
        worker = self._sessions.get(session_id)
        if worker is None or worker.closed:
            raise SessionNotFound(f"unknown session {session_id}", session_id=session_id)
        return worker

    def for_user(self, user_id: str) -> SessionWorker | None:
        session_id = self._by_user.get(user_id)
        if session_id is None:
            return None
        worker = self._sessions.get(session_id)
        if worker is None or worker.closed:
            return None
        return worker

    async def start_session(
        self,
        user_id: str,
        *,
        device_id: str | None = None,
        device_model: str | None = None,
        session_id: str | None = None,
        settings_overrides: Mapping[str, Any] | None = None,
    ) -> SessionWorker:
        """Start (or return) the user's live session. A different session id replaces the old one."""
        existing = self.for_user(user_id)
        if existing is not None and (session_id is None or existing.session_id == session_id):
            return existing

        owner = self._sessions.get(session_id) if session_id is not None else None
        if owner is not None and owner.session.user_id != user_id:
            raise SessionConflict(
                f"session id {session_id} belongs to another user", session_id=session_id
            )

        session_settings = apply_settings_overrides(self.settings, settings_overrides)
        if existing is not None:
            await self._end(existing)

        session = Session(
            session_id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            settings=session_settings,
            started_at=self._clock(),
            device_id=device_id,
            device_model=device_model,
        )
        if settings_overrides:
            logger.warning(
                "Session %s for user %s runs with policy overrides: %s",
                session.session_id,
                user_id,
                ", ".join(override_paths(settings_overrides)),
            )
        worker = SessionWorker(session, ledger=self.ledger, sink=self.sink, clock=self._clock)
        self._sessions[session.session_id] = worker
        self._by_user[user_id] = session.session_id
        self._known_users.add(user_id)
        task = worker.start()
        task.add_done_callback(lambda t, w=worker: self._on_worker_exit(w, t))
        logger.info("Started session %s for user %s", session.session_id, user_id)
        return worker

    def _on_worker_exit(self, worker: SessionWorker, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.critical(
                "Session %s ended abnormally: %s", worker.session_id, task.exception()
            )
        self._forget(worker)

    def _forget(self, worker: SessionWorker) -> None:
        if self._sessions.get(worker.session_id) is worker:
            del self._sessions[worker.session_id]
        if self._by_user.get(worker.session.user_id) == worker.session_id:
            del self._by_user[worker.session.user_id]

    async def _end(self, worker: SessionWorker) -> None:
        self._forget(worker)
        await worker.stop()
        logger.info("Ended session %s for user %s", worker.session_id, worker.session.user_id)

    async def end_user(self, user_id: str) -> bool:
        """Offline signal: drop the user's live session.

        Returns False when the user is known but already offline; raises
        `SessionNotFound` for a user this service has never tracked.
        """
        worker = self.for_user(user_id)
        if worker is None:
            if user_id in self._known_users:
                return False
            raise SessionNotFound(f"unknown user {user_id}", user_id=user_id)
        await self._end(worker)
        return True

    async def update_location(self, req: LocationUpdateRequest) -> LocationUpdateResponse:
        try:
            check_coordinates(req.latitude, req.longitude)
        except InvalidCoordinate as e:
            logger.warning("Rejected fix from %s: %s", req.user_id, e)
            raise

        worker = self.for_user(req.user_id)
        if worker is None or (req.session_id is not None and worker.session_id != req.session_id):
            worker = await self.start_session(
                req.user_id,
                device_id=req.device_id,
                device_model=req.device_model,
                session_id=req.session_id,
            )

        if req.client_timestamp is not None:
            timestamp = ensure_tz(req.client_timestamp, self.settings.app.timezone)
        else:
            timestamp = self._clock()
        fix = LocationFix(
            latitude=req.latitude,
            longitude=req.longitude,
            timestamp=timestamp,
            altitude=req.altitude,
            horizontal_accuracy_m=req.accuracy_meters if req.accuracy_meters is not None else DEFAULT_ACCURACY_M,
            heading_deg=req.heading,
            speed_mps=req.speed_mps,
            is_mock_location=req.is_mock_location,
        )
        outcome = await worker.submit(fix)
        logger.debug(
            "Location %s at (%.4f, %.4f) -> %s",
            req.user_id,
            req.latitude,
            req.longitude,
            outcome.movement_type,
        )
        return LocationUpdateResponse(
            success=True,
            location_id=worker.session_id,
            movement_type=outcome.movement_type,
            timestamp=self._clock(),
            accepted=outcome.accepted,
            warnings=outcome.warnings,
            flags=[f.reason for f in outcome.flags],
        )
