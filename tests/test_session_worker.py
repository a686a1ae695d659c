from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.config.settings import Settings
from geohunt.core.geo import GeoPoint, offset_point
from geohunt.domain.errors import InvalidCoordinate, LedgerWriteError, SessionConflict, SessionNotFound
from geohunt.domain.models import LocationFix, LocationUpdateRequest, Target
from geohunt.events.sink import EventSink, MemoryForwarder
from geohunt.session.service import HuntService
from geohunt.session.worker import Session, SessionWorker

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ORIGIN = GeoPoint(lat=37.7749, lon=-122.4194)
COIN = offset_point(ORIGIN, north_m=10)


class _Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


def _fix(seconds: float, north_m: float = 0.0, **kwargs) -> LocationFix:
    p = offset_point(ORIGIN, north_m=north_m)
    return LocationFix(latitude=p.lat, longitude=p.lon, timestamp=T0 + timedelta(seconds=seconds), **kwargs)


def _coin() -> Target:
    return Target(id="coin-1", latitude=COIN.lat, longitude=COIN.lon)


def _worker(clock: _Clock, *, ledger: CheatFlagLedger | None = None) -> tuple[SessionWorker, EventSink, MemoryForwarder]:
    memory = MemoryForwarder()
    sink = EventSink(Settings().sink, [memory])
    session = Session(session_id="s1", user_id="u1", settings=Settings(), started_at=T0)
    if ledger is None:
        ledger = CheatFlagLedger(clock=clock)
    worker = SessionWorker(session, ledger=ledger, sink=sink, clock=clock)
    return worker, sink, memory


def test_worker_processes_fixes_in_order_and_emits_events():
    async def scenario():
        clock = _Clock()
        worker, sink, memory = _worker(clock)
        worker.add_target(_coin(), activate=True)
        worker.start()

        outcomes = []
        for seconds, north in [(0, -50), (5, -45), (10, -9), (15, 8)]:
            clock.now = T0 + timedelta(seconds=seconds)
            outcomes.append(await worker.submit(_fix(seconds, north)))
        await worker.stop()
        await sink.flush()
        return worker, outcomes, memory

    worker, outcomes, memory = asyncio.run(scenario())

    assert all(o.accepted for o in outcomes)
    assert [e.kind for e in outcomes[2].events] == ["materialize"]
    assert [e.kind for e in outcomes[3].events] == ["became_collectible"]
    assert worker.proximity.state("coin-1") == "collectible"
    assert [e.kind for e in memory.events] == ["became_collectible"]  # coalesced per target
    assert worker.closed


def test_stale_fix_is_reported_not_raised():
    async def scenario():
        clock = _Clock()
        worker, _, _ = _worker(clock)
        await worker.process(_fix(5))
        return await worker.process(_fix(5, 3))

    outcome = asyncio.run(scenario())
    assert not outcome.accepted
    assert outcome.warnings == ["STALE_FIX"]


def test_low_confidence_fix_feeds_anticheat_but_not_proximity():
    async def scenario():
        clock = _Clock()
        worker, sink, memory = _worker(clock)
        worker.add_target(_coin(), activate=True)
        await worker.process(_fix(0, -50))
        outcome = await worker.process(_fix(5, 8, horizontal_accuracy_m=150))
        await sink.flush()
        return worker, outcome, memory

    worker, outcome, memory = asyncio.run(scenario())

    assert outcome.low_confidence and not outcome.promoted
    assert outcome.warnings == ["POOR_ACCURACY"]
    assert [f.reason for f in outcome.flags] == ["gps_spoofing"]
    assert outcome.events == []
    assert worker.proximity.state("coin-1") == "approaching"
    assert [f.reason for f in memory.flags] == ["gps_spoofing"]


def test_flags_are_in_the_ledger_before_the_sink():
    async def scenario():
        clock = _Clock()
        ledger = CheatFlagLedger(clock=clock)
        worker, _, _ = _worker(clock, ledger=ledger)
        await worker.process(_fix(0))
        outcome = await worker.process(_fix(5, 1500))
        return ledger, outcome

    ledger, outcome = asyncio.run(scenario())
    assert [f.reason for f in outcome.flags] == ["teleportation"]
    assert ledger.query(session_id="s1") == outcome.flags


def test_invalid_coordinate_fails_only_that_submit():
    async def scenario():
        clock = _Clock()
        worker, _, _ = _worker(clock)
        worker.start()
        with pytest.raises(InvalidCoordinate):
            await worker.submit(LocationFix(latitude=0.0, longitude=0.0, timestamp=T0))
        outcome = await worker.submit(_fix(1))
        await worker.stop()
        return outcome

    assert asyncio.run(scenario()).accepted


def test_ledger_failure_stops_the_worker(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")

    async def scenario():
        clock = _Clock()
        worker, _, _ = _worker(clock, ledger=CheatFlagLedger(blocker / "flags.jsonl", clock=clock))
        task = worker.start()
        await worker.submit(_fix(0))
        with pytest.raises(LedgerWriteError):
            await worker.submit(_fix(5, 1500))
        with pytest.raises(LedgerWriteError):
            await task
        with pytest.raises(SessionNotFound):
            await worker.submit(_fix(10))

    asyncio.run(scenario())


def test_idle_session_ends_itself():
    async def scenario():
        clock = _Clock()
        memory = MemoryForwarder()
        settings = Settings.model_validate({"sessions": {"idle_timeout_seconds": 0.05}})
        session = Session(session_id="s1", user_id="u1", settings=settings, started_at=T0)
        worker = SessionWorker(
            session, ledger=CheatFlagLedger(), sink=EventSink(settings.sink, [memory]), clock=clock
        )
        task = worker.start()
        await asyncio.wait_for(task, timeout=1)
        return worker

    assert asyncio.run(scenario()).closed


def test_collect_uses_last_known_good_position():
    async def scenario():
        clock = _Clock()
        worker, _, _ = _worker(clock)
        worker.add_target(_coin(), activate=True)
        await worker.process(_fix(0, 8))
        clock.now = T0 + timedelta(seconds=5)
        return worker.collect("coin-1"), worker.snapshot()

    event, snapshot = asyncio.run(scenario())
    assert event.kind == "collected"
    assert snapshot.targets[0].state == "collected"
    assert snapshot.nearest is None


def _request(user_id: str, seconds: float, north_m: float = 0.0, **kwargs) -> LocationUpdateRequest:
    p = offset_point(ORIGIN, north_m=north_m)
    return LocationUpdateRequest(
        user_id=user_id,
        latitude=p.lat,
        longitude=p.lon,
        client_timestamp=T0 + timedelta(seconds=seconds),
        **kwargs,
    )


def test_service_routes_updates_by_user_and_handles_offline():
    async def scenario():
        clock = _Clock()
        memory = MemoryForwarder()
        settings = Settings()
        service = HuntService(
            settings, ledger=CheatFlagLedger(clock=clock), sink=EventSink(settings.sink, [memory]), clock=clock
        )
        await service.start()

        first = await service.update_location(_request("alice", 0))
        second = await service.update_location(_request("alice", 5, 1500))
        other = await service.update_location(_request("bob", 0, is_mock_location=True))

        assert first.location_id == second.location_id
        assert other.location_id != first.location_id
        assert service.session_count == 2

        assert await service.end_user("alice") is True
        assert await service.end_user("alice") is False
        with pytest.raises(SessionNotFound):
            await service.end_user("mallory")
        with pytest.raises(SessionNotFound):
            service.get(first.location_id)

        await service.close()
        return first, second, other, memory

    first, second, other, memory = asyncio.run(scenario())

    assert first.movement_type == "walking" and first.flags == []
    assert second.flags == ["teleportation"]
    assert second.movement_type == "suspicious"
    assert other.flags == ["mock_location"]
    assert sorted(f.reason for f in memory.flags) == ["mock_location", "teleportation"]


def test_service_replaces_session_when_client_sends_new_session_id():
    async def scenario():
        clock = _Clock()
        settings = Settings()
        service = HuntService(settings, ledger=CheatFlagLedger(), sink=EventSink(settings.sink, []), clock=clock)
        await service.start()
        a = await service.update_location(_request("alice", 0, session_id="sess-a"))
        b = await service.update_location(_request("alice", 5, session_id="sess-b"))
        count = service.session_count
        await service.close()
        return a, b, count

    a, b, count = asyncio.run(scenario())
    assert (a.location_id, b.location_id) == ("sess-a", "sess-b")
    assert count == 1


def test_service_rejects_null_island_before_starting_a_session():
    async def scenario():
        settings = Settings()
        service = HuntService(settings, ledger=CheatFlagLedger(), sink=EventSink(settings.sink, []))
        with pytest.raises(InvalidCoordinate):
            await service.update_location(LocationUpdateRequest(user_id="alice", latitude=0.0, longitude=0.0))
        return service.session_count

    assert asyncio.run(scenario()) == 0


def test_service_session_overrides_apply_per_session():
    async def scenario():
        settings = Settings()
        service = HuntService(settings, ledger=CheatFlagLedger(), sink=EventSink(settings.sink, []))
        worker = await service.start_session(
            "alice", settings_overrides={"anticheat": {"impossible_speed_kmh": 150}}
        )
        value = worker.session.settings.anticheat.impossible_speed_kmh
        await service.close()
        return value

    assert asyncio.run(scenario()) == 150


def test_ledger_append_runs_off_the_event_loop():
    class _ThreadRecordingLedger(CheatFlagLedger):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.append_threads: list[int] = []

        def append(self, flag):
            self.append_threads.append(threading.get_ident())
            return super().append(flag)

    async def scenario():
        clock = _Clock()
        ledger = _ThreadRecordingLedger(clock=clock)
        worker, _, _ = _worker(clock, ledger=ledger)
        await worker.process(_fix(0))
        await worker.process(_fix(5, 1500))
        return ledger, threading.get_ident()

    ledger, loop_thread = asyncio.run(scenario())
    assert len(ledger) == 1
    assert ledger.append_threads and loop_thread not in ledger.append_threads


def test_submit_blocked_on_a_full_queue_fails_when_the_session_ends():
    async def scenario():
        clock = _Clock()
        settings = Settings.model_validate({"sessions": {"queue_size": 1}})
        session = Session(session_id="s1", user_id="u1", settings=settings, started_at=T0)
        worker = SessionWorker(
            session, ledger=CheatFlagLedger(), sink=EventSink(settings.sink, [MemoryForwarder()]), clock=clock
        )
        # No worker task: the first fix fills the queue, the second waits for room.
        first = asyncio.create_task(worker.submit(_fix(0)))
        second = asyncio.create_task(worker.submit(_fix(1)))
        await asyncio.sleep(0)
        await worker.stop()
        return await asyncio.wait_for(asyncio.gather(first, second, return_exceptions=True), timeout=1)

    results = asyncio.run(scenario())
    assert [type(r) for r in results] == [SessionNotFound, SessionNotFound]


def test_service_refuses_another_users_session_id():
    async def scenario():
        clock = _Clock()
        service = HuntService(Settings(), ledger=CheatFlagLedger(clock=clock), clock=clock)
        await service.start()
        alice = await service.start_session("alice", session_id="S1")
        bob = await service.start_session("bob", session_id="B1")
        with pytest.raises(SessionConflict):
            await service.start_session("bob", session_id="S1")
        still_bob = service.for_user("bob")
        still_alice = service.get("S1")
        await service.close()
        return alice, bob, still_alice, still_bob

    alice, bob, still_alice, still_bob = asyncio.run(scenario())
    assert still_alice is alice
    assert still_bob is bob
