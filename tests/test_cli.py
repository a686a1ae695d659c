from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.cli import iter_fixes, main, replay
from geohunt.config.settings import Settings
from geohunt.core.geo import GeoPoint, offset_point

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ORIGIN = GeoPoint(lat=37.7749, lon=-122.4194)
COIN = offset_point(ORIGIN, north_m=10)


def _write_trace_csv(path, rows):
    lines = ["timestamp,latitude,longitude,accuracy,is_mock_location"]
    for seconds, north_m, accuracy, mock in rows:
        p = offset_point(ORIGIN, north_m=north_m)
        ts = (T0 + timedelta(seconds=seconds)).isoformat()
        lines.append(f"{ts},{p.lat},{p.lon},{accuracy},{mock}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _write_targets(path):
    path.write_text(
        json.dumps([{"id": "coin-1", "latitude": COIN.lat, "longitude": COIN.lon, "collectionRadiusM": 5}]),
        encoding="utf-8",
    )


def test_iter_fixes_reads_csv_and_jsonl(tmp_path):
    csv_path = tmp_path / "trace.csv"
    _write_trace_csv(csv_path, [(0, 0, 5, "false"), (5, 3, "", "true")])
    fixes = list(iter_fixes(csv_path))
    assert [f.timestamp for f in fixes] == [T0, T0 + timedelta(seconds=5)]
    assert fixes[1].horizontal_accuracy_m == 10.0
    assert fixes[1].is_mock_location is True

    jsonl_path = tmp_path / "trace.jsonl"
    jsonl_path.write_text(
        json.dumps({"clientTimestamp": "2026-03-01T12:00:00Z", "lat": 37.7, "lng": -122.4, "speedMps": 1.5})
        + "\n\n",
        encoding="utf-8",
    )
    [fix] = list(iter_fixes(jsonl_path))
    assert fix.timestamp == T0
    assert fix.speed_mps == 1.5


def test_replay_prints_events_and_flags(tmp_path, capsys):
    trace = tmp_path / "trace.csv"
    targets = tmp_path / "targets.json"
    _write_trace_csv(trace, [(0, -50, 5, "false"), (10, -9, 5, "false"), (20, 8, 5, "false"), (25, 1500, 5, "false")])
    _write_targets(targets)

    code = main(["replay", str(trace), "--targets", str(targets), "--json"])
    assert code == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    events = [l["data"]["kind"] for l in lines if l["type"] == "proximity_event"]
    flags = [l["data"]["reason"] for l in lines if l["type"] == "cheat_flag"]
    assert events == ["materialize", "became_collectible", "dematerialize"]
    assert flags == ["teleportation"]


def test_replay_auto_collect_and_ledger(tmp_path, capsys):
    trace = tmp_path / "trace.csv"
    targets = tmp_path / "targets.json"
    ledger_path = tmp_path / "flags.jsonl"
    _write_trace_csv(trace, [(0, 0, 5, "true"), (5, 8, 5, "false")])
    _write_targets(targets)

    code = main(
        ["replay", str(trace), "--targets", str(targets), "--auto-collect", "--ledger", str(ledger_path)]
    )
    assert code == 0
    out = capsys.readouterr().out
    assert "collected" in out
    assert "mock_location/medium" in out

    assert [f.reason for f in CheatFlagLedger(ledger_path).query()] == ["mock_location"]


def test_flag_stats_summarizes_ledger(tmp_path, capsys):
    trace = tmp_path / "trace.csv"
    ledger_path = tmp_path / "flags.jsonl"
    _write_trace_csv(trace, [(0, 0, 150, "false"), (5, 1500, 5, "false")])
    main(["replay", str(trace), "--ledger", str(ledger_path)])
    capsys.readouterr()

    code = main(["flag-stats", str(ledger_path), "--json", "--now", (T0 + timedelta(days=2)).isoformat()])
    assert code == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_flags"] == 2
    assert stats["pending_flags"] == 2
    assert stats["flags_by_reason"]["gps_spoofing"] == 1
    assert stats["flags_by_reason"]["teleportation"] == 1


def test_flag_stats_missing_ledger(tmp_path, capsys):
    assert main(["flag-stats", str(tmp_path / "missing.jsonl")]) == 1
    assert "not found" in capsys.readouterr().out


def test_replay_writes_into_an_existing_empty_ledger(tmp_path):
    trace = tmp_path / "trace.csv"
    ledger_path = tmp_path / "flags.jsonl"
    ledger_path.write_text("", encoding="utf-8")
    _write_trace_csv(trace, [(0, 0, 5, "false"), (5, 1500, 5, "false")])

    ledger = CheatFlagLedger(ledger_path)
    assert len(ledger) == 0
    asyncio.run(replay(list(iter_fixes(trace)), [], settings=Settings(), ledger=ledger))

    assert [f.reason for f in ledger.query()] == ["teleportation"]
    assert [f.reason for f in CheatFlagLedger(ledger_path).query()] == ["teleportation"]


def test_trace_row_without_coordinates_is_rejected(tmp_path, capsys):
    trace = tmp_path / "trace.jsonl"
    trace.write_text(json.dumps({"timestamp": "2026-03-01T12:00:00Z", "latitude": 37.7}) + "\n", encoding="utf-8")

    with pytest.raises(ValueError, match="latitude/longitude"):
        list(iter_fixes(trace))

    assert main(["replay", str(trace)]) == 2
    assert "latitude/longitude" in capsys.readouterr().out
