from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.domain.errors import LedgerWriteError
from geohunt.domain.models import CheatEvidence, CheatFlag, FixSnapshot, FlagReview

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _flag(user_id: str = "user-1", reason: str = "teleportation", severity: str = "critical", age_days: float = 0):
    detected = NOW - timedelta(days=age_days)
    return CheatFlag(
        session_id=f"session-{user_id}",
        user_id=user_id,
        reason=reason,
        severity=severity,
        evidence=CheatEvidence(
            current_location=FixSnapshot(latitude=37.77, longitude=-122.42, timestamp=detected)
        ),
        detected_at=detected,
    )


def test_append_is_idempotent_by_id():
    ledger = CheatFlagLedger(clock=lambda: NOW)
    flag = _flag()

    assert ledger.append(flag) is flag
    ledger.append(flag)
    assert len(ledger) == 1
    assert ledger.get(flag.id) == flag


def test_persisted_ledger_reloads_flags_and_reviews(tmp_path):
    path = tmp_path / "data" / "flags.jsonl"
    ledger = CheatFlagLedger(path, clock=lambda: NOW)
    flag = ledger.append(_flag())
    ledger.record_review(flag.id, FlagReview(status="confirmed", action_taken="banned", reviewed_by="mod-1"))

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["type"] for line in lines] == ["flag", "review"]

    reloaded = CheatFlagLedger(path, clock=lambda: NOW)
    assert len(reloaded) == 1
    review = reloaded.latest_review(flag.id)
    assert review.status == "confirmed"
    assert review.reviewed_at == NOW


def test_reload_skips_corrupt_lines(tmp_path, caplog):
    path = tmp_path / "flags.jsonl"
    CheatFlagLedger(path).append(_flag())
    with path.open("a", encoding="utf-8") as fh:
        fh.write("{not json\n")

    with caplog.at_level("WARNING"):
        reloaded = CheatFlagLedger(path)
    assert len(reloaded) == 1
    assert "corrupt" in caplog.text


def test_reviews_never_mutate_the_flag():
    ledger = CheatFlagLedger(clock=lambda: NOW)
    flag = ledger.append(_flag())
    ledger.record_review(flag.id, FlagReview(status="investigating", reviewed_by="mod-1"))
    ledger.record_review(flag.id, FlagReview(status="false_positive", action_taken="cleared", reviewed_by="mod-2"))

    assert ledger.get(flag.id) == flag
    assert ledger.latest_review(flag.id).status == "false_positive"


def test_review_of_unknown_flag_raises_key_error():
    ledger = CheatFlagLedger()
    with pytest.raises(KeyError):
        ledger.record_review("missing", FlagReview(status="confirmed", reviewed_by="mod-1"))


def test_query_filters_newest_first():
    ledger = CheatFlagLedger(clock=lambda: NOW)
    a = ledger.append(_flag("alice", "teleportation", "critical"))
    b = ledger.append(_flag("bob", "mock_location", "medium"))
    c = ledger.append(_flag("alice", "gps_spoofing", "high"))

    assert ledger.query() == [c, b, a]
    assert ledger.query(user_id="alice") == [c, a]
    assert ledger.query(reason="mock_location") == [b]
    assert ledger.query(severity="critical") == [a]
    assert ledger.query(limit=1) == [c]


def test_stats_counts_reviews_actions_and_windows():
    ledger = CheatFlagLedger(clock=lambda: NOW)
    f1 = ledger.append(_flag("alice", "teleportation", "critical", age_days=0.5))
    f2 = ledger.append(_flag("alice", "impossible_speed", "high", age_days=3))
    f3 = ledger.append(_flag("bob", "mock_location", "medium", age_days=10))
    ledger.append(_flag("carol", "gps_spoofing", "high", age_days=45))

    ledger.record_review(f1.id, FlagReview(status="confirmed", action_taken="suspended", reviewed_by="m"))
    ledger.record_review(f2.id, FlagReview(status="confirmed", action_taken="banned", reviewed_by="m"))
    ledger.record_review(f3.id, FlagReview(status="pending", reviewed_by="m"))
    ledger.record_review(f3.id, FlagReview(status="false_positive", action_taken="cleared", reviewed_by="m"))

    stats = ledger.stats()

    assert stats.total_flags == 4
    assert stats.pending_flags == 1
    assert stats.false_positives == 1
    assert stats.confirmed_cheaters == 1
    assert stats.players_suspended == 1
    assert stats.players_banned == 1
    assert stats.players_warned == 0
    assert (stats.flags_today, stats.flags_this_week, stats.flags_this_month) == (1, 2, 3)
    assert stats.flags_by_reason["teleportation"] == 1
    assert stats.flags_by_reason["device_tampering"] == 0
    assert len(stats.flags_by_reason) == 10
    assert stats.flags_by_severity == {"low": 0, "medium": 1, "high": 2, "critical": 1}


def test_write_failure_raises_and_keeps_memory_consistent(tmp_path, caplog):
    # A regular file where the ledger's parent directory should be.
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    ledger = CheatFlagLedger(blocker / "flags.jsonl", clock=lambda: NOW)

    with caplog.at_level("CRITICAL"):
        with pytest.raises(LedgerWriteError):
            ledger.append(_flag())
    assert len(ledger) == 0
    assert "Failed to persist" in caplog.text
