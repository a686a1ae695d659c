"""
Append-only cheat flag ledger.

Flags are never edited. Moderation decisions are appended as separate
`FlagReview` records and the latest review for a flag wins. When a path is
configured, every record is written to a JSON Lines file and fsynced before it
becomes visible in memory; a failed write raises `LedgerWriteError` so evidence
is never lost silently.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from geohunt.core.time import utc_now
from geohunt.domain.errors import LedgerWriteError
from geohunt.domain.models import (
    CHEAT_REASONS,
    CHEAT_SEVERITIES,
    AntiCheatStats,
    CheatFlag,
    FlagReview,
)

logger = logging.getLogger(__name__)


class CheatFlagLedger:
    def __init__(self, path: Path | None = None, *, clock: Callable[[], datetime] = utc_now):
        self._path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._flags: list[CheatFlag] = []
        self._by_id: dict[str, CheatFlag] = {}
        self._reviews: dict[str, list[FlagReview]] = {}
        if path is not None and path.exists():
            self._load(path)

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt ledger line %s:%d", path, lineno)
                    continue
                kind = record.get("type")
                if kind == "flag":
                    self._add_flag(CheatFlag.model_validate(record["data"]))
                elif kind == "review":
                    self._add_review(FlagReview.model_validate(record["data"]))
        logger.info("Loaded %d cheat flags from %s", len(self._flags), path)

    def _write(self, kind: str, payload: dict) -> None:
        if self._path is None:
            return
        line = json.dumps({"type": kind, "data": payload}, ensure_ascii=False)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as e:
            logger.critical("Failed to persist %s record to %s: %s", kind, self._path, e)
            raise LedgerWriteError(f"could not persist {kind} record: {e}", path=str(self._path)) from e

    def _add_flag(self, flag: CheatFlag) -> None:
        self._flags.append(flag)
        self._by_id[flag.id] = flag

    def _add_review(self, review: FlagReview) -> None:
        self._reviews.setdefault(review.flag_id, []).append(review)

    def append(self, flag: CheatFlag) -> CheatFlag:
        with self._lock:
            if flag.id in self._by_id:
                return self._by_id[flag.id]
            self._write("flag", flag.model_dump(mode="json"))
            self._add_flag(flag)
        return flag

    def record_review(self, flag_id: str, review: FlagReview) -> FlagReview:
        with self._lock:
            if flag_id not in self._by_id:
                raise KeyError(flag_id)
            review = review.model_copy(
                update={"flag_id": flag_id, "reviewed_at": review.reviewed_at or self._clock()}
            )
            self._write("review", review.model_dump(mode="json"))
            self._add_review(review)
        return review

    def get(self, flag_id: str) -> CheatFlag | None:
        return self._by_id.get(flag_id)

    def latest_review(self, flag_id: str) -> FlagReview | None:
        reviews = self._reviews.get(flag_id)
        return reviews[-1] if reviews else None

    def query(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        reason: str | None = None,
        severity: str | None = None,
        limit: int | None = None,
    ) -> list[CheatFlag]:
        """Flags matching every given filter, newest first."""
        with self._lock:
            flags = list(self._flags)
        out = [
            f
            for f in reversed(flags)
            if (user_id is None or f.user_id == user_id)
            and (session_id is None or f.session_id == session_id)
            and (reason is None or f.reason == reason)
            and (severity is None or f.severity == severity)
        ]
        return out[:limit] if limit is not None else out

    def __len__(self) -> int:
        return len(self._flags)

    def stats(self, now: datetime | None = None) -> AntiCheatStats:
        now = now or self._clock()
        with self._lock:
            flags = list(self._flags)
            latest = {fid: reviews[-1] for fid, reviews in self._reviews.items() if reviews}

        by_reason = {r: 0 for r in CHEAT_REASONS}
        by_severity = {s: 0 for s in CHEAT_SEVERITIES}
        pending = false_positives = 0
        confirmed_users: set[str] = set()
        action_users: dict[str, set[str]] = {"warned": set(), "suspended": set(), "banned": set()}
        today = week = month = 0

        for flag in flags:
            by_reason[flag.reason] += 1
            by_severity[flag.severity] += 1

            review = latest.get(flag.id)
            status = review.status if review else "pending"
            if status == "pending":
                pending += 1
            elif status == "false_positive":
                false_positives += 1
            elif status == "confirmed":
                confirmed_users.add(flag.user_id)
            if review is not None and review.action_taken in action_users:
                action_users[review.action_taken].add(flag.user_id)

            age = now - flag.detected_at
            if age <= timedelta(days=1):
                today += 1
            if age <= timedelta(days=7):
                week += 1
            if age <= timedelta(days=30):
                month += 1

        return AntiCheatStats(
            total_flags=len(flags),
            pending_flags=pending,
            confirmed_cheaters=len(confirmed_users),
            false_positives=false_positives,
            flags_by_reason=by_reason,
            flags_by_severity=by_severity,
            players_warned=len(action_users["warned"]),
            players_suspended=len(action_users["suspended"]),
            players_banned=len(action_users["banned"]),
            flags_today=today,
            flags_this_week=week,
            flags_this_month=month,
        )
