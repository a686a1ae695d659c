"""
GeoHunt CLI entrypoint.

This CLI is intended for offline tuning and debugging without a mobile client:
- `replay` drives a recorded GPS trace through one hunt session and prints the
  proximity events and cheat flags it produces;
- `flag-stats` summarizes a persisted cheat flag ledger.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.config.overrides import apply_settings_overrides
from geohunt.config.settings import Settings, get_settings
from geohunt.core.logging import configure_logging
from geohunt.core.time import parse_datetime, utc_now
from geohunt.domain.errors import GeoHuntError, InvalidCoordinate
from geohunt.domain.models import LocationFix, Target
from geohunt.events.sink import EventSink, MemoryForwarder, envelope
from geohunt.session.worker import Session, SessionWorker

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "y"}


def _optional_float(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return float(value)


def _row_to_fix(row: dict[str, Any], tz: str) -> LocationFix:
    """Build a fix from a CSV/JSONL row. Accepts snake_case or the client's camelCase keys."""

    def pick(*keys: str) -> Any:
        for key in keys:
            if key in row and row[key] not in (None, ""):
                return row[key]
        return None

    ts = pick("timestamp", "clientTimestamp", "client_timestamp")
    if ts is None:
        raise ValueError("row has no timestamp")
    mock = pick("is_mock_location", "isMockLocation")
    accuracy = _optional_float(pick("accuracy", "accuracy_meters", "accuracyMeters", "horizontal_accuracy_m"))
    lat = pick("latitude", "lat")
    lon = pick("longitude", "lon", "lng")
    if lat is None or lon is None:
        raise ValueError("row has no latitude/longitude")
    return LocationFix(
        latitude=float(lat),
        longitude=float(lon),
        timestamp=ts if isinstance(ts, datetime) else parse_datetime(str(ts), tz),
        altitude=_optional_float(pick("altitude")),
        horizontal_accuracy_m=accuracy if accuracy is not None else 10.0,
        heading_deg=_optional_float(pick("heading", "heading_deg")),
        speed_mps=_optional_float(pick("speed_mps", "speedMps")),
        is_mock_location=mock is True or str(mock).strip().lower() in _TRUE,
    )


def iter_fixes(path: Path, tz: str = "UTC") -> Iterator[LocationFix]:
    """Yield fixes from a `.csv` (header row) or `.jsonl` trace file, in file order."""
    with path.open("r", encoding="utf-8", newline="") as fh:
        if path.suffix.lower() == ".csv":
            rows: Iterator[dict[str, Any]] = csv.DictReader(fh)
        else:
            rows = (json.loads(line) for line in fh if line.strip())
        for row in rows:
            yield _row_to_fix(row, tz)


def load_targets(path: Path) -> list[Target]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("targets", [])
    return [Target.model_validate(item) for item in data]


class _ReplayClock:
    """Clock pinned to the newest replayed fix so freshness checks follow the trace."""

    def __init__(self) -> None:
        self.now: datetime | None = None

    def __call__(self) -> datetime:
        return self.now or utc_now()


async def replay(
    fixes: list[LocationFix],
    targets: list[Target],
    *,
    settings: Settings,
    user_id: str = "replay",
    activate: bool = True,
    auto_collect: bool = False,
    ledger: CheatFlagLedger | None = None,
) -> MemoryForwarder:
    """Run a trace through one session; returns everything the sink delivered, in order."""
    clock = _ReplayClock()
    memory = MemoryForwarder()
    sink = EventSink(settings.sink, [memory])
    session = Session(
        session_id=f"replay-{uuid.uuid4().hex[:8]}",
        user_id=user_id,
        settings=settings,
        started_at=fixes[0].timestamp if fixes else utc_now(),
    )
    if ledger is None:
        ledger = CheatFlagLedger(clock=clock)
    worker = SessionWorker(session, ledger=ledger, sink=sink, clock=clock)

    for target in targets:
        worker.add_target(target, activate=activate)

    for fix in fixes:
        clock.now = fix.timestamp
        try:
            outcome = await worker.process(fix)
        except InvalidCoordinate as e:
            logger.warning("Skipping fix at %s: %s", fix.timestamp.isoformat(), e)
            continue
        if auto_collect:
            for event in outcome.events:
                if event.kind == "became_collectible":
                    worker.collect(event.target_id)
        # Flush per fix so coalescing never hides an intermediate transition.
        await sink.flush()

    await sink.flush()
    return memory


def _cmd_replay(args: argparse.Namespace) -> int:
    settings = get_settings()
    if args.override:
        settings = apply_settings_overrides(settings, json.loads(args.override))

    fixes = list(iter_fixes(Path(args.fixes), settings.app.timezone))
    targets = load_targets(Path(args.targets)) if args.targets else []
    ledger = CheatFlagLedger(Path(args.ledger)) if args.ledger else None

    memory = asyncio.run(
        replay(
            fixes,
            targets,
            settings=settings,
            user_id=args.user_id,
            activate=not args.no_activate,
            auto_collect=args.auto_collect,
            ledger=ledger,
        )
    )

    if args.json:
        for item in memory.items:
            print(json.dumps(envelope(item), ensure_ascii=False))
        return 0

    print(f"Replayed {len(fixes)} fixes against {len(targets)} targets")
    for event in memory.events:
        print(
            f"  {event.fix_timestamp.isoformat()}  {event.kind:<20} {event.target_id}  "
            f"{event.distance_m:7.1f}m  (E {event.local_east:+.1f}, N {event.local_north:+.1f})"
        )
    print(f"Cheat flags: {len(memory.flags)}")
    for flag in memory.flags:
        speed = flag.evidence.calculated_speed_kmh
        detail = f"{speed:.1f} km/h" if speed is not None else f"accuracy {flag.evidence.accuracy_meters}m"
        print(f"  {flag.evidence.current_location.timestamp.isoformat()}  {flag.reason}/{flag.severity}  {detail}")
    return 0


def _cmd_flag_stats(args: argparse.Namespace) -> int:
    path = Path(args.ledger)
    if not path.exists():
        print(f"Ledger not found: {path}")
        return 1
    ledger = CheatFlagLedger(path)
    now = parse_datetime(args.now) if args.now else None
    stats = ledger.stats(now)

    if args.json:
        print(json.dumps(stats.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return 0

    print(f"Total flags: {stats.total_flags}  (pending {stats.pending_flags}, false positives {stats.false_positives})")
    print(f"Confirmed cheaters: {stats.confirmed_cheaters}")
    print(
        f"Players warned/suspended/banned: "
        f"{stats.players_warned}/{stats.players_suspended}/{stats.players_banned}"
    )
    print(f"Last day/week/month: {stats.flags_today}/{stats.flags_this_week}/{stats.flags_this_month}")
    print("By reason:")
    for reason, count in sorted(stats.flags_by_reason.items(), key=lambda kv: (-kv[1], kv[0])):
        if count:
            print(f"  {reason}: {count}")
    print("By severity:")
    for severity, count in stats.flags_by_severity.items():
        print(f"  {severity}: {count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the GeoHunt CLI."""
    parser = argparse.ArgumentParser(prog="geohunt")
    sub = parser.add_subparsers(dest="command", required=True)

    rep = sub.add_parser("replay", help="Replay a recorded GPS trace through one hunt session.")
    rep.add_argument("fixes", help="Trace file: .csv with a header row, or .jsonl (one fix per line).")
    rep.add_argument("--targets", default=None, help="JSON file: a list of targets (or {\"targets\": [...]}).")
    rep.add_argument("--user-id", default="replay")
    rep.add_argument("--no-activate", action="store_true", help="Track targets without making them hunt goals.")
    rep.add_argument("--auto-collect", action="store_true", help="Collect each target as soon as it is collectible.")
    rep.add_argument("--ledger", default=None, help="Append raised flags to this JSONL ledger.")
    rep.add_argument(
        "--override",
        default=None,
        help='JSON settings overrides, e.g. \'{"anticheat": {"impossible_speed_kmh": 150}}\'',
    )
    rep.add_argument("--json", action="store_true", help="Output one JSON envelope per line")
    rep.set_defaults(func=_cmd_replay)

    st = sub.add_parser("flag-stats", help="Summarize a cheat flag ledger (JSONL).")
    st.add_argument("ledger")
    st.add_argument("--now", default=None, help="ISO datetime used for the day/week/month windows")
    st.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    st.set_defaults(func=_cmd_flag_stats)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m geohunt.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    try:
        return int(func(args))
    except (GeoHuntError, ValueError) as e:
        print(f"error: {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
