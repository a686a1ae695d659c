"""
Engine exceptions.

Every error carries a stable `code` so the API layer can map it to a response
without string matching. Ingest errors are recoverable per fix; collection
errors are normal rejected actions; ledger and sink errors must escalate.
"""

from __future__ import annotations


class GeoHuntError(Exception):
    code = "GEOHUNT_ERROR"

    def __init__(self, message: str, **details: object):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict:
        out = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = dict(self.details)
        return out


class IngestError(GeoHuntError):
    code = "INGEST_ERROR"


class InvalidCoordinate(IngestError):
    code = "INVALID_COORDS"


class StaleFix(IngestError):
    code = "STALE_FIX"


class CollectError(GeoHuntError):
    code = "COLLECT_REJECTED"


class NotCollectible(CollectError):
    code = "NOT_COLLECTIBLE"


class OutOfRange(CollectError):
    code = "OUT_OF_RANGE"


class TargetNotFound(GeoHuntError):
    code = "TARGET_NOT_FOUND"


class SessionNotFound(GeoHuntError):
    code = "SESSION_NOT_FOUND"


class SessionConflict(GeoHuntError):
    code = "SESSION_CONFLICT"


class LedgerWriteError(GeoHuntError):
    code = "LEDGER_WRITE_FAILED"


class EventSinkOverflow(GeoHuntError):
    code = "EVENT_SINK_OVERFLOW"
