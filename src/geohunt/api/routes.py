"""
API routes.

Endpoints:
- POST   `/api/v1/player/location`: location update from the mobile client.
- DELETE `/api/v1/player/location?userId=`: player went offline.
- POST   `/api/v1/sessions`: start a hunt session (overrides need `X-GeoHunt-Admin-Token`).
- GET    `/api/v1/sessions/{sessionId}`: session snapshot (fix, target states, nearest target).
- POST   `/api/v1/sessions/{sessionId}/targets`: register a target.
- POST   `/api/v1/sessions/{sessionId}/targets/{targetId}/activate`: make it the hunt goal.
- POST   `/api/v1/sessions/{sessionId}/targets/{targetId}/collect`: collect a coin.
- GET    `/api/v1/anticheat/flags`, GET `/api/v1/anticheat/stats`: moderation views.
- POST   `/api/v1/anticheat/flags/{flagId}/reviews`: append a moderation decision.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Header, HTTPException, Query, Request

from geohunt.domain.errors import (
    CollectError,
    EventSinkOverflow,
    GeoHuntError,
    InvalidCoordinate,
    LedgerWriteError,
    SessionConflict,
    SessionNotFound,
    TargetNotFound,
)
from geohunt.domain.models import (
    AntiCheatStats,
    CheatReason,
    CheatSeverity,
    CollectResponse,
    FlagReview,
    LocationUpdateRequest,
    LocationUpdateResponse,
    SessionInfo,
    SessionSnapshot,
    StartSessionRequest,
    TargetRequest,
    TargetStatus,
)
from geohunt.session.service import HuntService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _service(request: Request) -> HuntService:
    return request.app.state.service


def _http_error(e: GeoHuntError) -> HTTPException:
    if isinstance(e, InvalidCoordinate):
        status = 400
    elif isinstance(e, (SessionNotFound, TargetNotFound)):
        status = 404
    elif isinstance(e, (CollectError, SessionConflict)):
        status = 409
    elif isinstance(e, (LedgerWriteError, EventSinkOverflow)):
        status = 500
    else:
        status = 400
    return HTTPException(status_code=status, detail=e.as_dict())


def _is_operator(service: HuntService, token: str | None) -> bool:
    expected = service.settings.app.admin_token
    return bool(expected) and token is not None and secrets.compare_digest(token, expected)


def _target_status(service: HuntService, session_id: str, target_id: str) -> TargetStatus:
    worker = service.get(session_id)
    current = worker.ingest.current()
    for status in worker.proximity.status(current):
        if status.target_id == target_id:
            return status
    raise TargetNotFound(f"target {target_id} is not tracked in session {session_id}")


@router.post("/player/location", response_model=LocationUpdateResponse, response_model_by_alias=True)
async def post_location(req: LocationUpdateRequest, request: Request) -> LocationUpdateResponse:
    """Ingest one fix; the response carries the movement classification and any new flags."""
    try:
        return await _service(request).update_location(req)
    except GeoHuntError as e:
        raise _http_error(e) from e


@router.delete("/player/location")
async def delete_location(request: Request, user_id: str = Query(..., alias="userId", min_length=1)) -> dict:
    """Offline signal. Repeating it for a user already offline is a no-op."""
    try:
        removed = await _service(request).end_user(user_id)
    except SessionNotFound as e:
        raise _http_error(e) from e
    return {"success": True, "removed": removed}


@router.post("/sessions", response_model=SessionInfo, response_model_by_alias=True)
async def post_session(
    req: StartSessionRequest,
    request: Request,
    admin_token: str | None = Header(None, alias="X-GeoHunt-Admin-Token"),
) -> SessionInfo:
    """Start a session. Policy overrides are operator-only and need the admin token."""
    service = _service(request)
    if req.settings_overrides and not _is_operator(service, admin_token):
        logger.warning("Refused settingsOverrides for user %s without operator token", req.user_id)
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "settingsOverrides require the operator token"},
        )
    try:
        worker = await service.start_session(
            req.user_id,
            device_id=req.device_id,
            device_model=req.device_model,
            session_id=req.session_id,
            settings_overrides=req.settings_overrides,
        )
    except GeoHuntError as e:
        raise _http_error(e) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "INVALID_REQUEST", "message": str(e)}) from e
    return worker.session.info()


@router.get("/sessions/{session_id}", response_model=SessionSnapshot, response_model_by_alias=True)
async def get_session(session_id: str, request: Request) -> SessionSnapshot:
    try:
        return _service(request).get(session_id).snapshot()
    except GeoHuntError as e:
        raise _http_error(e) from e


@router.post("/sessions/{session_id}/targets", response_model=TargetStatus, response_model_by_alias=True)
async def post_target(session_id: str, req: TargetRequest, request: Request) -> TargetStatus:
    service = _service(request)
    try:
        service.get(session_id).add_target(req.target, activate=req.activate)
        return _target_status(service, session_id, req.target.id)
    except GeoHuntError as e:
        raise _http_error(e) from e


@router.post(
    "/sessions/{session_id}/targets/{target_id}/activate",
    response_model=TargetStatus,
    response_model_by_alias=True,
)
async def post_activate(session_id: str, target_id: str, request: Request) -> TargetStatus:
    service = _service(request)
    try:
        service.get(session_id).activate(target_id)
        return _target_status(service, session_id, target_id)
    except GeoHuntError as e:
        raise _http_error(e) from e


@router.post(
    "/sessions/{session_id}/targets/{target_id}/collect",
    response_model=CollectResponse,
    response_model_by_alias=True,
)
async def post_collect(session_id: str, target_id: str, request: Request) -> CollectResponse:
    """Collect a coin. Rejected with 409 unless the target is collectible and in range."""
    try:
        event = _service(request).get(session_id).collect(target_id)
    except GeoHuntError as e:
        raise _http_error(e) from e
    return CollectResponse(success=True, target_id=target_id, state="collected", distance_m=event.distance_m)


@router.get("/anticheat/flags")
async def get_flags(
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    session_id: str | None = Query(None, alias="sessionId"),
    reason: CheatReason | None = Query(None),
    severity: CheatSeverity | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> dict:
    """Return flags newest first, each with its latest moderation review (if any)."""
    ledger = _service(request).ledger
    flags = ledger.query(user_id=user_id, session_id=session_id, reason=reason, severity=severity, limit=limit)
    items = []
    for flag in flags:
        review = ledger.latest_review(flag.id)
        items.append(
            {
                **flag.model_dump(mode="json"),
                "review": review.model_dump(mode="json", by_alias=True) if review else None,
            }
        )
    return {"flags": items, "count": len(items)}


@router.get("/anticheat/stats", response_model=AntiCheatStats)
async def get_stats(request: Request) -> AntiCheatStats:
    return _service(request).ledger.stats()


@router.post("/anticheat/flags/{flag_id}/reviews")
async def post_review(flag_id: str, review: FlagReview, request: Request) -> dict:
    ledger = _service(request).ledger
    try:
        stored = ledger.record_review(flag_id, review)
    except KeyError as e:
        raise HTTPException(
            status_code=404, detail={"code": "FLAG_NOT_FOUND", "message": f"unknown flag {flag_id}"}
        ) from e
    except LedgerWriteError as e:
        raise _http_error(e) from e
    logger.info("Flag %s reviewed by %s: %s/%s", flag_id, stored.reviewed_by, stored.status, stored.action_taken)
    return {"success": True, "review": stored.model_dump(mode="json", by_alias=True)}
