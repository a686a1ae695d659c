# src/geohunt/api/app.py
"""
FastAPI application wiring.

`create_app()` builds the app and, on startup, the shared ledger, event sink and
`HuntService`; they live on `app.state` for the lifetime of the process.
Business logic lives in `geohunt.session` and the engine packages; routes only
translate HTTP to service calls.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from geohunt.anticheat.ledger import CheatFlagLedger
from geohunt.config.settings import Settings, get_settings
from geohunt.core.logging import configure_logging
from geohunt.core.time import utc_now
from geohunt.events.sink import EventSink, Forwarder, build_forwarders
from geohunt.session.service import HuntService, build_ledger

from .routes import router

logger = logging.getLogger(__name__)


def _add_cors(app: FastAPI) -> None:
    # Configure via env:
    # - GEOHUNT_CORS_ORIGINS="http://localhost:3000,https://admin.example.com"
    # - GEOHUNT_CORS_ALLOW_LOCAL=0 to disable the default localhost allowance
    cors_origins = [s.strip() for s in os.getenv("GEOHUNT_CORS_ORIGINS", "").split(",") if s.strip()]
    cors_allow_local = os.getenv("GEOHUNT_CORS_ALLOW_LOCAL", "1").strip().lower() in {"1", "true", "yes", "y"}
    cors_origin_regex = (
        r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$" if cors_allow_local and not cors_origins else ""
    )
    if cors_origins or cors_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_origin_regex=cors_origin_regex or None,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )


def create_app(
    settings: Settings | None = None,
    *,
    ledger: CheatFlagLedger | None = None,
    forwarders: list[Forwarder] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Build the API; tests inject settings, an in-memory ledger, forwarders and a clock."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        resolved = settings or get_settings()
        sink = EventSink(
            resolved.sink,
            forwarders if forwarders is not None else build_forwarders(resolved.sink),
        )
        service = HuntService(
            resolved,
            ledger=ledger if ledger is not None else build_ledger(resolved, clock=clock),
            sink=sink,
            clock=clock,
        )
        await service.start()
        app.state.settings = resolved
        app.state.service = service
        logger.info("%s API started", resolved.app.name)
        try:
            yield
        finally:
            await service.close()
            logger.info("%s API stopped", resolved.app.name)

    app = FastAPI(title="GeoHunt Engine API", version="0.1.0", lifespan=lifespan)
    _add_cors(app)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "code": "INVALID_REQUEST",
                    "message": "request body failed validation",
                    "errors": jsonable_errors(exc),
                }
            },
        )

    app.include_router(router)
    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
        for err in exc.errors()
    ]


configure_logging()

app = create_app()
