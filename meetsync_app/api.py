from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
import logging
import math
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from meetsync.errors import (
    AuthExpiredError,
    EncryptionFailureError,
    MalformedFeedError,
    RateLimitedError,
    SyncError,
    SyncInProgressError,
    SyncTimeoutError,
)
from meetsync.utils import parse_iso_datetime

from . import connections
from .auth import auth_enabled, caller_uid, request_is_authenticated, request_requires_auth
from .config import AppSettings
from .constants import PROVIDERS
from .db import init_db
from .healthchecks import check_health_component, collect_health_checks
from .jobs import schedule_due_syncs
from .oauth import OAuthNotConfiguredError

_settings = AppSettings()
_SCHEDULER_MIN_SLEEP_SECONDS = 60
_logger = logging.getLogger(__name__)


async def _scheduler_loop() -> None:
    while True:
        try:
            await run_in_threadpool(schedule_due_syncs, _settings)
        except Exception:
            _logger.exception("Sync scheduler tick failed")
        await asyncio.sleep(max(_SCHEDULER_MIN_SLEEP_SECONDS, _settings.sync_interval_seconds // 3))


@asynccontextmanager
async def _lifespan(_: FastAPI):
    init_db(_settings)
    tasks: list[asyncio.Task[None]] = []
    if _settings.scheduler_enabled:
        tasks.append(asyncio.create_task(_scheduler_loop()))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task


app = FastAPI(lifespan=_lifespan)


class ConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str | None = None
    ics_url: str | None = Field(default=None, alias="icsUrl")


class MirrorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool
    calendar_id: str | None = Field(default=None, alias="calendarId")


class DisconnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    purge: bool = Field(default=False, alias="deleteEvents")


def _validate_provider(provider: str) -> str:
    value = provider.strip().lower()
    if value not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    return value


def _parse_window_bound(value: str | None, *, name: str) -> datetime | None:
    if value is None:
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise HTTPException(status_code=422, detail=f"Invalid {name} timestamp")
    return parsed


def _error_response(exc: Exception) -> JSONResponse:
    """Map sync-layer failures onto HTTP responses."""
    if isinstance(exc, SyncInProgressError):
        return JSONResponse(
            status_code=409,
            content={
                "detail": "A sync for this provider is already running.",
                "retry_after_seconds": exc.retry_after,
            },
        )
    if isinstance(exc, RateLimitedError):
        retry_after = int(math.ceil(exc.retry_after or 1))
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "retry_after_seconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    if isinstance(exc, AuthExpiredError):
        return JSONResponse(
            status_code=401,
            content={"detail": str(exc), "kind": exc.kind, "reconnect_required": True},
        )
    if isinstance(exc, (EncryptionFailureError, OAuthNotConfiguredError)):
        return JSONResponse(status_code=503, content={"detail": str(exc), "kind": exc.kind})
    if isinstance(exc, SyncTimeoutError):
        return JSONResponse(status_code=504, content={"detail": str(exc), "kind": exc.kind})
    if isinstance(exc, MalformedFeedError):
        return JSONResponse(status_code=422, content={"detail": str(exc), "kind": exc.kind})
    if isinstance(exc, SyncError):
        return JSONResponse(status_code=502, content={"detail": str(exc), "kind": exc.kind})
    if isinstance(exc, LookupError):
        return JSONResponse(status_code=404, content={"detail": str(exc).strip("'\"")})
    if isinstance(exc, ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


async def _call(fn: Any, *args: Any, **kwargs: Any) -> Any:
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except (SyncError, LookupError, ValueError) as exc:
        return _error_response(exc)


@app.middleware("http")
async def _enforce_optional_bearer_auth(request: Request, call_next):
    if not auth_enabled(_settings):
        return await call_next(request)
    if not request_requires_auth(request):
        return await call_next(request)
    if request_is_authenticated(request, _settings):
        return await call_next(request)
    return JSONResponse(status_code=401, content={"detail": "Unauthorized"})


@app.get("/healthz")
async def healthz() -> dict[str, object]:
    checks = await run_in_threadpool(collect_health_checks, _settings)
    return {
        "status": "ok" if all(item["ok"] for item in checks.values()) else "degraded",
        "checks": checks,
    }


@app.get("/healthz/{component}")
async def healthz_component(component: str) -> dict[str, object]:
    try:
        payload = await run_in_threadpool(
            check_health_component,
            component,
            settings=_settings,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown health component")
    if not payload["ok"]:
        raise HTTPException(status_code=503, detail=str(payload["detail"]))
    return payload


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/integrations/{provider}/connect")
async def api_connect(
    provider: str,
    body: ConnectRequest,
    uid: str = Depends(caller_uid),
):
    return await _call(
        connections.connect,
        uid,
        _validate_provider(provider),
        settings=_settings,
        code=body.code,
        ics_url=body.ics_url,
    )


@app.get("/api/integrations/{provider}/status")
async def api_status(provider: str, uid: str = Depends(caller_uid)):
    return await _call(connections.status, uid, _validate_provider(provider), settings=_settings)


@app.post("/api/integrations/{provider}/syncNow")
async def api_sync_now(provider: str, uid: str = Depends(caller_uid)):
    return await _call(connections.sync_now, uid, _validate_provider(provider), settings=_settings)


@app.post("/api/integrations/{provider}/mirror")
async def api_set_mirror(
    provider: str,
    body: MirrorRequest,
    uid: str = Depends(caller_uid),
):
    return await _call(
        connections.set_mirror,
        uid,
        _validate_provider(provider),
        enabled=body.enabled,
        calendar_id=body.calendar_id,
        settings=_settings,
    )


@app.post("/api/integrations/{provider}/disconnect")
async def api_disconnect(
    provider: str,
    body: DisconnectRequest | None = None,
    uid: str = Depends(caller_uid),
):
    payload = body or DisconnectRequest()
    return await _call(
        connections.disconnect,
        uid,
        _validate_provider(provider),
        purge=payload.purge,
        settings=_settings,
    )


@app.get("/api/meetings")
async def api_list_meetings(
    uid: str = Depends(caller_uid),
    start: str | None = Query(default=None, alias="from"),
    end: str | None = Query(default=None, alias="to"),
    include_canceled: bool = Query(default=False, alias="includeCanceled"),
):
    return await _call(
        connections.list_meetings,
        uid,
        settings=_settings,
        window_start=_parse_window_bound(start, name="from"),
        window_end=_parse_window_bound(end, name="to"),
        include_canceled=include_canceled,
    )


__all__ = ["app", "healthz"]
