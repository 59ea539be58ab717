"""Service bearer token and the caller identity asserted by the upstream gateway."""

from __future__ import annotations

import secrets

from fastapi import HTTPException, Request

from .config import AppSettings

USER_ID_HEADER = "X-User-Id"
_MAX_UID_LENGTH = 128
_PROTECTED_PREFIX = "/api/"


def _bearer_token(header: str | None) -> str | None:
    scheme, _, token = (header or "").strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def configured_token(settings: AppSettings) -> str | None:
    return (settings.api_bearer_token or "").strip() or None


def auth_enabled(settings: AppSettings) -> bool:
    return configured_token(settings) is not None


def request_requires_auth(request: Request) -> bool:
    # Health probes and /metrics stay open for the orchestrator.
    return request.url.path.startswith(_PROTECTED_PREFIX)


def request_is_authenticated(request: Request, settings: AppSettings) -> bool:
    expected = configured_token(settings)
    if expected is None:
        return True
    presented = _bearer_token(request.headers.get("Authorization"))
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def caller_uid(request: Request) -> str:
    """FastAPI dependency returning the user id the gateway authenticated."""
    uid = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not uid:
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    if len(uid) > _MAX_UID_LENGTH:
        raise HTTPException(status_code=422, detail="User id is too long")
    return uid


__all__ = [
    "USER_ID_HEADER",
    "auth_enabled",
    "caller_uid",
    "configured_token",
    "request_is_authenticated",
    "request_requires_auth",
]
