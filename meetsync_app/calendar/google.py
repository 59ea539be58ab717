"""Google Calendar API access for the mirror writer and the merged meeting view."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from meetsync.errors import AuthExpiredError, IngestionError, RateLimitedError, TransientNetworkError
from meetsync.utils import iso_z

from ..accounts import load_account
from ..config import AppSettings
from ..constants import MIRROR_KEY_PROPERTY, PROVIDER_GOOGLE
from ..tokens import TokenManager

SCOPES = ["https://www.googleapis.com/auth/calendar.events"]
_logger = logging.getLogger(__name__)


def build_calendar_service(access_token: str) -> Any:
    """Create a Google Calendar API v3 service from a user access token."""
    creds = Credentials(token=access_token, scopes=SCOPES)
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def http_status(exc: HttpError) -> int:
    return int(getattr(getattr(exc, "resp", None), "status", 0) or 0)


def translate_http_error(exc: HttpError) -> Exception:
    status = http_status(exc)
    if status == 401:
        return AuthExpiredError("Google rejected the access token")
    if status == 429 or (status == 403 and "rateLimitExceeded" in str(exc)):
        return RateLimitedError("Google Calendar rate limited")
    if status >= 500:
        return TransientNetworkError(f"Transient Google Calendar error {status}")
    return IngestionError(f"Google Calendar request failed: {status}", status_code=status)


def google_service_for_user(
    uid: str,
    *,
    settings: AppSettings,
    token_manager: TokenManager | None = None,
    service_factory: Callable[[str], Any] = build_calendar_service,
) -> Any | None:
    """Return an authorised service for the user's Google account, or ``None``."""
    account = load_account(uid, PROVIDER_GOOGLE, settings=settings)
    if account is None:
        return None
    manager = token_manager or TokenManager(settings)
    token = manager.ensure_fresh_token(account, uid)
    return service_factory(token)


def is_mirrored_event(event: dict[str, Any]) -> bool:
    private = (event.get("extendedProperties") or {}).get("private") or {}
    return MIRROR_KEY_PROPERTY in private


def list_calendar_events(
    service: Any,
    calendar_id: str,
    window_start: datetime,
    window_end: datetime,
    *,
    include_mirrored: bool = False,
) -> list[dict[str, Any]]:
    """List single event instances in the window, skipping our own mirror copies."""
    results: list[dict[str, Any]] = []
    page_token: str | None = None
    while True:
        try:
            resp = (
                service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=iso_z(window_start),
                    timeMax=iso_z(window_end),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                    maxResults=250,
                )
                .execute()
            )
        except HttpError as exc:
            raise translate_http_error(exc) from exc
        for event in resp.get("items", []):
            if not include_mirrored and is_mirrored_event(event):
                continue
            results.append(event)
        page_token = resp.get("nextPageToken")
        if not page_token:
            break
    return results


def find_mirrored_event(service: Any, calendar_id: str, mirror_key: str) -> dict[str, Any] | None:
    try:
        resp = (
            service.events()
            .list(
                calendarId=calendar_id,
                privateExtendedProperty=f"{MIRROR_KEY_PROPERTY}={mirror_key}",
                showDeleted=False,
                maxResults=1,
            )
            .execute()
        )
    except HttpError as exc:
        raise translate_http_error(exc) from exc
    items = resp.get("items") or []
    return items[0] if items else None


__all__ = [
    "SCOPES",
    "build_calendar_service",
    "find_mirrored_event",
    "google_service_for_user",
    "http_status",
    "is_mirrored_event",
    "list_calendar_events",
    "translate_http_error",
]
