"""User-facing operations on a provider connection: connect, status, sync, mirror, disconnect."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from meetsync.errors import (
    EncryptionFailureError,
    RateLimitedError,
    SyncError,
)
from meetsync.merge import merge_and_dedupe
from meetsync.normalizer import normalize_batch
from meetsync.utils import coerce_utc_datetime, iso_z, parse_iso_datetime

from .accounts import (
    delete_account,
    load_account,
    set_mirror_preference,
    upsert_account,
)
from .calendar.google import google_service_for_user, list_calendar_events
from .calendar.ics import fetch_ics, parse_ics_events, redacted_host, validate_ics_url
from .calendar.mirror import mirror_account, remove_mirrored_events
from .calendar.records import meeting_from_row
from .calendar.service import calendar_window, sync_account
from .config import AppSettings
from .constants import (
    ACCOUNT_STATUS_REAUTH_REQUIRED,
    DEFAULT_MIRROR_CALENDAR_ID,
    OAUTH_PROVIDERS,
    PROVIDERS,
    PROVIDER_GOOGLE,
    PROVIDER_ICS,
    SYNC_PROVIDERS,
)
from .db import count_meetings, delete_meetings, get_account_row, list_meeting_rows
from .keystore import get_vault
from .oauth import OAuthClient

_logger = logging.getLogger(__name__)


class AccountNotFoundError(LookupError):
    """Raised when an operation targets a provider the user never connected."""


def _require_provider(provider: str, allowed: tuple[str, ...] = PROVIDERS) -> str:
    value = str(provider or "").strip().lower()
    if value not in allowed:
        raise ValueError(f"Unsupported provider: {value}")
    return value


def _require_account_row(uid: str, provider: str, settings: AppSettings) -> dict[str, Any]:
    row = get_account_row(uid, provider, settings=settings)
    if row is None:
        raise AccountNotFoundError(f"{provider} is not connected")
    return row


def connect(
    uid: str,
    provider: str,
    *,
    settings: AppSettings,
    code: str | None = None,
    ics_url: str | None = None,
    oauth_factory: Callable[[str, AppSettings], OAuthClient] = OAuthClient,
    now: datetime | None = None,
) -> dict[str, Any]:
    clean_provider = _require_provider(provider)
    vault = get_vault(settings)

    if clean_provider == PROVIDER_ICS:
        url = validate_ics_url(ics_url or "")
        vault.ensure_key_available()
        fetched = fetch_ics(url, settings=settings)
        window_start, window_end = calendar_window(settings, now=now)
        events = parse_ics_events(
            fetched.data or b"",
            window_start=window_start,
            window_end=window_end,
        )
        # Cache headers are left empty so the first sync imports the feed.
        upsert_account(
            uid,
            clean_provider,
            {"ics_url": url, "etag": None, "last_modified": None},
            settings=settings,
        )
        _logger.info(
            "Connected calendar feed uid=%s host=%s events=%s",
            uid,
            redacted_host(url),
            len(events),
        )
        return status(uid, clean_provider, settings=settings)

    clean_code = str(code or "").strip()
    if not clean_code:
        raise ValueError("Authorization code is required")
    vault.ensure_key_available()
    grant = oauth_factory(clean_provider, settings).exchange_code(clean_code)
    upsert_account(
        uid,
        clean_provider,
        {
            "access_token": grant.access_token,
            "refresh_token": grant.refresh_token,
            "expires_in": grant.expires_in,
        },
        settings=settings,
    )
    _logger.info(
        "Connected %s uid=%s token=%s",
        clean_provider,
        uid,
        vault.fingerprint(grant.access_token)[:12],
    )
    return status(uid, clean_provider, settings=settings)


def status(uid: str, provider: str, *, settings: AppSettings) -> dict[str, Any]:
    clean_provider = _require_provider(provider)
    row = get_account_row(uid, clean_provider, settings=settings)
    has_google_auth = get_account_row(uid, PROVIDER_GOOGLE, settings=settings) is not None
    if row is None:
        return {
            "connected": False,
            "status": None,
            "lastSyncAt": None,
            "mirrorEnabled": False,
            "calendarId": None,
            "hasGoogleAuth": has_google_auth,
            "lastError": None,
            "lastErrorKind": None,
            "reconnectRequired": False,
            "meetingCount": 0,
        }
    meeting_count = 0
    if clean_provider in SYNC_PROVIDERS:
        meeting_count = count_meetings(uid, clean_provider, settings=settings)
    return {
        "connected": True,
        "status": row.get("status"),
        "lastSyncAt": row.get("last_sync_at"),
        "mirrorEnabled": bool(row.get("mirror_enabled")),
        "calendarId": row.get("calendar_id") or DEFAULT_MIRROR_CALENDAR_ID,
        "hasGoogleAuth": has_google_auth,
        "lastError": row.get("last_error"),
        "lastErrorKind": row.get("last_error_kind"),
        "reconnectRequired": row.get("status") == ACCOUNT_STATUS_REAUTH_REQUIRED,
        "meetingCount": meeting_count,
    }


def sync_now(
    uid: str,
    provider: str,
    *,
    settings: AppSettings,
    now: datetime | None = None,
    **sync_kwargs: Any,
) -> dict[str, Any]:
    """On-demand pass, refused while the last successful sync is too recent."""
    clean_provider = _require_provider(provider, SYNC_PROVIDERS)
    row = _require_account_row(uid, clean_provider, settings)
    anchor = now or datetime.now(tz=timezone.utc)
    last_sync_at = parse_iso_datetime(row.get("last_sync_at"))
    min_interval = timedelta(seconds=settings.sync_now_min_interval_seconds)
    if last_sync_at is not None and min_interval:
        elapsed = anchor - coerce_utc_datetime(last_sync_at)
        if elapsed < min_interval:
            remaining = (min_interval - elapsed).total_seconds()
            raise RateLimitedError(
                "Sync was run recently; try again later",
                retry_after=max(1.0, remaining),
            )
    return sync_account(uid, clean_provider, settings=settings, now=anchor, **sync_kwargs)


def set_mirror(
    uid: str,
    provider: str,
    *,
    enabled: bool,
    settings: AppSettings,
    calendar_id: str | None = None,
    mirror_service: Any | None = None,
) -> dict[str, Any]:
    clean_provider = _require_provider(provider, SYNC_PROVIDERS)
    row = _require_account_row(uid, clean_provider, settings)
    was_enabled = bool(row.get("mirror_enabled"))
    set_mirror_preference(
        uid,
        clean_provider,
        enabled=enabled,
        calendar_id=(calendar_id or "").strip() or None,
        settings=settings,
    )
    result: dict[str, Any] = {"mirrorEnabled": bool(enabled), "mirrored": 0}
    if enabled and not was_enabled:
        try:
            result["mirrored"] = mirror_account(
                uid,
                clean_provider,
                settings=settings,
                service=mirror_service,
            )
        except SyncError as exc:
            _logger.error("Initial mirror pass failed uid=%s provider=%s: %s", uid, provider, exc)
            result["mirrorError"] = str(exc)
    result.update(status(uid, clean_provider, settings=settings))
    return result


def disconnect(
    uid: str,
    provider: str,
    *,
    settings: AppSettings,
    purge: bool = False,
    mirror_service: Any | None = None,
    oauth_factory: Callable[[str, AppSettings], OAuthClient] = OAuthClient,
) -> dict[str, Any]:
    """Remove the connection; meetings stay as history unless ``purge`` is set."""
    clean_provider = _require_provider(provider)
    row = _require_account_row(uid, clean_provider, settings)

    if clean_provider in OAUTH_PROVIDERS:
        try:
            account = load_account(uid, clean_provider, settings=settings)
        except EncryptionFailureError as exc:
            _logger.warning("Skipping token revoke; credentials unreadable: %s", exc)
            account = None
        if account is not None:
            client = oauth_factory(clean_provider, settings)
            if client.is_configured:
                client.revoke(account.refresh_token or account.access_token)

    removed_events = 0
    purged_meetings = 0
    if purge and clean_provider in SYNC_PROVIDERS:
        try:
            service = mirror_service or google_service_for_user(uid, settings=settings)
        except SyncError as exc:
            _logger.warning("Google Calendar unavailable while purging uid=%s: %s", uid, exc)
            service = None
        if service is not None:
            removed_events = remove_mirrored_events(
                uid,
                clean_provider,
                service=service,
                calendar_id=str(row.get("calendar_id") or DEFAULT_MIRROR_CALENDAR_ID),
                settings=settings,
            )
        purged_meetings = delete_meetings(uid, clean_provider, settings=settings)

    delete_account(uid, clean_provider, settings=settings)
    _logger.info(
        "Disconnected %s uid=%s purge=%s meetings=%s events=%s",
        clean_provider,
        uid,
        purge,
        purged_meetings,
        removed_events,
    )
    return {
        "disconnected": True,
        "purged": bool(purge),
        "deletedMeetings": purged_meetings,
        "deletedEvents": removed_events,
    }


def list_meetings(
    uid: str,
    *,
    settings: AppSettings,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    include_canceled: bool = False,
    google_service: Any | None = None,
) -> dict[str, Any]:
    """Merged view over stored meetings and the user's own Google Calendar events."""
    default_start, default_end = calendar_window(settings)
    start = coerce_utc_datetime(window_start) if window_start else default_start
    end = coerce_utc_datetime(window_end) if window_end else default_end
    if end <= start:
        raise ValueError("window end must be after window start")

    batches = []
    for provider in SYNC_PROVIDERS:
        rows = list_meeting_rows(
            uid,
            provider=provider,
            starts_from=iso_z(start),
            starts_before=iso_z(end),
            include_canceled=include_canceled,
            settings=settings,
        )
        batches.append([meeting_from_row(row) for row in rows])

    google_error = None
    try:
        service = google_service or google_service_for_user(uid, settings=settings)
    except SyncError as exc:
        service = None
        google_error = str(exc)
    if service is not None:
        try:
            events = list_calendar_events(service, "primary", start, end)
        except SyncError as exc:
            google_error = str(exc)
        else:
            google_meetings, _skipped = normalize_batch(
                events,
                PROVIDER_GOOGLE,
                uid=uid,
                provider=PROVIDER_GOOGLE,
            )
            if not include_canceled:
                google_meetings = [m for m in google_meetings if m.status != "canceled"]
            batches.append(google_meetings)

    merged = merge_and_dedupe(
        batches,
        venue_aliases=settings.venue_aliases,
        bucket_minutes=settings.dedup_bucket_minutes,
    )
    payload: dict[str, Any] = {
        "items": [meeting.model_dump(mode="json") for meeting in merged],
        "total": len(merged),
        "windowStart": iso_z(start),
        "windowEnd": iso_z(end),
    }
    if google_error is not None:
        payload["googleError"] = google_error
    return payload


__all__ = [
    "AccountNotFoundError",
    "connect",
    "disconnect",
    "list_meetings",
    "set_mirror",
    "status",
    "sync_now",
]
