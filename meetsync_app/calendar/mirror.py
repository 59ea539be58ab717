"""Write stored meetings into the user's Google Calendar.

Each meeting maps to at most one Google event through ``g_event_id``. The
mapping is persisted right after a create, and every mirrored event carries a
private extended property ``meetsyncKey = "{uid}:{provider}:{external_id}"``
so that a create interrupted before the id was stored is adopted on the next
pass instead of duplicated.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from googleapiclient.errors import HttpError

from meetsync.errors import AuthExpiredError, IngestionError, SyncError
from meetsync.metrics import mirror_writes_total

from ..accounts import load_account
from ..config import AppSettings
from ..constants import (
    MEETING_STATUS_CANCELED,
    MIRROR_KEY_PROPERTY,
    MIRROR_SOURCE_PROPERTY,
    MIRROR_TITLE_PREFIX,
)
from ..db import list_meeting_rows, set_meeting_mirror_state
from ..tokens import TokenManager
from .google import find_mirrored_event, google_service_for_user, http_status, translate_http_error

_GONE_STATUSES = {404, 410}
_logger = logging.getLogger(__name__)


def mirror_key(uid: str, provider: str, external_id: str) -> str:
    return f"{uid}:{provider}:{external_id}"


def _description(row: Mapping[str, Any]) -> str | None:
    parts: list[str] = []
    notes = str(row.get("notes") or "").strip()
    if notes:
        parts.append(notes)
    attendees = row.get("with_json") or []
    names = []
    for item in attendees:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        org = item.get("org")
        names.append(f"{item['name']} ({org})" if org else str(item["name"]))
    if names:
        parts.append("With: " + ", ".join(names))
    return "\n\n".join(parts) or None


def event_body(uid: str, provider: str, row: Mapping[str, Any]) -> dict[str, Any]:
    tz = str(row.get("tz") or "UTC")
    body: dict[str, Any] = {
        "summary": f"{MIRROR_TITLE_PREFIX}{row['title']}",
        "start": {"dateTime": row["starts_at"], "timeZone": tz},
        "end": {"dateTime": row["ends_at"], "timeZone": tz},
        "extendedProperties": {
            "private": {
                MIRROR_KEY_PROPERTY: mirror_key(uid, provider, str(row["external_id"])),
                MIRROR_SOURCE_PROPERTY: provider,
            }
        },
    }
    if row.get("location"):
        body["location"] = row["location"]
    description = _description(row)
    if description:
        body["description"] = description
    return body


def _execute(request: Any) -> dict[str, Any]:
    try:
        return request.execute() or {}
    except HttpError as exc:
        raise translate_http_error(exc) from exc


def _delete_event(service: Any, calendar_id: str, event_id: str) -> None:
    try:
        service.events().delete(calendarId=calendar_id, eventId=event_id).execute()
    except HttpError as exc:
        if http_status(exc) in _GONE_STATUSES:
            return
        raise translate_http_error(exc) from exc


def _insert_event(service: Any, calendar_id: str, body: dict[str, Any]) -> str:
    created = _execute(service.events().insert(calendarId=calendar_id, body=body))
    return str(created["id"])


def _patch_event(service: Any, calendar_id: str, event_id: str, body: dict[str, Any]) -> str | None:
    """Patch an event; returns ``None`` when it no longer exists upstream."""
    try:
        updated = (
            service.events()
            .patch(calendarId=calendar_id, eventId=event_id, body=body)
            .execute()
        )
    except HttpError as exc:
        if http_status(exc) in _GONE_STATUSES:
            return None
        raise translate_http_error(exc) from exc
    return str((updated or {}).get("id") or event_id)


def _mirror_one(
    uid: str,
    provider: str,
    row: Mapping[str, Any],
    *,
    service: Any,
    calendar_id: str,
    settings: AppSettings | None,
) -> str | None:
    external_id = str(row["external_id"])
    g_event_id = row.get("g_event_id")

    if row.get("status") == MEETING_STATUS_CANCELED:
        if not g_event_id:
            return None
        _delete_event(service, calendar_id, str(g_event_id))
        set_meeting_mirror_state(
            uid,
            provider,
            external_id,
            g_event_id=None,
            mirrored_updated_at=None,
            settings=settings,
        )
        return "delete"

    body = event_body(uid, provider, row)
    action = None
    if not g_event_id:
        existing = find_mirrored_event(
            service, calendar_id, mirror_key(uid, provider, external_id)
        )
        if existing is not None:
            g_event_id = _patch_event(service, calendar_id, str(existing["id"]), body)
            action = "adopt"
        if g_event_id is None:
            g_event_id = _insert_event(service, calendar_id, body)
            action = "create"
    elif row.get("updated_at") != row.get("mirrored_updated_at"):
        patched = _patch_event(service, calendar_id, str(g_event_id), body)
        if patched is None:
            patched = _insert_event(service, calendar_id, body)
            action = "create"
        else:
            action = "patch"
        g_event_id = patched
    else:
        return None

    set_meeting_mirror_state(
        uid,
        provider,
        external_id,
        g_event_id=g_event_id,
        mirrored_updated_at=row.get("updated_at"),
        settings=settings,
    )
    return action


def mirror_to_google(
    uid: str,
    provider: str,
    rows: Iterable[Mapping[str, Any]],
    *,
    service: Any,
    calendar_id: str,
    settings: AppSettings | None = None,
) -> int:
    """Create, patch or delete Google events for ``rows``; returns the write count."""
    written = 0
    for row in rows:
        try:
            action = _mirror_one(
                uid,
                provider,
                row,
                service=service,
                calendar_id=calendar_id,
                settings=settings,
            )
        except IngestionError as exc:
            mirror_writes_total.labels(action="error").inc()
            _logger.error(
                "Mirror write failed uid=%s provider=%s external_id=%s: %s",
                uid,
                provider,
                row.get("external_id"),
                exc,
            )
            continue
        if action is None:
            continue
        mirror_writes_total.labels(action=action).inc()
        written += 1
    if written:
        _logger.info("Mirrored %s change(s) uid=%s provider=%s", written, uid, provider)
    return written


def mirror_account(
    uid: str,
    provider: str,
    *,
    settings: AppSettings,
    service: Any | None = None,
    token_manager: TokenManager | None = None,
) -> int:
    account = load_account(uid, provider, settings=settings)
    if account is None:
        raise LookupError(f"No {provider} account for uid={uid}")
    if service is None:
        service = google_service_for_user(uid, settings=settings, token_manager=token_manager)
    if service is None:
        raise AuthExpiredError("Google Calendar is not connected")
    rows = list_meeting_rows(uid, provider=provider, settings=settings)
    return mirror_to_google(
        uid,
        provider,
        rows,
        service=service,
        calendar_id=account.calendar_id,
        settings=settings,
    )


def remove_mirrored_events(
    uid: str,
    provider: str,
    *,
    service: Any,
    calendar_id: str,
    settings: AppSettings,
) -> int:
    """Best-effort delete of every mirrored event for an account being purged."""
    removed = 0
    for row in list_meeting_rows(uid, provider=provider, settings=settings):
        g_event_id = row.get("g_event_id")
        if not g_event_id:
            continue
        try:
            _delete_event(service, calendar_id, str(g_event_id))
        except SyncError as exc:
            _logger.warning("Could not remove mirrored event uid=%s: %s", uid, exc)
            continue
        mirror_writes_total.labels(action="delete").inc()
        removed += 1
    return removed


__all__ = [
    "event_body",
    "mirror_account",
    "mirror_key",
    "mirror_to_google",
    "remove_mirrored_events",
]
