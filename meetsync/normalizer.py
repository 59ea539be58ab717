"""Convert provider payloads (meeting API, ICS rows, Google events) into ``Meeting``."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
import logging
import re
import threading
from typing import Any, Callable, Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from .errors import MalformedRecordError
from .metrics import records_skipped_total
from .models import Attendee, ExternalRef, Meeting
from .utils import coerce_utc_datetime, collapse_whitespace, parse_iso_datetime, safe_float

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DEFAULT_TIMEZONE = "UTC"
UNTITLED_MEETING = "Untitled meeting"
_DEFAULT_DURATION = timedelta(hours=1)
_GEO_HINT_RE = re.compile(r"geo:\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)
_logger = logging.getLogger(__name__)

_TIMEZONE_ALIASES = {
    "utc": "UTC",
    "z": "UTC",
    "gmt": "UTC",
    "etc/utc": "UTC",
    "coordinated universal time": "UTC",
    "gmt standard time": "Europe/London",
    "w. europe standard time": "Europe/Berlin",
    "central europe standard time": "Europe/Budapest",
    "central european standard time": "Europe/Warsaw",
    "romance standard time": "Europe/Paris",
    "e. europe standard time": "Europe/Bucharest",
    "fle standard time": "Europe/Kiev",
    "gtb standard time": "Europe/Athens",
    "russian standard time": "Europe/Moscow",
    "turkey standard time": "Europe/Istanbul",
    "israel standard time": "Asia/Jerusalem",
    "arabian standard time": "Asia/Dubai",
    "india standard time": "Asia/Kolkata",
    "singapore standard time": "Asia/Singapore",
    "china standard time": "Asia/Shanghai",
    "tokyo standard time": "Asia/Tokyo",
    "korea standard time": "Asia/Seoul",
    "pacific standard time": "America/Los_Angeles",
    "mountain standard time": "America/Denver",
    "central standard time": "America/Chicago",
    "eastern standard time": "America/New_York",
    "atlantic standard time": "America/Halifax",
    "e. south america standard time": "America/Sao_Paulo",
    "aus eastern standard time": "Australia/Sydney",
    "new zealand standard time": "Pacific/Auckland",
    "cet": "Europe/Berlin",
    "cest": "Europe/Berlin",
    "bst": "Europe/London",
    "pst": "America/Los_Angeles",
    "pdt": "America/Los_Angeles",
    "est": "America/New_York",
    "edt": "America/New_York",
}

_STATUS_ALIASES = {
    "": "accepted",
    "accepted": "accepted",
    "confirmed": "accepted",
    "booked": "accepted",
    "scheduled": "accepted",
    "active": "accepted",
    "pending": "pending",
    "tentative": "pending",
    "requested": "pending",
    "invited": "pending",
    "needs-action": "pending",
    "needs_action": "pending",
    "declined": "declined",
    "rejected": "declined",
    "canceled": "canceled",
    "cancelled": "canceled",
    "deleted": "canceled",
}


def normalize_timezone(tz: str | None) -> str:
    """Map a provider zone identifier onto an IANA name, ``UTC`` on a miss."""
    cleaned = str(tz or "").strip()
    if not cleaned:
        return DEFAULT_TIMEZONE
    candidate = _TIMEZONE_ALIASES.get(cleaned.lower(), cleaned)
    if candidate == DEFAULT_TIMEZONE:
        return DEFAULT_TIMEZONE
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        _logger.debug("Unknown timezone %r; defaulting to %s", cleaned, DEFAULT_TIMEZONE)
        return DEFAULT_TIMEZONE
    return candidate


def _zone(name: str) -> tzinfo:
    if name == DEFAULT_TIMEZONE:
        return timezone.utc
    return ZoneInfo(name)


def normalize_status(value: Any) -> str:
    key = str(value or "").strip().lower()
    status = _STATUS_ALIASES.get(key)
    if status is None:
        raise MalformedRecordError(f"Unsupported meeting status: {key}")
    return status


class Geocoder:
    """Best-effort address to coordinates lookup.

    Inline ``geo:lat,lng`` hints win; otherwise the Google Geocoding API is
    queried when an API key is configured. Every failure yields ``None``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout_seconds: float = 3.0,
        url: str = GEOCODE_URL,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.timeout_seconds = float(timeout_seconds)
        self.url = url
        self._cache: dict[str, dict[str, float] | None] = {}
        self._lock = threading.Lock()

    def geocode_location(self, address: str | None) -> dict[str, float] | None:
        text = collapse_whitespace(address)
        if not text:
            return None
        hint = _GEO_HINT_RE.search(text)
        if hint is not None:
            lat = safe_float(hint.group(1), min_value=-90.0, max_value=90.0)
            lng = safe_float(hint.group(2), min_value=-180.0, max_value=180.0)
            if lat is not None and lng is not None:
                return {"lat": lat, "lng": lng}
        if self.api_key is None:
            return None
        key = text.lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        coords = self._lookup(text)
        with self._lock:
            self._cache[key] = coords
        return coords

    def remember(self, address: str | None, coords: dict[str, float]) -> None:
        """Prime the cache with coordinates already known for ``address``."""
        text = collapse_whitespace(address)
        if not text:
            return
        with self._lock:
            self._cache.setdefault(text.lower(), dict(coords))

    def _lookup(self, address: str) -> dict[str, float] | None:
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.get(self.url, params={"address": address, "key": self.api_key})
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError):
            _logger.warning("Geocoding failed for a location string", exc_info=True)
            return None
        results = body.get("results") if isinstance(body, dict) else None
        if not results:
            return None
        location = ((results[0] or {}).get("geometry") or {}).get("location") or {}
        lat = safe_float(location.get("lat"), min_value=-90.0, max_value=90.0)
        lng = safe_float(location.get("lng"), min_value=-180.0, max_value=180.0)
        if lat is None or lng is None:
            return None
        return {"lat": lat, "lng": lng}


def _text(value: Any) -> str | None:
    text = collapse_whitespace(value)
    return text or None


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _localize(value: Any, tz_name: str, *, field: str) -> datetime:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise MalformedRecordError(f"Unparseable {field}: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone(tz_name))
    return coerce_utc_datetime(parsed)


def _interval(start_raw: Any, end_raw: Any, tz_name: str) -> tuple[datetime, datetime]:
    if start_raw in (None, ""):
        raise MalformedRecordError("Meeting has no start time")
    start = _localize(start_raw, tz_name, field="start")
    if end_raw in (None, ""):
        return start, start + _DEFAULT_DURATION
    end = _localize(end_raw, tz_name, field="end")
    if end < start:
        raise MalformedRecordError("Meeting ends before it starts")
    return start, end


def _attendee_from(value: Any) -> Attendee | None:
    if isinstance(value, str):
        name = _text(value)
        return Attendee(name=name) if name else None
    if not isinstance(value, Mapping):
        return None
    name = _text(_first(value, "name", "displayName", "fullName", "email"))
    if not name:
        return None
    org = _text(_first(value, "org", "company", "organization", "organisation"))
    return Attendee(name=name, org=org)


def _attendees(values: Any) -> list[Attendee]:
    if not isinstance(values, list):
        return []
    out: list[Attendee] = []
    for value in values:
        attendee = _attendee_from(value)
        if attendee is not None:
            out.append(attendee)
    return out


def _location_text(value: Any) -> str | None:
    if isinstance(value, Mapping):
        parts = [_text(value.get(key)) for key in ("name", "displayName", "address")]
        joined = ", ".join(part for part in parts if part)
        return joined or None
    return _text(value)


def _fields_from_mtm(raw: Mapping[str, Any]) -> dict[str, Any]:
    tz_name = normalize_timezone(_first(raw, "timezone", "timeZone", "tz"))
    start, end = _interval(
        _first(raw, "startTime", "start", "startsAt"),
        _first(raw, "endTime", "end", "endsAt"),
        tz_name,
    )
    return {
        "external_id": _text(_first(raw, "id", "meetingId")),
        "etag": _text(raw.get("etag")),
        "title": _text(_first(raw, "title", "subject", "name")),
        "start": start,
        "end": end,
        "tz": tz_name,
        "location": _location_text(raw.get("location")),
        "attendees": _attendees(_first(raw, "participants", "attendees", "with")),
        "status": normalize_status(raw.get("status")),
        "notes": _text(_first(raw, "notes", "description", "agenda")),
    }


def _fields_from_ics(raw: Mapping[str, Any]) -> dict[str, Any]:
    tz_name = normalize_timezone(raw.get("tz"))
    start, end = _interval(raw.get("starts_at"), raw.get("ends_at"), tz_name)
    attendees = _attendees(raw.get("attendees"))
    organizer = _text(raw.get("organizer"))
    if organizer and all(item.name != organizer for item in attendees):
        attendees.insert(0, Attendee(name=organizer))
    return {
        "external_id": _text(_first(raw, "external_id", "uid")),
        "etag": _text(raw.get("updated_at")),
        "title": _text(raw.get("summary")),
        "start": start,
        "end": end,
        "tz": tz_name,
        "location": _text(raw.get("location")),
        "attendees": attendees,
        "status": normalize_status(raw.get("status")),
        "notes": _text(raw.get("description")),
    }


def _google_time(value: Any) -> tuple[Any, str | None]:
    if not isinstance(value, Mapping):
        return value, None
    return _first(value, "dateTime", "date"), _text(value.get("timeZone"))


def _fields_from_google(raw: Mapping[str, Any]) -> dict[str, Any]:
    start_raw, start_tz = _google_time(raw.get("start"))
    end_raw, _end_tz = _google_time(raw.get("end"))
    tz_name = normalize_timezone(start_tz)
    start, end = _interval(start_raw, end_raw, tz_name)
    return {
        "external_id": _text(raw.get("id")),
        "etag": _text(raw.get("etag")),
        "title": _text(raw.get("summary")),
        "start": start,
        "end": end,
        "tz": tz_name,
        "location": _text(raw.get("location")),
        "attendees": _attendees(raw.get("attendees")),
        "status": normalize_status(raw.get("status")),
        "notes": _text(raw.get("description")),
    }


_EXTRACTORS = {
    "mtm": _fields_from_mtm,
    "ics": _fields_from_ics,
    "google": _fields_from_google,
}


def normalize(
    raw: Mapping[str, Any],
    source_kind: str,
    *,
    uid: str,
    provider: str | None = None,
    geocoder: Geocoder | None = None,
    seen_at: datetime | None = None,
) -> Meeting:
    """Map one provider record onto ``Meeting``; raises ``MalformedRecordError``."""
    if not isinstance(raw, Mapping):
        raise MalformedRecordError("Meeting record is not an object")
    extractor = _EXTRACTORS.get(source_kind)
    if extractor is None:
        raise ValueError(f"Unsupported source kind: {source_kind}")
    try:
        fields = extractor(raw)
    except MalformedRecordError:
        raise
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"Malformed {source_kind} record: {exc}") from exc
    external_id = fields.pop("external_id")
    if not external_id:
        raise MalformedRecordError(f"{source_kind} record has no id")
    etag = fields.pop("etag")
    fields["title"] = fields["title"] or UNTITLED_MEETING

    coords = geocoder.geocode_location(fields["location"]) if geocoder is not None else None
    if coords is not None:
        fields["lat"] = coords["lat"]
        fields["lng"] = coords["lng"]

    return Meeting(
        uid=uid,
        external=ExternalRef(
            provider=provider or source_kind,
            id=external_id,
            etag=etag,
            last_seen_at=seen_at,
        ),
        source_kind=source_kind,
        **fields,
    )


def normalize_batch(
    records: Iterable[Mapping[str, Any]],
    source_kind: str,
    *,
    uid: str,
    provider: str | None = None,
    geocoder: Geocoder | None = None,
    seen_at: datetime | None = None,
    checkpoint: Callable[[], None] | None = None,
) -> tuple[list[Meeting], int]:
    """Normalize every record, skipping (and counting) malformed ones.

    ``checkpoint`` runs before each record; whatever it raises aborts the batch.
    """
    meetings: list[Meeting] = []
    skipped = 0
    for raw in records:
        if checkpoint is not None:
            checkpoint()
        try:
            meetings.append(
                normalize(
                    raw,
                    source_kind,
                    uid=uid,
                    provider=provider,
                    geocoder=geocoder,
                    seen_at=seen_at,
                )
            )
        except MalformedRecordError as exc:
            skipped += 1
            records_skipped_total.labels(source=source_kind).inc()
            record_id = raw.get("id") or raw.get("uid") if isinstance(raw, Mapping) else None
            _logger.error(
                "Skipping malformed %s record id=%s for uid=%s: %s",
                source_kind,
                record_id,
                uid,
                exc,
            )
    return meetings, skipped


__all__ = [
    "DEFAULT_TIMEZONE",
    "Geocoder",
    "UNTITLED_MEETING",
    "normalize",
    "normalize_batch",
    "normalize_status",
    "normalize_timezone",
]
