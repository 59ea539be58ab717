from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import ipaddress
import logging
import socket
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx
from icalendar import Calendar
import recurring_ical_events

from meetsync.errors import (
    IngestionError,
    MalformedFeedError,
    TransientNetworkError,
)
from meetsync.metrics import records_skipped_total
from meetsync.utils import coerce_utc_datetime, iso_z, utc_now

from ..config import AppSettings
from ..http_client import build_retrying, classify_response

_REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
_ICS_STATUS_MAP = {
    "CONFIRMED": "accepted",
    "TENTATIVE": "pending",
    "CANCELLED": "canceled",
}
_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IcsFetchResult:
    ok: bool
    data: bytes | None = None
    etag: str | None = None
    last_modified: str | None = None
    not_modified: bool = False


def _is_loopback_hostname(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    if normalized == "localhost" or normalized.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def _resolves_only_loopback(hostname: str) -> bool:
    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return False
    seen: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = []
    for _family, _socktype, _proto, _canonname, sockaddr in addr_info:
        raw_ip = str(sockaddr[0]).split("%", 1)[0]
        try:
            seen.append(ipaddress.ip_address(raw_ip))
        except ValueError:
            continue
    return any(item.is_loopback for item in seen)


def validate_ics_url(raw_url: str) -> str:
    url = str(raw_url or "").strip()
    if not url:
        raise ValueError("ICS URL is required")
    if url.lower().startswith("webcal://"):
        url = "https://" + url[len("webcal://") :]
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"}:
        raise ValueError("ICS URL must use http, https or webcal")
    if parts.username or parts.password:
        raise ValueError("ICS URL must not include credentials")
    if not parts.hostname:
        raise ValueError("ICS URL must include a host")
    if _is_loopback_hostname(parts.hostname) or _resolves_only_loopback(parts.hostname):
        raise ValueError("ICS URL host must not resolve to localhost/loopback")
    return parts.geturl()


def redacted_host(url: str | None) -> str:
    """Host part of a feed URL; feed URLs often embed a secret path."""
    try:
        return urlsplit(str(url or "")).hostname or "unknown"
    except ValueError:
        return "unknown"


def _fetch_once(
    url: str,
    *,
    headers: dict[str, str],
    settings: AppSettings,
) -> IcsFetchResult:
    current_url = url
    redirects = 0
    timeout = httpx.Timeout(settings.ics_fetch_timeout_seconds)
    with httpx.Client(timeout=timeout, follow_redirects=False) as client:
        while True:
            try:
                with client.stream("GET", current_url, headers=headers) as response:
                    if response.status_code in _REDIRECT_STATUS_CODES:
                        location = response.headers.get("location")
                        if not location:
                            raise IngestionError("Calendar redirect did not provide a location")
                        if redirects >= settings.ics_fetch_max_redirects:
                            raise IngestionError("Calendar fetch exceeded redirect limit")
                        try:
                            current_url = validate_ics_url(urljoin(current_url, location))
                        except ValueError as exc:
                            raise IngestionError(f"Calendar redirect rejected: {exc}") from exc
                        redirects += 1
                        continue
                    if response.status_code == 304:
                        return IcsFetchResult(
                            ok=True,
                            etag=response.headers.get("etag") or headers.get("If-None-Match"),
                            last_modified=response.headers.get("last-modified")
                            or headers.get("If-Modified-Since"),
                            not_modified=True,
                        )
                    classify_response(response, label="Calendar feed", auth_statuses=())
                    chunks: list[bytes] = []
                    total_bytes = 0
                    for chunk in response.iter_bytes():
                        if not chunk:
                            continue
                        total_bytes += len(chunk)
                        if total_bytes > settings.ics_fetch_max_bytes:
                            raise IngestionError("Calendar feed exceeded maximum allowed size")
                        chunks.append(chunk)
                    return IcsFetchResult(
                        ok=True,
                        data=b"".join(chunks),
                        etag=response.headers.get("etag"),
                        last_modified=response.headers.get("last-modified"),
                    )
            except httpx.TimeoutException as exc:
                raise TransientNetworkError("Calendar fetch timed out") from exc
            except httpx.HTTPError as exc:
                raise TransientNetworkError(f"Calendar fetch failed: {exc}") from exc


def fetch_ics(
    url: str,
    *,
    settings: AppSettings,
    etag: str | None = None,
    last_modified: str | None = None,
) -> IcsFetchResult:
    """Conditional GET of a feed; a 304 yields ``not_modified=True`` and no data."""
    try:
        start_url = validate_ics_url(url)
    except ValueError as exc:
        raise IngestionError(str(exc)) from exc
    headers = {"Accept": "text/calendar,text/plain;q=0.9,*/*;q=0.8"}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    result = build_retrying(settings)(
        _fetch_once, start_url, headers=headers, settings=settings
    )
    _logger.debug(
        "Fetched calendar feed host=%s not_modified=%s bytes=%s",
        redacted_host(start_url),
        result.not_modified,
        len(result.data or b""),
    )
    return result


def _property_text(component: Any, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _address_name(address: Any) -> str | None:
    params = getattr(address, "params", {})
    cn = params.get("CN")
    if cn:
        value = str(cn).strip()
        if value:
            return value
    raw = str(address).strip()
    if raw.lower().startswith("mailto:"):
        raw = raw[7:]
    return raw or None


def _organizer_text(component: Any) -> str | None:
    organizer = component.get("ORGANIZER")
    if organizer is None:
        return None
    return _address_name(organizer)


def _attendee_names(component: Any) -> list[str]:
    raw = component.get("ATTENDEE")
    if raw is None:
        return []
    values = raw if isinstance(raw, list) else [raw]
    names: list[str] = []
    for value in values:
        name = _address_name(value)
        if name and name not in names:
            names.append(name)
    return names


def _timezone_name(component: Any, decoded: date | datetime) -> str | None:
    prop = component.get("DTSTART")
    tzid = getattr(prop, "params", {}).get("TZID") if prop is not None else None
    if tzid:
        return str(tzid)
    tzinfo = getattr(decoded, "tzinfo", None)
    if tzinfo is None:
        return None
    return getattr(tzinfo, "key", None) or getattr(tzinfo, "zone", None) or None


def _updated_at_text(component: Any, *, fallback: str) -> str:
    for key in ("LAST-MODIFIED", "DTSTAMP"):
        try:
            decoded = component.decoded(key)
        except KeyError:
            continue
        if isinstance(decoded, (date, datetime)):
            return iso_z(coerce_utc_datetime(decoded))
    return fallback


def _event_row(component: Any, *, fallback_updated_at: str) -> dict[str, Any] | None:
    uid = str(component.get("UID") or "").strip()
    if not uid:
        raise ValueError("VEVENT has no UID")

    try:
        dtstart_raw = component.decoded("DTSTART")
    except KeyError as exc:
        raise ValueError("VEVENT has no DTSTART") from exc

    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    starts_at = coerce_utc_datetime(dtstart_raw)

    try:
        dtend_raw: date | datetime | None = component.decoded("DTEND")
    except KeyError:
        dtend_raw = None

    if all_day:
        ends_at = starts_at + timedelta(days=1)
        if dtend_raw is not None:
            ends_at = max(coerce_utc_datetime(dtend_raw), ends_at)
    elif dtend_raw is not None:
        ends_at = coerce_utc_datetime(dtend_raw)
    else:
        try:
            duration_raw = component.decoded("DURATION")
        except KeyError:
            duration_raw = None
        if isinstance(duration_raw, timedelta):
            ends_at = starts_at + duration_raw
        else:
            ends_at = starts_at + timedelta(hours=1)
        if ends_at <= starts_at:
            ends_at = starts_at + timedelta(minutes=1)

    status = str(component.get("STATUS") or "").strip().upper()
    return {
        "uid": uid,
        "starts_at": iso_z(starts_at),
        "ends_at": iso_z(ends_at),
        "all_day": all_day,
        "tz": _timezone_name(component, dtstart_raw),
        "summary": _property_text(component, "SUMMARY"),
        "description": _property_text(component, "DESCRIPTION"),
        "location": _property_text(component, "LOCATION"),
        "organizer": _organizer_text(component),
        "attendees": _attendee_names(component),
        "status": _ICS_STATUS_MAP.get(status, "accepted"),
        "updated_at": _updated_at_text(component, fallback=fallback_updated_at),
    }


def _instance_suffix(starts_at: str) -> str:
    return starts_at.replace("-", "").replace(":", "")


def _recurring_uids(calendar: Any) -> set[str]:
    seen: set[str] = set()
    recurring: set[str] = set()
    for component in calendar.walk("VEVENT"):
        uid = str(component.get("UID") or "").strip()
        if not uid:
            continue
        if uid in seen or any(
            component.get(key) is not None for key in ("RRULE", "RDATE", "RECURRENCE-ID")
        ):
            recurring.add(uid)
        seen.add(uid)
    return recurring


def parse_ics_events(
    payload: str | bytes,
    *,
    window_start: datetime,
    window_end: datetime,
    synced_at: datetime | None = None,
) -> list[dict[str, Any]]:
    """Expand a feed into one row per event instance inside the window.

    Instances of recurring events (RRULE, RDATE, overrides or repeated UIDs) get ``external_id = "{uid}#{start}"``;
    single events keep their UID. Broken events are skipped and counted.
    """
    start_utc = coerce_utc_datetime(window_start)
    end_utc = coerce_utc_datetime(window_end)
    if end_utc <= start_utc:
        raise ValueError("window_end must be after window_start")

    try:
        calendar = Calendar.from_ical(payload)
    except Exception as exc:
        raise MalformedFeedError("ICS payload could not be parsed") from exc
    if str(getattr(calendar, "name", "")).upper() != "VCALENDAR":
        raise MalformedFeedError("ICS payload is not a VCALENDAR")

    try:
        expanded_events = recurring_ical_events.of(calendar).between(start_utc, end_utc)
    except Exception as exc:
        raise MalformedFeedError("ICS recurrence expansion failed") from exc

    fallback_updated_at = iso_z(synced_at or utc_now())
    by_key: dict[tuple[str, str], dict[str, Any]] = {}
    for component in expanded_events:
        if str(getattr(component, "name", "")).upper() != "VEVENT":
            continue
        try:
            row = _event_row(component, fallback_updated_at=fallback_updated_at)
        except (ValueError, TypeError, KeyError) as exc:
            records_skipped_total.labels(source="ics").inc()
            _logger.error("Skipping broken VEVENT: %s", exc)
            continue
        key = (str(row["uid"]), str(row["starts_at"]))
        by_key[key] = row

    recurring = _recurring_uids(calendar)
    rows = sorted(
        by_key.values(),
        key=lambda row: (str(row["starts_at"]), str(row["uid"])),
    )
    for row in rows:
        if row["uid"] in recurring:
            row["external_id"] = f"{row['uid']}#{_instance_suffix(row['starts_at'])}"
        else:
            row["external_id"] = row["uid"]
    return rows


__all__ = [
    "IcsFetchResult",
    "fetch_ics",
    "parse_ics_events",
    "redacted_host",
    "validate_ics_url",
]
