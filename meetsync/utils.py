from __future__ import annotations

from datetime import date, datetime, time, timezone
import math
import re
from typing import Any

_ISO_FRACTION_RE = re.compile(
    r"^(?P<body>.+?)(?P<fraction>\.\d+)(?P<suffix>Z|[+-]\d{2}:\d{2})?$"
)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def coerce_utc_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _normalize_iso_datetime_text(text: str) -> str:
    match = _ISO_FRACTION_RE.match(text)
    if match is None:
        return text
    fraction = match.group("fraction")
    digits = fraction[1:]
    if len(digits) <= 6:
        return text
    suffix = match.group("suffix") or ""
    return f"{match.group('body')}.{digits[:6]}{suffix}"


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 text; naive values are returned naive for the caller to localize."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    text = _normalize_iso_datetime_text(text)
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def safe_float(
    value: Any,
    default: float | None = None,
    *,
    min_value: float | None = None,
    max_value: float | None = None,
) -> float | None:
    """Best-effort numeric parse with optional bounds."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    if min_value is not None and parsed < min_value:
        return default
    if max_value is not None and parsed > max_value:
        return default
    return parsed


def collapse_whitespace(value: Any) -> str:
    return " ".join(str(value or "").split())


__all__ = [
    "coerce_utc_datetime",
    "collapse_whitespace",
    "iso_z",
    "parse_iso_datetime",
    "safe_float",
    "utc_now",
]
