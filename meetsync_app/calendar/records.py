from __future__ import annotations

from typing import Any, Mapping

from meetsync.models import Attendee, ExternalRef, Meeting
from meetsync.utils import iso_z, parse_iso_datetime


def meeting_to_row(meeting: Meeting) -> dict[str, Any]:
    return {
        "external_id": meeting.external.id,
        "etag": meeting.external.etag,
        "title": meeting.title,
        "starts_at": iso_z(meeting.start),
        "ends_at": iso_z(meeting.end),
        "tz": meeting.tz,
        "location": meeting.location,
        "lat": meeting.lat,
        "lng": meeting.lng,
        "with_json": [attendee.model_dump() for attendee in meeting.attendees],
        "status": meeting.status,
        "notes": meeting.notes,
        "source": meeting.source,
        "source_kind": meeting.source_kind,
    }


def meeting_from_row(row: Mapping[str, Any]) -> Meeting:
    attendees = row.get("with_json") or []
    return Meeting(
        uid=str(row["uid"]),
        external=ExternalRef(
            provider=str(row["provider"]),
            id=str(row["external_id"]),
            etag=row.get("etag"),
            last_seen_at=parse_iso_datetime(row.get("last_seen_at")),
        ),
        title=str(row["title"]),
        start=parse_iso_datetime(row["starts_at"]),
        end=parse_iso_datetime(row["ends_at"]),
        tz=str(row.get("tz") or "UTC"),
        location=row.get("location"),
        lat=row.get("lat"),
        lng=row.get("lng"),
        attendees=[Attendee(**item) for item in attendees if isinstance(item, dict)],
        status=str(row["status"]),
        notes=row.get("notes"),
        updated_at=parse_iso_datetime(row.get("updated_at")),
        source=str(row.get("source") or "pull"),
        source_kind=str(row.get("source_kind") or row["provider"]),
        g_event_id=row.get("g_event_id"),
    )


__all__ = ["meeting_from_row", "meeting_to_row"]
