from __future__ import annotations

from datetime import datetime
import hashlib
import json
from typing import List, Literal

from pydantic import BaseModel

MeetingStatus = Literal["pending", "accepted", "declined", "canceled"]
MEETING_STATUSES: tuple[str, ...] = ("pending", "accepted", "declined", "canceled")
SOURCE_KINDS: tuple[str, ...] = ("mtm", "ics", "google")


class Attendee(BaseModel):
    """A person attending a meeting, with an optional organisation."""

    name: str
    org: str | None = None


class ExternalRef(BaseModel):
    """Where a meeting came from upstream."""

    provider: str
    id: str
    etag: str | None = None
    last_seen_at: datetime | None = None


class Provenance(BaseModel):
    """One upstream record that contributed to a merged meeting."""

    source: str
    external_id: str


class Meeting(BaseModel):
    """Canonical meeting shape shared by every source."""

    uid: str
    external: ExternalRef
    title: str
    start: datetime
    end: datetime
    tz: str = "UTC"
    location: str | None = None
    lat: float | None = None
    lng: float | None = None
    attendees: List[Attendee] = []
    status: MeetingStatus = "accepted"
    notes: str | None = None
    updated_at: datetime | None = None
    source: Literal["pull", "webhook"] = "pull"
    source_kind: str = "mtm"
    g_event_id: str | None = None
    provenance: List[Provenance] = []
    venue_id: str | None = None

    def content_fields(self) -> dict[str, object]:
        """Fields compared across passes to decide whether a record changed."""
        return {
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "tz": self.tz,
            "location": self.location,
            "lat": self.lat,
            "lng": self.lng,
            "with": [attendee.model_dump() for attendee in self.attendees],
            "status": self.status,
            "notes": self.notes,
        }

    def content_hash(self) -> str:
        payload = json.dumps(self.content_fields(), sort_keys=True, ensure_ascii=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = [
    "Attendee",
    "ExternalRef",
    "MEETING_STATUSES",
    "Meeting",
    "MeetingStatus",
    "Provenance",
    "SOURCE_KINDS",
]
