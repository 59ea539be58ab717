"""Collapse records that describe the same real-world meeting.

Two records are the same meeting when their fingerprints match: the
lowercased, whitespace-collapsed title plus the start time floored to a fixed
bucket. The richer record wins: non-empty location first, then the longer
title, then source priority (meeting API > ICS > anything else), then input
order, so identical input always yields identical output.
"""

from __future__ import annotations

from typing import Iterable, Mapping, NamedTuple, Sequence

from .models import Meeting, Provenance
from .utils import collapse_whitespace

DEFAULT_BUCKET_MINUTES = 10
SOURCE_PRIORITY = {"mtm": 0, "ics": 1}
_OTHER_SOURCE_PRIORITY = 2
_STATUS_RANK = {"pending": 0, "accepted": 1, "declined": 2, "canceled": 3}


def source_priority(source_kind: str) -> int:
    return SOURCE_PRIORITY.get(source_kind, _OTHER_SOURCE_PRIORITY)


def meeting_fingerprint(meeting: Meeting, *, bucket_minutes: int = DEFAULT_BUCKET_MINUTES) -> str:
    title = collapse_whitespace(meeting.title).lower()
    bucket_seconds = max(1, int(bucket_minutes)) * 60
    bucket = int(meeting.start.timestamp()) // bucket_seconds
    return f"{title}|{bucket}"


def _preference_key(meeting: Meeting, order: int) -> tuple[int, int, int, int]:
    return (
        1 if collapse_whitespace(meeting.location) else 0,
        len(collapse_whitespace(meeting.title)),
        -source_priority(meeting.source_kind),
        -order,
    )


def match_venue(
    location: str | None,
    venue_aliases: Mapping[str, Iterable[str]] | None,
) -> str | None:
    """Return the first venue id (sorted) whose alias occurs in ``location``."""
    text = collapse_whitespace(location).lower()
    if not text or not venue_aliases:
        return None
    for venue_id in sorted(venue_aliases):
        for alias in venue_aliases[venue_id]:
            needle = collapse_whitespace(alias).lower()
            if needle and needle in text:
                return venue_id
    return None


def _provenance_of(meeting: Meeting) -> list[Provenance]:
    if meeting.provenance:
        return list(meeting.provenance)
    return [Provenance(source=meeting.source_kind, external_id=meeting.external.id)]


def merge_and_dedupe(
    meetings_by_source: Sequence[Sequence[Meeting]],
    *,
    venue_aliases: Mapping[str, Iterable[str]] | None = None,
    bucket_minutes: int = DEFAULT_BUCKET_MINUTES,
) -> list[Meeting]:
    groups: dict[str, list[tuple[int, Meeting]]] = {}
    order = 0
    for batch in meetings_by_source:
        for meeting in batch:
            fp = meeting_fingerprint(meeting, bucket_minutes=bucket_minutes)
            groups.setdefault(fp, []).append((order, meeting))
            order += 1

    merged: list[tuple[str, Meeting]] = []
    for fp, members in groups.items():
        winner_order, winner = max(members, key=lambda item: _preference_key(item[1], item[0]))
        provenance = _provenance_of(winner)
        seen = {(item.source, item.external_id) for item in provenance}
        others = sorted(
            (item for item in members if item[0] != winner_order),
            key=lambda item: (source_priority(item[1].source_kind), item[0]),
        )
        for _order, other in others:
            for entry in _provenance_of(other):
                marker = (entry.source, entry.external_id)
                if marker in seen:
                    continue
                seen.add(marker)
                provenance.append(entry)
        merged.append(
            (
                fp,
                winner.model_copy(
                    update={
                        "provenance": provenance,
                        "venue_id": match_venue(winner.location, venue_aliases),
                    }
                ),
            )
        )

    merged.sort(key=lambda item: (item[1].start, item[0]))
    return [meeting for _fp, meeting in merged]


class Admission(NamedTuple):
    stored: bool
    holder: str
    supersedes: str | None = None


class PassDeduper:
    """Incremental dedup across the pages of one sync pass.

    ``seed`` registers records that are already stored; ``admit`` offers a
    freshly pulled one. Both return an :class:`Admission`: ``stored`` is True
    when the meeting is new for its fingerprint or beats the current holder,
    and ``holder`` is the external id that owns the fingerprint afterwards.
    ``supersedes`` names the holder it displaced; the losing record, displaced
    or rejected, must be retired so only one active row per fingerprint
    remains.
    """

    def __init__(self, *, bucket_minutes: int = DEFAULT_BUCKET_MINUTES) -> None:
        self.bucket_minutes = bucket_minutes
        self._winners: dict[str, tuple[tuple[int, int, int, int], str]] = {}
        self._fingerprint_of: dict[str, str] = {}
        self._order = 0
        self.collapsed = 0

    def seed(self, meeting: Meeting) -> Admission:
        return self._offer(meeting, count=False)

    def admit(self, meeting: Meeting) -> Admission:
        return self._offer(meeting, count=True)

    def _offer(self, meeting: Meeting, *, count: bool) -> Admission:
        fp = meeting_fingerprint(meeting, bucket_minutes=self.bucket_minutes)
        key = _preference_key(meeting, self._order)
        self._order += 1
        external_id = meeting.external.id

        previous_fp = self._fingerprint_of.get(external_id)
        if previous_fp is not None and previous_fp != fp:
            # Retitled or moved: the old slot no longer belongs to this record.
            if self._winners.get(previous_fp, (None, None))[1] == external_id:
                del self._winners[previous_fp]
            del self._fingerprint_of[external_id]

        current = self._winners.get(fp)
        if current is not None and current[1] == external_id:
            # Same record seen again keeps its original tie-break position.
            self._winners[fp] = (key[:3] + current[0][3:], external_id)
            return Admission(True, external_id)
        if current is None or key > current[0]:
            self._winners[fp] = (key, external_id)
            self._fingerprint_of[external_id] = fp
            if current is None:
                return Admission(True, external_id)
            self._fingerprint_of.pop(current[1], None)
            if count:
                self.collapsed += 1
            return Admission(True, external_id, current[1])
        if count:
            self.collapsed += 1
        return Admission(False, current[1])


def resolve_status(existing: str | None, incoming: str) -> str:
    """Statuses only move towards more terminal, except reactivation after cancel."""
    if existing is None or existing == incoming:
        return incoming
    if existing == "canceled":
        return incoming
    if _STATUS_RANK.get(incoming, 0) >= _STATUS_RANK.get(existing, 0):
        return incoming
    return existing


__all__ = [
    "Admission",
    "DEFAULT_BUCKET_MINUTES",
    "PassDeduper",
    "SOURCE_PRIORITY",
    "match_venue",
    "meeting_fingerprint",
    "merge_and_dedupe",
    "resolve_status",
    "source_priority",
]
