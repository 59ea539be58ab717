from __future__ import annotations

from prometheus_client import Counter, Histogram

sync_passes_total = Counter(
    "meetsync_sync_passes_total",
    "Sync passes by provider and outcome",
    ["provider", "outcome"],
)

sync_duration_seconds = Histogram(
    "meetsync_sync_duration_seconds",
    "Wall-clock duration of sync passes",
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120),
)

records_skipped_total = Counter(
    "meetsync_records_skipped_total",
    "Upstream records skipped as malformed",
    ["source"],
)

meetings_canceled_total = Counter(
    "meetsync_meetings_canceled_total",
    "Meetings transitioned to canceled by the cancellation diff",
    ["provider"],
)

mirror_writes_total = Counter(
    "meetsync_mirror_writes_total",
    "Google Calendar mirror writes by action",
    ["action"],
)

token_refresh_total = Counter(
    "meetsync_token_refresh_total",
    "OAuth token refresh attempts by provider and outcome",
    ["provider", "outcome"],
)


__all__ = [
    "meetings_canceled_total",
    "mirror_writes_total",
    "records_skipped_total",
    "sync_duration_seconds",
    "sync_passes_total",
    "token_refresh_total",
]
