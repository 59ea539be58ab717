from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import time
from typing import Any, Callable, Iterable, Iterator, Mapping

from meetsync.errors import SyncError, SyncTimeoutError, error_kind
from meetsync.merge import PassDeduper
from meetsync.metrics import (
    meetings_canceled_total,
    sync_duration_seconds,
    sync_passes_total,
)
from meetsync.models import Meeting
from meetsync.normalizer import Geocoder, normalize_batch
from meetsync.utils import iso_z

from ..accounts import (
    Account,
    load_account,
    record_account_error,
    update_ics_cache,
    update_last_sync,
)
from ..config import AppSettings
from ..constants import PROVIDER_ICS, PROVIDER_MTM, SYNC_PROVIDERS
from ..db import (
    count_meetings,
    list_active_external_ids,
    list_meeting_rows,
    mark_meetings_canceled,
    supersede_meetings,
    upsert_meetings,
)
from ..locks import KeyedLock, build_sync_lock, hold_sync_lock
from ..mtm import MtmClient
from ..tokens import TokenManager
from .ics import fetch_ics, parse_ics_events, redacted_host
from .mirror import mirror_account
from .records import meeting_from_row, meeting_to_row

_logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    INGESTING = "ingesting"
    NORMALIZING = "normalizing"
    MERGING = "merging"
    UPSERTING = "upserting"
    DIFFING_CANCELLATIONS = "diffing_cancellations"
    FAILED = "failed"


def calendar_window(
    settings: AppSettings,
    *,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Day-aligned ``[start, end)`` window around ``now``."""
    anchor = (now or datetime.now(tz=timezone.utc)).astimezone(timezone.utc)
    past_days = max(0, int(settings.sync_window_past_days))
    future_days = max(1, int(settings.sync_window_future_days))
    start = (anchor - timedelta(days=past_days)).replace(
        hour=0,
        minute=0,
        second=0,
        microsecond=0,
    )
    end = (anchor + timedelta(days=future_days + 1)).replace(
        hour=0,
        minute=0,
        second=0,
        microsecond=0,
    )
    return start, end


def _raw_external_id(raw: Any) -> str | None:
    if not isinstance(raw, Mapping):
        return None
    for key in ("external_id", "id", "meetingId"):
        value = str(raw.get(key) or "").strip()
        if value:
            return value
    return None


@dataclass
class _PassStats:
    pages: int = 0
    processed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    reactivated: int = 0
    superseded: int = 0
    active_ids: set[str] = field(default_factory=set)


class SyncPass:
    """One refresh/ingest/normalize/merge/upsert/diff cycle for an account."""

    def __init__(
        self,
        account: Account,
        *,
        settings: AppSettings,
        token_manager: TokenManager,
        mtm_client: MtmClient,
        geocoder: Geocoder | None,
        now: datetime,
        monotonic: Callable[[], float],
    ) -> None:
        self.account = account
        self.settings = settings
        self.token_manager = token_manager
        self.mtm_client = mtm_client
        self.geocoder = geocoder
        self.now = now
        self._monotonic = monotonic
        self._deadline = monotonic() + float(settings.sync_budget_seconds)
        self.window_start, self.window_end = calendar_window(settings, now=now)
        self.deduper = PassDeduper(bucket_minutes=settings.dedup_bucket_minutes)
        self.stats = _PassStats()
        self.state = SyncState.IDLE

    @property
    def uid(self) -> str:
        return self.account.uid

    @property
    def provider(self) -> str:
        return self.account.provider

    def _enter(self, state: SyncState) -> None:
        self.state = state
        _logger.debug("Sync uid=%s provider=%s state=%s", self.uid, self.provider, state.value)

    def _check_deadline(self, pager: Any = None) -> None:
        if self._monotonic() < self._deadline:
            return
        close = getattr(pager, "close", None)
        if close is not None:
            close()
        raise SyncTimeoutError(
            f"Sync for {self.provider} exceeded {self.settings.sync_budget_seconds}s budget"
        )

    def _ingest_pages(self, pages: Iterator[list[dict[str, Any]]], source_kind: str) -> None:
        while True:
            self._check_deadline(pages)
            self._enter(SyncState.INGESTING)
            try:
                page = next(pages)
            except StopIteration:
                return
            self.stats.pages += 1
            self._process_page(page, source_kind)

    def _seed_from_storage(self) -> None:
        """Register stored in-window rows so incoming records compete with them."""
        rows = list_meeting_rows(
            self.uid,
            provider=self.provider,
            starts_from=iso_z(self.window_start),
            starts_before=iso_z(self.window_end),
            include_canceled=False,
            settings=self.settings,
        )
        duplicates: dict[str, str] = {}
        for row in rows:
            meeting = meeting_from_row(row)
            admission = self.deduper.seed(meeting)
            loser = admission.supersedes if admission.stored else meeting.external.id
            if loser is not None:
                duplicates[loser] = admission.holder
            if self.geocoder is not None and meeting.lat is not None and meeting.lng is not None:
                self.geocoder.remember(meeting.location, {"lat": meeting.lat, "lng": meeting.lng})
        self._retire(duplicates)

    def _retire(self, replacements: Mapping[str, str]) -> None:
        if not replacements:
            return
        retired = supersede_meetings(self.uid, self.provider, replacements, settings=self.settings)
        self.stats.superseded += retired
        if retired:
            _logger.info(
                "Retired %s duplicate meeting(s) uid=%s provider=%s",
                retired,
                self.uid,
                self.provider,
            )

    def _process_page(self, page: Iterable[dict[str, Any]], source_kind: str) -> None:
        records = list(page)
        for raw in records:
            external_id = _raw_external_id(raw)
            if external_id:
                self.stats.active_ids.add(external_id)

        self._enter(SyncState.NORMALIZING)
        meetings, skipped = normalize_batch(
            records,
            source_kind,
            uid=self.uid,
            provider=self.provider,
            geocoder=self.geocoder,
            seen_at=self.now,
            checkpoint=self._check_deadline,
        )
        self.stats.skipped += skipped
        self.stats.processed += len(meetings)

        self._enter(SyncState.MERGING)
        pending: dict[str, Meeting] = {}
        losers: dict[str, str] = {}
        for meeting in meetings:
            admission = self.deduper.admit(meeting)
            if admission.stored:
                pending[meeting.external.id] = meeting
                losers.pop(meeting.external.id, None)
            loser = admission.supersedes if admission.stored else meeting.external.id
            if loser is not None:
                pending.pop(loser, None)
                losers[loser] = admission.holder

        self._enter(SyncState.UPSERTING)
        if pending:
            counts = upsert_meetings(
                self.uid,
                self.provider,
                [meeting_to_row(meeting) for meeting in pending.values()],
                settings=self.settings,
            )
            self.stats.created += counts["created"]
            self.stats.updated += counts["updated"]
            self.stats.unchanged += counts["unchanged"]
            self.stats.reactivated += counts["reactivated"]
        self._retire(losers)

    def _diff_cancellations(self) -> int:
        self._enter(SyncState.DIFFING_CANCELLATIONS)
        previously_active = list_active_external_ids(
            self.uid,
            self.provider,
            window_start=iso_z(self.window_start),
            window_end=iso_z(self.window_end),
            settings=self.settings,
        )
        missing = previously_active - self.stats.active_ids
        canceled = mark_meetings_canceled(self.uid, self.provider, missing, settings=self.settings)
        if canceled:
            meetings_canceled_total.labels(provider=self.provider).inc(canceled)
            _logger.info(
                "Canceled %s meeting(s) missing upstream uid=%s provider=%s",
                canceled,
                self.uid,
                self.provider,
            )
        return canceled

    def _run_mtm(self) -> dict[str, Any]:
        self._enter(SyncState.REFRESHING)
        token = self.token_manager.ensure_fresh_token(self.account, self.uid)
        self._enter(SyncState.INGESTING)
        pager = self.mtm_client.paginate_meetings(token, self.window_start, self.window_end)
        try:
            self._ingest_pages(pager, PROVIDER_MTM)
        finally:
            pager.close()
        return {"not_modified": False, "canceled": self._diff_cancellations()}

    def _run_ics(self) -> dict[str, Any]:
        if not self.account.ics_url:
            raise SyncError("ICS account has no feed URL")
        self._enter(SyncState.INGESTING)
        fetched = fetch_ics(
            self.account.ics_url,
            settings=self.settings,
            etag=self.account.etag,
            last_modified=self.account.last_modified,
        )
        if fetched.not_modified:
            _logger.info(
                "Calendar feed not modified uid=%s host=%s",
                self.uid,
                redacted_host(self.account.ics_url),
            )
            return {"not_modified": True, "canceled": 0}
        self._check_deadline()
        rows = parse_ics_events(
            fetched.data or b"",
            window_start=self.window_start,
            window_end=self.window_end,
            synced_at=self.now,
        )
        self._ingest_pages(iter([rows]), PROVIDER_ICS)
        canceled = self._diff_cancellations()
        update_ics_cache(
            self.uid,
            self.provider,
            etag=fetched.etag,
            last_modified=fetched.last_modified,
            settings=self.settings,
        )
        return {"not_modified": False, "canceled": canceled}

    def run(self) -> dict[str, Any]:
        self._seed_from_storage()
        if self.provider == PROVIDER_MTM:
            outcome = self._run_mtm()
        else:
            outcome = self._run_ics()
        update_last_sync(self.uid, self.provider, at=self.now, settings=self.settings)
        self._enter(SyncState.IDLE)
        return {
            "uid": self.uid,
            "provider": self.provider,
            "count": self.stats.processed,
            "pages": self.stats.pages,
            "created": self.stats.created,
            "updated": self.stats.updated,
            "unchanged": self.stats.unchanged,
            "reactivated": self.stats.reactivated,
            "skipped": self.stats.skipped,
            "collapsed": self.deduper.collapsed,
            "superseded": self.stats.superseded,
            "canceled": outcome["canceled"],
            "not_modified": outcome["not_modified"],
            "stored": count_meetings(self.uid, self.provider, settings=self.settings),
            "window_start": iso_z(self.window_start),
            "window_end": iso_z(self.window_end),
            "synced_at": iso_z(self.now),
        }


def _record_failure(
    uid: str,
    provider: str,
    exc: BaseException,
    *,
    sync_pass: SyncPass | None,
    settings: AppSettings,
) -> None:
    if sync_pass is not None:
        sync_pass.state = SyncState.FAILED
    sync_passes_total.labels(provider=provider, outcome=error_kind(exc)).inc()
    record_account_error(uid, provider, exc, settings=settings)


def sync_account(
    uid: str,
    provider: str,
    *,
    settings: AppSettings,
    lock: KeyedLock | None = None,
    token_manager: TokenManager | None = None,
    mtm_client: MtmClient | None = None,
    geocoder: Geocoder | None = None,
    mirror: bool = True,
    mirror_service: Any | None = None,
    now: datetime | None = None,
    monotonic: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """Run one sync pass; raises ``SyncInProgressError`` if one is already running."""
    if provider not in SYNC_PROVIDERS:
        raise ValueError(f"Provider {provider} is not a sync source")
    with hold_sync_lock(lock or build_sync_lock(settings), uid, provider):
        started = monotonic()
        account: Account | None = None
        sync_pass: SyncPass | None = None
        try:
            account = load_account(uid, provider, settings=settings)
            if account is None:
                raise LookupError(f"No {provider} account for uid={uid}")
            sync_pass = SyncPass(
                account,
                settings=settings,
                token_manager=token_manager or TokenManager(settings),
                mtm_client=mtm_client or MtmClient(settings),
                geocoder=geocoder
                if geocoder is not None
                else Geocoder(
                    settings.google_geocoding_api_key,
                    timeout_seconds=settings.geocode_timeout_seconds,
                ),
                now=now or datetime.now(tz=timezone.utc),
                monotonic=monotonic,
            )
            result = sync_pass.run()
        except SyncError as exc:
            _record_failure(uid, provider, exc, sync_pass=sync_pass, settings=settings)
            _logger.warning(
                "Sync failed uid=%s provider=%s kind=%s: %s",
                uid,
                provider,
                exc.kind,
                exc,
            )
            raise
        except Exception as exc:
            if account is None and isinstance(exc, LookupError):
                raise
            _record_failure(uid, provider, exc, sync_pass=sync_pass, settings=settings)
            _logger.exception("Sync crashed uid=%s provider=%s", uid, provider)
            raise
        finally:
            sync_duration_seconds.observe(max(0.0, monotonic() - started))
        sync_passes_total.labels(provider=provider, outcome="ok").inc()
        _logger.info(
            "Sync finished uid=%s provider=%s count=%s created=%s updated=%s canceled=%s",
            uid,
            provider,
            result["count"],
            result["created"],
            result["updated"],
            result["canceled"],
        )

        if account.mirror_enabled and mirror:
            try:
                result["mirrored"] = mirror_account(
                    uid,
                    provider,
                    settings=settings,
                    service=mirror_service,
                    token_manager=sync_pass.token_manager,
                )
            except (SyncError, LookupError) as exc:
                _logger.error("Mirror pass failed uid=%s provider=%s: %s", uid, provider, exc)
                result["mirrored"] = 0
                result["mirror_error"] = str(exc)
        return result


__all__ = [
    "SyncPass",
    "SyncState",
    "calendar_window",
    "sync_account",
]
