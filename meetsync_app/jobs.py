from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging

from redis import Redis
from rq import Queue, Retry

from .accounts import list_accounts
from .config import AppSettings
from .constants import ACCOUNT_STATUS_REAUTH_REQUIRED, SYNC_PROVIDERS
from .db import init_db
from .worker_tasks import run_account_sync

_ACTIVE_JOB_STATUSES = {"queued", "started", "deferred", "scheduled"}
_RETRY_INTERVALS_SECONDS = [30, 120]
_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncJob:
    """Queue envelope for one scheduled account sync."""

    job_id: str
    uid: str
    provider: str


def get_queue(settings: AppSettings | None = None) -> Queue:
    cfg = settings or AppSettings()
    connection = Redis.from_url(cfg.redis_url)
    return Queue(name=cfg.rq_queue_name, connection=connection)


def sync_job_id(uid: str, provider: str, *, slot: int) -> str:
    """Deterministic id so one account is enqueued at most once per interval slot."""
    digest = hashlib.sha1(uid.encode("utf-8")).hexdigest()[:16]
    return f"sync-{provider}-{digest}-{slot}"


def _status_value(status: object | None) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", str(status))


def _job_is_active(queue: Queue, job_id: str) -> bool:
    job = queue.fetch_job(job_id)
    if job is None:
        return False
    return _status_value(job.get_status(refresh=True)) in _ACTIVE_JOB_STATUSES


def enqueue_account_sync(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
    queue: Queue | None = None,
    now: datetime | None = None,
) -> SyncJob | None:
    cfg = settings or AppSettings()
    if provider not in SYNC_PROVIDERS:
        raise ValueError(f"Unsupported sync provider: {provider}")
    anchor = now or datetime.now(tz=timezone.utc)
    slot = int(anchor.timestamp()) // max(1, cfg.sync_interval_seconds)
    job_id = sync_job_id(uid, provider, slot=slot)
    target = queue or get_queue(cfg)
    if _job_is_active(target, job_id):
        return None

    target.enqueue(
        run_account_sync,
        uid,
        provider,
        job_id=job_id,
        job_timeout=cfg.rq_job_timeout_seconds,
        retry=Retry(max=len(_RETRY_INTERVALS_SECONDS), interval=_RETRY_INTERVALS_SECONDS),
    )
    return SyncJob(job_id=job_id, uid=uid, provider=provider)


def schedule_due_syncs(
    settings: AppSettings | None = None,
    *,
    now: datetime | None = None,
    queue: Queue | None = None,
) -> list[SyncJob]:
    """Enqueue a sync for every account whose last sync is older than the interval."""
    cfg = settings or AppSettings()
    init_db(cfg)
    anchor = now or datetime.now(tz=timezone.utc)
    target = queue
    enqueued: list[SyncJob] = []
    for provider in SYNC_PROVIDERS:
        for account in list_accounts(provider=provider, settings=cfg):
            if account.status == ACCOUNT_STATUS_REAUTH_REQUIRED:
                continue
            last = account.last_sync_at
            if last is not None:
                if last.tzinfo is None:
                    last = last.replace(tzinfo=timezone.utc)
                if (anchor - last).total_seconds() < cfg.sync_interval_seconds:
                    continue
            if target is None:
                target = get_queue(cfg)
            job = enqueue_account_sync(
                account.uid,
                provider,
                settings=cfg,
                queue=target,
                now=anchor,
            )
            if job is not None:
                enqueued.append(job)
    if enqueued:
        _logger.info("Enqueued %s scheduled sync job(s)", len(enqueued))
    return enqueued


__all__ = [
    "SyncJob",
    "enqueue_account_sync",
    "get_queue",
    "schedule_due_syncs",
    "sync_job_id",
]
