from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from meetsync.errors import (
    AuthExpiredError,
    SyncInProgressError,
    TransientNetworkError,
)
from meetsync_app import jobs, worker_tasks
from meetsync_app.accounts import record_account_error, update_last_sync, upsert_account
from meetsync_app.config import AppSettings

_NOW = datetime(2025, 8, 19, 9, 0, tzinfo=timezone.utc)


def _cfg(tmp_path: Path) -> AppSettings:
    return AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "meetsync.db",
    )


class _FakeJob:
    def __init__(self, status: str) -> None:
        self._status = status

    def get_status(self, refresh: bool = True) -> str:
        return self._status


class _FakeQueue:
    def __init__(self) -> None:
        self.jobs: dict[str, _FakeJob] = {}
        self.enqueued: list[dict] = []

    def fetch_job(self, job_id: str):
        return self.jobs.get(job_id)

    def enqueue(self, func, *args, **kwargs):
        self.enqueued.append({"func": func, "args": args, **kwargs})
        self.jobs[kwargs["job_id"]] = _FakeJob("queued")
        return self.jobs[kwargs["job_id"]]


def test_sync_job_id_is_deterministic_and_hides_uid():
    first = jobs.sync_job_id("user@example.com", "mtm", slot=7)
    assert first == jobs.sync_job_id("user@example.com", "mtm", slot=7)
    assert first != jobs.sync_job_id("user@example.com", "mtm", slot=8)
    assert first.startswith("sync-mtm-")
    assert "user" not in first


def test_enqueue_account_sync_skips_active_job(tmp_path: Path):
    cfg = _cfg(tmp_path)
    queue = _FakeQueue()

    job = jobs.enqueue_account_sync("user-1", "ics", settings=cfg, queue=queue, now=_NOW)
    again = jobs.enqueue_account_sync("user-1", "ics", settings=cfg, queue=queue, now=_NOW)

    assert job is not None
    assert again is None
    [entry] = queue.enqueued
    assert entry["func"] is worker_tasks.run_account_sync
    assert entry["args"] == ("user-1", "ics")
    assert entry["job_timeout"] == cfg.rq_job_timeout_seconds
    assert entry["retry"].max == 2


def test_enqueue_account_sync_requeues_finished_job(tmp_path: Path):
    cfg = _cfg(tmp_path)
    queue = _FakeQueue()
    job = jobs.enqueue_account_sync("user-1", "ics", settings=cfg, queue=queue, now=_NOW)
    queue.jobs[job.job_id] = _FakeJob("finished")

    assert jobs.enqueue_account_sync("user-1", "ics", settings=cfg, queue=queue, now=_NOW) is not None
    assert len(queue.enqueued) == 2


def test_enqueue_account_sync_rejects_google(tmp_path: Path):
    with pytest.raises(ValueError):
        jobs.enqueue_account_sync("user-1", "google", settings=_cfg(tmp_path), queue=_FakeQueue())


def test_schedule_due_syncs_picks_stale_accounts_only(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("never", "mtm", {"access_token": "a"}, settings=cfg)
    upsert_account("recent", "mtm", {"access_token": "a"}, settings=cfg)
    update_last_sync("recent", "mtm", at=_NOW - timedelta(minutes=5), settings=cfg)
    upsert_account("stale", "ics", {"ics_url": "https://cal.example.com/a.ics"}, settings=cfg)
    update_last_sync("stale", "ics", at=_NOW - timedelta(hours=2), settings=cfg)
    upsert_account("expired", "mtm", {"access_token": "a"}, settings=cfg)
    record_account_error("expired", "mtm", AuthExpiredError("revoked"), settings=cfg)
    upsert_account("calendar-only", "google", {"access_token": "g"}, settings=cfg)
    queue = _FakeQueue()

    scheduled = jobs.schedule_due_syncs(cfg, now=_NOW, queue=queue)

    assert {(job.uid, job.provider) for job in scheduled} == {("never", "mtm"), ("stale", "ics")}
    assert len(queue.enqueued) == 2


def test_schedule_due_syncs_with_no_accounts_touches_no_queue(tmp_path: Path, monkeypatch):
    def _no_queue(_settings=None):
        raise AssertionError("queue should not be opened")

    monkeypatch.setattr(jobs, "get_queue", _no_queue)

    assert jobs.schedule_due_syncs(_cfg(tmp_path), now=_NOW) == []


def test_run_account_sync_returns_result(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(
        worker_tasks,
        "sync_account",
        lambda uid, provider, settings: {"uid": uid, "provider": provider, "count": 3},
    )

    result = worker_tasks.run_account_sync("user-1", "mtm", settings=_cfg(tmp_path))

    assert result["count"] == 3


@pytest.mark.parametrize(
    "exc",
    [SyncInProgressError("busy", retry_after=10), LookupError("gone")],
)
def test_run_account_sync_skips_busy_or_removed_accounts(tmp_path: Path, monkeypatch, exc):
    def _raise(*_args, **_kwargs):
        raise exc

    monkeypatch.setattr(worker_tasks, "sync_account", _raise)

    result = worker_tasks.run_account_sync("user-1", "mtm", settings=_cfg(tmp_path))

    assert result["skipped"] is True


def test_run_account_sync_reraises_retryable_errors(tmp_path: Path, monkeypatch):
    def _raise(*_args, **_kwargs):
        raise TransientNetworkError("upstream 503")

    monkeypatch.setattr(worker_tasks, "sync_account", _raise)

    with pytest.raises(TransientNetworkError):
        worker_tasks.run_account_sync("user-1", "mtm", settings=_cfg(tmp_path))


def test_run_account_sync_reports_permanent_errors(tmp_path: Path, monkeypatch):
    def _raise(*_args, **_kwargs):
        raise AuthExpiredError("revoked")

    monkeypatch.setattr(worker_tasks, "sync_account", _raise)

    result = worker_tasks.run_account_sync("user-1", "mtm", settings=_cfg(tmp_path))

    assert result == {"uid": "user-1", "provider": "mtm", "ok": False, "error_kind": "auth_expired"}
