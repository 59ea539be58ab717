"""Readiness probes for the API process and the sync worker.

Every probe returns ``{"component", "ok", "detail"}`` and never raises; the
``sync`` probe fails when connected accounts fall behind the schedule.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import sys
from typing import Any, Callable

from redis import Redis
from rq import Worker as RQWorker

from meetsync.errors import EncryptionFailureError

from .accounts import list_accounts
from .config import AppSettings
from .constants import (
    ACCOUNT_STATUS_CONNECTED,
    ACCOUNT_STATUS_REAUTH_REQUIRED,
    SYNC_PROVIDERS,
)
from .db import connect, init_db
from .keystore import get_vault

_WORKER_HEARTBEAT_STALE_SECONDS = 180
_SYNC_LAG_INTERVALS = 3


class HealthCheckFailed(RuntimeError):
    pass


def _db_probe(cfg: AppSettings) -> str:
    init_db(cfg)
    with connect(cfg) as conn:
        version = int(conn.execute("PRAGMA user_version").fetchone()[0])
        accounts = int(conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0])
    return f"schema v{version}, {accounts} account(s)"


def _vault_probe(cfg: AppSettings) -> str:
    try:
        get_vault(cfg).ensure_key_available()
    except (EncryptionFailureError, ValueError) as exc:
        raise HealthCheckFailed(str(exc)) from exc
    return "data key available"


def _redis_probe(cfg: AppSettings) -> str:
    Redis.from_url(cfg.redis_url).ping()
    return "ok"


def _worker_probe(cfg: AppSettings) -> str:
    redis = check_health_component("redis", settings=cfg)
    if not redis["ok"]:
        raise HealthCheckFailed(f"redis unavailable: {redis['detail']}")

    workers = [
        worker
        for worker in RQWorker.all(connection=Redis.from_url(cfg.redis_url))
        if cfg.rq_queue_name in {str(name) for name in worker.queue_names()}
    ]
    if not workers:
        raise HealthCheckFailed(f"no sync worker registered for queue '{cfg.rq_queue_name}'")

    now = datetime.now(tz=timezone.utc)
    for worker in workers:
        heartbeat = getattr(worker, "last_heartbeat", None)
        if heartbeat is None:
            continue
        if heartbeat.tzinfo is None:
            heartbeat = heartbeat.replace(tzinfo=timezone.utc)
        age = (now - heartbeat).total_seconds()
        if age <= _WORKER_HEARTBEAT_STALE_SECONDS:
            return f"worker '{worker.name}' heartbeat {int(age)}s ago"
    raise HealthCheckFailed("sync worker heartbeat is stale")


def _sync_probe(cfg: AppSettings, *, now: datetime | None = None) -> str:
    anchor = now or datetime.now(tz=timezone.utc)
    max_lag = timedelta(seconds=cfg.sync_interval_seconds * _SYNC_LAG_INTERVALS)
    accounts = [a for a in list_accounts(settings=cfg) if a.provider in SYNC_PROVIDERS]
    reconnect = sum(1 for a in accounts if a.status == ACCOUNT_STATUS_REAUTH_REQUIRED)
    behind = 0
    for account in accounts:
        if account.status != ACCOUNT_STATUS_CONNECTED:
            continue
        reference = account.last_sync_at or account.connected_at
        if reference is None:
            continue
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        if anchor - reference > max_lag:
            behind += 1
    detail = f"{len(accounts)} account(s), {reconnect} need reconnect, {behind} behind schedule"
    if behind:
        raise HealthCheckFailed(detail)
    return detail


_PROBES: dict[str, Callable[[AppSettings], str]] = {
    "app": lambda _cfg: "ok",
    "db": _db_probe,
    "vault": _vault_probe,
    "redis": _redis_probe,
    "worker": _worker_probe,
    "sync": _sync_probe,
}
COMPONENTS = tuple(_PROBES)


def check_health_component(
    component: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    """Run one probe; raises ``KeyError`` for an unknown component."""
    probe = _PROBES[component]
    cfg = settings or AppSettings()
    try:
        detail = probe(cfg)
    except HealthCheckFailed as exc:
        return {"component": component, "ok": False, "detail": str(exc)}
    except Exception as exc:
        return {"component": component, "ok": False, "detail": str(exc) or type(exc).__name__}
    return {"component": component, "ok": True, "detail": detail}


def collect_health_checks(settings: AppSettings | None = None) -> dict[str, dict[str, Any]]:
    cfg = settings or AppSettings()
    return {component: check_health_component(component, settings=cfg) for component in COMPONENTS}


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    target = args[0] if args else "all"
    if target != "all" and target not in _PROBES:
        print(f"unsupported target: {target}")
        return 2

    if target == "all":
        checks = collect_health_checks()
        print(json.dumps(checks, ensure_ascii=True))
        return 0 if all(item["ok"] for item in checks.values()) else 1

    payload = check_health_component(target)
    print(json.dumps(payload, ensure_ascii=True))
    return 0 if payload["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
