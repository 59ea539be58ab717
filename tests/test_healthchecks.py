from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

from meetsync.errors import AuthExpiredError
from meetsync_app import healthchecks
from meetsync_app.accounts import record_account_error, update_last_sync, upsert_account
from meetsync_app.config import AppSettings


def _cfg(tmp_path: Path) -> AppSettings:
    return AppSettings(data_root=tmp_path, db_path=tmp_path / "db" / "meetsync.db")


class _DownRedis:
    @classmethod
    def from_url(cls, _url):
        return cls()

    def ping(self):
        raise ConnectionError("connection refused")


def test_db_and_vault_checks_pass(tmp_path: Path):
    cfg = _cfg(tmp_path)
    assert healthchecks.check_db_health(cfg)["ok"] is True
    assert healthchecks.check_vault_health(cfg)["ok"] is True


def test_redis_down_fails_redis_and_worker(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(healthchecks, "Redis", _DownRedis)
    cfg = _cfg(tmp_path)

    checks = healthchecks.collect_health_checks(cfg)

    assert checks["app"]["ok"] is True
    assert checks["redis"] == {"component": "redis", "ok": False, "detail": "connection refused"}
    assert checks["worker"]["detail"].startswith("redis unavailable")


def test_main_reports_single_component(capsys):
    assert healthchecks.main(["app"]) == 0
    assert json.loads(capsys.readouterr().out)["component"] == "app"


def test_main_rejects_unknown_target(capsys):
    assert healthchecks.main(["bogus"]) == 2
    assert "unsupported target" in capsys.readouterr().out


def test_sync_check_flags_accounts_behind_schedule(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("fresh", "ics", {"ics_url": "https://cal.example.com/a.ics"}, settings=cfg)
    update_last_sync("fresh", "ics", settings=cfg)
    upsert_account("lagging", "mtm", {"access_token": "a"}, settings=cfg)
    update_last_sync("lagging", "mtm", at=datetime.now(tz=timezone.utc) - timedelta(days=1), settings=cfg)

    payload = healthchecks.check_health_component("sync", settings=cfg)

    assert payload["ok"] is False
    assert payload["detail"] == "2 account(s), 0 need reconnect, 1 behind schedule"


def test_sync_check_ignores_accounts_waiting_for_reconnect(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("expired", "mtm", {"access_token": "a"}, settings=cfg)
    update_last_sync("expired", "mtm", at=datetime.now(tz=timezone.utc) - timedelta(days=1), settings=cfg)
    record_account_error("expired", "mtm", AuthExpiredError("revoked"), settings=cfg)

    payload = healthchecks.check_health_component("sync", settings=cfg)

    assert payload["ok"] is True
    assert "1 need reconnect" in payload["detail"]
