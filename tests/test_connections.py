from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
import respx

from meetsync.errors import RateLimitedError
from meetsync.normalizer import Geocoder
from meetsync_app import connections
from meetsync_app.accounts import load_account, upsert_account
from meetsync_app.calendar.mirror import event_body
from meetsync_app.config import AppSettings
from meetsync_app.db import count_meetings, get_meeting_row, upsert_meetings
from meetsync_app.locks import MemoryKeyedLock
from meetsync_app.oauth import TokenGrant

_FIXTURES = Path(__file__).parent / "fixtures"
_FEED_URL = "https://cal.example.com/private/abc123/team.ics"
_NOW = datetime(2025, 8, 19, 9, 0, tzinfo=timezone.utc)


class _FakeOAuth:
    revoked: list[str] = []

    def __init__(self, provider: str, settings: AppSettings) -> None:
        self.provider = provider
        self.is_configured = True

    def exchange_code(self, code: str) -> TokenGrant:
        return TokenGrant(access_token=f"access-for-{code}", refresh_token="refresh-1", expires_in=3600)

    def revoke(self, token: str | None) -> bool:
        _FakeOAuth.revoked.append(str(token))
        return True


@pytest.fixture(autouse=True)
def _reset_revoked():
    _FakeOAuth.revoked = []


def _cfg(tmp_path: Path) -> AppSettings:
    cfg = AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "meetsync.db",
        retry_initial_seconds=0,
        retry_max_seconds=0,
        retry_jitter_seconds=0,
    )
    cfg.retry_max_attempts = 1
    return cfg


def _row(external_id: str, **overrides):
    row = {
        "external_id": external_id,
        "title": "Team Sync",
        "starts_at": "2025-08-20T10:00:00Z",
        "ends_at": "2025-08-20T11:00:00Z",
        "status": "accepted",
        "source_kind": "mtm",
    }
    row.update(overrides)
    return row


@respx.mock
def test_connect_ics_validates_feed_and_stores_encrypted_url(tmp_path: Path):
    cfg = _cfg(tmp_path)
    respx.get(_FEED_URL).mock(
        return_value=httpx.Response(200, content=(_FIXTURES / "team_sync.ics").read_bytes())
    )

    payload = connections.connect(
        "user-1", "ics", settings=cfg, ics_url=_FEED_URL.replace("https://", "webcal://"), now=_NOW
    )

    assert payload["connected"] is True
    assert payload["status"] == "connected"
    assert payload["lastSyncAt"] is None
    assert load_account("user-1", "ics", settings=cfg).ics_url == _FEED_URL


@respx.mock
def test_connect_ics_rejects_broken_feed(tmp_path: Path):
    from meetsync.errors import MalformedFeedError

    cfg = _cfg(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=b"<html>login</html>"))

    with pytest.raises(MalformedFeedError):
        connections.connect("user-1", "ics", settings=cfg, ics_url=_FEED_URL, now=_NOW)
    assert load_account("user-1", "ics", settings=cfg) is None


def test_connect_ics_rejects_unsafe_url(tmp_path: Path):
    with pytest.raises(ValueError):
        connections.connect("user-1", "ics", settings=_cfg(tmp_path), ics_url="http://localhost/x.ics")


def test_connect_oauth_provider_exchanges_code(tmp_path: Path):
    cfg = _cfg(tmp_path)

    payload = connections.connect(
        "user-1", "mtm", settings=cfg, code="code-9", oauth_factory=_FakeOAuth
    )

    account = load_account("user-1", "mtm", settings=cfg)
    assert payload["connected"] is True
    assert account.access_token == "access-for-code-9"
    assert account.refresh_token == "refresh-1"


def test_connect_oauth_requires_code(tmp_path: Path):
    with pytest.raises(ValueError):
        connections.connect("user-1", "mtm", settings=_cfg(tmp_path), code="  ", oauth_factory=_FakeOAuth)


def test_status_for_unknown_and_connected_accounts(tmp_path: Path):
    cfg = _cfg(tmp_path)
    assert connections.status("user-1", "mtm", settings=cfg)["connected"] is False

    upsert_account("user-1", "mtm", {"access_token": "a"}, settings=cfg)
    upsert_account("user-1", "google", {"access_token": "g"}, settings=cfg)
    upsert_meetings("user-1", "mtm", [_row("m-1"), _row("m-2", status="canceled")], settings=cfg)

    payload = connections.status("user-1", "mtm", settings=cfg)

    assert payload["connected"] is True
    assert payload["hasGoogleAuth"] is True
    assert payload["meetingCount"] == 1
    assert payload["mirrorEnabled"] is False
    assert payload["calendarId"] == "primary"
    assert payload["reconnectRequired"] is False


@respx.mock
def test_sync_now_is_rate_limited_after_recent_sync(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("user-1", "ics", {"ics_url": _FEED_URL}, settings=cfg)
    respx.get(_FEED_URL).mock(
        return_value=httpx.Response(200, content=(_FIXTURES / "team_sync.ics").read_bytes())
    )

    result = connections.sync_now(
        "user-1", "ics", settings=cfg, now=_NOW, lock=MemoryKeyedLock(), geocoder=Geocoder()
    )
    assert result["count"] == 1

    with pytest.raises(RateLimitedError) as excinfo:
        connections.sync_now("user-1", "ics", settings=cfg, now=_NOW + timedelta(seconds=60))
    assert excinfo.value.retry_after == pytest.approx(540.0)


def test_sync_now_requires_connection(tmp_path: Path):
    with pytest.raises(connections.AccountNotFoundError):
        connections.sync_now("user-1", "mtm", settings=_cfg(tmp_path))


def test_sync_now_rejects_google(tmp_path: Path):
    with pytest.raises(ValueError):
        connections.sync_now("user-1", "google", settings=_cfg(tmp_path))


def test_enabling_mirror_runs_initial_pass(tmp_path: Path, fake_calendar):
    cfg = _cfg(tmp_path)
    upsert_account("user-1", "mtm", {"access_token": "a"}, settings=cfg)
    upsert_meetings("user-1", "mtm", [_row("m-1")], settings=cfg)

    payload = connections.set_mirror(
        "user-1", "mtm", enabled=True, calendar_id="work", settings=cfg, mirror_service=fake_calendar
    )

    assert payload["mirrorEnabled"] is True
    assert payload["mirrored"] == 1
    assert payload["calendarId"] == "work"
    [event] = fake_calendar.events_api.items.values()
    assert event["calendarId"] == "work"


def test_enabling_mirror_without_google_reports_error(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("user-1", "mtm", {"access_token": "a"}, settings=cfg)

    payload = connections.set_mirror("user-1", "mtm", enabled=True, settings=cfg)

    assert payload["mirrorEnabled"] is True
    assert "mirrorError" in payload


def test_disconnect_keeps_meetings_by_default(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_account("user-1", "mtm", {"access_token": "a", "refresh_token": "r"}, settings=cfg)
    upsert_meetings("user-1", "mtm", [_row("m-1")], settings=cfg)

    payload = connections.disconnect("user-1", "mtm", settings=cfg, oauth_factory=_FakeOAuth)

    assert payload == {"disconnected": True, "purged": False, "deletedMeetings": 0, "deletedEvents": 0}
    assert _FakeOAuth.revoked == ["r"]
    assert load_account("user-1", "mtm", settings=cfg) is None
    assert get_meeting_row("user-1", "mtm", "m-1", settings=cfg) is not None


def test_disconnect_with_purge_removes_meetings_and_events(tmp_path: Path, fake_calendar):
    cfg = _cfg(tmp_path)
    upsert_account("user-1", "ics", {"ics_url": _FEED_URL}, settings=cfg)
    upsert_meetings("user-1", "ics", [_row("i-1", source_kind="ics")], settings=cfg)
    connections.set_mirror(
        "user-1", "ics", enabled=True, settings=cfg, mirror_service=fake_calendar
    )

    payload = connections.disconnect(
        "user-1", "ics", settings=cfg, purge=True, mirror_service=fake_calendar
    )

    assert payload["deletedMeetings"] == 1
    assert payload["deletedEvents"] == 1
    assert fake_calendar.events_api.items == {}
    assert count_meetings("user-1", "ics", include_canceled=True, settings=cfg) == 0


def test_disconnect_unknown_account(tmp_path: Path):
    with pytest.raises(LookupError):
        connections.disconnect("user-1", "ics", settings=_cfg(tmp_path))


def test_list_meetings_merges_sources_and_google(tmp_path: Path, fake_calendar):
    cfg = _cfg(tmp_path)
    cfg.venue_aliases = {"hall-11": ["hall 11"]}
    upsert_meetings("user-1", "mtm", [_row("m-1")], settings=cfg)
    upsert_meetings(
        "user-1",
        "ics",
        [_row("i-1", starts_at="2025-08-20T10:05:00Z", location="Hall 11", source_kind="ics")],
        settings=cfg,
    )
    upsert_meetings(
        "user-1", "mtm", [_row("m-old", title="Old", status="canceled")], settings=cfg
    )
    fake_calendar.events().insert(
        calendarId="primary",
        body={
            "summary": "Dentist",
            "start": {"dateTime": "2025-08-21T15:00:00Z"},
            "end": {"dateTime": "2025-08-21T16:00:00Z"},
            "status": "confirmed",
        },
    ).execute()
    fake_calendar.events().insert(
        calendarId="primary", body=event_body("user-1", "mtm", _row("m-1"))
    ).execute()

    payload = connections.list_meetings(
        "user-1",
        settings=cfg,
        window_start=datetime(2025, 8, 12, tzinfo=timezone.utc),
        window_end=datetime(2025, 9, 1, tzinfo=timezone.utc),
        google_service=fake_calendar,
    )

    titles = [item["title"] for item in payload["items"]]
    assert titles == ["Team Sync", "Dentist"]
    merged = payload["items"][0]
    assert merged["location"] == "Hall 11"
    assert {p["source"] for p in merged["provenance"]} == {"mtm", "ics"}
    assert merged["venue_id"] == "hall-11"
    assert payload["total"] == 2
    assert "googleError" not in payload


def test_list_meetings_reports_google_failure(tmp_path: Path, fake_calendar):
    cfg = _cfg(tmp_path)
    upsert_meetings("user-1", "mtm", [_row("m-1")], settings=cfg)
    fake_calendar.events_api.fail_with = 500

    payload = connections.list_meetings(
        "user-1",
        settings=cfg,
        window_start=datetime(2025, 8, 12, tzinfo=timezone.utc),
        window_end=datetime(2025, 9, 1, tzinfo=timezone.utc),
        google_service=fake_calendar,
    )

    assert payload["total"] == 1
    assert "googleError" in payload


def test_list_meetings_rejects_inverted_window(tmp_path: Path):
    with pytest.raises(ValueError):
        connections.list_meetings(
            "user-1",
            settings=_cfg(tmp_path),
            window_start=datetime(2025, 9, 1, tzinfo=timezone.utc),
            window_end=datetime(2025, 8, 1, tzinfo=timezone.utc),
        )
