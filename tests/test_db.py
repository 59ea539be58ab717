from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from meetsync_app.config import AppSettings
from meetsync_app.db import (
    connect,
    count_meetings,
    delete_meetings,
    get_meeting_row,
    init_db,
    list_active_external_ids,
    list_meeting_rows,
    mark_meetings_canceled,
    set_meeting_mirror_state,
    supersede_meetings,
    upsert_meetings,
    with_db_retry,
)


def _cfg(tmp_path: Path) -> AppSettings:
    return AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "meetsync.db",
    )


def _row(external_id: str = "m-1", **overrides):
    row = {
        "external_id": external_id,
        "etag": "v1",
        "title": "Team Sync",
        "starts_at": "2025-08-20T10:00:00Z",
        "ends_at": "2025-08-20T11:00:00Z",
        "tz": "UTC",
        "location": "Room 4",
        "with_json": [{"name": "Sam Peer", "org": None}],
        "status": "accepted",
        "source_kind": "mtm",
    }
    row.update(overrides)
    return row


def test_init_db_applies_migrations_once(tmp_path: Path):
    cfg = _cfg(tmp_path)

    init_db(cfg)
    init_db(cfg)

    with connect(cfg) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        meeting_columns = {row["name"] for row in conn.execute("PRAGMA table_info(meetings)")}
    assert version == 2
    assert {"vault_keys", "accounts", "meetings"} <= tables
    assert "superseded_by" in meeting_columns


def test_upsert_meetings_counts_created_unchanged_and_updated(tmp_path: Path):
    cfg = _cfg(tmp_path)

    assert upsert_meetings("u", "mtm", [_row()], settings=cfg)["created"] == 1
    first = get_meeting_row("u", "mtm", "m-1", settings=cfg)

    counts = upsert_meetings("u", "mtm", [_row(etag="v2")], settings=cfg)
    assert counts == {"created": 0, "updated": 0, "unchanged": 1, "reactivated": 0}
    same = get_meeting_row("u", "mtm", "m-1", settings=cfg)
    assert same["updated_at"] == first["updated_at"]
    assert same["etag"] == "v2"

    counts = upsert_meetings("u", "mtm", [_row(title="Team Sync (moved)")], settings=cfg)
    assert counts["updated"] == 1
    changed = get_meeting_row("u", "mtm", "m-1", settings=cfg)
    assert changed["title"] == "Team Sync (moved)"
    assert changed["updated_at"] != first["updated_at"]
    assert changed["with_json"] == [{"name": "Sam Peer", "org": None}]


def test_upsert_never_clears_mirror_mapping(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings("u", "mtm", [_row()], settings=cfg)
    set_meeting_mirror_state("u", "mtm", "m-1", g_event_id="evt-1", settings=cfg)

    upsert_meetings("u", "mtm", [_row(location="Room 5")], settings=cfg)

    assert get_meeting_row("u", "mtm", "m-1", settings=cfg)["g_event_id"] == "evt-1"


def test_status_does_not_regress_but_canceled_reactivates(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings("u", "mtm", [_row(status="declined")], settings=cfg)

    upsert_meetings("u", "mtm", [_row(status="pending")], settings=cfg)
    assert get_meeting_row("u", "mtm", "m-1", settings=cfg)["status"] == "declined"

    assert mark_meetings_canceled("u", "mtm", ["m-1"], settings=cfg) == 1
    counts = upsert_meetings("u", "mtm", [_row(status="accepted")], settings=cfg)
    assert counts["reactivated"] == 1
    assert get_meeting_row("u", "mtm", "m-1", settings=cfg)["status"] == "accepted"


def test_superseded_row_is_canceled_and_cleared_when_it_wins_again(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings("u", "mtm", [_row("m-1", location=None), _row("m-2")], settings=cfg)

    assert supersede_meetings("u", "mtm", {"m-1": "m-2", "m-2": "m-2"}, settings=cfg) == 1
    assert supersede_meetings("u", "mtm", {"m-1": "m-2"}, settings=cfg) == 0
    loser = get_meeting_row("u", "mtm", "m-1", settings=cfg)
    assert (loser["status"], loser["superseded_by"]) == ("canceled", "m-2")
    assert get_meeting_row("u", "mtm", "m-2", settings=cfg)["superseded_by"] is None

    counts = upsert_meetings("u", "mtm", [_row("m-1", location="Hall 11")], settings=cfg)

    assert counts["reactivated"] == 1
    winner = get_meeting_row("u", "mtm", "m-1", settings=cfg)
    assert (winner["status"], winner["superseded_by"]) == ("accepted", None)


def test_active_ids_and_cancellation_respect_window(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings(
        "u",
        "ics",
        [
            _row("in-window"),
            _row("outside", starts_at="2025-12-01T10:00:00Z", ends_at="2025-12-01T11:00:00Z"),
            _row("second"),
        ],
        settings=cfg,
    )
    upsert_meetings("someone-else", "ics", [_row("in-window")], settings=cfg)

    active = list_active_external_ids(
        "u",
        "ics",
        window_start="2025-08-01T00:00:00Z",
        window_end="2025-09-01T00:00:00Z",
        settings=cfg,
    )
    assert active == {"in-window", "second"}

    assert mark_meetings_canceled("u", "ics", {"in-window", "missing"}, settings=cfg) == 1
    assert mark_meetings_canceled("u", "ics", {"in-window"}, settings=cfg) == 0
    assert get_meeting_row("someone-else", "ics", "in-window", settings=cfg)["status"] == "accepted"
    assert count_meetings("u", "ics", settings=cfg) == 2
    assert count_meetings("u", "ics", include_canceled=True, settings=cfg) == 3


def test_list_meeting_rows_filters(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings(
        "u",
        "mtm",
        [
            _row("a", starts_at="2025-08-20T09:00:00Z"),
            _row("b", starts_at="2025-08-21T09:00:00Z", status="canceled"),
            _row("c", starts_at="2025-08-22T09:00:00Z"),
        ],
        settings=cfg,
    )

    rows = list_meeting_rows(
        "u",
        provider="mtm",
        starts_from="2025-08-20T00:00:00Z",
        starts_before="2025-08-22T00:00:00Z",
        include_canceled=False,
        settings=cfg,
    )

    assert [row["external_id"] for row in rows] == ["a"]


def test_delete_meetings_scopes_to_provider(tmp_path: Path):
    cfg = _cfg(tmp_path)
    upsert_meetings("u", "mtm", [_row("a"), _row("b")], settings=cfg)
    upsert_meetings("u", "ics", [_row("c", source_kind="ics")], settings=cfg)

    assert delete_meetings("u", "mtm", settings=cfg) == 2
    assert count_meetings("u", "ics", settings=cfg) == 1


def test_invalid_rows_and_providers_are_rejected(tmp_path: Path):
    cfg = _cfg(tmp_path)

    with pytest.raises(ValueError):
        upsert_meetings("u", "mtm", [_row(title="")], settings=cfg)
    with pytest.raises(ValueError):
        upsert_meetings("u", "outlook", [_row()], settings=cfg)
    with pytest.raises(ValueError):
        set_meeting_mirror_state("u", "mtm", "m-1", settings=cfg)


def test_with_db_retry_retries_locked_errors():
    attempts = {"n": 0}

    def _flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert with_db_retry(_flaky, base_sleep_ms=0) == "ok"
    assert attempts["n"] == 3


def test_with_db_retry_does_not_retry_other_errors():
    def _broken():
        raise sqlite3.OperationalError("no such table: nope")

    with pytest.raises(sqlite3.OperationalError):
        with_db_retry(_broken, base_sleep_ms=0)
