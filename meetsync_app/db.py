from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, Callable, Iterable, Mapping, TypeVar

from meetsync.merge import resolve_status

from .config import AppSettings
from .constants import ACCOUNT_STATUSES, MEETING_STATUS_CANCELED, PROVIDERS

_MIGRATIONS_DIR = Path(__file__).with_name("migrations")
_SQLITE_CONNECT_TIMEOUT_SECONDS = 30
_DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000
_DEFAULT_DB_RETRIES = 5
_DEFAULT_DB_BASE_SLEEP_MS = 50
_LOCK_ERROR_MARKERS = ("locked", "busy")
_ACCOUNT_COLUMNS = {
    "access_token_enc",
    "access_token_sha256",
    "refresh_token_enc",
    "refresh_token_sha256",
    "ics_url_enc",
    "ics_url_sha256",
    "expires_at",
    "last_sync_at",
    "mirror_enabled",
    "calendar_id",
    "status",
    "last_error",
    "last_error_kind",
    "etag",
    "last_modified",
}
_MEETING_CONTENT_COLUMNS = (
    "title",
    "starts_at",
    "ends_at",
    "tz",
    "location",
    "lat",
    "lng",
    "with_json",
    "status",
    "notes",
)
_T = TypeVar("_T")
_logger = logging.getLogger(__name__)

_UNSET = object()


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def _utc_now_precise() -> str:
    return datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _as_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out = dict(row)
    for key, value in list(out.items()):
        if value is None:
            continue
        if key.endswith("_json"):
            try:
                out[key] = json.loads(value)
            except (TypeError, ValueError):
                pass
    return out


def _validate_provider(provider: str) -> str:
    value = str(provider or "").strip().lower()
    if value not in PROVIDERS:
        options = ", ".join(PROVIDERS)
        raise ValueError(f"Unsupported provider: {value} ({options})")
    return value


def _validate_account_status(status: str) -> None:
    if status not in ACCOUNT_STATUSES:
        raise ValueError(f"Unsupported account status: {status}")


def _is_lock_or_busy_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).strip().lower()
    return any(marker in message for marker in _LOCK_ERROR_MARKERS)


def with_db_retry(
    fn: Callable[[], _T],
    *,
    retries: int = _DEFAULT_DB_RETRIES,
    base_sleep_ms: int = _DEFAULT_DB_BASE_SLEEP_MS,
) -> _T:
    attempts = max(0, int(retries))
    sleep_ms = max(0, int(base_sleep_ms))
    for attempt in range(attempts + 1):
        try:
            return fn()
        except sqlite3.OperationalError as error:
            if attempt >= attempts or not _is_lock_or_busy_error(error):
                raise
            delay_seconds = (sleep_ms * (attempt + 1)) / 1000.0
            time.sleep(delay_seconds)
    raise RuntimeError("unreachable")


def _migration_files() -> list[tuple[int, Path]]:
    if not _MIGRATIONS_DIR.exists():
        raise FileNotFoundError(f"Migrations directory not found: {_MIGRATIONS_DIR}")
    out: list[tuple[int, Path]] = []
    for path in sorted(_MIGRATIONS_DIR.glob("*.sql")):
        prefix, _, _ = path.name.partition("_")
        if not prefix.isdigit():
            continue
        out.append((int(prefix), path))
    versions = [version for version, _ in out]
    if len(set(versions)) != len(versions):
        raise ValueError("Duplicate migration version detected")
    return sorted(out, key=lambda item: item[0])


def _read_user_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def connect_db(
    path: Path,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
    busy_timeout_ms: int = _DEFAULT_SQLITE_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    db_file = Path(path)
    db_file.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_file, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {max(0, int(busy_timeout_ms))}")
    return conn


def connect(
    settings: AppSettings | None = None,
    *,
    timeout: float = _SQLITE_CONNECT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    cfg = settings or AppSettings()
    return connect_db(
        cfg.db_path,
        timeout=timeout,
        busy_timeout_ms=cfg.sqlite_busy_timeout_ms,
    )


def init_db(settings: AppSettings | None = None) -> Path:
    cfg = settings or AppSettings()
    migrations = _migration_files()
    with connect(cfg) as conn:
        current_version = _read_user_version(conn)

    for target_version, migration_path in migrations:
        if target_version <= current_version:
            continue
        migration_sql = migration_path.read_text(encoding="utf-8")

        def _apply_migration() -> int:
            with connect(cfg) as conn:
                live_version = _read_user_version(conn)
                if live_version >= target_version:
                    return live_version
                conn.executescript(migration_sql)
                conn.execute(f"PRAGMA user_version = {target_version}")
                conn.commit()
                return target_version

        current_version = with_db_retry(_apply_migration)
    return cfg.db_path


def get_wrapped_vault_key(*, settings: AppSettings | None = None) -> str | None:
    init_db(settings)
    with connect(settings) as conn:
        row = conn.execute(
            "SELECT wrapped_key FROM vault_keys ORDER BY id ASC LIMIT 1"
        ).fetchone()
    return None if row is None else str(row["wrapped_key"])


def store_wrapped_vault_key(
    wrapped_key: str,
    *,
    settings: AppSettings | None = None,
) -> str:
    """Persist ``wrapped_key`` unless another writer got there first; returns the winner."""
    init_db(settings)

    def _store() -> str:
        with connect(settings) as conn:
            conn.execute(
                """
                INSERT INTO vault_keys (wrapped_key, created_at)
                SELECT ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM vault_keys)
                """,
                (wrapped_key, _utc_now()),
            )
            row = conn.execute(
                "SELECT wrapped_key FROM vault_keys ORDER BY id ASC LIMIT 1"
            ).fetchone()
            conn.commit()
        return str(row["wrapped_key"])

    return with_db_retry(_store)


def get_account_row(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    with connect(settings) as conn:
        row = conn.execute(
            "SELECT * FROM accounts WHERE uid = ? AND provider = ?",
            (str(uid), _validate_provider(provider)),
        ).fetchone()
    return _as_dict(row)


def list_account_rows(
    *,
    provider: str | None = None,
    settings: AppSettings | None = None,
) -> list[dict[str, Any]]:
    init_db(settings)
    clauses: list[str] = []
    params: list[Any] = []
    if provider is not None:
        clauses.append("provider = ?")
        params.append(_validate_provider(provider))
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect(settings) as conn:
        rows = conn.execute(
            f"""
            SELECT *
            FROM accounts
            {where_sql}
            ORDER BY uid, provider
            """,
            tuple(params),
        ).fetchall()
    return [_as_dict(row) or {} for row in rows]


def upsert_account_row(
    uid: str,
    provider: str,
    fields: Mapping[str, Any],
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    init_db(settings)
    clean_uid = str(uid or "").strip()
    if not clean_uid:
        raise ValueError("uid is required")
    clean_provider = _validate_provider(provider)
    unknown = set(fields) - _ACCOUNT_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported account fields: {', '.join(sorted(unknown))}")
    if "status" in fields:
        _validate_account_status(str(fields["status"]))
    now = _utc_now()
    columns = sorted(fields)
    values = [fields[column] for column in columns]
    insert_columns = ", ".join(["uid", "provider", "connected_at", "updated_at", *columns])
    placeholders = ", ".join("?" for _ in range(4 + len(columns)))
    update_sql = ", ".join(
        [*(f"{column} = excluded.{column}" for column in columns), "updated_at = excluded.updated_at"]
    )

    def _write() -> dict[str, Any]:
        with connect(settings) as conn:
            conn.execute(
                f"""
                INSERT INTO accounts ({insert_columns})
                VALUES ({placeholders})
                ON CONFLICT(uid, provider) DO UPDATE SET {update_sql}
                """,
                (clean_uid, clean_provider, now, now, *values),
            )
            row = conn.execute(
                "SELECT * FROM accounts WHERE uid = ? AND provider = ?",
                (clean_uid, clean_provider),
            ).fetchone()
            conn.commit()
        return _as_dict(row) or {}

    return with_db_retry(_write)


def update_account_row(
    uid: str,
    provider: str,
    fields: Mapping[str, Any],
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    if not fields:
        raise ValueError("at least one field must be provided for account update")
    unknown = set(fields) - _ACCOUNT_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported account fields: {', '.join(sorted(unknown))}")
    if "status" in fields:
        _validate_account_status(str(fields["status"]))
    columns = sorted(fields)
    assignments = [f"{column} = ?" for column in columns]
    assignments.append("updated_at = ?")
    params: list[Any] = [fields[column] for column in columns]
    params.extend([_utc_now(), str(uid), _validate_provider(provider)])

    def _write() -> dict[str, Any] | None:
        with connect(settings) as conn:
            updated = conn.execute(
                f"""
                UPDATE accounts
                SET {', '.join(assignments)}
                WHERE uid = ? AND provider = ?
                """,
                tuple(params),
            )
            if updated.rowcount < 1:
                conn.commit()
                return None
            row = conn.execute(
                "SELECT * FROM accounts WHERE uid = ? AND provider = ?",
                (str(uid), _validate_provider(provider)),
            ).fetchone()
            conn.commit()
        return _as_dict(row)

    return with_db_retry(_write)


def delete_account_row(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> bool:
    init_db(settings)
    with connect(settings) as conn:
        deleted = conn.execute(
            "DELETE FROM accounts WHERE uid = ? AND provider = ?",
            (str(uid), _validate_provider(provider)),
        )
        conn.commit()
    return deleted.rowcount > 0


def _meeting_content_hash(row: Mapping[str, Any]) -> str:
    payload = {column: row.get(column) for column in _MEETING_CONTENT_COLUMNS}
    text = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _clean_meeting_row(row: Mapping[str, Any]) -> dict[str, Any]:
    external_id = str(row.get("external_id") or "").strip()
    title = str(row.get("title") or "").strip()
    starts_at = str(row.get("starts_at") or "").strip()
    ends_at = str(row.get("ends_at") or "").strip()
    status = str(row.get("status") or "").strip()
    if not external_id or not title or not starts_at or not ends_at or not status:
        raise ValueError("external_id, title, starts_at, ends_at and status are required")
    attendees = row.get("with_json") or []
    return {
        "external_id": external_id,
        "etag": row.get("etag"),
        "title": title,
        "starts_at": starts_at,
        "ends_at": ends_at,
        "tz": str(row.get("tz") or "UTC"),
        "location": row.get("location"),
        "lat": row.get("lat"),
        "lng": row.get("lng"),
        "with_json": json.dumps(attendees, sort_keys=True, ensure_ascii=True),
        "status": status,
        "notes": row.get("notes"),
        "source": str(row.get("source") or "pull"),
        "source_kind": str(row.get("source_kind") or "mtm"),
    }


def upsert_meetings(
    uid: str,
    provider: str,
    rows: Iterable[Mapping[str, Any]],
    *,
    settings: AppSettings | None = None,
) -> dict[str, int]:
    """Insert or update meetings keyed by ``(uid, provider, external_id)``.

    Content columns and ``updated_at`` only change when the content hash
    changes; ``last_seen_at`` and ``etag`` are refreshed on every call. The
    mirror mapping (``g_event_id``) is never touched here.
    """
    init_db(settings)
    clean_provider = _validate_provider(provider)
    clean_rows = [_clean_meeting_row(row) for row in rows]

    def _write() -> dict[str, int]:
        counts = {"created": 0, "updated": 0, "unchanged": 0, "reactivated": 0}
        now = _utc_now_precise()
        with connect(settings) as conn:
            for row in clean_rows:
                existing = conn.execute(
                    """
                    SELECT status, content_hash
                    FROM meetings
                    WHERE uid = ? AND provider = ? AND external_id = ?
                    """,
                    (str(uid), clean_provider, row["external_id"]),
                ).fetchone()
                previous_status = None if existing is None else str(existing["status"])
                row["status"] = resolve_status(previous_status, row["status"])
                content_hash = _meeting_content_hash(row)
                if existing is None:
                    conn.execute(
                        """
                        INSERT INTO meetings (
                            uid, provider, external_id, etag, last_seen_at,
                            title, starts_at, ends_at, tz, location, lat, lng,
                            with_json, status, notes, content_hash, source,
                            source_kind, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            str(uid),
                            clean_provider,
                            row["external_id"],
                            row["etag"],
                            now,
                            row["title"],
                            row["starts_at"],
                            row["ends_at"],
                            row["tz"],
                            row["location"],
                            row["lat"],
                            row["lng"],
                            row["with_json"],
                            row["status"],
                            row["notes"],
                            content_hash,
                            row["source"],
                            row["source_kind"],
                            now,
                            now,
                        ),
                    )
                    counts["created"] += 1
                    continue
                if existing["content_hash"] == content_hash:
                    conn.execute(
                        """
                        UPDATE meetings
                        SET last_seen_at = ?, etag = ?, superseded_by = NULL
                        WHERE uid = ? AND provider = ? AND external_id = ?
                        """,
                        (now, row["etag"], str(uid), clean_provider, row["external_id"]),
                    )
                    counts["unchanged"] += 1
                    continue
                if previous_status == MEETING_STATUS_CANCELED and row["status"] != previous_status:
                    counts["reactivated"] += 1
                    _logger.info(
                        "Meeting reactivated uid=%s provider=%s external_id=%s",
                        uid,
                        clean_provider,
                        row["external_id"],
                    )
                conn.execute(
                    """
                    UPDATE meetings
                    SET etag = ?, last_seen_at = ?, title = ?, starts_at = ?,
                        ends_at = ?, tz = ?, location = ?, lat = ?, lng = ?,
                        with_json = ?, status = ?, notes = ?, content_hash = ?,
                        source = ?, source_kind = ?, updated_at = ?,
                        superseded_by = NULL
                    WHERE uid = ? AND provider = ? AND external_id = ?
                    """,
                    (
                        row["etag"],
                        now,
                        row["title"],
                        row["starts_at"],
                        row["ends_at"],
                        row["tz"],
                        row["location"],
                        row["lat"],
                        row["lng"],
                        row["with_json"],
                        row["status"],
                        row["notes"],
                        content_hash,
                        row["source"],
                        row["source_kind"],
                        now,
                        str(uid),
                        clean_provider,
                        row["external_id"],
                    ),
                )
                counts["updated"] += 1
            conn.commit()
        return counts

    return with_db_retry(_write)


def get_meeting_row(
    uid: str,
    provider: str,
    external_id: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    with connect(settings) as conn:
        row = conn.execute(
            """
            SELECT * FROM meetings
            WHERE uid = ? AND provider = ? AND external_id = ?
            """,
            (str(uid), _validate_provider(provider), str(external_id)),
        ).fetchone()
    return _as_dict(row)


def list_meeting_rows(
    uid: str,
    *,
    provider: str | None = None,
    starts_from: str | None = None,
    starts_before: str | None = None,
    include_canceled: bool = True,
    settings: AppSettings | None = None,
) -> list[dict[str, Any]]:
    init_db(settings)
    clauses = ["uid = ?"]
    params: list[Any] = [str(uid)]
    if provider is not None:
        clauses.append("provider = ?")
        params.append(_validate_provider(provider))
    if starts_from is not None:
        clauses.append("starts_at >= ?")
        params.append(str(starts_from))
    if starts_before is not None:
        clauses.append("starts_at < ?")
        params.append(str(starts_before))
    if not include_canceled:
        clauses.append("status != ?")
        params.append(MEETING_STATUS_CANCELED)
    with connect(settings) as conn:
        rows = conn.execute(
            f"""
            SELECT *
            FROM meetings
            WHERE {' AND '.join(clauses)}
            ORDER BY starts_at, provider, external_id
            """,
            tuple(params),
        ).fetchall()
    return [_as_dict(row) or {} for row in rows]


def list_active_external_ids(
    uid: str,
    provider: str,
    *,
    window_start: str,
    window_end: str,
    settings: AppSettings | None = None,
) -> set[str]:
    init_db(settings)
    with connect(settings) as conn:
        rows = conn.execute(
            """
            SELECT external_id
            FROM meetings
            WHERE uid = ? AND provider = ? AND status != ?
              AND starts_at >= ? AND starts_at < ?
            """,
            (
                str(uid),
                _validate_provider(provider),
                MEETING_STATUS_CANCELED,
                str(window_start),
                str(window_end),
            ),
        ).fetchall()
    return {str(row["external_id"]) for row in rows}


def _cancel_meeting_rows(
    uid: str,
    provider: str,
    replacements: Mapping[str, str | None],
    *,
    settings: AppSettings | None,
) -> int:
    init_db(settings)
    ids = sorted(replacements)
    if not ids:
        return 0
    clean_provider = _validate_provider(provider)

    def _write() -> int:
        now = _utc_now_precise()
        canceled = 0
        with connect(settings) as conn:
            for external_id in ids:
                existing = conn.execute(
                    """
                    SELECT * FROM meetings
                    WHERE uid = ? AND provider = ? AND external_id = ? AND status != ?
                    """,
                    (str(uid), clean_provider, external_id, MEETING_STATUS_CANCELED),
                ).fetchone()
                if existing is None:
                    continue
                row = _as_dict(existing) or {}
                row["status"] = MEETING_STATUS_CANCELED
                row["with_json"] = json.dumps(
                    row.get("with_json") or [], sort_keys=True, ensure_ascii=True
                )
                conn.execute(
                    """
                    UPDATE meetings
                    SET status = ?, content_hash = ?, updated_at = ?, superseded_by = ?
                    WHERE uid = ? AND provider = ? AND external_id = ?
                    """,
                    (
                        MEETING_STATUS_CANCELED,
                        _meeting_content_hash(row),
                        now,
                        replacements[external_id],
                        str(uid),
                        clean_provider,
                        external_id,
                    ),
                )
                canceled += 1
            conn.commit()
        return canceled

    return with_db_retry(_write)


def mark_meetings_canceled(
    uid: str,
    provider: str,
    external_ids: Iterable[str],
    *,
    settings: AppSettings | None = None,
) -> int:
    return _cancel_meeting_rows(
        uid,
        provider,
        {str(item): None for item in external_ids},
        settings=settings,
    )


def supersede_meetings(
    uid: str,
    provider: str,
    replacements: Mapping[str, str],
    *,
    settings: AppSettings | None = None,
) -> int:
    """Retire duplicate rows: ``{loser_external_id: winner_external_id}``.

    Retired rows are canceled so mirrored copies get removed; ``superseded_by``
    records which row carries the meeting now. Active rows only.
    """
    return _cancel_meeting_rows(
        uid,
        provider,
        {str(loser): str(winner) for loser, winner in replacements.items() if loser != winner},
        settings=settings,
    )


def set_meeting_mirror_state(
    uid: str,
    provider: str,
    external_id: str,
    *,
    g_event_id: str | None | object = _UNSET,
    mirrored_updated_at: str | None | object = _UNSET,
    settings: AppSettings | None = None,
) -> dict[str, Any] | None:
    init_db(settings)
    assignments: list[str] = []
    params: list[Any] = []
    if g_event_id is not _UNSET:
        assignments.append("g_event_id = ?")
        params.append(g_event_id)
    if mirrored_updated_at is not _UNSET:
        assignments.append("mirrored_updated_at = ?")
        params.append(mirrored_updated_at)
    if not assignments:
        raise ValueError("at least one field must be provided for mirror state update")
    params.extend([str(uid), _validate_provider(provider), str(external_id)])
    with connect(settings) as conn:
        updated = conn.execute(
            f"""
            UPDATE meetings
            SET {', '.join(assignments)}
            WHERE uid = ? AND provider = ? AND external_id = ?
            """,
            tuple(params),
        )
        if updated.rowcount < 1:
            conn.commit()
            return None
        row = conn.execute(
            """
            SELECT * FROM meetings
            WHERE uid = ? AND provider = ? AND external_id = ?
            """,
            (str(uid), _validate_provider(provider), str(external_id)),
        ).fetchone()
        conn.commit()
    return _as_dict(row)


def count_meetings(
    uid: str,
    provider: str,
    *,
    include_canceled: bool = False,
    settings: AppSettings | None = None,
) -> int:
    init_db(settings)
    sql = "SELECT COUNT(*) FROM meetings WHERE uid = ? AND provider = ?"
    params: list[Any] = [str(uid), _validate_provider(provider)]
    if not include_canceled:
        sql += " AND status != ?"
        params.append(MEETING_STATUS_CANCELED)
    with connect(settings) as conn:
        return int(conn.execute(sql, tuple(params)).fetchone()[0])


def delete_meetings(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> int:
    init_db(settings)
    with connect(settings) as conn:
        deleted = conn.execute(
            "DELETE FROM meetings WHERE uid = ? AND provider = ?",
            (str(uid), _validate_provider(provider)),
        )
        conn.commit()
    return int(deleted.rowcount)


__all__ = [
    "connect",
    "connect_db",
    "count_meetings",
    "delete_account_row",
    "delete_meetings",
    "get_account_row",
    "get_meeting_row",
    "get_wrapped_vault_key",
    "init_db",
    "list_account_rows",
    "list_active_external_ids",
    "list_meeting_rows",
    "mark_meetings_canceled",
    "set_meeting_mirror_state",
    "store_wrapped_vault_key",
    "supersede_meetings",
    "update_account_row",
    "upsert_account_row",
    "upsert_meetings",
    "with_db_retry",
]
