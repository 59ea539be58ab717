"""Per-user connection records; credentials pass through the vault on the way in and out."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Mapping

from meetsync.errors import AuthExpiredError, error_kind
from meetsync.utils import iso_z, parse_iso_datetime, utc_now

from .config import AppSettings
from .constants import (
    ACCOUNT_STATUS_CONNECTED,
    ACCOUNT_STATUS_ERROR,
    ACCOUNT_STATUS_REAUTH_REQUIRED,
    DEFAULT_MIRROR_CALENDAR_ID,
)
from .db import (
    delete_account_row,
    get_account_row,
    list_account_rows,
    update_account_row,
    upsert_account_row,
)
from .keystore import get_vault

_SECRET_FIELDS = ("access_token", "refresh_token", "ics_url")
_PLAIN_FIELDS = ("mirror_enabled", "calendar_id", "status", "etag", "last_modified")
_logger = logging.getLogger(__name__)


@dataclass
class Account:
    uid: str
    provider: str
    access_token: str | None = None
    refresh_token: str | None = None
    ics_url: str | None = None
    expires_at: datetime | None = None
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    mirror_enabled: bool = False
    calendar_id: str = DEFAULT_MIRROR_CALENDAR_ID
    status: str = ACCOUNT_STATUS_CONNECTED
    last_error: str | None = None
    last_error_kind: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    access_token_sha256: str | None = None
    refresh_token_sha256: str | None = None
    ics_url_sha256: str | None = None

    @property
    def reconnect_required(self) -> bool:
        return self.status == ACCOUNT_STATUS_REAUTH_REQUIRED


def _expires_at_text(expires_in: Any) -> str | None:
    if expires_in is None:
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return iso_z(utc_now() + timedelta(seconds=max(0, seconds)))


def _encrypted_columns(
    values: Mapping[str, Any],
    settings: AppSettings | None,
) -> dict[str, Any]:
    columns: dict[str, Any] = {}
    vault = None
    for name in _SECRET_FIELDS:
        if name not in values:
            continue
        plaintext = values[name]
        if plaintext is None:
            columns[f"{name}_enc"] = None
            columns[f"{name}_sha256"] = None
            continue
        if vault is None:
            vault = get_vault(settings)
        columns[f"{name}_enc"] = vault.encrypt(str(plaintext))
        columns[f"{name}_sha256"] = vault.fingerprint(str(plaintext))
    return columns


def _account_from_row(
    row: Mapping[str, Any],
    settings: AppSettings | None,
    *,
    decrypt: bool = True,
) -> Account:
    secrets: dict[str, str | None] = {name: None for name in _SECRET_FIELDS}
    if decrypt:
        vault = None
        for name in _SECRET_FIELDS:
            blob = row.get(f"{name}_enc")
            if not blob:
                continue
            if vault is None:
                vault = get_vault(settings)
            secrets[name] = vault.decrypt(str(blob))
    return Account(
        uid=str(row["uid"]),
        provider=str(row["provider"]),
        expires_at=parse_iso_datetime(row.get("expires_at")),
        connected_at=parse_iso_datetime(row.get("connected_at")),
        last_sync_at=parse_iso_datetime(row.get("last_sync_at")),
        mirror_enabled=bool(row.get("mirror_enabled")),
        calendar_id=str(row.get("calendar_id") or DEFAULT_MIRROR_CALENDAR_ID),
        status=str(row.get("status") or ACCOUNT_STATUS_CONNECTED),
        last_error=row.get("last_error"),
        last_error_kind=row.get("last_error_kind"),
        etag=row.get("etag"),
        last_modified=row.get("last_modified"),
        access_token_sha256=row.get("access_token_sha256"),
        refresh_token_sha256=row.get("refresh_token_sha256"),
        ics_url_sha256=row.get("ics_url_sha256"),
        **secrets,
    )


def upsert_account(
    uid: str,
    provider: str,
    fields: Mapping[str, Any],
    *,
    settings: AppSettings | None = None,
) -> Account:
    """Create or update a connection.

    ``fields`` may carry ``access_token``, ``refresh_token``, ``ics_url``
    (encrypted before storage), ``expires_in`` seconds and the plain columns
    ``mirror_enabled``, ``calendar_id``, ``status``, ``etag``, ``last_modified``.
    """
    unknown = set(fields) - set(_SECRET_FIELDS) - set(_PLAIN_FIELDS) - {"expires_in"}
    if unknown:
        raise ValueError(f"Unsupported account fields: {', '.join(sorted(unknown))}")
    columns = _encrypted_columns(fields, settings)
    for name in _PLAIN_FIELDS:
        if name in fields:
            columns[name] = fields[name]
    if "mirror_enabled" in columns:
        columns["mirror_enabled"] = 1 if columns["mirror_enabled"] else 0
    if "expires_in" in fields:
        columns["expires_at"] = _expires_at_text(fields["expires_in"])
    columns.setdefault("status", ACCOUNT_STATUS_CONNECTED)
    columns.setdefault("last_error", None)
    columns.setdefault("last_error_kind", None)
    row = upsert_account_row(uid, provider, columns, settings=settings)
    return _account_from_row(row, settings)


def load_account(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> Account | None:
    row = get_account_row(uid, provider, settings=settings)
    if row is None:
        return None
    return _account_from_row(row, settings)


def list_accounts(
    *,
    provider: str | None = None,
    settings: AppSettings | None = None,
) -> list[Account]:
    """List connections without decrypting their credentials."""
    return [
        _account_from_row(row, settings, decrypt=False)
        for row in list_account_rows(provider=provider, settings=settings)
    ]


def update_tokens(
    uid: str,
    provider: str,
    access_token: str,
    refresh_token: str | None = None,
    expires_in: int | None = None,
    *,
    settings: AppSettings | None = None,
) -> Account | None:
    """Store rotated tokens; a missing refresh token keeps the stored one."""
    values: dict[str, Any] = {"access_token": access_token}
    if refresh_token:
        values["refresh_token"] = refresh_token
    columns = _encrypted_columns(values, settings)
    columns["expires_at"] = _expires_at_text(expires_in)
    columns["status"] = ACCOUNT_STATUS_CONNECTED
    row = update_account_row(uid, provider, columns, settings=settings)
    if row is None:
        return None
    return _account_from_row(row, settings)


def update_last_sync(
    uid: str,
    provider: str,
    *,
    at: datetime | None = None,
    settings: AppSettings | None = None,
) -> None:
    update_account_row(
        uid,
        provider,
        {
            "last_sync_at": iso_z(at or utc_now()),
            "status": ACCOUNT_STATUS_CONNECTED,
            "last_error": None,
            "last_error_kind": None,
        },
        settings=settings,
    )


def update_ics_cache(
    uid: str,
    provider: str,
    *,
    etag: str | None,
    last_modified: str | None,
    settings: AppSettings | None = None,
) -> None:
    update_account_row(
        uid,
        provider,
        {"etag": etag, "last_modified": last_modified},
        settings=settings,
    )


def record_account_error(
    uid: str,
    provider: str,
    exc: BaseException,
    *,
    settings: AppSettings | None = None,
) -> None:
    status = (
        ACCOUNT_STATUS_REAUTH_REQUIRED
        if isinstance(exc, AuthExpiredError)
        else ACCOUNT_STATUS_ERROR
    )
    updated = update_account_row(
        uid,
        provider,
        {
            "status": status,
            "last_error": str(exc)[:500] or exc.__class__.__name__,
            "last_error_kind": error_kind(exc),
        },
        settings=settings,
    )
    if updated is None:
        _logger.warning("Cannot record error for unknown account uid=%s provider=%s", uid, provider)


def set_mirror_preference(
    uid: str,
    provider: str,
    *,
    enabled: bool,
    calendar_id: str | None = None,
    settings: AppSettings | None = None,
) -> Account | None:
    fields: dict[str, Any] = {"mirror_enabled": 1 if enabled else 0}
    if calendar_id:
        fields["calendar_id"] = calendar_id
    row = update_account_row(uid, provider, fields, settings=settings)
    if row is None:
        return None
    return _account_from_row(row, settings, decrypt=False)


def delete_account(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> bool:
    return delete_account_row(uid, provider, settings=settings)


__all__ = [
    "Account",
    "delete_account",
    "list_accounts",
    "load_account",
    "record_account_error",
    "set_mirror_preference",
    "update_ics_cache",
    "update_last_sync",
    "update_tokens",
    "upsert_account",
]
