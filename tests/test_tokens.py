from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import threading

import httpx
import pytest
import respx

from meetsync.errors import AuthExpiredError, TransientNetworkError
from meetsync_app.accounts import load_account, upsert_account
from meetsync_app.config import AppSettings
from meetsync_app.locks import SingleFlight
from meetsync_app.oauth import OAuthClient, OAuthNotConfiguredError
from meetsync_app.tokens import TokenManager

_TOKEN_URL = "https://mtm.test/oauth/token"


def _cfg(tmp_path: Path) -> AppSettings:
    cfg = AppSettings(
        data_root=tmp_path,
        db_path=tmp_path / "db" / "meetsync.db",
        retry_initial_seconds=0,
        retry_max_seconds=0,
        retry_jitter_seconds=0,
    )
    cfg.mtm_token_url = _TOKEN_URL
    cfg.mtm_client_id = "client-id"
    cfg.mtm_client_secret = "client-secret"
    cfg.retry_max_attempts = 2
    return cfg


def _connect(cfg: AppSettings, *, expires_in: int, refresh_token: str | None = "refresh-1"):
    fields = {"access_token": "access-old", "expires_in": expires_in}
    if refresh_token is not None:
        fields["refresh_token"] = refresh_token
    upsert_account("user-1", "mtm", fields, settings=cfg)
    return load_account("user-1", "mtm", settings=cfg)


def _manager(cfg: AppSettings) -> TokenManager:
    return TokenManager(cfg, single_flight=SingleFlight(ttl_seconds=5))


@respx.mock
def test_fresh_token_is_returned_without_refresh(tmp_path: Path):
    cfg = _cfg(tmp_path)
    route = respx.post(_TOKEN_URL).mock(return_value=httpx.Response(500))
    account = _connect(cfg, expires_in=3600)

    assert _manager(cfg).ensure_fresh_token(account) == "access-old"
    assert route.call_count == 0


@respx.mock
def test_token_inside_margin_is_refreshed_and_persisted(tmp_path: Path):
    cfg = _cfg(tmp_path)
    route = respx.post(_TOKEN_URL).mock(
        return_value=httpx.Response(
            200,
            json={"access_token": "access-new", "refresh_token": "refresh-2", "expires_in": 3600},
        )
    )
    account = _connect(cfg, expires_in=30)

    token = _manager(cfg).ensure_fresh_token(account, "user-1")

    assert token == "access-new"
    assert route.call_count == 1
    body = route.calls.last.request.content.decode()
    assert "grant_type=refresh_token" in body
    assert "refresh_token=refresh-1" in body
    stored = load_account("user-1", "mtm", settings=cfg)
    assert stored.access_token == "access-new"
    assert stored.refresh_token == "refresh-2"
    assert stored.expires_at > datetime.now(tz=timezone.utc) + timedelta(minutes=50)


@respx.mock
def test_refresh_without_rotation_keeps_refresh_token(tmp_path: Path):
    cfg = _cfg(tmp_path)
    respx.post(_TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "access-new"})
    )
    account = _connect(cfg, expires_in=0)

    _manager(cfg).ensure_fresh_token(account)

    stored = load_account("user-1", "mtm", settings=cfg)
    assert stored.refresh_token == "refresh-1"
    assert stored.expires_at is not None


@respx.mock
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "invalid_grant"}),
        httpx.Response(401, json={"error": "invalid_client"}),
        httpx.Response(200, json={"error": "invalid_grant"}),
    ],
)
def test_rejected_refresh_marks_account_for_reconnect(tmp_path: Path, response):
    cfg = _cfg(tmp_path)
    respx.post(_TOKEN_URL).mock(return_value=response)
    account = _connect(cfg, expires_in=0)

    with pytest.raises(AuthExpiredError):
        _manager(cfg).ensure_fresh_token(account)

    stored = load_account("user-1", "mtm", settings=cfg)
    assert stored.status == "reauth_required"
    assert stored.last_error_kind == "auth_expired"


def test_missing_refresh_token_requires_reconnect(tmp_path: Path):
    cfg = _cfg(tmp_path)
    account = _connect(cfg, expires_in=0, refresh_token=None)

    with pytest.raises(AuthExpiredError):
        _manager(cfg).ensure_fresh_token(account)

    assert load_account("user-1", "mtm", settings=cfg).reconnect_required is True


@respx.mock
def test_transient_refresh_failure_is_retried_then_raised(tmp_path: Path):
    cfg = _cfg(tmp_path)
    route = respx.post(_TOKEN_URL).mock(return_value=httpx.Response(503))
    account = _connect(cfg, expires_in=0)

    with pytest.raises(TransientNetworkError):
        _manager(cfg).ensure_fresh_token(account)

    assert route.call_count == 2
    assert load_account("user-1", "mtm", settings=cfg).status == "connected"


@respx.mock
def test_concurrent_refreshes_hit_the_token_endpoint_once(tmp_path: Path):
    cfg = _cfg(tmp_path)
    entered = threading.Event()
    release = threading.Event()

    def _slow_grant(_request):
        entered.set()
        release.wait(timeout=5)
        return httpx.Response(200, json={"access_token": "access-new", "expires_in": 3600})

    route = respx.post(_TOKEN_URL).mock(side_effect=_slow_grant)
    account = _connect(cfg, expires_in=0)
    manager = _manager(cfg)
    tokens: list[str] = []

    first = threading.Thread(target=lambda: tokens.append(manager.ensure_fresh_token(account)))
    first.start()
    assert entered.wait(timeout=5)
    second = threading.Thread(target=lambda: tokens.append(manager.ensure_fresh_token(account)))
    second.start()
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert tokens == ["access-new", "access-new"]
    assert route.call_count == 1


def test_unconfigured_oauth_client_raises(tmp_path: Path):
    cfg = _cfg(tmp_path)
    cfg.mtm_client_secret = None

    client = OAuthClient("mtm", cfg)

    assert client.is_configured is False
    with pytest.raises(OAuthNotConfiguredError):
        client.exchange_code("code-1")


@respx.mock
def test_exchange_code_returns_grant(tmp_path: Path):
    cfg = _cfg(tmp_path)
    cfg.mtm_redirect_uri = "https://app.example.com/oauth/mtm"
    route = respx.post(_TOKEN_URL).mock(
        return_value=httpx.Response(
            200,
            json={"access_token": "a", "refresh_token": "r", "expires_in": "900", "scope": "meetings"},
        )
    )

    grant = OAuthClient("mtm", cfg).exchange_code("code-1")

    assert (grant.access_token, grant.refresh_token, grant.expires_in) == ("a", "r", 900)
    body = route.calls.last.request.content.decode()
    assert "grant_type=authorization_code" in body
    assert "code=code-1" in body
    assert "redirect_uri=" in body


@respx.mock
def test_revoke_is_best_effort(tmp_path: Path):
    cfg = _cfg(tmp_path)
    cfg.mtm_revoke_url = "https://mtm.test/oauth/revoke"
    respx.post("https://mtm.test/oauth/revoke").mock(return_value=httpx.Response(400))

    client = OAuthClient("mtm", cfg)

    assert client.revoke("r") is False
    assert client.revoke(None) is False
