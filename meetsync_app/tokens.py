from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Callable

from meetsync.errors import AuthExpiredError, SyncError
from meetsync.metrics import token_refresh_total
from meetsync.utils import coerce_utc_datetime, utc_now

from .accounts import Account, load_account, record_account_error, update_tokens
from .config import AppSettings
from .locks import SingleFlight
from .oauth import OAuthClient

_DEFAULT_EXPIRES_IN_SECONDS = 3600
_logger = logging.getLogger(__name__)

_REFRESH_FLIGHTS = SingleFlight(ttl_seconds=60.0)


class TokenManager:
    """Hands out access tokens that stay valid for at least the refresh margin."""

    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        oauth_factory: Callable[[str, AppSettings], OAuthClient] = OAuthClient,
        single_flight: SingleFlight | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or AppSettings()
        self._oauth_factory = oauth_factory
        self._flights = single_flight or _REFRESH_FLIGHTS
        self._clock = clock

    def is_fresh(self, account: Account) -> bool:
        if not account.access_token or account.expires_at is None:
            return False
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        return coerce_utc_datetime(account.expires_at) > self._clock() + margin

    def ensure_fresh_token(self, account: Account, uid: str | None = None) -> str:
        if self.is_fresh(account):
            return str(account.access_token)
        owner = uid or account.uid
        key = f"{account.provider}:{owner}"
        return self._flights.run(key, lambda: self._refresh(owner, account))

    def _refresh(self, uid: str, account: Account) -> str:
        # Another worker may have rotated the token while we waited.
        current = load_account(uid, account.provider, settings=self.settings) or account
        if self.is_fresh(current):
            return str(current.access_token)
        if not current.refresh_token:
            exc = AuthExpiredError(f"No refresh token stored for {account.provider}")
            record_account_error(uid, account.provider, exc, settings=self.settings)
            token_refresh_total.labels(provider=account.provider, outcome="auth_expired").inc()
            raise exc

        client = self._oauth_factory(account.provider, self.settings)
        try:
            grant = client.refresh(current.refresh_token)
        except AuthExpiredError as exc:
            _logger.warning("Refresh token rejected uid=%s provider=%s", uid, account.provider)
            record_account_error(uid, account.provider, exc, settings=self.settings)
            token_refresh_total.labels(provider=account.provider, outcome="auth_expired").inc()
            raise
        except SyncError:
            token_refresh_total.labels(provider=account.provider, outcome="error").inc()
            raise

        update_tokens(
            uid,
            account.provider,
            grant.access_token,
            grant.refresh_token,
            grant.expires_in or _DEFAULT_EXPIRES_IN_SECONDS,
            settings=self.settings,
        )
        token_refresh_total.labels(provider=account.provider, outcome="ok").inc()
        _logger.info("Refreshed access token uid=%s provider=%s", uid, account.provider)
        return grant.access_token


def ensure_fresh_token(
    account: Account,
    uid: str | None = None,
    *,
    settings: AppSettings | None = None,
) -> str:
    return TokenManager(settings).ensure_fresh_token(account, uid)


__all__ = ["TokenManager", "ensure_fresh_token"]
