"""OAuth token endpoint client shared by the meeting API and Google."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from meetsync.errors import AuthExpiredError, IngestionError, SyncError

from .config import AppSettings
from .constants import PROVIDER_GOOGLE, PROVIDER_MTM
from .http_client import upstream_request

_logger = logging.getLogger(__name__)


class OAuthNotConfiguredError(SyncError):
    """Raised when client credentials for a provider are missing."""

    kind = "not_configured"


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


def _grant_from_payload(payload: Any, *, label: str) -> TokenGrant:
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise IngestionError(f"{label} returned no access_token")
    expires_in = payload.get("expires_in")
    try:
        expires = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        expires = None
    return TokenGrant(
        access_token=str(payload["access_token"]),
        refresh_token=payload.get("refresh_token") or None,
        expires_in=expires,
        scope=payload.get("scope") or None,
    )


class OAuthClient:
    """Authorization-code exchange, refresh and revoke against one provider."""

    def __init__(self, provider: str, settings: AppSettings | None = None) -> None:
        self.settings = settings or AppSettings()
        self.provider = provider
        cfg = self.settings
        if provider == PROVIDER_MTM:
            self.token_url = cfg.mtm_token_url
            self.revoke_url = cfg.mtm_revoke_url
            self.client_id = (cfg.mtm_client_id or "").strip()
            self.client_secret = (cfg.mtm_client_secret or "").strip()
            self.redirect_uri = cfg.mtm_redirect_uri
        elif provider == PROVIDER_GOOGLE:
            self.token_url = cfg.google_token_url
            self.revoke_url = cfg.google_revoke_url
            self.client_id = (cfg.google_client_id or "").strip()
            self.client_secret = (cfg.google_client_secret or "").strip()
            self.redirect_uri = cfg.google_redirect_uri
        else:
            raise ValueError(f"Provider {provider} does not use OAuth")

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.token_url)

    def _require_configured(self) -> None:
        if self.is_configured:
            return
        prefix = f"MEETSYNC_{self.provider.upper()}"
        raise OAuthNotConfiguredError(
            f"OAuth for {self.provider} is not configured "
            f"({prefix}_CLIENT_ID, {prefix}_CLIENT_SECRET)."
        )

    def _token_request(self, data: dict[str, str], *, auth_statuses: tuple[int, ...]) -> TokenGrant:
        self._require_configured()
        label = f"{self.provider} token endpoint"
        payload = {
            **data,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        resp = upstream_request(
            "POST",
            self.token_url,
            settings=self.settings,
            label=label,
            auth_statuses=auth_statuses,
            data=payload,
            headers={"Accept": "application/json"},
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise IngestionError(f"{label} returned invalid JSON") from exc
        if isinstance(body, dict) and body.get("error"):
            if body["error"] == "invalid_grant":
                raise AuthExpiredError(f"{label} reported invalid_grant")
            raise IngestionError(f"{label} error: {body['error']}")
        return _grant_from_payload(body, label=label)

    def exchange_code(self, code: str) -> TokenGrant:
        data = {"grant_type": "authorization_code", "code": code}
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri
        return self._token_request(data, auth_statuses=(401,))

    def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token; 400/401 mean the grant is gone."""
        return self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth_statuses=(400, 401),
        )

    def revoke(self, token: str | None) -> bool:
        if not token or not self.revoke_url:
            return False
        try:
            upstream_request(
                "POST",
                self.revoke_url,
                settings=self.settings,
                label=f"{self.provider} revoke endpoint",
                data={"token": token},
            )
        except SyncError as exc:
            _logger.warning("Token revoke for %s failed: %s", self.provider, exc)
            return False
        return True


__all__ = ["OAuthClient", "OAuthNotConfiguredError", "TokenGrant"]
