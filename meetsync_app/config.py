from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

from .constants import DEFAULT_RQ_QUEUE_NAME, DEFAULT_VENUE_ALIASES

_DEV_DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"
# base64 of b"meetsync-dev-key-do-not-use-prod"
_DEV_DEFAULT_CRYPTO_KEY = "bWVldHN5bmMtZGV2LWtleS1kby1ub3QtdXNlLXByb2Q="
_logger = logging.getLogger(__name__)


def _default_data_root() -> Path:
    return Path("data")


def _normalize_optional_env(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """App-layer runtime settings."""

    meetsync_env: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        validation_alias=AliasChoices("MEETSYNC_ENV"),
    )
    data_root: Path = _default_data_root()
    db_path: Path = _default_data_root() / "db" / "meetsync.db"
    sqlite_busy_timeout_ms: int = Field(
        default=30000,
        ge=0,
        validation_alias=AliasChoices(
            "MEETSYNC_SQLITE_BUSY_TIMEOUT_MS",
            "SQLITE_BUSY_TIMEOUT_MS",
        ),
    )
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_REDIS_URL", "REDIS_URL"),
    )
    rq_queue_name: str = Field(
        default=DEFAULT_RQ_QUEUE_NAME,
        validation_alias=AliasChoices("MEETSYNC_RQ_QUEUE_NAME", "RQ_QUEUE_NAME"),
    )
    rq_worker_burst: bool = Field(
        default=False,
        validation_alias=AliasChoices("MEETSYNC_RQ_WORKER_BURST", "RQ_WORKER_BURST"),
    )
    rq_job_timeout_seconds: int = Field(
        default=600,
        ge=1,
        validation_alias=AliasChoices(
            "MEETSYNC_RQ_JOB_TIMEOUT_SECONDS",
            "RQ_JOB_TIMEOUT_SECONDS",
        ),
    )

    crypto_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_CRYPTO_KEY", "MEETTOMATCH_CRYPTO_KEY"),
    )
    vault_key_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        validation_alias=AliasChoices("MEETSYNC_VAULT_KEY_CACHE_TTL_SECONDS"),
    )

    mtm_api_base_url: str = Field(
        default="https://api.meettomatch.com/v1",
        validation_alias=AliasChoices("MEETSYNC_MTM_API_BASE_URL", "MTM_API_BASE_URL"),
    )
    mtm_token_url: str = Field(
        default="https://api.meettomatch.com/oauth/token",
        validation_alias=AliasChoices("MEETSYNC_MTM_TOKEN_URL", "MTM_TOKEN_URL"),
    )
    mtm_revoke_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_MTM_REVOKE_URL", "MTM_REVOKE_URL"),
    )
    mtm_client_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_MTM_CLIENT_ID", "MTM_CLIENT_ID"),
    )
    mtm_client_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_MTM_CLIENT_SECRET", "MTM_CLIENT_SECRET"),
    )
    mtm_redirect_uri: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_MTM_REDIRECT_URI", "MTM_REDIRECT_URI"),
    )
    mtm_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        validation_alias=AliasChoices("MEETSYNC_MTM_PAGE_SIZE"),
    )

    google_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        validation_alias=AliasChoices("MEETSYNC_GOOGLE_TOKEN_URL"),
    )
    google_revoke_url: str | None = Field(
        default="https://oauth2.googleapis.com/revoke",
        validation_alias=AliasChoices("MEETSYNC_GOOGLE_REVOKE_URL"),
    )
    google_client_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_ID"),
    )
    google_client_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_GOOGLE_CLIENT_SECRET", "GOOGLE_CLIENT_SECRET"),
    )
    google_redirect_uri: str | None = Field(
        default=None,
        validation_alias=AliasChoices("MEETSYNC_GOOGLE_REDIRECT_URI", "OAUTH_REDIRECT"),
    )
    google_geocoding_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEETSYNC_GOOGLE_GEOCODING_API_KEY",
            "GOOGLE_MAPS_API_KEY",
        ),
    )
    geocode_timeout_seconds: float = Field(default=3.0, gt=0)

    http_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        validation_alias=AliasChoices("MEETSYNC_HTTP_TIMEOUT_SECONDS"),
    )
    retry_max_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        validation_alias=AliasChoices("MEETSYNC_RETRY_MAX_ATTEMPTS"),
    )
    retry_initial_seconds: float = Field(default=1.0, ge=0)
    retry_max_seconds: float = Field(default=16.0, ge=0)
    retry_jitter_seconds: float = Field(default=1.0, ge=0)

    ics_fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    ics_fetch_max_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    ics_fetch_max_redirects: int = Field(default=3, ge=0)

    token_refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        validation_alias=AliasChoices("MEETSYNC_TOKEN_REFRESH_MARGIN_SECONDS"),
    )
    lock_ttl_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices("MEETSYNC_LOCK_TTL_SECONDS"),
    )
    sync_budget_seconds: float = Field(
        default=120.0,
        gt=0,
        validation_alias=AliasChoices("MEETSYNC_SYNC_BUDGET_SECONDS"),
    )
    sync_window_past_days: int = Field(default=7, ge=0)
    sync_window_future_days: int = Field(default=60, ge=1)
    sync_interval_seconds: int = Field(
        default=900,
        ge=60,
        validation_alias=AliasChoices("MEETSYNC_SYNC_INTERVAL_SECONDS"),
    )
    sync_now_min_interval_seconds: int = Field(
        default=600,
        ge=0,
        validation_alias=AliasChoices("MEETSYNC_SYNC_NOW_MIN_INTERVAL_SECONDS"),
    )
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("MEETSYNC_SCHEDULER_ENABLED"),
    )
    dedup_bucket_minutes: int = Field(default=10, ge=1, le=120)
    venue_aliases: dict[str, list[str]] = Field(
        default_factory=lambda: {key: list(value) for key, value in DEFAULT_VENUE_ALIASES.items()},
        validation_alias=AliasChoices("MEETSYNC_VENUE_ALIASES"),
    )

    api_bearer_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "MEETSYNC_API_BEARER_TOKEN",
            "API_BEARER_TOKEN",
        ),
    )

    @model_validator(mode="after")
    def validate_runtime_environment(self) -> "AppSettings":
        self.redis_url = _normalize_optional_env(self.redis_url)
        self.crypto_key = _normalize_optional_env(self.crypto_key)

        if self.meetsync_env == "dev":
            if self.redis_url is None:
                _logger.warning(
                    "MEETSYNC_REDIS_URL is not set in MEETSYNC_ENV=dev; defaulting to %s",
                    _DEV_DEFAULT_REDIS_URL,
                )
                self.redis_url = _DEV_DEFAULT_REDIS_URL
            if self.crypto_key is None:
                _logger.warning(
                    "MEETSYNC_CRYPTO_KEY is not set in MEETSYNC_ENV=dev; using the development key"
                )
                self.crypto_key = _DEV_DEFAULT_CRYPTO_KEY
            return self

        missing: list[str] = []
        if self.redis_url is None:
            missing.append("MEETSYNC_REDIS_URL")
        if self.crypto_key is None:
            missing.append("MEETSYNC_CRYPTO_KEY")
        if missing:
            vars_text = ", ".join(missing)
            raise ValueError(
                "Missing required environment variable(s) for "
                f"MEETSYNC_ENV={self.meetsync_env}: {vars_text}"
            )
        return self

    class Config:
        env_prefix = "MEETSYNC_"


__all__ = ["AppSettings"]
