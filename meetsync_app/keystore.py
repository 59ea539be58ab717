"""Wire the credential vault to configuration and the stored wrapped data key."""

from __future__ import annotations

import logging
import threading

from meetsync.vault import LocalKeyProvider, Vault, generate_wrapped_key

from .config import AppSettings
from .db import get_wrapped_vault_key, store_wrapped_vault_key

_logger = logging.getLogger(__name__)
_VAULTS: dict[tuple[str, str], Vault] = {}
_VAULTS_LOCK = threading.Lock()


def _load_or_create_wrapped_key(provider: LocalKeyProvider, settings: AppSettings) -> str:
    wrapped = get_wrapped_vault_key(settings=settings)
    if wrapped is not None:
        return wrapped
    candidate = generate_wrapped_key(provider)
    wrapped = store_wrapped_vault_key(candidate, settings=settings)
    _logger.info("Generated a new wrapped data key for %s", settings.db_path)
    return wrapped


def get_vault(settings: AppSettings | None = None) -> Vault:
    """Return the process-wide vault for this database and key-encryption key."""
    cfg = settings or AppSettings()
    cache_key = (str(cfg.db_path), cfg.crypto_key or "")
    with _VAULTS_LOCK:
        vault = _VAULTS.get(cache_key)
        if vault is not None:
            return vault
        provider = LocalKeyProvider(cfg.crypto_key)
        vault = Vault(
            provider,
            _load_or_create_wrapped_key(provider, cfg),
            cache_ttl_seconds=cfg.vault_key_cache_ttl_seconds,
        )
        _VAULTS[cache_key] = vault
        return vault


def reset_vault_cache() -> None:
    with _VAULTS_LOCK:
        _VAULTS.clear()


__all__ = ["get_vault", "reset_vault_cache"]
