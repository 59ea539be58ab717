"""Envelope encryption for third-party credentials at rest.

A random 256-bit data key encrypts every secret with AES-256-GCM. The data key
itself is only stored wrapped by a key provider (the key-management boundary);
the vault keeps the unwrapped key in memory for a bounded time so that a sync
pass can keep decrypting stored blobs while the provider is briefly down.

Blob layout: ``base64(nonce[12] || tag[16] || ciphertext)``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import threading
import time
from typing import Callable, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EncryptionFailureError, KeyUnavailableError

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
_logger = logging.getLogger(__name__)


def fingerprint(plaintext: str) -> str:
    """SHA-256 hex digest of the UTF-8 plaintext, for equality checks and logs."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def _seal(key: bytes, plaintext: bytes) -> str:
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def _open(key: bytes, blob: str) -> bytes:
    try:
        raw = base64.b64decode(str(blob).encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
        raise EncryptionFailureError("Credential blob is not valid base64") from exc
    if len(raw) < NONCE_BYTES + TAG_BYTES:
        raise EncryptionFailureError("Credential blob is truncated")
    nonce = raw[:NONCE_BYTES]
    tag = raw[NONCE_BYTES : NONCE_BYTES + TAG_BYTES]
    ciphertext = raw[NONCE_BYTES + TAG_BYTES :]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise EncryptionFailureError("Credential blob failed authentication") from exc


class KeyProvider(Protocol):
    """Wraps and unwraps data keys; stands for the key-management service."""

    def wrap(self, data_key: bytes) -> str: ...

    def unwrap(self, wrapped_key: str) -> bytes: ...


class LocalKeyProvider:
    """Key provider backed by a base64 key-encryption key from configuration."""

    def __init__(self, kek_b64: str | None) -> None:
        self._kek: bytes | None = None
        text = (kek_b64 or "").strip()
        if not text:
            return
        try:
            kek = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("crypto key must be base64") from exc
        if len(kek) != KEY_BYTES:
            raise ValueError(f"crypto key must decode to {KEY_BYTES} bytes, got {len(kek)}")
        self._kek = kek

    def _require_kek(self) -> bytes:
        if self._kek is None:
            raise KeyUnavailableError("Key-encryption key is not configured")
        return self._kek

    def wrap(self, data_key: bytes) -> str:
        return _seal(self._require_kek(), data_key)

    def unwrap(self, wrapped_key: str) -> bytes:
        return _open(self._require_kek(), wrapped_key)


def generate_wrapped_key(provider: KeyProvider) -> str:
    """Create a fresh data key and return it wrapped by ``provider``."""
    try:
        return provider.wrap(AESGCM.generate_key(bit_length=KEY_BYTES * 8))
    except EncryptionFailureError:
        raise
    except Exception as exc:
        raise KeyUnavailableError(f"Key provider failed to wrap data key: {exc}") from exc


class Vault:
    """Encrypts/decrypts credential strings with a cached, provider-wrapped data key."""

    def __init__(
        self,
        provider: KeyProvider,
        wrapped_key: str,
        *,
        cache_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._wrapped_key = wrapped_key
        self._cache_ttl = max(0.0, float(cache_ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._data_key: bytes | None = None
        self._loaded_at = 0.0

    def _unwrap(self) -> bytes:
        try:
            key = self._provider.unwrap(self._wrapped_key)
        except KeyUnavailableError:
            raise
        except EncryptionFailureError as exc:
            raise EncryptionFailureError(f"Wrapped data key is invalid: {exc}") from exc
        except Exception as exc:
            raise KeyUnavailableError(f"Key provider unavailable: {exc}") from exc
        if len(key) != KEY_BYTES:
            raise EncryptionFailureError("Unwrapped data key has the wrong length")
        return key

    def _key(self, *, strict: bool) -> bytes:
        with self._lock:
            now = self._clock()
            if self._data_key is not None and now - self._loaded_at < self._cache_ttl:
                return self._data_key
            try:
                key = self._unwrap()
            except KeyUnavailableError:
                if strict or self._data_key is None:
                    raise
                _logger.warning("Key provider unavailable; using cached data key")
                return self._data_key
            self._data_key = key
            self._loaded_at = now
            return key

    def ensure_key_available(self) -> None:
        """Force a provider round-trip; raises ``KeyUnavailableError`` when it is down."""
        with self._lock:
            self._loaded_at = float("-inf")
        self._key(strict=True)

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise EncryptionFailureError("Only text credentials can be encrypted")
        key = self._key(strict=False)
        try:
            return _seal(key, plaintext.encode("utf-8"))
        except Exception as exc:  # pragma: no cover - AESGCM only fails on bad keys
            raise EncryptionFailureError("Credential encryption failed") from exc

    def decrypt(self, blob: str) -> str:
        key = self._key(strict=False)
        raw = _open(key, blob)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EncryptionFailureError("Decrypted credential is not UTF-8") from exc

    @staticmethod
    def fingerprint(plaintext: str) -> str:
        return fingerprint(plaintext)


__all__ = [
    "KeyProvider",
    "LocalKeyProvider",
    "Vault",
    "fingerprint",
    "generate_wrapped_key",
]
