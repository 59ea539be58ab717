from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for failures raised by the synchronization engine."""

    kind = "sync_error"
    retryable = False


class AuthExpiredError(SyncError):
    """Raised when a refresh token is invalid or revoked; the user must reconnect."""

    kind = "auth_expired"


class RateLimitedError(SyncError):
    """Raised when an upstream answers HTTP 429."""

    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetworkError(SyncError):
    """Raised for timeouts, transport failures and 5xx responses."""

    kind = "transient_network"
    retryable = True


class IngestionError(SyncError):
    """Raised when an upstream rejects a request with a non-retryable 4xx."""

    kind = "ingestion_error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRecordError(SyncError):
    """Raised when a single meeting record cannot be normalized."""

    kind = "malformed_record"


class MalformedFeedError(SyncError):
    """Raised when a whole ICS document cannot be parsed."""

    kind = "malformed_feed"


class EncryptionFailureError(SyncError):
    """Raised when the vault cannot encrypt or decrypt a credential."""

    kind = "encryption_failure"


class KeyUnavailableError(EncryptionFailureError):
    """Raised when the key-management provider cannot be reached."""

    kind = "key_unavailable"


class SyncInProgressError(SyncError):
    """Raised when a pass for the same account is already running."""

    kind = "sync_in_progress"
    retryable = True

    def __init__(self, message: str, *, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SyncTimeoutError(SyncError):
    """Raised when a pass exceeds its wall-clock budget."""

    kind = "timeout"
    retryable = True


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", None) or "internal_error"


__all__ = [
    "AuthExpiredError",
    "EncryptionFailureError",
    "IngestionError",
    "KeyUnavailableError",
    "MalformedFeedError",
    "MalformedRecordError",
    "RateLimitedError",
    "SyncError",
    "SyncInProgressError",
    "SyncTimeoutError",
    "TransientNetworkError",
    "error_kind",
]
