"""Outbound HTTP with upstream error classification and tenacity retries."""

from __future__ import annotations

from email.utils import parsedate_to_datetime
import logging
from typing import Any, Callable, Iterable

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from meetsync.errors import (
    AuthExpiredError,
    IngestionError,
    RateLimitedError,
    TransientNetworkError,
)
from meetsync.utils import utc_now

from .config import AppSettings

_logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None) -> float | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def _wait_strategy(settings: AppSettings) -> Callable[[RetryCallState], float]:
    backoff = wait_exponential_jitter(
        initial=settings.retry_initial_seconds,
        max=settings.retry_max_seconds,
        jitter=settings.retry_jitter_seconds,
    )

    def _wait(retry_state: RetryCallState) -> float:
        delay = backoff(retry_state)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), settings.retry_max_seconds))
        return delay

    return _wait


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    _logger.warning(
        "Retrying upstream call attempt=%s after %s",
        retry_state.attempt_number,
        exc.__class__.__name__ if exc is not None else "unknown",
    )


def build_retrying(settings: AppSettings) -> Retrying:
    """Retry only rate limits and transient failures, re-raising the last error."""
    return Retrying(
        reraise=True,
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=_wait_strategy(settings),
        retry=retry_if_exception_type((RateLimitedError, TransientNetworkError)),
        before_sleep=_log_retry,
    )


def classify_response(
    resp: httpx.Response,
    *,
    label: str,
    auth_statuses: Iterable[int] = (401,),
) -> httpx.Response:
    status = resp.status_code
    if status in set(auth_statuses):
        raise AuthExpiredError(f"{label} rejected credentials: {status}")
    if status == 429:
        raise RateLimitedError(
            f"{label} rate limited",
            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
        )
    if status >= 500:
        raise TransientNetworkError(f"Transient {label} error {status}")
    if status >= 400:
        raise IngestionError(f"{label} failed: {status}", status_code=status)
    return resp


def upstream_request(
    method: str,
    url: str,
    *,
    settings: AppSettings,
    label: str,
    auth_statuses: Iterable[int] = (401,),
    timeout: float | None = None,
    **kwargs: Any,
) -> httpx.Response:
    statuses = tuple(auth_statuses)

    def _send() -> httpx.Response:
        try:
            with httpx.Client(timeout=timeout or settings.http_timeout_seconds) as client:
                resp = client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{label} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{label} transport error: {exc}") from exc
        return classify_response(resp, label=label, auth_statuses=statuses)

    return build_retrying(settings)(_send)


__all__ = [
    "build_retrying",
    "classify_response",
    "parse_retry_after",
    "upstream_request",
]
