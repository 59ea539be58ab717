from __future__ import annotations

import logging
from typing import Any

from meetsync.errors import SyncError, SyncInProgressError

from .calendar.service import sync_account
from .config import AppSettings
from .db import init_db

_logger = logging.getLogger(__name__)


def run_account_sync(
    uid: str,
    provider: str,
    *,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    """rq job body; retryable failures re-raise so the queue retries them."""
    cfg = settings or AppSettings()
    init_db(cfg)
    try:
        return sync_account(uid, provider, settings=cfg)
    except SyncInProgressError:
        _logger.info("Skipping scheduled sync uid=%s provider=%s; already running", uid, provider)
        return {"uid": uid, "provider": provider, "skipped": True}
    except LookupError:
        _logger.info("Skipping scheduled sync uid=%s provider=%s; account removed", uid, provider)
        return {"uid": uid, "provider": provider, "skipped": True}
    except SyncError as exc:
        if exc.retryable:
            raise
        return {"uid": uid, "provider": provider, "ok": False, "error_kind": exc.kind}


__all__ = ["run_account_sync"]
