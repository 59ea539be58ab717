from __future__ import annotations

import logging
import signal
from types import FrameType

from redis import Redis
from rq import Worker

from .config import AppSettings
from .db import init_db
from .keystore import get_vault

_logger = logging.getLogger(__name__)


def _install_signal_handlers(worker: Worker) -> None:
    def _request_shutdown(signum: int, frame: FrameType | None) -> None:
        try:
            signal_name = signal.Signals(signum).name
        except ValueError:
            signal_name = str(signum)
        _logger.info("Received %s; stopping after the current sync job", signal_name)
        worker.request_stop(signum, frame)

    signal.signal(signal.SIGTERM, _request_shutdown)
    signal.signal(signal.SIGINT, _request_shutdown)


def build_worker(settings: AppSettings, *, connection: Redis | None = None) -> Worker:
    init_db(settings)
    # Fail fast when the key provider is down instead of failing every job.
    get_vault(settings).ensure_key_available()
    return Worker(
        [settings.rq_queue_name],
        connection=connection or Redis.from_url(settings.redis_url),
    )


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = AppSettings()
    worker = build_worker(settings)
    _install_signal_handlers(worker)
    _logger.info("Sync worker listening on queue %s", settings.rq_queue_name)
    worker.work(with_scheduler=True, burst=settings.rq_worker_burst)


if __name__ == "__main__":
    main()
