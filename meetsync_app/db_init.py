from __future__ import annotations

import logging

from .config import AppSettings
from .db import init_db
from .keystore import get_vault

_logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = AppSettings()
    path = init_db(settings)
    get_vault(settings).ensure_key_available()
    _logger.info("Database ready at %s with an available data key", path)


if __name__ == "__main__":
    main()
