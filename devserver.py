from __future__ import annotations

import logging
import os
import sys

import uvicorn

from logging_utils import configure_logging
from settings import ConfigurationError, load_settings


def main() -> int:
    log_path = configure_logging()
    if log_path:
        print(f"Logging to {log_path}")

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logging.getLogger(__name__).critical("Refusing to start: %s", exc)
        return 1

    uvicorn.run(
        "app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=os.getenv("MAILBOX_CLEANER_DEV_LOG_LEVEL", "info"),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
