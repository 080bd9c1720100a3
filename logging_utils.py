from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional


LOG_ENV_VAR = "MAILBOX_CLEANER_ACTIVE_LOG"
LOG_DIR_ENV_VAR = "MAILBOX_CLEANER_LOG_DIR"
LOG_LEVEL_ENV_VAR = "MAILBOX_CLEANER_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Chatty third-party loggers; discovery_cache warns on every build() without a file cache.
QUIET_LOGGERS = {
    "googleapiclient.discovery_cache": logging.ERROR,
    "pymongo": logging.WARNING,
    "urllib3": logging.WARNING,
}


def _running_in_cloud() -> bool:
    cloud_markers = (
        "K_SERVICE",
        "CLOUD_RUN_SERVICE",
        "CLOUD_RUN_JOB",
        "GAE_SERVICE",
    )
    return any(os.getenv(marker) for marker in cloud_markers)


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _local_log_file() -> Path:
    log_dir = Path(os.getenv(LOG_DIR_ENV_VAR, "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return log_dir / f"mailbox_cleaner_{timestamp}.log"


def configure_logging() -> Optional[Path]:
    """
    Ensure logging is configured for the current process.

    Cloud runtimes collect stderr, so only a stream handler is installed there;
    local runs also write a timestamped file. Returns that file path, or None.
    """
    if getattr(configure_logging, "_configured", False):
        return getattr(configure_logging, "_log_path", None)

    log_path = None if _running_in_cloud() else _local_log_file()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        handlers.append(logging.FileHandler(log_path, mode="w", encoding="utf-8"))

    logging.basicConfig(
        level=_resolve_level(os.getenv(LOG_LEVEL_ENV_VAR, "INFO")),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    if log_path:
        os.environ[LOG_ENV_VAR] = str(log_path)

    configure_logging._configured = True  # type: ignore[attr-defined]
    configure_logging._log_path = log_path  # type: ignore[attr-defined]
    return log_path
