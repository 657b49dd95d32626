from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final


# threadName separates lines from the training worker thread and the event loop
LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
LOG_FILE_NAME: Final[str] = "run.log"
_MAX_LOG_BYTES: Final[int] = 5 * 1024 * 1024


def configure_logging(level: int = logging.INFO, log_dir: str | Path | None = None) -> Path | None:
    """Send trainer logs to stderr, and to `<log_dir>/run.log` when given.

    The file rotates, keeping three backups, so a run that is resumed many
    times does not grow one log without bound. Returns the file path, if any.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_path: Path | None = None
    if log_dir is not None:
        log_path = Path(log_dir) / LOG_FILE_NAME
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_path, maxBytes=_MAX_LOG_BYTES, backupCount=3, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return log_path
