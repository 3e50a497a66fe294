"""Logging configuration for the scribed worker."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Rotate at 5MB, keep a few old files around
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    """Configure root logging for the worker.

    Args:
        level: Log level name (already validated by the config layer).
        log_file: Optional file to also write logs to.
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Drop handlers from a previous call so reconfiguring does not duplicate output
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not open log file {log_file}: {e}")

    # faster-whisper is chatty at INFO
    if level != "DEBUG":
        logging.getLogger("faster_whisper").setLevel(logging.WARNING)
