"""Centralized logging setup for the intake worker.

The watcher, uploader and OCR loops run on named threads, so every
record carries its thread name. AWS client libraries are held at
WARNING or above even when the worker itself runs at DEBUG.
"""

import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# botocore logs every request at DEBUG and credential lookups at INFO
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> None:
    """Configure the root logger for the worker process.

    Does nothing if the root logger already has handlers.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Output stream, stdout by default.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        return

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)
