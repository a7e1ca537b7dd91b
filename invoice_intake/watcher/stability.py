"""Detect when a scanner has finished writing a file."""

import os
import threading
import time
from pathlib import Path

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


def _file_size(path: Path) -> int:
    return os.path.getsize(path)


def is_stable(
    path: Path,
    required_stable_reads: int = 3,
    interval_s: float = 0.5,
    stop_event: threading.Event | None = None,
) -> bool:
    """Sample a file's size until it stops changing.

    Each sample that repeats the previous non-zero size counts towards
    stability; a changed or zero size resets the count. The check gives
    up after ``2 * required_stable_reads`` samples.

    Args:
        path: File to watch.
        required_stable_reads: Consecutive unchanged samples needed.
        interval_s: Delay between samples.
        stop_event: Shutdown signal; a set event aborts the wait.

    Returns:
        ``True`` once the size has been stable long enough; ``False`` if
        the file disappeared, kept changing, or shutdown was requested.
    """
    previous = -1
    stable_reads = 0
    for _ in range(required_stable_reads * 2):
        if stop_event is not None and stop_event.is_set():
            return False
        try:
            size = _file_size(path)
        except OSError:
            logger.debug("%s disappeared while checking stability", path)
            return False

        if size > 0 and size == previous:
            stable_reads += 1
            if stable_reads >= required_stable_reads:
                return True
        else:
            stable_reads = 0
        previous = size

        if stop_event is not None:
            stop_event.wait(interval_s)
        else:
            time.sleep(interval_s)
    return False
