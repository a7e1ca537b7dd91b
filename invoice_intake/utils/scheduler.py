"""Polling loop and bounded fan-out shared by the worker loops.

Every loop in the worker has the same shape: do one cycle of work, then
sleep until the next cycle unless shutdown was requested. ``PollingLoop``
owns that shape; components only provide the per-cycle ``tick``.
"""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class PollingLoop:
    """Run a tick function at a fixed interval until cancelled.

    The stop event is only checked between ticks; a tick in progress
    always runs to completion.

    Args:
        name: Loop name used in log messages and the thread name.
        tick: Callable executed once per cycle.
        interval_seconds: Sleep between the end of one tick and the next.
        stop_event: Shared cancellation token.
        after_tick: Optional callable run after every tick, e.g. a log flush.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], object],
        interval_seconds: float,
        stop_event: threading.Event,
        after_tick: Callable[[], object] | None = None,
    ) -> None:
        self.name = name
        self.tick = tick
        self.interval_seconds = interval_seconds
        self.stop_event = stop_event
        self.after_tick = after_tick
        self.cycles = 0

    def run(self, max_cycles: int | None = None) -> None:
        """Block running cycles until the stop event is set.

        Args:
            max_cycles: Stop after this many cycles (used by tests and
                one-shot runs). ``None`` runs until cancelled.
        """
        logger.info(
            "%s loop starting (interval %.1fs)", self.name, self.interval_seconds
        )
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("%s cycle failed", self.name)
            if self.after_tick is not None:
                try:
                    self.after_tick()
                except Exception:
                    logger.exception("%s post-cycle hook failed", self.name)
            self.cycles += 1
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            self.stop_event.wait(self.interval_seconds)
        logger.info("%s loop stopped after %d cycles", self.name, self.cycles)

    def start(self) -> threading.Thread:
        """Run the loop on a new non-daemon thread and return it."""
        thread = threading.Thread(target=self.run, name=self.name)
        thread.start()
        return thread


def run_bounded(
    items: Iterable[T],
    func: Callable[[T], object],
    max_workers: int,
    thread_name_prefix: str = "worker",
) -> None:
    """Apply ``func`` to every item with at most ``max_workers`` in flight.

    Returns once every item has finished. Exceptions raised by ``func``
    are logged; callers are expected to handle per-item errors themselves.
    """
    items = list(items)
    if not items:
        return
    if max_workers <= 1 or len(items) == 1:
        for item in items:
            _call_logged(func, item)
        return
    with ThreadPoolExecutor(
        max_workers=min(max_workers, len(items)),
        thread_name_prefix=thread_name_prefix,
    ) as executor:
        futures = [executor.submit(_call_logged, func, item) for item in items]
        for future in futures:
            future.result()


def _call_logged(func: Callable[[T], object], item: T) -> None:
    try:
        func(item)
    except Exception:
        logger.exception("Unhandled error processing %r", item)
