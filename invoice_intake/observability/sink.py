"""Buffered writer for the dashboard's processing log.

Events are written to ``processing_logs`` in batches to keep database
round-trips off the hot path. A batch is flushed when the buffer is
full, as soon as an ERROR is queued, when the flush interval has passed
(checked once per polling cycle) and at shutdown.
"""

import threading
import time
from collections.abc import Callable
from typing import Any

from invoice_intake.db.models import LogLevel, LogSource, ProcessingLogEntry
from invoice_intake.db.session import SessionFactory
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 1000


class ProcessingLogSink:
    """Thread-safe batched writer of :class:`ProcessingLogEntry` rows.

    Args:
        session_factory: Session factory for the flush transaction.
        flush_size: Buffered entries that trigger an immediate flush.
        flush_interval_seconds: Maximum age of a buffered entry before
            :meth:`flush_if_due` writes it.
        clock: Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        flush_size: int = 50,
        flush_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.flush_size = flush_size
        self.flush_interval_seconds = flush_interval_seconds
        self._clock = clock
        self._buffer: list[ProcessingLogEntry] = []
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._oldest_at: float | None = None

    def emit(
        self,
        tenant_id: str,
        level: LogLevel,
        source: LogSource,
        message: str,
        details: dict[str, Any] | None = None,
        document_id: str | None = None,
        filename: str | None = None,
    ) -> None:
        """Queue one event for the dashboard."""
        entry = ProcessingLogEntry(
            tenant_id=tenant_id,
            level=level,
            source=source,
            message=message[:MAX_MESSAGE_LENGTH],
            details=details or {},
            document_id=document_id,
            filename=filename,
            read=False,
        )
        with self._lock:
            self._buffer.append(entry)
            if self._oldest_at is None:
                self._oldest_at = self._clock()
            full = len(self._buffer) >= self.flush_size
        if full or level == LogLevel.ERROR:
            self.flush()

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush_if_due(self) -> None:
        """Flush when the oldest buffered entry exceeds the flush interval."""
        with self._lock:
            due = (
                self._oldest_at is not None
                and self._clock() - self._oldest_at >= self.flush_interval_seconds
            )
        if due:
            self.flush()

    def flush(self) -> int:
        """Write every buffered entry in one transaction.

        A failed write is logged together with the lost messages; it
        never propagates into the pipeline.

        Returns:
            Number of entries written.
        """
        with self._flush_lock:
            with self._lock:
                batch, self._buffer = self._buffer, []
                self._oldest_at = None
            if not batch:
                return 0
            try:
                with self._session_factory() as session, session.begin():
                    session.add_all(batch)
            except Exception:
                logger.exception(
                    "Could not save %d processing log entries: %s",
                    len(batch),
                    "; ".join(f"[{e.tenant_id}] {e.message}" for e in batch),
                )
                return 0
            logger.debug("Flushed %d processing log entries", len(batch))
            return len(batch)

    def close(self) -> None:
        """Flush remaining entries before shutdown."""
        self.flush()


class EventLogger:
    """Per-tenant facade that logs to the console and the dashboard.

    ``info`` only goes to the console; the other levels are persisted.
    """

    def __init__(self, sink: ProcessingLogSink, tenant_id: str, source: LogSource) -> None:
        self.sink = sink
        self.tenant_id = tenant_id
        self.source = source
        self._logger = get_logger(f"invoice_intake.events.{source.value.lower()}")

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info("[%s] %s", self.tenant_id, message)

    def success(
        self,
        message: str,
        filename: str | None = None,
        document_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._logger.info("[%s] %s", self.tenant_id, message)
        self._emit(LogLevel.SUCCESS, message, filename, document_id, details)

    def warning(
        self,
        message: str,
        filename: str | None = None,
        document_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._logger.warning("[%s] %s", self.tenant_id, message)
        self._emit(LogLevel.WARNING, message, filename, document_id, details)

    def error(
        self,
        message: str,
        filename: str | None = None,
        document_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._logger.error("[%s] %s", self.tenant_id, message)
        self._emit(LogLevel.ERROR, message, filename, document_id, details)

    def _emit(
        self,
        level: LogLevel,
        message: str,
        filename: str | None,
        document_id: str | None,
        details: dict[str, Any] | None,
    ) -> None:
        self.sink.emit(
            self.tenant_id,
            level,
            self.source,
            message,
            details=details,
            document_id=document_id,
            filename=filename,
        )


class EventLoggers:
    """Cache of :class:`EventLogger` instances per tenant for one source."""

    def __init__(self, sink: ProcessingLogSink, source: LogSource) -> None:
        self.sink = sink
        self.source = source
        self._loggers: dict[str, EventLogger] = {}
        self._lock = threading.Lock()

    def for_tenant(self, tenant_id: str) -> EventLogger:
        with self._lock:
            if tenant_id not in self._loggers:
                self._loggers[tenant_id] = EventLogger(self.sink, tenant_id, self.source)
            return self._loggers[tenant_id]
