"""Tests for the batched processing log sink."""

from unittest.mock import MagicMock

from sqlalchemy import select

from invoice_intake.db.models import LogLevel, LogSource, ProcessingLogEntry
from invoice_intake.observability.sink import (
    MAX_MESSAGE_LENGTH,
    EventLoggers,
    ProcessingLogSink,
)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _rows(session_factory) -> list[ProcessingLogEntry]:
    with session_factory() as session:
        return list(session.scalars(select(ProcessingLogEntry).order_by(ProcessingLogEntry.id)))


class TestProcessingLogSink:
    """Tests for ProcessingLogSink buffering and flushing."""

    def test_buffers_until_flush(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory, flush_size=10)
        sink.emit("t-1", LogLevel.SUCCESS, LogSource.WATCHER, "queued")
        assert sink.pending() == 1
        assert _rows(session_factory) == []

        assert sink.flush() == 1
        rows = _rows(session_factory)
        assert len(rows) == 1
        assert rows[0].message == "queued"
        assert rows[0].level == LogLevel.SUCCESS
        assert rows[0].read is False

    def test_flushes_when_full(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory, flush_size=3)
        for i in range(3):
            sink.emit("t-1", LogLevel.WARNING, LogSource.PROCESSOR, f"w{i}")
        assert sink.pending() == 0
        assert [r.message for r in _rows(session_factory)] == ["w0", "w1", "w2"]

    def test_error_flushes_immediately(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory, flush_size=50)
        sink.emit("t-1", LogLevel.SUCCESS, LogSource.OCR, "ok")
        sink.emit("t-1", LogLevel.ERROR, LogSource.OCR, "failed", details={"code": "X"})
        assert sink.pending() == 0
        rows = _rows(session_factory)
        assert len(rows) == 2
        assert rows[1].details == {"code": "X"}

    def test_flush_if_due_respects_interval(self, session_factory) -> None:
        clock = FakeClock()
        sink = ProcessingLogSink(session_factory, flush_interval_seconds=5.0, clock=clock)
        sink.emit("t-1", LogLevel.SUCCESS, LogSource.WATCHER, "queued")

        clock.now += 4.0
        sink.flush_if_due()
        assert sink.pending() == 1

        clock.now += 1.0
        sink.flush_if_due()
        assert sink.pending() == 0
        assert len(_rows(session_factory)) == 1

    def test_flush_if_due_with_empty_buffer(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory, clock=FakeClock())
        sink.flush_if_due()
        assert _rows(session_factory) == []

    def test_close_flushes(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory)
        sink.emit("t-1", LogLevel.WARNING, LogSource.WATCHER, "w")
        sink.close()
        assert len(_rows(session_factory)) == 1

    def test_message_truncated(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory)
        sink.emit("t-1", LogLevel.WARNING, LogSource.WATCHER, "x" * 5000)
        sink.flush()
        assert len(_rows(session_factory)[0].message) == MAX_MESSAGE_LENGTH

    def test_failed_flush_does_not_raise(self) -> None:
        factory = MagicMock(side_effect=RuntimeError("db down"))
        sink = ProcessingLogSink(factory)
        sink.emit("t-1", LogLevel.WARNING, LogSource.WATCHER, "w")
        assert sink.flush() == 0
        assert sink.pending() == 0

    def test_error_with_failing_database(self) -> None:
        factory = MagicMock(side_effect=RuntimeError("db down"))
        sink = ProcessingLogSink(factory)
        sink.emit("t-1", LogLevel.ERROR, LogSource.WATCHER, "e")
        factory.assert_called_once()


class TestEventLoggers:
    """Tests for the per-tenant event logger facade."""

    def test_info_is_console_only(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory)
        events = EventLoggers(sink, LogSource.WATCHER).for_tenant("t-1")
        events.info("scanning")
        assert sink.pending() == 0

    def test_levels_are_persisted(self, session_factory) -> None:
        sink = ProcessingLogSink(session_factory)
        events = EventLoggers(sink, LogSource.PROCESSOR).for_tenant("t-1")
        events.success("uploaded", filename="a.pdf")
        events.warning("slow", document_id="d-1")
        events.error("failed", details={"attempts": 5})

        rows = _rows(session_factory)
        assert [r.level for r in rows] == [LogLevel.SUCCESS, LogLevel.WARNING, LogLevel.ERROR]
        assert all(r.tenant_id == "t-1" for r in rows)
        assert all(r.source == LogSource.PROCESSOR for r in rows)
        assert rows[0].filename == "a.pdf"
        assert rows[1].document_id == "d-1"
        assert rows[2].details == {"attempts": 5}

    def test_for_tenant_is_cached(self, session_factory) -> None:
        loggers = EventLoggers(ProcessingLogSink(session_factory), LogSource.OCR)
        assert loggers.for_tenant("t-1") is loggers.for_tenant("t-1")
        assert loggers.for_tenant("t-1") is not loggers.for_tenant("t-2")
