"""Tests for the scanner drop-folder watcher."""

from pathlib import Path
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from invoice_intake.db.models import LogLevel, ProcessingLogEntry, QueueStatus
from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.observability.sink import ProcessingLogSink
from invoice_intake.utils.config import WatcherConfig
from invoice_intake.utils.files import sha256_bytes
from invoice_intake.watcher.intake import IntakeWatcher, WatchOutcome

ACME_TENANT_ID = "tenant-acme"
FILENAME = "acme_20251226_231633.pdf"


class TestIntakeWatcher:
    """Tests for IntakeWatcher scans."""

    def _watcher(self, tmp_path: Path, resolver, session_factory, sink, **overrides):
        values = {
            "watch_dir": str(tmp_path / "in"),
            "processed_dir": str(tmp_path / "processed"),
            "stable_checks": 1,
            "stable_interval_seconds": 0,
            "stability_max_retries": 2,
            "max_concurrent_files": 1,
        }
        values.update(overrides)
        (tmp_path / "in").mkdir(exist_ok=True)
        queue = IngestQueue(session_factory)
        return IntakeWatcher(WatcherConfig(**values), resolver, queue, sink), queue

    def test_enqueues_new_file(
        self, tmp_path, resolver, session_factory, sink: ProcessingLogSink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)

        outcomes = watcher.scan()

        assert outcomes == {FILENAME: WatchOutcome.ENQUEUED}
        assert not (watcher.watch_dir / FILENAME).exists()
        assert (watcher.processed_dir / FILENAME).read_bytes() == pdf_bytes
        item = queue.find_by_source_ref(ACME_TENANT_ID, FILENAME)
        assert item.status == QueueStatus.PENDING
        assert item.content_hash == sha256_bytes(pdf_bytes)
        assert sink.pending() == 1

    def test_same_name_is_not_queued_twice(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)
        watcher.scan()
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes + b"rescan")

        assert watcher.scan() == {FILENAME: WatchOutcome.ALREADY_QUEUED}
        assert (watcher.processed_dir / FILENAME).exists()
        assert queue.counts_by_status() == {"PENDING": 1}

    def test_same_content_is_parked_as_duplicate(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)
        watcher.scan()
        other = "acme_20251227_080000.pdf"
        (watcher.watch_dir / other).write_bytes(pdf_bytes)

        assert watcher.scan() == {other: WatchOutcome.DUPLICATE}
        assert (watcher.processed_dir / f"DUPLICATE_{other}").exists()
        assert not (watcher.processed_dir / other).exists()
        assert queue.counts_by_status() == {"PENDING": 1}
        sink.flush()
        with session_factory() as session:
            levels = [
                e.level
                for e in session.scalars(select(ProcessingLogEntry).order_by(ProcessingLogEntry.id))
            ]
        assert levels == [LogLevel.SUCCESS, LogLevel.WARNING]

    def test_unroutable_files_are_deleted(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        for name in ("globex_20251226_231633.pdf", "scan0001.pdf"):
            (watcher.watch_dir / name).write_bytes(pdf_bytes)

        outcomes = watcher.scan()

        assert set(outcomes.values()) == {WatchOutcome.UNROUTABLE}
        assert list(watcher.watch_dir.iterdir()) == []
        assert queue.counts_by_status() == {}
        assert sink.pending() == 0

    def test_ignores_non_candidates(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / "notes.txt").write_bytes(pdf_bytes)
        (watcher.watch_dir / ".acme_partial.pdf").write_bytes(pdf_bytes)

        assert watcher.scan() == {}
        assert (watcher.watch_dir / "notes.txt").exists()

    def test_unstable_file_retried_then_abandoned(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        path = watcher.watch_dir / FILENAME
        path.write_bytes(pdf_bytes)

        with patch("invoice_intake.watcher.intake.is_stable", return_value=False):
            assert watcher.scan() == {FILENAME: WatchOutcome.UNSTABLE}
            assert path.exists()
            assert watcher.stability_failures(FILENAME) == 1
            assert watcher.scan() == {FILENAME: WatchOutcome.ABANDONED}

        assert not path.exists()
        assert watcher.stability_failures(FILENAME) == 0
        assert queue.counts_by_status() == {}
        with session_factory() as session:
            entries = list(session.scalars(select(ProcessingLogEntry)))
        assert [e.level for e in entries] == [LogLevel.ERROR]
        assert entries[0].tenant_id == ACME_TENANT_ID
        assert entries[0].filename == FILENAME

    def test_stability_counter_resets_when_file_settles(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)

        with patch("invoice_intake.watcher.intake.is_stable", side_effect=[False, True]):
            assert watcher.scan() == {FILENAME: WatchOutcome.UNSTABLE}
            assert watcher.scan() == {FILENAME: WatchOutcome.ENQUEUED}
        assert watcher.stability_failures(FILENAME) == 0

    def test_vanished_file(self, tmp_path, resolver, session_factory, sink) -> None:
        watcher, _ = self._watcher(tmp_path, resolver, session_factory, sink)
        assert watcher.process_file(FILENAME) == WatchOutcome.VANISHED

    def test_database_error_leaves_file_in_place(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(tmp_path, resolver, session_factory, sink)
        watcher.queue = MagicMock()
        watcher.queue.find_by_source_ref.side_effect = RuntimeError("database unavailable")
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)

        assert watcher.scan() == {FILENAME: WatchOutcome.FAILED}
        assert (watcher.watch_dir / FILENAME).exists()
        watcher.queue.enqueue.assert_not_called()

    def test_file_in_flight_is_skipped(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(tmp_path, resolver, session_factory, sink)
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)
        watcher._in_flight.add(FILENAME)

        assert watcher.process_file(FILENAME) == WatchOutcome.IN_FLIGHT
        assert (watcher.watch_dir / FILENAME).exists()

    def test_missing_watch_dir(self, tmp_path, resolver, session_factory, sink) -> None:
        watcher, _ = self._watcher(
            tmp_path, resolver, session_factory, sink, watch_dir=str(tmp_path / "nope")
        )
        assert watcher.scan() == {}

    def test_same_content_handled_together_is_queued_once(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(tmp_path, resolver, session_factory, sink)
        other = "acme_20251227_080000.pdf"
        (watcher.watch_dir / FILENAME).write_bytes(pdf_bytes)
        (watcher.watch_dir / other).write_bytes(pdf_bytes)
        enqueue = queue.enqueue
        nested = {}

        def enqueue_while_other_arrives(*args, **kwargs):
            nested[other] = watcher.process_file(other)
            return enqueue(*args, **kwargs)

        with patch.object(queue, "enqueue", side_effect=enqueue_while_other_arrives):
            assert watcher.process_file(FILENAME) == WatchOutcome.ENQUEUED

        assert nested == {other: WatchOutcome.DUPLICATE}
        assert (watcher.watch_dir / other).exists()
        assert queue.counts_by_status() == {"PENDING": 1}

        assert watcher.scan() == {other: WatchOutcome.DUPLICATE}
        assert (watcher.processed_dir / f"DUPLICATE_{other}").exists()
        assert queue.counts_by_status() == {"PENDING": 1}

    def test_parallel_scan_of_identical_files(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, queue = self._watcher(
            tmp_path, resolver, session_factory, sink, max_concurrent_files=2
        )
        names = ["acme_20251227_080000.pdf", "acme_20251227_080100.pdf"]
        for name in names:
            (watcher.watch_dir / name).write_bytes(pdf_bytes)

        outcomes = watcher.scan()

        assert sorted(outcomes.values()) == [WatchOutcome.DUPLICATE, WatchOutcome.ENQUEUED]
        assert queue.counts_by_status() == {"PENDING": 1}

    def test_vanished_file_clears_stability_counter(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(
            tmp_path, resolver, session_factory, sink, stability_max_retries=5
        )
        path = watcher.watch_dir / FILENAME
        path.write_bytes(pdf_bytes)
        with patch("invoice_intake.watcher.intake.is_stable", return_value=False):
            watcher.scan()
        assert watcher.stability_failures(FILENAME) == 1

        path.unlink()
        assert watcher.process_file(FILENAME) == WatchOutcome.VANISHED
        assert watcher.stability_failures(FILENAME) == 0

    def test_counters_for_removed_files_are_dropped(
        self, tmp_path, resolver, session_factory, sink, pdf_bytes
    ) -> None:
        watcher, _ = self._watcher(
            tmp_path, resolver, session_factory, sink, stability_max_retries=5
        )
        path = watcher.watch_dir / FILENAME
        path.write_bytes(pdf_bytes)
        with patch("invoice_intake.watcher.intake.is_stable", return_value=False):
            watcher.scan()
        path.unlink()

        assert watcher.scan() == {}
        assert watcher._stability_failures == {}
