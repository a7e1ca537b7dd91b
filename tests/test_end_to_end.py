"""A scanned file travelling from the drop folder to a document row."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

from invoice_intake.db.document_repository import DocumentRepository
from invoice_intake.db.models import QueueItem, QueueStatus
from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.processor.ocr_processor import OcrOutcome, OcrProcessor
from invoice_intake.uploader.queue_processor import Uploader
from invoice_intake.utils.config import OCRConfig, StorageConfig, UploaderConfig, WatcherConfig
from invoice_intake.utils.files import sha256_bytes
from invoice_intake.watcher.intake import IntakeWatcher, WatchOutcome

FILENAME = "acme_20260101_090000.pdf"


class TestPipeline:
    """Watcher, uploader and OCR processor working on one file."""

    def test_scan_to_document(
        self,
        tmp_path: Path,
        resolver,
        session_factory,
        store,
        sink,
        pdf_bytes,
        make_expense_response,
    ) -> None:
        watch_dir = tmp_path / "in"
        processed_dir = tmp_path / "processed"
        watch_dir.mkdir()
        (watch_dir / FILENAME).write_bytes(pdf_bytes)
        queue = IngestQueue(session_factory)
        documents = DocumentRepository(session_factory)

        watcher = IntakeWatcher(
            WatcherConfig(
                watch_dir=str(watch_dir),
                processed_dir=str(processed_dir),
                stable_checks=3,
                stable_interval_seconds=0,
            ),
            resolver,
            queue,
            sink,
        )
        # the scanner is still writing for the first two samples
        sizes = MagicMock(side_effect=[100, 200, 300, 300, 300, 300])
        with patch("invoice_intake.watcher.stability._file_size", sizes):
            assert watcher.scan() == {FILENAME: WatchOutcome.ENQUEUED}

        item = queue.find_by_source_ref("tenant-acme", FILENAME)
        assert item.status == QueueStatus.PENDING
        assert item.attempts == 0
        with session_factory() as session, session.begin():
            session.get(QueueItem, item.id).created_at = datetime(
                2026, 1, 1, 9, 0, tzinfo=timezone.utc
            )

        uploader = Uploader(
            UploaderConfig(max_concurrent_jobs=1),
            StorageConfig(),
            processed_dir,
            resolver,
            queue,
            store,
            sink,
        )
        assert uploader.tick() == 1
        assert queue.get(item.id).status == QueueStatus.DONE
        assert store.keys("acme-bucket") == [f"inbox/acme/2026/01/01/{FILENAME}"]

        ocr_client = MagicMock()
        ocr_client.analyze.return_value = make_expense_response(
            [("VENDOR_NAME", "ACME SA", 97.0), ("TOTAL", "1000", 94.0)]
        )
        processor = OcrProcessor(
            OCRConfig(),
            StorageConfig(),
            resolver,
            documents,
            store,
            ocr_client,
            sink,
        )
        assert processor.tick() == {
            f"acme-bucket/inbox/acme/2026/01/01/{FILENAME}": OcrOutcome.CREATED
        }

        document = documents.find_by_hash("tenant-acme", sha256_bytes(pdf_bytes))
        assert document.total == Decimal("1000.00")
        # the filename date only organizes storage, it never fills issue_date
        assert document.issue_date is None
        assert document.missing_fields == ["fechaEmision"]
        assert document.final_storage_key == f"acme/2026/01/01/{FILENAME}"
        assert store.get("acme-bucket", document.final_storage_key) == pdf_bytes
        assert not any(key.startswith("inbox/") for key in store.keys("acme-bucket"))

        sink.close()
        assert sink.pending() == 0
