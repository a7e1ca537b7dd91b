"""Ingest queue consumer that uploads queued files to object storage.

Each cycle claims the due PENDING rows, reads the file from the holding
directory, uploads it to the tenant's inbox and marks the row DONE.
Failures are counted on the row and retried with exponential backoff
until ``max_attempts``, after which the row is dead-lettered as ERROR.
"""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from invoice_intake.db.models import LogSource, QueueItem
from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.exceptions import FileMissing, FileTooSmall, TenantNotFound
from invoice_intake.observability.sink import EventLoggers, ProcessingLogSink
from invoice_intake.storage.keys import inbox_key
from invoice_intake.storage.object_store import ObjectStore
from invoice_intake.tenants.resolver import TenantResolver
from invoice_intake.utils.config import StorageConfig, UploaderConfig
from invoice_intake.utils.logger import get_logger
from invoice_intake.utils.scheduler import run_bounded

logger = get_logger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class Uploader:
    """Moves queued files from the holding directory to tenant inboxes.

    Args:
        config: Uploader settings (fan-out, retry policy, size floor).
        storage: Storage settings, for the inbox prefix.
        processed_dir: Holding directory the watcher moves files into.
        resolver: Shared tenant resolver.
        queue: Ingest queue repository.
        store: Object store client.
        sink: Processing log sink.
        stop_event: Shutdown signal; checked before each claim.
    """

    def __init__(
        self,
        config: UploaderConfig,
        storage: StorageConfig,
        processed_dir: Path | str,
        resolver: TenantResolver,
        queue: IngestQueue,
        store: ObjectStore,
        sink: ProcessingLogSink,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.processed_dir = Path(processed_dir)
        self.resolver = resolver
        self.queue = queue
        self.store = store
        self.events = EventLoggers(sink, LogSource.PROCESSOR)
        self.stop_event = stop_event or threading.Event()

    def tick(self) -> int:
        """Process one batch of due items.

        Returns:
            Number of items uploaded successfully.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.stuck_after_seconds)
        self.queue.requeue_stuck(cutoff)

        items = self.queue.poll_due(self.config.max_concurrent_jobs)
        if not items:
            return 0
        logger.info("Processing %d queued item(s)", len(items))

        done: list[str] = []

        def handle(item: QueueItem) -> None:
            if self.process(item):
                done.append(item.id)

        run_bounded(items, handle, self.config.max_concurrent_jobs, "uploader")
        return len(done)

    def process(self, item: QueueItem) -> bool:
        """Upload one queue item and record the outcome on its row.

        Returns:
            ``True`` when the item reached DONE.
        """
        if self.stop_event.is_set():
            return False
        claimed = self.queue.mark_processing(item.id)
        if claimed is None:
            logger.info("Queue item %s is no longer pending, skipping", item.id)
            return False

        logger.info("Processing queue item %s (%s)", claimed.id, claimed.source_ref)
        try:
            bucket, key, path = self._upload(claimed)
        except Exception as exc:
            self._record_failure(claimed, exc)
            return False

        self.queue.mark_done(claimed.id)
        self.events.for_tenant(claimed.tenant_id).success(
            "File uploaded to storage",
            filename=claimed.source_ref,
            details={"bucket": bucket, "key": key},
        )
        if self.config.delete_after_upload:
            try:
                path.unlink()
                logger.info("Local file deleted: %s", path)
            except OSError as exc:
                logger.warning("Could not delete local file %s: %s", path, exc)
        return True

    def _upload(self, item: QueueItem) -> tuple[str, str, Path]:
        path = self.processed_dir / item.source_ref
        if not path.is_file():
            raise FileMissing(f"File not found in processed directory: {path}")

        data = path.read_bytes()
        if len(data) < self.config.min_file_bytes:
            raise FileTooSmall(f"File too small to be a valid PDF: {len(data)} bytes")

        tenant = self.resolver.for_tenant(item.tenant_id)
        if tenant is None:
            raise TenantNotFound(f"No storage configuration for tenant {item.tenant_id}")

        key = inbox_key(
            self.storage.inbox_prefix,
            tenant.storage_key_prefix,
            item.created_at.date(),
            item.source_ref,
        )
        self.store.put(tenant.bucket, key, data, content_type=PDF_CONTENT_TYPE)
        logger.info(
            "Uploaded %s (%.1f KB) to %s/%s", item.source_ref, len(data) / 1024, tenant.bucket, key
        )
        return tenant.bucket, key, path

    def _record_failure(self, item: QueueItem, exc: Exception) -> None:
        message = f"{type(exc).__name__}: {exc}"
        logger.error("Error processing queue item %s: %s", item.id, message)
        updated = self.queue.record_failure(
            item.id,
            message,
            max_attempts=self.config.max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            cap_delay_seconds=self.config.retry_max_delay_seconds,
        )
        if updated is None:
            return
        events = self.events.for_tenant(item.tenant_id)
        details = {"queueId": item.id, "attempts": updated.attempts, "error": message}
        if updated.next_retry_at is None:
            events.error(
                f"Upload failed after {updated.attempts} attempts, needs manual review",
                filename=item.source_ref,
                details=details,
            )
        else:
            logger.warning(
                "Retry %d/%d for %s at %s",
                updated.attempts,
                self.config.max_attempts,
                item.id,
                updated.next_retry_at.isoformat(),
            )
