"""Scanner drop-folder watcher.

Each scan picks up new PDFs from the watched directory, waits until the
scanner has finished writing them, routes them to a tenant by filename
prefix and records them in the ingest queue before moving them to the
holding directory the uploader reads from.

State that must survive between scans (files in flight, stability retry
counters) lives on the watcher instance. Content hashes are claimed for
the duration of the duplicate check and the enqueue, so copies of the
same file handled in parallel are queued once. A single watcher per
directory is assumed: two processes watching the same folder can
enqueue a file twice.
"""

import enum
import threading
from pathlib import Path

from invoice_intake.db.models import LogSource, QueueSource
from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.observability.sink import EventLoggers, ProcessingLogSink
from invoice_intake.tenants.resolver import TenantResolver
from invoice_intake.utils.config import WatcherConfig
from invoice_intake.utils.filenames import duplicate_name, extract_prefix, is_candidate
from invoice_intake.utils.files import delete_quietly, move_file_safe, sha256_file
from invoice_intake.utils.logger import get_logger
from invoice_intake.utils.scheduler import run_bounded
from invoice_intake.watcher.stability import is_stable

logger = get_logger(__name__)


class WatchOutcome(str, enum.Enum):
    """What happened to one file during a scan."""

    ENQUEUED = "enqueued"
    ALREADY_QUEUED = "already_queued"
    DUPLICATE = "duplicate"
    UNSTABLE = "unstable"
    ABANDONED = "abandoned"
    UNROUTABLE = "unroutable"
    VANISHED = "vanished"
    IN_FLIGHT = "in_flight"
    SKIPPED = "skipped"
    FAILED = "failed"


class IntakeWatcher:
    """Moves stable, routable scans from the drop folder into the queue.

    Args:
        config: Watcher settings (directories, stability, fan-out).
        resolver: Shared tenant resolver.
        queue: Ingest queue repository.
        sink: Processing log sink for operator-facing events.
        stop_event: Shutdown signal, also passed to stability waits.
    """

    def __init__(
        self,
        config: WatcherConfig,
        resolver: TenantResolver,
        queue: IngestQueue,
        sink: ProcessingLogSink,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.watch_dir = Path(config.watch_dir)
        self.processed_dir = Path(config.processed_dir)
        self.resolver = resolver
        self.queue = queue
        self.events = EventLoggers(sink, LogSource.WATCHER)
        self.stop_event = stop_event or threading.Event()
        self._in_flight: set[str] = set()
        self._stability_failures: dict[str, int] = {}
        self._claimed_hashes: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def scan(self) -> dict[str, WatchOutcome]:
        """Process every candidate currently in the watched directory.

        Returns:
            Outcome per filename, for logging and tests.
        """
        if not self.watch_dir.is_dir():
            logger.error("Watched directory does not exist: %s", self.watch_dir)
            return {}

        names = sorted(
            entry.name
            for entry in self.watch_dir.iterdir()
            if entry.is_file() and is_candidate(entry.name)
        )
        self._forget_stability(set(names))
        if not names:
            return {}
        logger.info("Found %d file(s) in %s", len(names), self.watch_dir)

        outcomes: dict[str, WatchOutcome] = {}

        def handle(name: str) -> None:
            outcomes[name] = self.process_file(name)

        run_bounded(names, handle, self.config.max_concurrent_files, "watcher")
        return outcomes

    tick = scan

    def process_file(self, filename: str) -> WatchOutcome:
        """Take one file through stability, routing, dedup and enqueue.

        Errors that may clear up on their own (database unavailable, I/O
        hiccups) leave the file where it is for the next scan.
        """
        with self._lock:
            if filename in self._in_flight:
                return WatchOutcome.IN_FLIGHT
            self._in_flight.add(filename)
        try:
            return self._process(filename)
        except FileNotFoundError:
            logger.info("File already processed or moved: %s", filename)
            return WatchOutcome.VANISHED
        except Exception:
            logger.exception("Error processing %s, will retry on next scan", filename)
            return WatchOutcome.FAILED
        finally:
            with self._lock:
                self._in_flight.discard(filename)

    def stability_failures(self, filename: str) -> int:
        with self._lock:
            return self._stability_failures.get(filename, 0)

    def _process(self, filename: str) -> WatchOutcome:
        if not is_candidate(filename):
            logger.debug("Skipping %s", filename)
            return WatchOutcome.SKIPPED
        path = self.watch_dir / filename
        if not path.is_file():
            self._clear_stability(filename)
            return WatchOutcome.VANISHED

        logger.info("Found new file: %s", filename)
        if not is_stable(
            path,
            self.config.stable_checks,
            self.config.stable_interval_seconds,
            self.stop_event,
        ):
            return self._handle_unstable(path)
        self._clear_stability(filename)

        prefix = extract_prefix(filename)
        tenant = self.resolver.resolve(prefix) if prefix else None
        if tenant is None:
            delete_quietly(path)
            logger.error(
                "Deleted %s: %s",
                filename,
                f"no tenant configured for prefix {prefix!r}" if prefix else "no tenant prefix",
            )
            return WatchOutcome.UNROUTABLE

        events = self.events.for_tenant(tenant.tenant_id)
        content_hash = sha256_file(path)

        existing = self.queue.find_by_source_ref(tenant.tenant_id, filename, QueueSource.SFTP)
        if existing is not None:
            move_file_safe(path, self.processed_dir / filename)
            events.info(f"File already queued: {filename} (queue id {existing.id})")
            return WatchOutcome.ALREADY_QUEUED

        claim = (tenant.tenant_id, content_hash)
        with self._lock:
            if claim in self._claimed_hashes:
                # The copy being enqueued wins; this one is parked on the next scan.
                logger.info("Same content is being queued from another file, skipping %s", filename)
                return WatchOutcome.DUPLICATE
            self._claimed_hashes.add(claim)
        try:
            duplicate = self.queue.find_by_hash(tenant.tenant_id, content_hash)
            if duplicate is not None:
                move_file_safe(path, self.processed_dir / duplicate_name(filename))
                events.warning(
                    "Duplicate file ignored (same content already received)",
                    filename=filename,
                    details={"original": duplicate.source_ref, "sha256": content_hash},
                )
                return WatchOutcome.DUPLICATE

            item = self.queue.enqueue(tenant.tenant_id, filename, content_hash, QueueSource.SFTP)
        finally:
            with self._lock:
                self._claimed_hashes.discard(claim)

        move_file_safe(path, self.processed_dir / filename)
        events.success(
            "File received and queued for upload",
            filename=filename,
            details={"queueId": item.id},
        )
        return WatchOutcome.ENQUEUED

    def _handle_unstable(self, path: Path) -> WatchOutcome:
        filename = path.name
        if not path.exists():
            self._clear_stability(filename)
            return WatchOutcome.VANISHED
        if self.stop_event.is_set():
            return WatchOutcome.UNSTABLE

        with self._lock:
            failures = self._stability_failures.get(filename, 0) + 1
            self._stability_failures[filename] = failures
        if failures < self.config.stability_max_retries:
            logger.warning(
                "File not stable yet: %s (%d/%d)",
                filename,
                failures,
                self.config.stability_max_retries,
            )
            return WatchOutcome.UNSTABLE

        self._clear_stability(filename)
        delete_quietly(path)
        message = f"File never stabilized after {failures} checks, deleted"
        tenant = self.resolver.resolve(extract_prefix(filename) or "")
        if tenant is not None:
            self.events.for_tenant(tenant.tenant_id).error(
                message, filename=filename, details={"checks": failures}
            )
        else:
            logger.error("%s: %s", message, filename)
        return WatchOutcome.ABANDONED

    def _clear_stability(self, filename: str) -> None:
        with self._lock:
            self._stability_failures.pop(filename, None)

    def _forget_stability(self, present: set[str]) -> None:
        """Drop counters for files no longer in the watched directory."""
        with self._lock:
            for name in [n for n in self._stability_failures if n not in present]:
                del self._stability_failures[name]
