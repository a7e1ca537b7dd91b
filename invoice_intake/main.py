"""Process host for the intake worker.

One process runs in one of two modes: ``watcher`` runs the drop-folder
watcher, ``processor`` runs the uploader and the OCR processor. Each
component gets its own polling loop on its own thread; SIGTERM and
SIGINT set the shared stop event and the loops wind down after their
current cycle.
"""

import signal
import sys
import threading
from pathlib import Path

from sqlalchemy.engine import Engine

from invoice_intake.db.document_repository import DocumentRepository
from invoice_intake.db.queue_repository import IngestQueue
from invoice_intake.db.session import build_engine, build_session_factory
from invoice_intake.exceptions import ConfigInvalid, ConfigMissing, InvalidWorkerMode
from invoice_intake.observability.sink import ProcessingLogSink
from invoice_intake.ocr.textract_client import TextractExpenseClient
from invoice_intake.processor.ocr_processor import OcrProcessor
from invoice_intake.storage.object_store import ObjectStore, build_s3_client
from invoice_intake.tenants.resolver import TenantResolver
from invoice_intake.uploader.queue_processor import Uploader
from invoice_intake.utils.config import WORKER_MODES, AppConfig, load_config
from invoice_intake.utils.logger import get_logger, setup_logging
from invoice_intake.utils.scheduler import PollingLoop
from invoice_intake.watcher.intake import IntakeWatcher

logger = get_logger(__name__)


class Application:
    """Builds and owns the components of one worker process.

    Args:
        config: Loaded configuration.
        stop_event: Shared shutdown signal.
        engine: Prebuilt database engine; built from config if omitted.
        store: Prebuilt object store; built from config if omitted.
        ocr_client: Prebuilt OCR client; built from config if omitted.
    """

    def __init__(
        self,
        config: AppConfig,
        stop_event: threading.Event | None = None,
        engine: Engine | None = None,
        store: ObjectStore | None = None,
        ocr_client: TextractExpenseClient | None = None,
    ) -> None:
        self.config = config
        self.stop_event = stop_event or threading.Event()
        self.engine = engine or build_engine(config.database)
        self.session_factory = build_session_factory(self.engine)
        self.resolver = TenantResolver(Path(config.prefix_map_path))
        self.sink = ProcessingLogSink(
            self.session_factory,
            flush_size=config.observability.flush_size,
            flush_interval_seconds=config.observability.flush_interval_seconds,
        )
        self.queue = IngestQueue(self.session_factory)
        self.documents = DocumentRepository(self.session_factory)
        self._store = store
        self._ocr_client = ocr_client

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = ObjectStore(
                build_s3_client(self.config.storage),
                auto_create_bucket=self.config.storage.auto_create_bucket,
            )
        return self._store

    @property
    def ocr_client(self) -> TextractExpenseClient:
        if self._ocr_client is None:
            self._ocr_client = TextractExpenseClient(region=self.config.ocr.textract_region)
        return self._ocr_client

    def build_watcher(self) -> IntakeWatcher:
        return IntakeWatcher(
            self.config.watcher, self.resolver, self.queue, self.sink, self.stop_event
        )

    def build_uploader(self) -> Uploader:
        return Uploader(
            self.config.uploader,
            self.config.storage,
            self.config.watcher.processed_dir,
            self.resolver,
            self.queue,
            self.store,
            self.sink,
            self.stop_event,
        )

    def build_ocr_processor(self) -> OcrProcessor:
        return OcrProcessor(
            self.config.ocr,
            self.config.storage,
            self.resolver,
            self.documents,
            self.store,
            self.ocr_client,
            self.sink,
            stop_event=self.stop_event,
        )

    def loops(self, mode: str) -> list[PollingLoop]:
        """Polling loops for a worker mode.

        Raises:
            InvalidWorkerMode: If ``mode`` is not a known mode.
        """
        if mode not in WORKER_MODES:
            raise InvalidWorkerMode(
                f"Invalid worker mode {mode!r}, expected one of {', '.join(WORKER_MODES)}"
            )
        if mode == "watcher":
            watcher = self.build_watcher()
            Path(self.config.watcher.processed_dir).mkdir(parents=True, exist_ok=True)
            return [
                PollingLoop(
                    "watcher",
                    watcher.scan,
                    self.config.watcher.poll_interval_seconds,
                    self.stop_event,
                    after_tick=self.sink.flush_if_due,
                )
            ]
        uploader = self.build_uploader()
        ocr = self.build_ocr_processor()
        return [
            PollingLoop(
                "uploader",
                uploader.tick,
                self.config.uploader.poll_interval_seconds,
                self.stop_event,
                after_tick=self.sink.flush_if_due,
            ),
            PollingLoop(
                "ocr",
                ocr.tick,
                self.config.ocr.poll_interval_seconds,
                self.stop_event,
                after_tick=self.sink.flush_if_due,
            ),
        ]

    def run(self, mode: str) -> None:
        """Run the loops of ``mode`` until the stop event is set.

        Raises:
            InvalidWorkerMode: If ``mode`` is not a known mode.
            ConfigMissing: If the prefix map does not exist.
            ConfigInvalid: If the prefix map cannot be parsed.
        """
        try:
            loops = self.loops(mode)
            tenants = self.resolver.load()
            logger.info("Worker starting in %s mode with %d tenant(s)", mode, len(tenants))
            threads = [loop.start() for loop in loops]
            # join with a timeout so the main thread keeps handling signals
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=1.0)
        finally:
            self.close()

    def close(self) -> None:
        self.sink.close()
        self.engine.dispose()
        logger.info("Worker stopped")


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Translate SIGTERM and SIGINT into a cooperative stop."""

    def _handle(signum, _frame) -> None:
        logger.info("%s received, shutting down gracefully", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def run(mode: str | None = None, config_path: Path | None = None) -> int:
    """Load configuration and run the worker until stopped.

    Returns:
        Process exit code: 0 after a clean stop, 1 on a fatal startup error.
    """
    try:
        config = load_config(config_path)
    except ConfigInvalid as exc:
        setup_logging()
        logger.critical("Fatal configuration error: %s", exc)
        return 1
    setup_logging(config.log_level)

    mode = mode or config.worker_mode
    stop_event = threading.Event()
    try:
        app = Application(config, stop_event)
        install_signal_handlers(stop_event)
        app.run(mode)
    except (InvalidWorkerMode, ConfigMissing, ConfigInvalid) as exc:
        logger.critical("Fatal startup error: %s", exc)
        return 1
    return 0


def main() -> None:
    """Entry point for ``python -m invoice_intake.main``."""
    sys.exit(run())


if __name__ == "__main__":
    main()
