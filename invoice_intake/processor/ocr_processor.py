"""OCR stage: turn uploaded inbox objects into document rows.

For every object waiting in a tenant inbox the processor downloads it,
skips content that already has a document, runs expense analysis, stores
the raw response for audit, inserts the document row and finally moves
the object to its date-organised key. The object is moved only after
the row exists, so a crash in between leaves a row whose
``final_storage_key`` is still empty; the next cycle finds the object by
hash and completes the move.

OCR failures are retried on later cycles, at most ``max_attempts`` times
and no sooner than ``retry_delay_seconds`` apart, then parked under the
error prefix. Documents the service rejects outright are parked at once.
"""

import enum
import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from pathlib import PurePosixPath

from invoice_intake.db.document_repository import DocumentRepository
from invoice_intake.db.models import Document, LogSource, QueueSource, ReviewState
from invoice_intake.exceptions import UnsupportedDocument
from invoice_intake.ocr.expense_parser import ExpenseParser, ParsedInvoice
from invoice_intake.ocr.textract_client import TextractExpenseClient
from invoice_intake.observability.sink import EventLoggers, ProcessingLogSink
from invoice_intake.storage.keys import basename, dated_key, error_key, ocr_response_key
from invoice_intake.storage.object_store import ObjectStore
from invoice_intake.tenants.resolver import TenantConfig, TenantResolver
from invoice_intake.utils.config import OCRConfig, StorageConfig
from invoice_intake.utils.filenames import PDF_SUFFIX, extract_date
from invoice_intake.utils.files import sha256_bytes
from invoice_intake.utils.logger import get_logger
from invoice_intake.utils.scheduler import run_bounded
from invoice_intake.validation.completeness import CompletenessChecker

logger = get_logger(__name__)

OCR_SUFFIX = "_ocr.json"


class OcrOutcome(str, enum.Enum):
    """What happened to one inbox object during a cycle."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    REPAIRED = "repaired"
    RETRY_LATER = "retry_later"
    WAITING = "waiting"
    DEAD_LETTERED = "dead_lettered"
    UNSUPPORTED = "unsupported"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class InboxCandidate:
    """An object waiting in a tenant inbox."""

    tenant: TenantConfig
    key: str

    @property
    def bucket(self) -> str:
        return self.tenant.bucket

    @property
    def filename(self) -> str:
        return basename(self.key)

    @property
    def ref(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass
class FailureRecord:
    attempts: int
    last_error: str
    last_attempt: float


class OcrProcessor:
    """Processes inbox objects into :class:`Document` rows.

    Args:
        config: OCR settings (fan-out, retry policy, required fields).
        storage: Storage settings, for the inbox and error prefixes.
        resolver: Shared tenant resolver.
        documents: Document repository.
        store: Object store client.
        ocr_client: Expense analysis client.
        sink: Processing log sink.
        parser: Response parser; built from ``config`` if omitted.
        stop_event: Shutdown signal; checked before each object.
        clock: Monotonic clock for the retry delay, replaceable in tests.
    """

    def __init__(
        self,
        config: OCRConfig,
        storage: StorageConfig,
        resolver: TenantResolver,
        documents: DocumentRepository,
        store: ObjectStore,
        ocr_client: TextractExpenseClient,
        sink: ProcessingLogSink,
        parser: ExpenseParser | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.storage = storage
        self.resolver = resolver
        self.documents = documents
        self.store = store
        self.ocr_client = ocr_client
        self.parser = parser or ExpenseParser(default_currency=config.default_currency)
        self.checker = CompletenessChecker(config.required_fields)
        self.events = EventLoggers(sink, LogSource.OCR)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._in_flight: set[str] = set()
        self._failures: dict[str, FailureRecord] = {}
        self._claimed_hashes: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def list_inbox(self) -> list[InboxCandidate]:
        """PDF objects waiting in every tenant's inbox.

        A tenant whose bucket cannot be listed is logged and skipped.
        Tenants sharing a bucket only see keys under their own prefix.
        """
        return self._scan_inbox()[0]

    def _scan_inbox(self) -> tuple[list[InboxCandidate], set[str]]:
        """Inbox candidates, plus the buckets that could not be listed."""
        candidates: list[InboxCandidate] = []
        unlisted: set[str] = set()
        seen: set[str] = set()
        for tenant in self.resolver.tenants():
            prefix = self._tenant_inbox_prefix(tenant)
            try:
                objects = self.store.list_keys(tenant.bucket, prefix)
            except Exception:
                logger.exception("Error listing inbox for %s/%s", tenant.bucket, prefix)
                unlisted.add(tenant.bucket)
                continue
            for obj in objects:
                if not obj.key.lower().endswith(PDF_SUFFIX):
                    continue
                candidate = InboxCandidate(tenant=tenant, key=obj.key)
                if candidate.ref not in seen:
                    seen.add(candidate.ref)
                    candidates.append(candidate)
        return candidates, unlisted

    def tick(self) -> dict[str, OcrOutcome]:
        """Process the next batch of eligible inbox objects.

        Returns:
            Outcome per ``bucket/key``.
        """
        candidates, unlisted = self._scan_inbox()
        self._forget_failures({c.ref for c in candidates}, unlisted)
        eligible = [c for c in candidates if self._eligible(c)]
        batch = eligible[: self.config.max_concurrent_jobs]
        if not batch:
            return {}
        logger.info(
            "Processing %d of %d inbox file(s) with OCR", len(batch), len(eligible)
        )

        outcomes: dict[str, OcrOutcome] = {}

        def handle(candidate: InboxCandidate) -> None:
            outcomes[candidate.ref] = self.process(candidate)

        run_bounded(batch, handle, self.config.max_concurrent_jobs, "ocr")
        return outcomes

    def process(self, candidate: InboxCandidate) -> OcrOutcome:
        """Run one inbox object through OCR and record the result."""
        with self._lock:
            if candidate.ref in self._in_flight:
                logger.warning("Already being processed, skipping: %s", candidate.key)
                return OcrOutcome.IN_FLIGHT
            if not self._retry_due(candidate.ref):
                return OcrOutcome.WAITING
            self._in_flight.add(candidate.ref)
            failure = self._failures.get(candidate.ref)

        try:
            if failure is not None and failure.attempts >= self.config.max_attempts:
                return self._dead_letter(candidate, "failed", failure.last_error)
            outcome = self._process(candidate)
            with self._lock:
                self._failures.pop(candidate.ref, None)
            return outcome
        except UnsupportedDocument as exc:
            return self._dead_letter(candidate, "unsupported", str(exc))
        except Exception as exc:
            return self._record_failure(candidate, exc)
        finally:
            with self._lock:
                self._in_flight.discard(candidate.ref)

    def failure_for(self, candidate: InboxCandidate) -> FailureRecord | None:
        with self._lock:
            return self._failures.get(candidate.ref)

    def _process(self, candidate: InboxCandidate) -> OcrOutcome:
        tenant = candidate.tenant
        events = self.events.for_tenant(tenant.tenant_id)
        logger.info("Processing OCR: %s/%s", candidate.bucket, candidate.key)

        data = self.store.get(candidate.bucket, candidate.key)
        content_hash = sha256_bytes(data)

        # Held from the hash lookup until the document row is committed.
        claim = (tenant.tenant_id, content_hash)
        with self._lock:
            if claim in self._claimed_hashes:
                logger.info(
                    "Same content is being processed from another key, retrying %s later",
                    candidate.key,
                )
                return OcrOutcome.RETRY_LATER
            self._claimed_hashes.add(claim)
        try:
            existing = self.documents.find_by_hash(tenant.tenant_id, content_hash)
            if existing is not None:
                return self._handle_existing(candidate, existing, content_hash)

            response = self.ocr_client.analyze(data)
            invoice = self.parser.parse(response)
            cleared = invoice.discard_tenant_tax_id(tenant.tax_id)
            report = self.checker.check(invoice, extra_missing=cleared)

            organization_date = self._organization_date(invoice, candidate.filename)
            final_key = dated_key(tenant.storage_key_prefix, organization_date, candidate.filename)
            response_key = ocr_response_key(final_key)
            self.store.put(
                candidate.bucket,
                response_key,
                json.dumps(response, default=str, ensure_ascii=False).encode("utf-8"),
                content_type="application/json",
            )

            document = self._build_document(
                tenant, candidate, invoice, content_hash, report.missing, response_key
            )
            self.documents.create(document)
        finally:
            with self._lock:
                self._claimed_hashes.discard(claim)

        events.success(
            "Document processed with OCR",
            filename=candidate.filename,
            document_id=document.id,
            details={
                "confidence": invoice.confidence_score,
                "missingFields": report.missing,
                "organizationDate": organization_date.isoformat(),
            },
        )
        self._relocate(candidate, document.id, final_key)
        return OcrOutcome.CREATED

    def _handle_existing(
        self, candidate: InboxCandidate, existing: Document, content_hash: str
    ) -> OcrOutcome:
        """Finish an interrupted relocation, or drop a duplicate upload."""
        if existing.final_storage_key is None and existing.raw_storage_key == candidate.key:
            final_key = self._pending_final_key(existing, candidate.filename)
            logger.info("Completing interrupted relocation of document %s", existing.id)
            self._relocate(candidate, existing.id, final_key)
            return OcrOutcome.REPAIRED
        self.store.delete(candidate.bucket, candidate.key)
        self.events.for_tenant(candidate.tenant.tenant_id).warning(
            "Duplicate document detected (same SHA-256), removed from inbox",
            filename=candidate.filename,
            document_id=existing.id,
            details={"sha256": content_hash},
        )
        return OcrOutcome.DUPLICATE

    def _build_document(
        self,
        tenant: TenantConfig,
        candidate: InboxCandidate,
        invoice: ParsedInvoice,
        content_hash: str,
        missing: list[str],
        response_key: str,
    ) -> Document:
        payload = invoice.to_payload()
        payload["missingFields"] = missing
        payload["sourceFile"] = candidate.filename
        full_number = invoice.full_number
        return Document(
            tenant_id=tenant.tenant_id,
            provider_id=None,
            type=invoice.document_type,
            letter=invoice.letter.value if invoice.letter else None,
            point_of_sale=invoice.point_of_sale,
            number=invoice.number,
            full_number=full_number[:64] if full_number else None,
            issue_date=invoice.issue_date.value if invoice.issue_date else None,
            due_date=invoice.due_date.value if invoice.due_date else None,
            currency=invoice.currency,
            subtotal=invoice.subtotal.value if invoice.subtotal else None,
            tax=invoice.tax.value if invoice.tax else None,
            total=invoice.total.value if invoice.total else None,
            confidence_score=invoice.confidence_score,
            review_state=ReviewState.PENDING,
            missing_fields=missing,
            normalized_payload=payload,
            source=QueueSource.SFTP,
            content_hash=content_hash,
            raw_storage_key=candidate.key,
            final_storage_key=None,
            raw_ocr_response_key=response_key,
        )

    def _relocate(self, candidate: InboxCandidate, document_id: str, final_key: str) -> bool:
        """Move the object to its final key, then record the key on the row."""
        events = self.events.for_tenant(candidate.tenant.tenant_id)
        try:
            self.store.move(candidate.bucket, candidate.key, final_key)
        except Exception as exc:
            events.warning(
                "Could not move file to its final location, will retry",
                filename=candidate.filename,
                document_id=document_id,
                details={"finalKey": final_key, "error": str(exc)},
            )
            return False
        try:
            self.documents.set_final_key(document_id, final_key)
        except Exception as exc:
            logger.exception("Moved %s but could not record it on document %s", final_key, document_id)
            events.warning(
                "File moved but its final location was not saved",
                filename=candidate.filename,
                document_id=document_id,
                details={"finalKey": final_key, "error": str(exc)},
            )
            return False
        logger.info("Moved %s -> %s", candidate.key, final_key)
        return True

    def _organization_date(self, invoice: ParsedInvoice, filename: str) -> date:
        if invoice.issue_date is not None:
            return invoice.issue_date.value
        return extract_date(filename) or date.today()

    def _pending_final_key(self, document: Document, filename: str) -> str:
        """Final key chosen when the document was created."""
        response_key = document.raw_ocr_response_key or ""
        if response_key.endswith(OCR_SUFFIX):
            return response_key[: -len(OCR_SUFFIX)] + PurePosixPath(filename).suffix
        day = document.issue_date or extract_date(filename) or date.today()
        tenant = self.resolver.for_tenant(document.tenant_id)
        prefix = tenant.storage_key_prefix if tenant else ""
        return dated_key(prefix, day, filename)

    def _record_failure(self, candidate: InboxCandidate, exc: Exception) -> OcrOutcome:
        message = f"{type(exc).__name__}: {exc}"
        with self._lock:
            previous = self._failures.get(candidate.ref)
            attempts = (previous.attempts if previous else 0) + 1
            self._failures[candidate.ref] = FailureRecord(attempts, message, self._clock())
        logger.error(
            "OCR attempt %d/%d failed for %s: %s",
            attempts,
            self.config.max_attempts,
            candidate.key,
            message,
        )
        if attempts >= self.config.max_attempts:
            return self._dead_letter(candidate, "failed", message)
        return OcrOutcome.RETRY_LATER

    def _dead_letter(self, candidate: InboxCandidate, kind: str, reason: str) -> OcrOutcome:
        """Park an object under the error prefix for manual review."""
        target = error_key(
            self.storage.error_prefix,
            candidate.tenant.storage_key_prefix,
            kind,
            candidate.filename,
        )
        events = self.events.for_tenant(candidate.tenant.tenant_id)
        try:
            self.store.move(candidate.bucket, candidate.key, target)
        except Exception:
            logger.exception("Could not move %s to %s", candidate.key, target)
            return OcrOutcome.RETRY_LATER

        with self._lock:
            failure = self._failures.pop(candidate.ref, None)
        if kind == "unsupported":
            message = "Unsupported document format, moved to error folder for manual review"
            outcome = OcrOutcome.UNSUPPORTED
        else:
            attempts = failure.attempts if failure else self.config.max_attempts
            message = f"File abandoned after {attempts} failed OCR attempts"
            outcome = OcrOutcome.DEAD_LETTERED
        events.error(
            message,
            filename=candidate.filename,
            details={"reason": reason, "errorKey": target},
        )
        return outcome

    def _forget_failures(self, listed: set[str], unlisted_buckets: set[str]) -> None:
        """Drop failure records for objects no longer in any inbox.

        Records in buckets that could not be listed this cycle are kept.
        """
        with self._lock:
            gone = [
                ref
                for ref in self._failures
                if ref not in listed
                and ref not in self._in_flight
                and ref.split("/", 1)[0] not in unlisted_buckets
            ]
            for ref in gone:
                del self._failures[ref]

    def _eligible(self, candidate: InboxCandidate) -> bool:
        with self._lock:
            return candidate.ref not in self._in_flight and self._retry_due(candidate.ref)

    def _retry_due(self, ref: str) -> bool:
        failure = self._failures.get(ref)
        if failure is None:
            return True
        return self._clock() - failure.last_attempt >= self.config.retry_delay_seconds

    def _tenant_inbox_prefix(self, tenant: TenantConfig) -> str:
        inbox = self.storage.inbox_prefix.strip("/")
        own = tenant.storage_key_prefix.strip("/")
        parts = [p for p in (inbox, own) if p]
        return "/".join(parts) + "/" if parts else ""
