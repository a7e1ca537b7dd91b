"""Database-backed ingest queue.

The queue is the hand-off point between the watcher, which inserts rows,
and the uploader, which moves them through their lifecycle. There is no
row locking: every transition re-reads the row and derives the next
state from its current ``attempts``.
"""

from datetime import datetime, timezone

from sqlalchemy import func, or_, select

from invoice_intake.db.models import QueueItem, QueueSource, QueueStatus
from invoice_intake.db.session import SessionFactory
from invoice_intake.utils.backoff import next_retry_at
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 5000


class IngestQueue:
    """Queue operations over the ``ingest_queue`` table.

    Args:
        session_factory: Factory for short-lived sessions, one per call.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def find_by_source_ref(
        self, tenant_id: str, source_ref: str, source: QueueSource = QueueSource.SFTP
    ) -> QueueItem | None:
        """Existing row for a tenant's file name, if any."""
        with self._session_factory() as session:
            return session.scalars(
                select(QueueItem)
                .where(
                    QueueItem.tenant_id == tenant_id,
                    QueueItem.source == source,
                    QueueItem.source_ref == source_ref,
                )
                .limit(1)
            ).first()

    def find_by_hash(self, tenant_id: str, content_hash: str) -> QueueItem | None:
        """Existing row for a tenant's file content, if any."""
        with self._session_factory() as session:
            return session.scalars(
                select(QueueItem)
                .where(
                    QueueItem.tenant_id == tenant_id,
                    QueueItem.content_hash == content_hash,
                )
                .order_by(QueueItem.created_at)
                .limit(1)
            ).first()

    def get(self, item_id: str) -> QueueItem | None:
        with self._session_factory() as session:
            return session.get(QueueItem, item_id)

    def enqueue(
        self,
        tenant_id: str,
        source_ref: str,
        content_hash: str | None,
        source: QueueSource = QueueSource.SFTP,
    ) -> QueueItem:
        """Insert a new PENDING row with no attempts."""
        item = QueueItem(
            tenant_id=tenant_id,
            source=source,
            source_ref=source_ref,
            content_hash=content_hash,
            status=QueueStatus.PENDING,
            attempts=0,
        )
        with self._session_factory() as session, session.begin():
            session.add(item)
        logger.info("Enqueued %s for tenant %s (id %s)", source_ref, tenant_id, item.id)
        return item

    def poll_due(self, limit: int, now: datetime | None = None) -> list[QueueItem]:
        """PENDING rows whose retry time has passed, oldest first."""
        now = now or datetime.now(timezone.utc)
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(QueueItem)
                    .where(
                        QueueItem.status == QueueStatus.PENDING,
                        or_(
                            QueueItem.next_retry_at.is_(None),
                            QueueItem.next_retry_at <= now,
                        ),
                    )
                    .order_by(QueueItem.created_at)
                    .limit(limit)
                )
            )

    def mark_processing(self, item_id: str) -> QueueItem | None:
        """Claim a PENDING row.

        Returns:
            The updated row, or ``None`` if it is no longer PENDING
            (another uploader got there first, or an operator changed it).
        """
        with self._session_factory() as session, session.begin():
            item = session.get(QueueItem, item_id)
            if item is None or item.status != QueueStatus.PENDING:
                return None
            item.status = QueueStatus.PROCESSING
            return item

    def mark_done(self, item_id: str) -> None:
        with self._session_factory() as session, session.begin():
            item = session.get(QueueItem, item_id)
            if item is None:
                return
            item.status = QueueStatus.DONE
            item.last_error = None
            item.next_retry_at = None

    def record_failure(
        self,
        item_id: str,
        error: str,
        max_attempts: int,
        base_delay_seconds: float,
        cap_delay_seconds: float,
        now: datetime | None = None,
    ) -> QueueItem | None:
        """Count a failed attempt and schedule a retry or dead-letter the row.

        Args:
            item_id: Row to update.
            error: Error message; truncated before storing.
            max_attempts: Attempts after which the row becomes ERROR.
            base_delay_seconds: Backoff base.
            cap_delay_seconds: Backoff cap.
            now: Reference time for the retry schedule.

        Returns:
            The updated row, or ``None`` if it no longer exists.
        """
        with self._session_factory() as session, session.begin():
            item = session.get(QueueItem, item_id)
            if item is None:
                return None
            if item.status in (QueueStatus.DONE, QueueStatus.ERROR):
                logger.warning("Ignoring failure for finished item %s", item_id)
                return item
            item.attempts = item.attempts + 1
            item.last_error = error[:MAX_ERROR_LENGTH]
            if item.attempts >= max_attempts:
                item.status = QueueStatus.ERROR
                item.next_retry_at = None
            else:
                item.status = QueueStatus.PENDING
                item.next_retry_at = next_retry_at(
                    item.attempts, base_delay_seconds, cap_delay_seconds, now=now
                )
            return item

    def requeue_stuck(self, older_than: datetime) -> int:
        """Return PROCESSING rows untouched since ``older_than`` to PENDING.

        A worker that dies between claiming a row and recording the
        result leaves it in PROCESSING, where no poll would see it again.
        ``attempts`` is left as is.

        Returns:
            Number of rows requeued.
        """
        with self._session_factory() as session, session.begin():
            items = list(
                session.scalars(
                    select(QueueItem).where(
                        QueueItem.status == QueueStatus.PROCESSING,
                        QueueItem.updated_at < older_than,
                    )
                )
            )
            for item in items:
                item.status = QueueStatus.PENDING
                item.next_retry_at = None
                item.last_error = "Requeued after stalling in PROCESSING"
        if items:
            logger.warning("Requeued %d stalled queue items", len(items))
        return len(items)

    def counts_by_status(self) -> dict[str, int]:
        """Row counts per status, for status output."""
        with self._session_factory() as session:
            rows = session.execute(
                select(QueueItem.status, func.count()).group_by(QueueItem.status)
            ).all()
        return {status.value: count for status, count in rows}
