"""Document rows written by the OCR processor."""

from sqlalchemy import select

from invoice_intake.db.models import Document
from invoice_intake.db.session import SessionFactory
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


class DocumentRepository:
    """Reads and writes ``documentos`` rows.

    Rows may be edited by the dashboard at any time, so nothing here
    caches them; every call reads the current state.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def find_by_hash(self, tenant_id: str, content_hash: str) -> Document | None:
        with self._session_factory() as session:
            return session.scalars(
                select(Document)
                .where(
                    Document.tenant_id == tenant_id,
                    Document.content_hash == content_hash,
                )
                .order_by(Document.created_at)
                .limit(1)
            ).first()

    def get(self, document_id: str) -> Document | None:
        with self._session_factory() as session:
            return session.get(Document, document_id)

    def create(self, document: Document) -> Document:
        with self._session_factory() as session, session.begin():
            session.add(document)
        logger.info("Document %s created for tenant %s", document.id, document.tenant_id)
        return document

    def set_final_key(self, document_id: str, final_key: str) -> None:
        """Record that the object now lives at ``final_key``."""
        with self._session_factory() as session, session.begin():
            document = session.get(Document, document_id)
            if document is None:
                logger.warning("Document %s vanished before relocation was recorded", document_id)
                return
            document.final_storage_key = final_key
