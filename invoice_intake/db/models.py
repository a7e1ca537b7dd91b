"""SQLAlchemy models for the tables the worker reads and writes."""

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Declarative base for all worker tables."""


class QueueSource(str, enum.Enum):
    """Channel a queued file arrived through."""

    SFTP = "SFTP"
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    DRIVE = "DRIVE"


class QueueStatus(str, enum.Enum):
    """Lifecycle of an ingest queue row."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    ERROR = "ERROR"


class ReviewState(str, enum.Enum):
    """Review state of a document in the dashboard."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ERROR = "ERROR"
    DUPLICATE = "DUPLICATE"


class DocumentType(str, enum.Enum):
    """Kind of commercial document."""

    FACTURA = "FACTURA"
    REMITO = "REMITO"
    NOTA_CREDITO = "NOTA_CREDITO"


class LogLevel(str, enum.Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


class LogSource(str, enum.Enum):
    WATCHER = "WATCHER"
    PROCESSOR = "PROCESSOR"
    OCR = "OCR"
    SYSTEM = "SYSTEM"


class QueueItem(Base):
    """One file's journey from the scanner folder to object storage."""

    __tablename__ = "ingest_queue"
    __table_args__ = (
        Index("ix_ingest_queue_tenant_source_ref", "tenant_id", "source_ref"),
        Index("ix_ingest_queue_tenant_hash", "tenant_id", "content_hash"),
        Index("ix_ingest_queue_due", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[QueueSource] = mapped_column(
        Enum(QueueSource, native_enum=False, length=16),
        default=QueueSource.SFTP,
        nullable=False,
    )
    source_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, native_enum=False, length=16),
        default=QueueStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"QueueItem(id={self.id!r}, source_ref={self.source_ref!r}, "
            f"status={self.status.value}, attempts={self.attempts})"
        )


class Document(Base):
    """Normalized invoice record produced by the OCR processor."""

    __tablename__ = "documentos"
    __table_args__ = (Index("ix_documentos_tenant_hash", "tenant_id", "content_hash"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType, native_enum=False, length=16),
        default=DocumentType.FACTURA,
        nullable=False,
    )
    letter: Mapped[str | None] = mapped_column(String(1), nullable=True)
    point_of_sale: Mapped[str | None] = mapped_column(String(8), nullable=True)
    number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    full_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="ARS", nullable=False)
    subtotal: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    tax: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    confidence_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    review_state: Mapped[ReviewState] = mapped_column(
        Enum(ReviewState, native_enum=False, length=16),
        default=ReviewState.PENDING,
        nullable=False,
    )
    missing_fields: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    normalized_payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False
    )
    source: Mapped[QueueSource] = mapped_column(
        Enum(QueueSource, native_enum=False, length=16),
        default=QueueSource.SFTP,
        nullable=False,
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    final_storage_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    raw_ocr_response_key: Mapped[str | None] = mapped_column(
        String(1024), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ProcessingLogEntry(Base):
    """Human-readable processing event shown in the dashboard."""

    __tablename__ = "processing_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    level: Mapped[LogLevel] = mapped_column(
        Enum(LogLevel, native_enum=False, length=16), nullable=False
    )
    source: Mapped[LogSource] = mapped_column(
        Enum(LogSource, native_enum=False, length=16), nullable=False
    )
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    document_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    filename: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
