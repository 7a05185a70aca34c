"""
EDI Exchange Models

Outbound queue items, inbound gateway responses and their archive.

Status Flow (queue):
- PENDING → ACCEPTED (gateway took the transmission)
- PENDING → FAILED (timeout / connectivity / portal refusal)
- FAILED → PENDING (manual retry while attempts remain)

An incoming message lives in edi_incoming_messages until it has been applied
to its declaration; it is then moved to edi_archive_entries in the same
transaction.
"""
import uuid
import enum
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String, DateTime, Date, Text, Integer, Boolean, ForeignKey, Index, text,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from customs.core.database import Base
from customs.models.declaration import DeclarationType, utc_now


class QueueStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    FAILED = "FAILED"


class GatewayOutcome(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class QueueItem(Base):
    """One pending outbound transmission of a declaration."""
    __tablename__ = "edi_queue_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    declaration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="CASCADE"), nullable=False
    )
    document_type: Mapped[DeclarationType] = mapped_column(SQLEnum(DeclarationType), nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        SQLEnum(QueueStatus), nullable=False, default=QueueStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Claimed by a running processor; guards against double transmission
    in_flight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Whether a FAILED item may be re-queued (False after an authoritative refusal)
    retriable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_error: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    xml_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    enqueued_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index('ix_edi_queue_items_status', 'status'),
        # At most one pending transmission per declaration
        Index(
            'uq_edi_queue_items_one_pending',
            'declaration_id',
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    @property
    def is_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


class IncomingMessage(Base):
    """A gateway response not yet applied to its declaration."""
    __tablename__ = "edi_incoming_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    declaration_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="SET NULL"), nullable=True
    )
    document_type: Mapped[DeclarationType] = mapped_column(SQLEnum(DeclarationType), nullable=False)
    document_number: Mapped[str] = mapped_column(String(32), nullable=False)  # nomor aju
    status: Mapped[GatewayOutcome] = mapped_column(SQLEnum(GatewayOutcome), nullable=False)
    response_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    response_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    registration_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    registration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    raw_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index('ix_edi_incoming_document_number', 'document_number'),
    )


class ArchiveEntry(Base):
    """An applied gateway response. Rows are written once and never changed."""
    __tablename__ = "edi_archive_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    message_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, unique=True)
    declaration_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="SET NULL"), nullable=True
    )
    document_type: Mapped[DeclarationType] = mapped_column(SQLEnum(DeclarationType), nullable=False)
    document_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[GatewayOutcome] = mapped_column(SQLEnum(GatewayOutcome), nullable=False)
    response_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    response_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    registration_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    registration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    raw_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    archive_path: Mapped[str] = mapped_column(String(255), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    archived_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        Index('ix_edi_archive_document_number', 'document_number'),
        Index('ix_edi_archive_type_archived', 'document_type', 'archived_at'),
    )
