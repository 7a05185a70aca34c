"""
Customs Declaration Models

PEB (export) and PIB (import) declarations, their goods lines and the
supporting documents required before submission.

Status Flow:
- DRAFT → SUBMITTED → UNDER_REVIEW → APPROVED / REJECTED
- APPROVED → SENT_TO_GATEWAY → GATEWAY_ACCEPTED / GATEWAY_REJECTED
- REJECTED re-opens editing; the other post-submit states keep the lock
"""
import uuid
import enum
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, DateTime, Date, Text, Integer, Numeric, ForeignKey, Index,
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from customs.core.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeclarationType(str, enum.Enum):
    PEB = "PEB"  # Pemberitahuan Ekspor Barang (BC 3.0)
    PIB = "PIB"  # Pemberitahuan Impor Barang (BC 2.0)


class DeclarationStatus(str, enum.Enum):
    """Status of a customs declaration."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    LOCKED = "LOCKED"
    SENT_TO_GATEWAY = "SENT_TO_GATEWAY"
    GATEWAY_ACCEPTED = "GATEWAY_ACCEPTED"
    GATEWAY_REJECTED = "GATEWAY_REJECTED"


# Statuses in which only status-transition fields may change
LOCKED_STATUSES = frozenset({
    DeclarationStatus.SUBMITTED,
    DeclarationStatus.UNDER_REVIEW,
    DeclarationStatus.APPROVED,
    DeclarationStatus.LOCKED,
    DeclarationStatus.SENT_TO_GATEWAY,
    DeclarationStatus.GATEWAY_ACCEPTED,
})


class TransportMode(str, enum.Enum):
    AIR = "AIR"
    SEA = "SEA"
    LAND = "LAND"
    RAIL = "RAIL"
    MULTI = "MULTI"


class DocumentCategory(str, enum.Enum):
    """Supporting document categories checked at submission."""
    INVOICE = "INVOICE"
    PACKING_LIST = "PACKING_LIST"
    AIR_WAYBILL = "AIR_WAYBILL"
    BILL_OF_LADING = "BILL_OF_LADING"
    OTHER = "OTHER"


class DeclarationSource(str, enum.Enum):
    LOCAL = "LOCAL"
    CEISA = "CEISA"


class Declaration(Base):
    """One customs submission (PEB or PIB)."""
    __tablename__ = "declarations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    declaration_type: Mapped[DeclarationType] = mapped_column(
        SQLEnum(DeclarationType), nullable=False
    )

    # Identity assigned by the gateway
    nomor_aju: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    registration_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    registration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Parties
    trader_npwp: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # exporter or importer
    trader_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    importer_api_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    counterparty_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # buyer or supplier
    counterparty_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Classification
    customs_office_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    transport_mode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    incoterm_code: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    # Financial header (foreign currency unless suffixed _idr)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("1"))
    total_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))  # FOB (PEB) / CIF (PIB)
    freight_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    insurance_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    # Aggregated duties and taxes (IDR)
    total_bm: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_ppn: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_pph: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    status: Mapped[DeclarationStatus] = mapped_column(
        SQLEnum(DeclarationStatus), nullable=False, default=DeclarationStatus.DRAFT
    )
    source: Mapped[DeclarationSource] = mapped_column(
        SQLEnum(DeclarationSource), nullable=False, default=DeclarationSource.LOCAL
    )

    # Integrity
    xml_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    xml_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    # Last rejection reasons from the gateway or the approver
    gateway_errors: Mapped[Optional[list]] = mapped_column(JSONB, nullable=True)
    remote_payload: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "DeclarationItem",
        back_populates="declaration",
        cascade="all, delete-orphan",
        order_by="DeclarationItem.item_number",
        lazy="selectin",
    )
    documents = relationship(
        "SupportingDocument",
        back_populates="declaration",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index('ix_declarations_status', 'status'),
        Index('ix_declarations_type_status', 'declaration_type', 'status'),
    )

    def is_locked(self) -> bool:
        """Check if field edits are blocked for this declaration."""
        return self.status in LOCKED_STATUSES

    def can_be_modified(self) -> bool:
        return not self.is_locked()

    def __repr__(self) -> str:
        return (
            f"<Declaration(id={self.id}, type={self.declaration_type}, "
            f"nomor_aju={self.nomor_aju}, status={self.status})>"
        )


class DeclarationItem(Base):
    """One goods line of a declaration."""
    __tablename__ = "declaration_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    declaration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="CASCADE"), nullable=False
    )
    item_number: Mapped[int] = mapped_column(Integer, nullable=False)
    hs_code: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    quantity_unit: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    net_weight: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    gross_weight: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    line_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    country_of_origin: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Rates in percent
    bm_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False, default=Decimal("0"))
    ppn_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False, default=Decimal("11"))
    pph_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False, default=Decimal("0"))

    # Computed valuation and taxes
    freight_share: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    insurance_share: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    cif_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    cif_idr: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    bm_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    ppn_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    pph_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    total_tax: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))

    declaration = relationship("Declaration", back_populates="items")


class SupportingDocument(Base):
    """Invoice, packing list, AWB or B/L attached to a declaration."""
    __tablename__ = "supporting_documents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    declaration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("declarations.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[DocumentCategory] = mapped_column(SQLEnum(DocumentCategory), nullable=False)
    reference_number: Mapped[str] = mapped_column(String(64), nullable=False)
    document_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    declaration = relationship("Declaration", back_populates="documents")
