"""
Declaration Schemas

Pydantic schemas for PEB/PIB declaration endpoints.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from customs.models.declaration import DeclarationType, DeclarationStatus, DocumentCategory


class DeclarationFields(BaseModel):
    """Editable header fields. Unset fields are left untouched on update."""
    trader_npwp: Optional[str] = Field(None, max_length=32, description="Exporter (PEB) or importer (PIB) NPWP")
    trader_name: Optional[str] = Field(None, max_length=255)
    importer_api_number: Optional[str] = Field(None, max_length=32, description="Angka Pengenal Importir")
    counterparty_name: Optional[str] = Field(None, max_length=255, description="Buyer (PEB) or supplier (PIB)")
    counterparty_country: Optional[str] = Field(None, max_length=2, description="ISO 3166 alpha-2")
    customs_office_code: Optional[str] = Field(None, max_length=10)
    transport_mode: Optional[str] = Field(None, description="AIR, SEA, LAND, RAIL or MULTI")
    incoterm_code: Optional[str] = Field(None, max_length=3)
    currency_code: Optional[str] = Field(None, max_length=3)
    exchange_rate: Optional[Decimal] = None
    freight_value: Optional[Decimal] = None
    insurance_value: Optional[Decimal] = None


class ItemCreate(BaseModel):
    """A goods line."""
    hs_code: str = Field(..., description="6-10 digit HS code, dots allowed")
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal
    quantity_unit: Optional[str] = Field(None, max_length=10)
    net_weight: Decimal = Decimal("0")
    gross_weight: Decimal = Decimal("0")
    unit_price: Decimal
    country_of_origin: Optional[str] = Field(None, max_length=2)
    bm_rate: Optional[Decimal] = Field(None, description="Import duty rate in percent")
    ppn_rate: Optional[Decimal] = Field(None, description="VAT rate in percent")


class DeclarationCreate(DeclarationFields):
    declaration_type: DeclarationType
    items: List[ItemCreate] = []


class DeclarationUpdate(DeclarationFields):
    pass


class DocumentCreate(BaseModel):
    category: DocumentCategory
    reference_number: str = Field(..., min_length=1, max_length=64)
    document_date: Optional[date] = None


class NoteRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class ReasonRequest(BaseModel):
    reason: str = Field(..., description="Why the declaration is rejected or unlocked")

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if not v or not v.strip():
            raise ValueError("reason cannot be empty")
        return v.strip()


class RejectRequest(ReasonRequest):
    errors: Optional[List[dict]] = Field(None, description="Field errors as {code, field, message}")


class ItemResponse(BaseModel):
    id: UUID
    item_number: int
    hs_code: str
    description: str
    quantity: Decimal
    quantity_unit: Optional[str] = None
    net_weight: Decimal
    gross_weight: Decimal
    unit_price: Decimal
    line_value: Decimal
    country_of_origin: Optional[str] = None
    bm_rate: Decimal
    ppn_rate: Decimal
    pph_rate: Decimal
    freight_share: Decimal
    insurance_share: Decimal
    cif_value: Decimal
    cif_idr: Decimal
    bm_amount: Decimal
    ppn_amount: Decimal
    pph_amount: Decimal
    total_tax: Decimal

    class Config:
        from_attributes = True


class DocumentResponse(BaseModel):
    id: UUID
    category: DocumentCategory
    reference_number: str
    document_date: Optional[date] = None

    class Config:
        from_attributes = True


class DeclarationResponse(BaseModel):
    id: UUID
    declaration_type: DeclarationType
    status: DeclarationStatus
    source: str
    nomor_aju: Optional[str] = None
    registration_number: Optional[str] = None
    registration_date: Optional[date] = None
    trader_npwp: Optional[str] = None
    trader_name: Optional[str] = None
    importer_api_number: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_country: Optional[str] = None
    customs_office_code: Optional[str] = None
    transport_mode: Optional[str] = None
    incoterm_code: Optional[str] = None
    currency_code: str
    exchange_rate: Decimal
    total_value: Decimal
    freight_value: Decimal
    insurance_value: Decimal
    total_bm: Decimal
    total_ppn: Decimal
    total_pph: Decimal
    total_tax: Decimal
    xml_hash: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[UUID] = None
    gateway_errors: Optional[List[dict]] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[ItemResponse] = []
    documents: List[DocumentResponse] = []

    class Config:
        from_attributes = True


class DeclarationListResponse(BaseModel):
    declarations: List[DeclarationResponse]
    total_count: int
    limit: int
    offset: int


class IntegrityResponse(BaseModel):
    """Result of recomputing the stored XML hash."""
    declaration_id: UUID
    submitted: bool
    xml_hash: Optional[str] = None
    verified: bool
