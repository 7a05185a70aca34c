"""
EDI Schemas

Pydantic schemas for the CEISA queue, sync, inbound and diagnostics endpoints.
"""
from datetime import date, datetime
from typing import Any, Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from customs.models.declaration import DeclarationType
from customs.models.edi import GatewayOutcome, QueueStatus


class EnqueueRequest(BaseModel):
    declaration_id: UUID


class RetryRequest(BaseModel):
    """Retry one FAILED item, or every eligible one when no id is given."""
    queue_item_id: Optional[UUID] = None


class QueueItemResponse(BaseModel):
    id: UUID
    declaration_id: UUID
    document_type: DeclarationType
    status: QueueStatus
    attempt_count: int
    max_attempts: int
    in_flight: bool
    retriable: bool
    last_error: Optional[dict] = None
    gateway_reference: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class QueueRunItem(BaseModel):
    queue_item_id: UUID
    declaration_id: UUID
    status: QueueStatus
    attempt: int
    gateway_reference: Optional[str] = None
    error: Optional[dict] = None
    retriable: bool


class QueueRunResponse(BaseModel):
    processed: int
    accepted: int
    failed: int
    results: List[QueueRunItem]


class RetryResponse(BaseModel):
    requeued: List[QueueItemResponse]


class QueueStatsResponse(BaseModel):
    pending: int
    accepted: int
    failed: int
    in_flight: int
    exhausted: int
    total: int


class FetchFilterRequest(BaseModel):
    nomor_aju: Optional[str] = Field(None, description="Nomor pengajuan (required)")
    npwp: Optional[str] = Field(None, description="Exporter NPWP for PEB, importer NPWP for PIB (required)")
    kode_kantor: Optional[str] = Field(None, description="Customs office code (required)")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: Optional[int] = Field(None, ge=1)
    page_size: Optional[int] = Field(None, ge=1, le=100)


class SyncRequest(BaseModel):
    """Omit a document type to skip its leg."""
    peb: Optional[FetchFilterRequest] = None
    pib: Optional[FetchFilterRequest] = None


class LegResultResponse(BaseModel):
    document_type: str
    fetched: int
    saved: int
    skipped: bool
    success: bool
    errors: List[dict]
    empty_message: Optional[str] = None
    elapsed_ms: int


class SyncResponse(BaseModel):
    success: bool
    timestamp: datetime
    total_time_ms: int
    peb: LegResultResponse
    pib: LegResultResponse
    summary: str
    cancelled: bool = False


class FieldError(BaseModel):
    code: str
    field: Optional[str] = None
    message: Optional[str] = None
    value: Optional[str] = None


class IncomingCreate(BaseModel):
    """A gateway response, either structured or as the raw response XML."""
    xml: Optional[str] = Field(None, description="Raw CEISA response document")
    document_number: Optional[str] = None
    document_type: Optional[DeclarationType] = None
    outcome: Optional[GatewayOutcome] = None
    errors: List[FieldError] = []
    registration_number: Optional[str] = None
    registration_date: Optional[date] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None

    @model_validator(mode="after")
    def require_xml_or_fields(self):
        if not self.xml and not (self.document_number and self.outcome):
            raise ValueError("Provide either xml or document_number and outcome")
        return self


class IncomingResponse(BaseModel):
    id: UUID
    declaration_id: Optional[UUID] = None
    document_type: DeclarationType
    document_number: str
    status: GatewayOutcome
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    registration_number: Optional[str] = None
    registration_date: Optional[date] = None
    errors: List[dict] = []
    received_at: datetime

    class Config:
        from_attributes = True


class ArchiveEntryResponse(BaseModel):
    id: UUID
    message_id: UUID
    declaration_id: Optional[UUID] = None
    document_type: DeclarationType
    document_number: str
    status: GatewayOutcome
    registration_number: Optional[str] = None
    registration_date: Optional[date] = None
    errors: List[dict] = []
    payload_hash: Optional[str] = None
    archive_path: str
    received_at: datetime
    archived_at: datetime

    class Config:
        from_attributes = True


class ArchiveListResponse(BaseModel):
    entries: List[ArchiveEntryResponse]
    total_count: int
    limit: int
    offset: int


class ConnectionStatusResponse(BaseModel):
    configured: bool
    connected: bool
    checked_at: Optional[datetime] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    action: Optional[str] = None


class DiagnosticsResponse(BaseModel):
    enabled: bool
    last_fetch: dict[str, Any]
    log: List[dict]
