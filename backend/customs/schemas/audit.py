"""
Audit Log Schemas

Pydantic schemas for audit trail queries. ``changes`` maps each field to its
old and new value.
"""
from datetime import datetime
from typing import Optional, List
from uuid import UUID
from pydantic import BaseModel


class AuditLogEntry(BaseModel):
    """Schema for one audit log entry."""
    id: UUID
    entity_type: str
    entity_id: Optional[UUID] = None
    entity_number: Optional[str] = None
    action: str
    actor_id: Optional[UUID] = None
    actor_email: Optional[str] = None
    actor_role: Optional[str] = None
    changes: dict = {}
    document_hash: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    """Schema for audit log list response."""
    entries: List[AuditLogEntry]
    total_count: int
