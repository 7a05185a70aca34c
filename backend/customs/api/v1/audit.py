"""
Audit Trail API Endpoints

Read-only access to the append-only audit log.
"""
from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from customs.api.v1.deps import CurrentActor, http_error
from customs.audit import audit_logger
from customs.core.database import get_db
from customs.core.roles import Capability, require_capability
from customs.models.audit_log import AuditAction
from customs.schemas.audit import AuditLogEntry, AuditLogListResponse
from customs.services.errors import CustomsError

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
async def search_audit_log(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    entity_type: Optional[str] = Query(None, description="PEB, PIB, EDI_QUEUE or USER"),
    action: Optional[AuditAction] = Query(None),
    actor_id: Optional[UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Search audit entries, newest first."""
    try:
        require_capability(actor, Capability.VIEW_AUDIT)
    except CustomsError as e:
        raise http_error(e)
    entries = await audit_logger.search(
        db,
        entity_type=entity_type,
        action=action,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return AuditLogListResponse(
        entries=[AuditLogEntry.model_validate(e) for e in entries],
        total_count=len(entries),
    )
