"""
Audit Logger Service

Core audit logging for the customs core. Entries are added to the caller's
session so that the audit row and the state change it describes are committed
together. Unlike observational logging this is not best-effort: if the entry
cannot be built or added, AuditWriteError is raised and the caller's unit of
work must be rolled back.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from customs.core.roles import Actor
from customs.models.audit_log import AuditAction, AuditLog
from customs.services.errors import AuditWriteError

logger = logging.getLogger(__name__)


# Keys that never reach the audit table
SENSITIVE_KEYS = {
    "password",
    "token",
    "authorization",
    "api_key",
    "secret",
}

# Large blobs recorded by hash or reference instead
BLOB_KEYS = {
    "xml_content",
    "raw_payload",
}


def to_json_safe(value: Any) -> Any:
    """Convert Decimal, UUID, dates and enums to JSON-compatible values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(v) for v in value]
    return value


def sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if key_lower in SENSITIVE_KEYS:
        return "**REDACTED**"
    if key_lower in BLOB_KEYS and isinstance(value, str) and value:
        return f"[{len(value)} chars]"
    value = to_json_safe(value)
    if isinstance(value, str) and len(value) > 1000:
        return f"{value[:100]}... [TRUNCATED {len(value)} chars]"
    return value


def compute_changes(
    before: Optional[Mapping[str, Any]],
    after: Mapping[str, Any],
) -> Dict[str, Dict[str, Any]]:
    """
    Build the ``{field: {"old": ..., "new": ...}}`` map.

    Only fields whose value differs are included. With no ``before`` every
    field in ``after`` is reported with ``old`` set to None.
    """
    before = before or {}
    changes: Dict[str, Dict[str, Any]] = {}
    for key, new in after.items():
        old = before.get(key)
        if old == new or to_json_safe(old) == to_json_safe(new):
            continue
        changes[key] = {
            "old": sanitize_value(key, old),
            "new": sanitize_value(key, new),
        }
    return changes


def status_change(old_status: Any, new_status: Any) -> Dict[str, Dict[str, Any]]:
    return {"status": {"old": to_json_safe(old_status), "new": to_json_safe(new_status)}}


def record(
    db: AsyncSession,
    *,
    entity_type: str,
    entity_id: Optional[UUID],
    action: AuditAction,
    actor: Actor,
    changes: Optional[Dict[str, Dict[str, Any]]] = None,
    note: Optional[str] = None,
    document_hash: Optional[str] = None,
    entity_number: Optional[str] = None,
) -> AuditLog:
    """
    Add one audit entry to the session.

    The caller commits. Any failure raises AuditWriteError so the whole unit
    of work is abandoned.

    Args:
        db: Session carrying the mutation being audited
        entity_type: 'PEB', 'PIB', 'EDI_QUEUE', 'EDI_ARCHIVE', 'USER', ...
        entity_id: ID of the entity
        action: AuditAction member
        actor: Identity performing the action
        changes: Field diffs as produced by compute_changes
        note: Free text
        document_hash: SHA-256 of the submitted XML where relevant
    """
    try:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            entity_number=entity_number,
            action=AuditAction(action),
            actor_id=actor.user_id,
            actor_email=actor.email,
            actor_role=actor.role,
            changes=to_json_safe(changes or {}),
            document_hash=document_hash,
            note=note,
        )
        db.add(entry)
    except Exception as e:
        logger.error(
            f"Failed to create audit log entry for {entity_type}:{entity_id} "
            f"action={action}: {e}",
            exc_info=True
        )
        raise AuditWriteError(f"Audit entry for {entity_type}:{entity_id} could not be written: {e}") from e

    logger.debug(
        f"Audit log entry created: {entity_type}:{entity_id} "
        f"action={entry.action.value} actor={actor.user_id} role={actor.role}"
    )
    return entry


async def record_event(
    db: AsyncSession,
    *,
    action: AuditAction,
    actor: Actor,
    entity_type: str = "USER",
    entity_id: Optional[UUID] = None,
    note: Optional[str] = None,
) -> AuditLog:
    """Record and commit a standalone event such as EXPORT, PRINT, LOGIN or LOGOUT."""
    entry = record(
        db,
        entity_type=entity_type,
        entity_id=entity_id if entity_id is not None else actor.user_id,
        action=action,
        actor=actor,
        note=note,
    )
    await db.commit()
    return entry


async def list_for_entity(
    db: AsyncSession,
    entity_id: UUID,
    entity_types: Optional[Iterable[str]] = None,
) -> List[AuditLog]:
    """All entries for one entity, oldest first."""
    query = select(AuditLog).where(AuditLog.entity_id == entity_id)
    if entity_types:
        query = query.where(AuditLog.entity_type.in_(list(entity_types)))
    query = query.order_by(AuditLog.created_at, AuditLog.id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def search(
    db: AsyncSession,
    *,
    entity_type: Optional[str] = None,
    action: Optional[AuditAction] = None,
    actor_id: Optional[UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[AuditLog]:
    """Filtered audit query, newest first."""
    query = select(AuditLog)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if action:
        query = query.where(AuditLog.action == AuditAction(action))
    if actor_id:
        query = query.where(AuditLog.actor_id == actor_id)
    if date_from:
        query = query.where(AuditLog.created_at >= date_from)
    if date_to:
        query = query.where(AuditLog.created_at <= date_to)
    query = query.order_by(AuditLog.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())
