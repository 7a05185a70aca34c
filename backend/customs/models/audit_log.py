"""
Audit Log Model

Append-only trail of every mutation performed by the customs core. Rows are
inserted in the same transaction as the change they describe; ORM listeners
refuse any later update or delete.
"""
import enum
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import String, DateTime, Text, Index, event, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PostgreSQLUUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from customs.core.database import Base
from customs.models.declaration import utc_now
from customs.services.errors import IntegrityViolationError


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    SEND_GATEWAY = "SEND_GATEWAY"
    RECEIVE_RESPONSE = "RECEIVE_RESPONSE"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    EXPORT = "EXPORT"
    PRINT = "PRINT"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"


class AuditLog(Base):
    """
    Audit log entry.

    - ``changes`` maps field name to ``{"old": ..., "new": ...}``
    - ``document_hash`` holds the SHA-256 of the submitted XML when relevant
    - Immutable once written
    """
    __tablename__ = "audit_log"

    id: Mapped[UUID] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False
    )

    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Type of entity (e.g., 'PEB', 'PIB', 'EDI_QUEUE', 'USER')"
    )

    entity_id: Mapped[Optional[UUID]] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        nullable=True,
        comment="ID of the entity being tracked"
    )

    entity_number: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Business number of the entity (nomor aju) when known"
    )

    action: Mapped[AuditAction] = mapped_column(
        SQLEnum(AuditAction),
        nullable=False,
    )

    # Actor (nullable id for system jobs)
    actor_id: Mapped[Optional[UUID]] = mapped_column(
        PostgreSQLUUID(as_uuid=True),
        nullable=True,
    )
    actor_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)

    changes: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Changed fields as {field: {old, new}}"
    )

    document_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index('ix_audit_log_entity', 'entity_type', 'entity_id'),
        Index('ix_audit_log_created_at', 'created_at'),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, "
            f"entity_type={self.entity_type}, "
            f"entity_id={self.entity_id}, "
            f"action={self.action}, "
            f"actor_role={self.actor_role})>"
        )


@event.listens_for(AuditLog, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise IntegrityViolationError(f"Audit log entry {target.id} is immutable and cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise IntegrityViolationError(f"Audit log entry {target.id} is immutable and cannot be deleted")
