"""
Structured Logging Service

Provides customs-aware structured logging for key events:
- Declaration created / updated / submitted / approved / rejected / unlocked
- EDI queue enqueued / sent / failed / exhausted
- Gateway sync started / completed / leg failed
- Gateway response received / archived
- Integrity violations and connection checks

Each log entry includes:
- entity_type (declaration, edi_queue, edi_sync, edi_incoming, system)
- entity_id
- severity (INFO/WARN/ERROR)
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID
from enum import Enum


class LogSeverity(str, Enum):
    """Log severity levels."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntityType(str, Enum):
    """Entity types for structured logging."""
    DECLARATION = "declaration"
    EDI_QUEUE = "edi_queue"
    EDI_SYNC = "edi_sync"
    EDI_INCOMING = "edi_incoming"
    SYSTEM = "system"


class StructuredLogger:
    """
    Structured logging service for customs events.

    Logs are emitted in JSON format, one line per event.
    """

    def __init__(self, logger_name: str = "customs"):
        self.logger = logging.getLogger(logger_name)
        self._ensure_handler()

    def _ensure_handler(self):
        """Ensure logger has a proper handler configured."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def _serialize(self, value: Any) -> Any:
        """Serialize UUID, Decimal and Enum values for JSON."""
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        entity_type: LogEntityType,
        entity_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        message: Optional[str] = None,
        **extra
    ) -> dict:
        """Create a structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "entity_type": entity_type.value,
        }

        if entity_id:
            entry["entity_id"] = str(entity_id)
        if user_id:
            entry["user_id"] = str(user_id)
        if message:
            entry["message"] = message

        for key, value in extra.items():
            entry[key] = self._serialize(value)

        return entry

    def _log(self, entry: dict, severity: LogSeverity):
        """Emit the log entry at the appropriate level."""
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    # Declaration events
    def declaration_created(
        self,
        declaration_id: UUID,
        declaration_type: str,
        user_id: Optional[UUID] = None
    ):
        """Log declaration creation."""
        entry = self._create_log_entry(
            event="declaration.created",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.DECLARATION,
            entity_id=declaration_id,
            user_id=user_id,
            message=f"{declaration_type} declaration created",
            declaration_type=declaration_type
        )
        self._log(entry, LogSeverity.INFO)

    def declaration_updated(
        self,
        declaration_id: UUID,
        fields: list,
        user_id: Optional[UUID] = None
    ):
        """Log declaration field edits."""
        entry = self._create_log_entry(
            event="declaration.updated",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.DECLARATION,
            entity_id=declaration_id,
            user_id=user_id,
            message=f"Declaration updated: {', '.join(fields)}",
            fields=fields
        )
        self._log(entry, LogSeverity.INFO)

    def declaration_edit_blocked(
        self,
        declaration_id: UUID,
        status: str,
        user_id: Optional[UUID] = None
    ):
        """Log a refused edit on a locked declaration."""
        entry = self._create_log_entry(
            event="declaration.edit_blocked",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.DECLARATION,
            entity_id=declaration_id,
            user_id=user_id,
            message=f"Edit blocked: declaration is {status}",
            status=status
        )
        self._log(entry, LogSeverity.WARN)

    def declaration_transitioned(
        self,
        declaration_id: UUID,
        from_status: str,
        to_status: str,
        user_id: Optional[UUID] = None,
        xml_hash: Optional[str] = None
    ):
        """Log a status transition."""
        entry = self._create_log_entry(
            event=f"declaration.{to_status.lower()}",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.DECLARATION,
            entity_id=declaration_id,
            user_id=user_id,
            message=f"Declaration {from_status} -> {to_status}",
            from_status=from_status,
            to_status=to_status,
            xml_hash=xml_hash
        )
        self._log(entry, LogSeverity.INFO)

    def integrity_violation(
        self,
        entity_id: Optional[UUID],
        detail: str,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None
    ):
        """Log a fatal integrity violation."""
        entry = self._create_log_entry(
            event="declaration.integrity_violation",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.DECLARATION,
            entity_id=entity_id,
            message=f"Integrity violation: {detail}",
            expected_hash=expected_hash,
            actual_hash=actual_hash
        )
        self._log(entry, LogSeverity.ERROR)

    # Queue events
    def queue_enqueued(
        self,
        queue_item_id: UUID,
        declaration_id: UUID,
        user_id: Optional[UUID] = None
    ):
        """Log outbound transmission queued."""
        entry = self._create_log_entry(
            event="edi_queue.enqueued",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.EDI_QUEUE,
            entity_id=queue_item_id,
            user_id=user_id,
            message="Declaration queued for CEISA transmission",
            declaration_id=declaration_id
        )
        self._log(entry, LogSeverity.INFO)

    def queue_sent(
        self,
        queue_item_id: UUID,
        declaration_id: UUID,
        attempt: int,
        gateway_reference: Optional[str] = None
    ):
        """Log accepted transmission."""
        entry = self._create_log_entry(
            event="edi_queue.sent",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.EDI_QUEUE,
            entity_id=queue_item_id,
            message="Declaration transmitted to CEISA",
            declaration_id=declaration_id,
            attempt=attempt,
            gateway_reference=gateway_reference
        )
        self._log(entry, LogSeverity.INFO)

    def queue_failed(
        self,
        queue_item_id: UUID,
        declaration_id: UUID,
        attempt: int,
        error: str,
        retriable: bool
    ):
        """Log failed transmission."""
        entry = self._create_log_entry(
            event="edi_queue.failed",
            severity=LogSeverity.WARN if retriable else LogSeverity.ERROR,
            entity_type=LogEntityType.EDI_QUEUE,
            entity_id=queue_item_id,
            message=f"Transmission failed: {error}",
            declaration_id=declaration_id,
            attempt=attempt,
            error=error,
            retriable=retriable
        )
        self._log(entry, LogSeverity.WARN if retriable else LogSeverity.ERROR)

    def queue_exhausted(
        self,
        queue_item_id: UUID,
        declaration_id: UUID,
        attempts: int
    ):
        """Log retry budget exhaustion."""
        entry = self._create_log_entry(
            event="edi_queue.exhausted",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.EDI_QUEUE,
            entity_id=queue_item_id,
            message=f"Retry limit reached after {attempts} attempts; manual intervention required",
            declaration_id=declaration_id,
            attempts=attempts
        )
        self._log(entry, LogSeverity.ERROR)

    # Sync events
    def sync_started(
        self,
        legs: list,
        user_id: Optional[UUID] = None
    ):
        """Log sync start."""
        entry = self._create_log_entry(
            event="edi_sync.started",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.EDI_SYNC,
            user_id=user_id,
            message=f"CEISA sync started: {', '.join(legs) or 'no legs'}",
            legs=legs
        )
        self._log(entry, LogSeverity.INFO)

    def sync_leg_failed(
        self,
        document_type: str,
        error: str
    ):
        """Log a failed sync leg."""
        entry = self._create_log_entry(
            event="edi_sync.leg_failed",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.EDI_SYNC,
            message=f"{document_type} sync failed: {error}",
            document_type=document_type,
            error=error
        )
        self._log(entry, LogSeverity.WARN)

    def sync_completed(
        self,
        success: bool,
        total_time_ms: int,
        summary: str,
        user_id: Optional[UUID] = None
    ):
        """Log sync completion."""
        severity = LogSeverity.INFO if success else LogSeverity.WARN
        entry = self._create_log_entry(
            event="edi_sync.completed",
            severity=severity,
            entity_type=LogEntityType.EDI_SYNC,
            user_id=user_id,
            message=summary,
            success=success,
            total_time_ms=total_time_ms
        )
        self._log(entry, severity)

    # Incoming events
    def response_received(
        self,
        message_id: UUID,
        document_number: str,
        outcome: str
    ):
        """Log gateway response receipt."""
        entry = self._create_log_entry(
            event="edi_incoming.received",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.EDI_INCOMING,
            entity_id=message_id,
            message=f"Gateway response received for {document_number}: {outcome}",
            document_number=document_number,
            outcome=outcome
        )
        self._log(entry, LogSeverity.INFO)

    def response_archived(
        self,
        message_id: UUID,
        declaration_id: Optional[UUID],
        archive_path: str
    ):
        """Log gateway response applied and archived."""
        entry = self._create_log_entry(
            event="edi_incoming.archived",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.EDI_INCOMING,
            entity_id=message_id,
            message=f"Gateway response archived: {archive_path}",
            declaration_id=declaration_id,
            archive_path=archive_path
        )
        self._log(entry, LogSeverity.INFO)

    # System events
    def connection_checked(
        self,
        connected: bool,
        latency_ms: Optional[int] = None,
        error: Optional[str] = None
    ):
        """Log a gateway connectivity check."""
        severity = LogSeverity.INFO if connected else LogSeverity.WARN
        entry = self._create_log_entry(
            event="system.connection_checked",
            severity=severity,
            entity_type=LogEntityType.SYSTEM,
            message="CEISA reachable" if connected else f"CEISA unreachable: {error}",
            connected=connected,
            latency_ms=latency_ms,
            error=error
        )
        self._log(entry, severity)

    def operation_failed(
        self,
        operation: str,
        error: str,
        retry_count: int = 0
    ):
        """Log failed operation."""
        entry = self._create_log_entry(
            event="system.operation_failed",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.SYSTEM,
            message=f"Operation failed: {operation}",
            operation=operation,
            error=error,
            retry_count=retry_count
        )
        self._log(entry, LogSeverity.ERROR)


# Global logger instance
customs_logger = StructuredLogger()
