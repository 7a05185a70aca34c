"""
Outbound EDI Queue Service

Transmits approved declarations to CEISA.

Business rules:
- Only APPROVED or LOCKED declarations can be queued
- At most one PENDING item per declaration (second enqueue is refused)
- A processor claims an item with a conditional update before transmitting,
  so two concurrent runs never send the same item twice
- Timeouts and connectivity failures leave a retriable FAILED item
- An authoritative portal refusal leaves a non-retriable FAILED item
- Retries are bounded by max_attempts; beyond that manual intervention is needed
- An integrity violation on the stored XML halts the whole run
"""
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from customs.audit import audit_logger
from customs.core.config import settings
from customs.core.roles import Actor, Capability, require_capability
from customs.integrations.ceisa.client import CeisaClient, CeisaError, CeisaTimeoutError
from customs.models.audit_log import AuditAction
from customs.models.declaration import DeclarationStatus, DeclarationType
from customs.models.edi import QueueItem, QueueStatus
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.edi.diagnostics import DiagnosticRecorder, diagnostics
from customs.services.edi.error_mapping import map_gateway_error
from customs.services.errors import (
    InvalidTransitionError,
    IntegrityViolationError,
    QueueConflictError,
    QueueExhaustedError,
    QueueItemNotFoundError,
)
from customs.services.locks import declaration_locks
from customs.services.logging import customs_logger

logger = logging.getLogger(__name__)

QUEUE_ENTITY = "EDI_QUEUE"

QUEUEABLE_STATUSES = (DeclarationStatus.APPROVED, DeclarationStatus.LOCKED)


@dataclass
class QueueRunResult:
    """Outcome of one transmission attempt."""
    queue_item_id: uuid.UUID
    declaration_id: uuid.UUID
    status: QueueStatus
    attempt: int
    gateway_reference: Optional[str] = None
    error: Optional[dict] = None
    retriable: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["queue_item_id"] = str(self.queue_item_id)
        data["declaration_id"] = str(self.declaration_id)
        data["status"] = self.status.value
        return data


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OutboundQueueService:
    """Service for the outbound transmission queue."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[CeisaClient] = None,
        recorder: Optional[DiagnosticRecorder] = None,
    ):
        self.db = db
        self.client = client
        self.recorder = recorder or diagnostics
        self.declarations = DeclarationService(db)

    async def _pending_for(self, declaration_id: uuid.UUID) -> Optional[QueueItem]:
        result = await self.db.execute(
            select(QueueItem).where(
                QueueItem.declaration_id == declaration_id,
                QueueItem.status == QueueStatus.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, queue_item_id: uuid.UUID) -> QueueItem:
        item = await self.db.get(QueueItem, queue_item_id, populate_existing=True)
        if item is None:
            raise QueueItemNotFoundError(f"Queue item {queue_item_id} not found")
        return item

    async def list_items(
        self,
        status: Optional[QueueStatus] = None,
        declaration_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = 50,
    ) -> List[QueueItem]:
        query = select(QueueItem)
        if status:
            query = query.where(QueueItem.status == status)
        if declaration_id:
            query = query.where(QueueItem.declaration_id == declaration_id)
        result = await self.db.execute(query.order_by(QueueItem.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def enqueue(self, declaration_id: uuid.UUID, actor: Actor) -> QueueItem:
        """
        Queue an approved declaration for transmission.

        Raises:
            InvalidTransitionError: Declaration is not APPROVED or LOCKED
            QueueConflictError: A transmission is already pending
            IntegrityViolationError: Stored XML does not match its hash
        """
        require_capability(actor, Capability.ENQUEUE)
        async with declaration_locks.hold(declaration_id):
            declaration = await self.declarations._load(declaration_id, for_update=True)
            status = DeclarationStatus(declaration.status)
            if status not in QUEUEABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Only APPROVED or LOCKED declarations can be queued (status is {status.value})"
                )
            xml_hash = self.declarations.verify_integrity(declaration)
            if xml_hash is None:
                raise IntegrityViolationError(
                    f"Declaration {declaration.id} has no submitted XML to transmit"
                )

            if await self._pending_for(declaration.id) is not None:
                raise QueueConflictError(
                    f"Declaration {declaration.nomor_aju or declaration.id} already has a pending transmission"
                )

            item = QueueItem(
                id=uuid.uuid4(),
                declaration_id=declaration.id,
                document_type=DeclarationType(declaration.declaration_type),
                status=QueueStatus.PENDING,
                attempt_count=0,
                max_attempts=settings.EDI_QUEUE_MAX_ATTEMPTS,
                xml_hash=xml_hash,
                enqueued_by=actor.user_id,
            )
            self.db.add(item)
            audit_logger.record(
                self.db,
                entity_type=QUEUE_ENTITY,
                entity_id=item.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.CREATE,
                actor=actor,
                changes={"status": {"old": None, "new": QueueStatus.PENDING.value}},
                note=f"Queued declaration {declaration.id} for CEISA",
                document_hash=xml_hash,
            )
            try:
                await self.db.commit()
            except IntegrityError:
                # Another process inserted the pending row first
                await self.db.rollback()
                raise QueueConflictError(
                    f"Declaration {declaration.id} already has a pending transmission"
                )

        customs_logger.queue_enqueued(item.id, declaration.id, user_id=actor.user_id)
        return item

    async def process_queue(self, actor: Actor, limit: Optional[int] = None) -> List[QueueRunResult]:
        """
        Transmit every PENDING item not claimed by another run.

        Items claimed elsewhere are skipped silently.

        Raises:
            IntegrityViolationError: Stored XML of a queued declaration was altered
        """
        require_capability(actor, Capability.PROCESS_QUEUE)
        if self.client is None:
            raise RuntimeError("OutboundQueueService needs a CEISA client to process the queue")

        query = (
            select(QueueItem.id, QueueItem.declaration_id)
            .where(QueueItem.status == QueueStatus.PENDING, QueueItem.in_flight.is_(False))
            .order_by(QueueItem.created_at)
        )
        if limit:
            query = query.limit(limit)
        candidates = (await self.db.execute(query)).all()

        results: List[QueueRunResult] = []
        for queue_item_id, declaration_id in candidates:
            async with declaration_locks.hold(declaration_id):
                result = await self._process_item(queue_item_id, actor)
            if result is not None:
                results.append(result)
        return results

    async def _claim(self, queue_item_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            update(QueueItem)
            .where(
                QueueItem.id == queue_item_id,
                QueueItem.status == QueueStatus.PENDING,
                QueueItem.in_flight.is_(False),
            )
            .values(in_flight=True, last_attempt_at=_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _release(self, queue_item_id: uuid.UUID) -> None:
        await self.db.execute(
            update(QueueItem)
            .where(QueueItem.id == queue_item_id, QueueItem.status == QueueStatus.PENDING)
            .values(in_flight=False)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _process_item(self, queue_item_id: uuid.UUID, actor: Actor) -> Optional[QueueRunResult]:
        if not await self._claim(queue_item_id):
            return None
        try:
            return await self._transmit(queue_item_id, actor)
        except Exception:
            # Leave the item claimable again unless it was already settled
            await self.db.rollback()
            await self._release(queue_item_id)
            raise

    async def _transmit(self, queue_item_id: uuid.UUID, actor: Actor) -> QueueRunResult:
        item = await self.get(queue_item_id)
        declaration = await self.declarations._load(item.declaration_id, for_update=True)
        attempt = item.attempt_count + 1

        try:
            self.declarations.verify_integrity(declaration)
        except IntegrityViolationError as e:
            self._fail(item, attempt, {
                "code": "E024",
                "message": str(e),
                "action": "Regenerate the XML by unlocking and resubmitting the declaration",
                "category": "FIX_DATA",
            }, retriable=False, actor=actor)
            await self.db.commit()
            raise

        status = DeclarationStatus(declaration.status)
        if status not in QUEUEABLE_STATUSES:
            self._fail(item, attempt, {
                "code": "NOT_TRANSMITTABLE",
                "message": f"Declaration is {status.value}, not APPROVED or LOCKED",
                "action": "Approve the declaration again and re-queue it",
                "category": "FIX_DATA",
            }, retriable=False, actor=actor)
            await self.db.commit()
            return self._result(item)

        try:
            response = await self.client.submit_document(
                item.document_type.value,
                declaration.xml_content,
                declaration.xml_hash,
                nomor_aju=declaration.nomor_aju,
            )
        except CeisaTimeoutError as e:
            mapping = map_gateway_error(None, None, e.message)
            self.recorder.log("process_queue", e.message, level="ERROR", queue_item_id=item.id)
            self._fail(item, attempt, {**mapping.to_dict(), "detail": e.message}, retriable=True, actor=actor)
            await self.db.commit()
            return self._result(item)
        except CeisaError as e:
            mapping = map_gateway_error(e.status_code, e.portal_code, e.message)
            self.recorder.log(
                "process_queue", e.message, level="ERROR",
                queue_item_id=item.id, http_status=e.status_code, portal_code=e.portal_code,
            )
            self._fail(
                item, attempt,
                {**mapping.to_dict(), "detail": e.message, "http_status": e.status_code},
                retriable=mapping.retriable, actor=actor,
            )
            await self.db.commit()
            return self._result(item)

        body = response.body if isinstance(response.body, dict) else {}
        reference = body.get("nomorAju") or body.get("referenceNumber") or declaration.nomor_aju
        self.declarations.mark_sent_to_gateway(declaration, actor, gateway_reference=reference)

        item.status = QueueStatus.ACCEPTED
        item.in_flight = False
        item.attempt_count = attempt
        item.gateway_reference = reference
        item.last_error = None
        audit_logger.record(
            self.db,
            entity_type=QUEUE_ENTITY,
            entity_id=item.id,
            entity_number=declaration.nomor_aju,
            action=AuditAction.SEND_GATEWAY,
            actor=actor,
            changes={"status": {"old": QueueStatus.PENDING.value, "new": QueueStatus.ACCEPTED.value}},
            document_hash=declaration.xml_hash,
        )
        await self.db.commit()

        self.recorder.log("process_queue", f"Transmitted {reference} in {response.elapsed_ms}ms")
        customs_logger.queue_sent(item.id, declaration.id, attempt, gateway_reference=reference)
        return self._result(item)

    def _fail(self, item: QueueItem, attempt: int, error: dict, retriable: bool, actor: Actor) -> None:
        item.status = QueueStatus.FAILED
        item.in_flight = False
        item.attempt_count = attempt
        item.retriable = retriable
        item.last_error = error
        audit_logger.record(
            self.db,
            entity_type=QUEUE_ENTITY,
            entity_id=item.id,
            action=AuditAction.SEND_GATEWAY,
            actor=actor,
            changes={
                "status": {"old": QueueStatus.PENDING.value, "new": QueueStatus.FAILED.value},
                "attempt_count": {"old": attempt - 1, "new": attempt},
            },
            note=error.get("message"),
        )
        customs_logger.queue_failed(item.id, item.declaration_id, attempt, error.get("message"), retriable)
        if retriable and item.is_exhausted:
            customs_logger.queue_exhausted(item.id, item.declaration_id, attempt)

    @staticmethod
    def _result(item: QueueItem) -> QueueRunResult:
        return QueueRunResult(
            queue_item_id=item.id,
            declaration_id=item.declaration_id,
            status=QueueStatus(item.status),
            attempt=item.attempt_count,
            gateway_reference=item.gateway_reference,
            error=item.last_error,
            retriable=item.retriable and not item.is_exhausted and item.status == QueueStatus.FAILED,
        )

    async def retry_failed(self, queue_item_id: uuid.UUID, actor: Actor) -> QueueItem:
        """
        Return a FAILED item to PENDING.

        Raises:
            InvalidTransitionError: Item is not FAILED
            QueueExhaustedError: Item is not retriable or used all its attempts
            QueueConflictError: Another transmission is already pending
        """
        require_capability(actor, Capability.PROCESS_QUEUE)
        item = await self.get(queue_item_id)
        async with declaration_locks.hold(item.declaration_id):
            item = await self.get(queue_item_id)
            if item.status != QueueStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only FAILED queue items can be retried (status is {QueueStatus(item.status).value})"
                )
            if not item.retriable or item.is_exhausted:
                customs_logger.queue_exhausted(item.id, item.declaration_id, item.attempt_count)
                raise QueueExhaustedError(
                    f"Queue item {item.id} cannot be retried after {item.attempt_count} attempt(s); "
                    "manual intervention required"
                )
            if await self._pending_for(item.declaration_id) is not None:
                raise QueueConflictError(
                    f"Declaration {item.declaration_id} already has a pending transmission"
                )

            item.status = QueueStatus.PENDING
            audit_logger.record(
                self.db,
                entity_type=QUEUE_ENTITY,
                entity_id=item.id,
                action=AuditAction.UPDATE,
                actor=actor,
                changes={"status": {"old": QueueStatus.FAILED.value, "new": QueueStatus.PENDING.value}},
                note="Retry requested",
            )
            await self.db.commit()
        return item

    async def retry_all_failed(self, actor: Actor) -> List[QueueItem]:
        """Re-queue every FAILED item that still has attempts left."""
        require_capability(actor, Capability.PROCESS_QUEUE)
        result = await self.db.execute(
            select(QueueItem.id).where(
                QueueItem.status == QueueStatus.FAILED,
                QueueItem.retriable.is_(True),
                QueueItem.attempt_count < QueueItem.max_attempts,
            )
        )
        requeued = []
        for (queue_item_id,) in result.all():
            try:
                requeued.append(await self.retry_failed(queue_item_id, actor))
            except (QueueConflictError, QueueExhaustedError, InvalidTransitionError) as e:
                logger.info(f"Skipping retry of {queue_item_id}: {e}")
        return requeued

    async def queue_stats(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(QueueItem.status, func.count()).group_by(QueueItem.status)
        )
        stats = {status.value.lower(): 0 for status in QueueStatus}
        for status, count in result.all():
            stats[QueueStatus(status).value.lower()] = count

        in_flight = await self.db.execute(
            select(func.count()).select_from(QueueItem).where(QueueItem.in_flight.is_(True))
        )
        exhausted = await self.db.execute(
            select(func.count()).select_from(QueueItem).where(
                QueueItem.status == QueueStatus.FAILED,
                (QueueItem.retriable.is_(False)) | (QueueItem.attempt_count >= QueueItem.max_attempts),
            )
        )
        stats["in_flight"] = in_flight.scalar() or 0
        stats["exhausted"] = exhausted.scalar() or 0
        stats["total"] = sum(stats[s.value.lower()] for s in QueueStatus)
        return stats
