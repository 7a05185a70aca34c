"""
Incoming EDI Message Service

Ingests CEISA responses, applies them to their declaration and archives them.

Business rules:
- A received response is stored as an IncomingMessage until applied
- Applying a message changes the declaration status, writes the archive
  entry, deletes the incoming row and writes the audit entry in one commit;
  a message is never visible as both incoming and archived
- ACCEPTED drives GATEWAY_ACCEPTED, REJECTED drives GATEWAY_REJECTED with the
  portal error list attached (APPROVED / REJECTED while still under review)
"""
import hashlib
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from customs.core.roles import Actor, Capability, require_capability
from customs.integrations.ceisa.client import CeisaClient
from customs.models.declaration import DeclarationStatus, DeclarationType
from customs.models.edi import ArchiveEntry, GatewayOutcome, IncomingMessage
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.edi.error_mapping import EDI_ERROR_CODES
from customs.services.edi.sync import map_portal_status
from customs.services.errors import (
    DeclarationNotFoundError,
    IncomingMessageNotFoundError,
    ValidationFailedError,
    Violation,
)
from customs.services.locks import declaration_locks
from customs.services.logging import customs_logger

logger = logging.getLogger(__name__)

ARCHIVE_ROOT = "/edi/archive/incoming"

SUCCESS_CODES = {"00", "SUCCESS"}

_ACCEPTED_STATUSES = {DeclarationStatus.GATEWAY_ACCEPTED, DeclarationStatus.APPROVED}
_REJECTED_STATUSES = {DeclarationStatus.GATEWAY_REJECTED, DeclarationStatus.REJECTED}


@dataclass
class ParsedResponse:
    """Fields extracted from a CEISA response document."""
    success: bool
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    reference_number: Optional[str] = None
    registration_number: Optional[str] = None
    registration_date: Optional[date] = None
    errors: List[dict] = field(default_factory=list)

    @property
    def outcome(self) -> GatewayOutcome:
        return GatewayOutcome.ACCEPTED if self.success else GatewayOutcome.REJECTED


def _find_text(root: ET.Element, tag: str) -> Optional[str]:
    element = root.find(f".//{tag}")
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_gateway_response(xml: str) -> ParsedResponse:
    """
    Parse a CEISA response XML.

    Success when RESPONSE_CODE is "00" or "SUCCESS". Errors come from
    ERRORS/ERROR elements, or a single ERROR_CODE/ERROR_MESSAGE pair.

    Raises:
        ValidationFailedError: Document is not well-formed XML
    """
    try:
        root = ET.fromstring(xml.strip())
    except ET.ParseError as e:
        raise ValidationFailedError([Violation("payload", "MALFORMED_XML", f"Invalid response XML: {e}")])

    response_code = _find_text(root, "RESPONSE_CODE")
    errors: List[dict] = []
    for error in root.findall(".//ERRORS/ERROR"):
        code = _find_text(error, "CODE") or "UNKNOWN"
        known = EDI_ERROR_CODES.get(code, {})
        errors.append({
            "code": code,
            "field": _find_text(error, "FIELD") or known.get("field"),
            "message": _find_text(error, "MESSAGE") or known.get("message") or "Unknown error",
            "value": _find_text(error, "VALUE"),
        })

    single_code = _find_text(root, "ERROR_CODE")
    if not errors and single_code:
        known = EDI_ERROR_CODES.get(single_code, {})
        errors.append({
            "code": single_code,
            "field": _find_text(root, "ERROR_FIELD") or known.get("field"),
            "message": _find_text(root, "ERROR_MESSAGE") or known.get("message") or "Unknown error",
            "value": None,
        })

    return ParsedResponse(
        success=(response_code or "").upper() in SUCCESS_CODES and not errors,
        response_code=response_code,
        response_message=_find_text(root, "RESPONSE_MESSAGE"),
        reference_number=_find_text(root, "REFERENCE_NUMBER"),
        registration_number=_find_text(root, "REGISTRATION_NUMBER"),
        registration_date=_parse_date(_find_text(root, "REGISTRATION_DATE")),
        errors=errors,
    )


def archive_path_for(message: IncomingMessage) -> str:
    received = message.received_at or datetime.now(timezone.utc)
    document_type = DeclarationType(message.document_type).value.lower()
    return (
        f"{ARCHIVE_ROOT}/{document_type}/{received:%Y}/{received:%m}/{received:%d}/"
        f"{message.document_number}.xml"
    )


class IncomingMessageService:
    """Service for inbound gateway responses."""

    def __init__(self, db: AsyncSession, client: Optional[CeisaClient] = None):
        self.db = db
        self.client = client
        self.declarations = DeclarationService(db)

    async def receive(
        self,
        actor: Actor,
        *,
        document_number: str,
        outcome: GatewayOutcome,
        document_type: Optional[DeclarationType] = None,
        errors: Optional[List[dict]] = None,
        registration_number: Optional[str] = None,
        registration_date: Optional[date] = None,
        response_code: Optional[str] = None,
        response_message: Optional[str] = None,
        raw_payload: Optional[str] = None,
    ) -> IncomingMessage:
        """Store a response for later application."""
        require_capability(actor, Capability.RECEIVE_RESPONSE)
        if not document_number:
            raise ValidationFailedError([
                Violation("document_number", "REQUIRED", "Response does not name a document number")
            ])

        declaration = await self.declarations.get_by_nomor_aju(document_number)
        if document_type is None:
            if declaration is None:
                raise ValidationFailedError([
                    Violation("document_type", "REQUIRED",
                              f"Document type is required for unknown document {document_number}")
                ])
            document_type = DeclarationType(declaration.declaration_type)

        message = IncomingMessage(
            id=uuid.uuid4(),
            declaration_id=declaration.id if declaration else None,
            document_type=DeclarationType(document_type),
            document_number=document_number,
            status=GatewayOutcome(outcome),
            response_code=response_code,
            response_message=response_message,
            registration_number=registration_number,
            registration_date=registration_date,
            errors=errors or [],
            raw_payload=raw_payload,
            received_at=datetime.now(timezone.utc),
        )
        self.db.add(message)
        await self.db.commit()

        customs_logger.response_received(message.id, document_number, message.status.value)
        return message

    async def receive_xml(
        self,
        xml: str,
        actor: Actor,
        document_type: Optional[DeclarationType] = None,
    ) -> IncomingMessage:
        """Parse a response XML and store it."""
        parsed = parse_gateway_response(xml)
        return await self.receive(
            actor,
            document_number=parsed.reference_number,
            outcome=parsed.outcome,
            document_type=document_type,
            errors=parsed.errors,
            registration_number=parsed.registration_number,
            registration_date=parsed.registration_date,
            response_code=parsed.response_code,
            response_message=parsed.response_message,
            raw_payload=xml,
        )

    async def _load_message(self, message_id: uuid.UUID) -> IncomingMessage:
        result = await self.db.execute(
            select(IncomingMessage)
            .where(IncomingMessage.id == message_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise IncomingMessageNotFoundError(f"Incoming message {message_id} not found")
        return message

    async def apply(self, message_id: uuid.UUID, actor: Actor) -> ArchiveEntry:
        """
        Apply a response to its declaration and archive it atomically.

        Raises:
            IncomingMessageNotFoundError: Unknown or already archived message
            DeclarationNotFoundError: No declaration carries the document number
            InvalidTransitionError: Declaration is not awaiting a response
            IntegrityViolationError: Stored XML does not match its hash
        """
        require_capability(actor, Capability.RECEIVE_RESPONSE)
        message = await self._load_message(message_id)

        declaration_id = message.declaration_id
        if declaration_id is None:
            declaration = await self.declarations.get_by_nomor_aju(message.document_number)
            if declaration is None:
                raise DeclarationNotFoundError(
                    f"No declaration with nomor aju {message.document_number}"
                )
            declaration_id = declaration.id

        async with declaration_locks.hold(declaration_id):
            message = await self._load_message(message_id)
            declaration = await self.declarations._load(declaration_id, for_update=True)
            try:
                self.declarations.verify_integrity(declaration)
                self.declarations.apply_gateway_outcome(
                    declaration,
                    accepted=message.status == GatewayOutcome.ACCEPTED,
                    actor=actor,
                    errors=message.errors,
                    registration_number=message.registration_number,
                    registration_date=message.registration_date,
                    note=message.response_message,
                )

                entry = ArchiveEntry(
                    id=uuid.uuid4(),
                    message_id=message.id,
                    declaration_id=declaration.id,
                    document_type=message.document_type,
                    document_number=message.document_number,
                    status=message.status,
                    response_code=message.response_code,
                    response_message=message.response_message,
                    registration_number=message.registration_number,
                    registration_date=message.registration_date,
                    errors=message.errors or [],
                    raw_payload=message.raw_payload,
                    payload_hash=(
                        hashlib.sha256(message.raw_payload.encode("utf-8")).hexdigest()
                        if message.raw_payload else None
                    ),
                    archive_path=archive_path_for(message),
                    received_at=message.received_at,
                    archived_at=datetime.now(timezone.utc),
                )
                self.db.add(entry)
                await self.db.delete(message)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        customs_logger.response_archived(message_id, declaration_id, entry.archive_path)
        return entry

    async def poll_status(self, declaration_id: uuid.UUID, actor: Actor) -> Optional[IncomingMessage]:
        """
        Ask CEISA for the status of a transmitted declaration.

        A final answer is stored as an IncomingMessage; None while CEISA is
        still processing.
        """
        require_capability(actor, Capability.RECEIVE_RESPONSE)
        if self.client is None:
            raise RuntimeError("IncomingMessageService needs a CEISA client to poll status")
        declaration = await self.declarations.get(declaration_id)
        if not declaration.nomor_aju:
            raise ValidationFailedError([
                Violation("nomor_aju", "REQUIRED", "Declaration has not been assigned a nomor aju yet")
            ])

        response = await self.client.get_status(declaration.nomor_aju)
        body = response.body if isinstance(response.body, dict) else {}
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        status = map_portal_status(data.get("statusDokumen") or data.get("kodeStatus") or data.get("status"))

        if status in _ACCEPTED_STATUSES:
            outcome = GatewayOutcome.ACCEPTED
        elif status in _REJECTED_STATUSES:
            outcome = GatewayOutcome.REJECTED
        else:
            return None

        return await self.receive(
            actor,
            document_number=declaration.nomor_aju,
            outcome=outcome,
            document_type=DeclarationType(declaration.declaration_type),
            errors=data.get("errors") or [],
            registration_number=data.get("nomorPendaftaran") or data.get("nomorDaftar"),
            registration_date=_parse_date(data.get("tanggalPendaftaran") or data.get("tanggalDaftar")),
            response_code=data.get("kodeRespon"),
            response_message=data.get("message") or body.get("message"),
        )

    async def list_incoming(self, limit: int = 50, offset: int = 0) -> List[IncomingMessage]:
        result = await self.db.execute(
            select(IncomingMessage)
            .order_by(IncomingMessage.received_at)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def search_archive(
        self,
        document_number: Optional[str] = None,
        document_type: Optional[DeclarationType] = None,
        status: Optional[GatewayOutcome] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[ArchiveEntry], int]:
        """Search archived responses, newest first, with the total count."""
        conditions = []
        if document_number:
            conditions.append(ArchiveEntry.document_number.ilike(f"%{document_number}%"))
        if document_type:
            conditions.append(ArchiveEntry.document_type == document_type)
        if status:
            conditions.append(ArchiveEntry.status == status)
        if date_from:
            conditions.append(ArchiveEntry.archived_at >= date_from)
        if date_to:
            conditions.append(ArchiveEntry.archived_at <= date_to)

        total = (await self.db.execute(
            select(func.count()).select_from(ArchiveEntry).where(*conditions)
        )).scalar() or 0
        result = await self.db.execute(
            select(ArchiveEntry)
            .where(*conditions)
            .order_by(ArchiveEntry.archived_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total
