"""
Declaration API Endpoints

PEB/PIB preparation, submission and the supervisor review decisions.

Every write goes through DeclarationService, which checks the actor's
capability, serialises work on the declaration and writes the audit entry
in the same transaction as the change.
"""
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from customs.api.v1.deps import CurrentActor, http_error
from customs.audit import audit_logger
from customs.core.database import get_db
from customs.core.roles import Capability, require_capability
from customs.models.audit_log import AuditAction
from customs.models.declaration import DeclarationStatus, DeclarationType
from customs.schemas.audit import AuditLogEntry, AuditLogListResponse
from customs.schemas.declaration import (
    DeclarationCreate,
    DeclarationListResponse,
    DeclarationResponse,
    DeclarationUpdate,
    DocumentCreate,
    DocumentResponse,
    IntegrityResponse,
    ItemCreate,
    ItemResponse,
    NoteRequest,
    ReasonRequest,
    RejectRequest,
)
from customs.services.declaration import DeclarationService, generate_filename
from customs.services.edi.queue import OutboundQueueService
from customs.services.errors import CustomsError, IntegrityViolationError

router = APIRouter()


@router.post("", response_model=DeclarationResponse, status_code=status.HTTP_201_CREATED)
async def create_declaration(
    request: DeclarationCreate,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Create a DRAFT declaration.

    Header fields and goods lines are optional at this point; they are only
    required once the declaration is submitted.
    """
    service = DeclarationService(db)
    fields = request.model_dump(exclude={"declaration_type", "items"}, exclude_unset=True)
    try:
        declaration = await service.create_declaration(
            actor,
            request.declaration_type,
            fields=fields,
            items=[item.model_dump(exclude_unset=True) for item in request.items],
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.get("", response_model=DeclarationListResponse)
async def list_declarations(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    declaration_type: Optional[DeclarationType] = Query(None),
    declaration_status: Optional[DeclarationStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List declarations, newest first."""
    service = DeclarationService(db)
    declarations, total = await service.list(
        declaration_type=declaration_type,
        status=declaration_status,
        limit=limit,
        offset=offset,
    )
    return DeclarationListResponse(
        declarations=[DeclarationResponse.model_validate(d) for d in declarations],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{declaration_id}", response_model=DeclarationResponse)
async def get_declaration(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        declaration = await DeclarationService(db).get(declaration_id)
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.patch("/{declaration_id}", response_model=DeclarationResponse)
async def update_declaration(
    declaration_id: UUID,
    request: DeclarationUpdate,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Edit header fields.

    Only the fields present in the body are changed. Returns 409
    DECLARATION_LOCKED once the declaration has been submitted; nothing is
    modified in that case.
    """
    try:
        declaration = await DeclarationService(db).update_fields(
            declaration_id, actor, request.model_dump(exclude_unset=True)
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post(
    "/{declaration_id}/items",
    response_model=ItemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_item(
    declaration_id: UUID,
    request: ItemCreate,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Append a goods line; valuation and duties are recomputed."""
    try:
        item = await DeclarationService(db).add_item(
            declaration_id, actor, request.model_dump(exclude_unset=True)
        )
    except CustomsError as e:
        raise http_error(e)
    return ItemResponse.model_validate(item)


@router.delete("/{declaration_id}/items/{item_id}", response_model=DeclarationResponse)
async def remove_item(
    declaration_id: UUID,
    item_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        declaration = await DeclarationService(db).remove_item(declaration_id, item_id, actor)
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post(
    "/{declaration_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_document(
    declaration_id: UUID,
    request: DocumentCreate,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Attach a supporting document reference (invoice, packing list, AWB, B/L...)."""
    try:
        document = await DeclarationService(db).add_supporting_document(
            declaration_id,
            actor,
            request.category,
            request.reference_number,
            request.document_date,
        )
    except CustomsError as e:
        raise http_error(e)
    return DocumentResponse.model_validate(document)


@router.post("/{declaration_id}/recalculate", response_model=DeclarationResponse)
async def recalculate(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    try:
        declaration = await DeclarationService(db).recalculate_taxes(declaration_id, actor)
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


# =============================================================================
# Status transitions
# =============================================================================

@router.post("/{declaration_id}/submit", response_model=DeclarationResponse)
async def submit_declaration(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Submit a DRAFT or REJECTED declaration for approval.

    **Checks (all reported together as 422 VALIDATION_FAILED):**
    - Required header fields for the document type
    - Transport mode / Incoterm compatibility, freight and insurance
    - At least one item with a valid HS code and positive values
    - Invoice, packing list and the transport document (AWB or B/L)

    On success the canonical XML is generated, hashed with SHA-256 and the
    declaration is locked against edits.
    """
    try:
        declaration = await DeclarationService(db).submit(declaration_id, actor)
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post("/{declaration_id}/review", response_model=DeclarationResponse)
async def start_review(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    request: Optional[NoteRequest] = None,
):
    try:
        declaration = await DeclarationService(db).start_review(
            declaration_id, actor, request.note if request else None
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post("/{declaration_id}/approve", response_model=DeclarationResponse)
async def approve_declaration(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    request: Optional[NoteRequest] = None,
):
    """Approve a submitted declaration. The stored XML hash is re-verified first."""
    try:
        declaration = await DeclarationService(db).approve(
            declaration_id, actor, request.note if request else None
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post("/{declaration_id}/lock", response_model=DeclarationResponse)
async def lock_declaration(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    request: Optional[NoteRequest] = None,
):
    try:
        declaration = await DeclarationService(db).lock(
            declaration_id, actor, request.note if request else None
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post("/{declaration_id}/reject", response_model=DeclarationResponse)
async def reject_declaration(
    declaration_id: UUID,
    request: RejectRequest,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Reject a submitted declaration. The reason is required and re-opens editing."""
    try:
        declaration = await DeclarationService(db).reject(
            declaration_id, actor, request.reason, errors=request.errors
        )
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


@router.post("/{declaration_id}/unlock", response_model=DeclarationResponse)
async def unlock_declaration(
    declaration_id: UUID,
    request: ReasonRequest,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Return a declaration to DRAFT for correction.

    The XML and its hash are cleared; the previous hash stays on the UNLOCK
    audit entry.
    """
    try:
        declaration = await DeclarationService(db).unlock(declaration_id, actor, request.reason)
    except CustomsError as e:
        raise http_error(e)
    return DeclarationResponse.model_validate(declaration)


# =============================================================================
# Integrity, XML export and history
# =============================================================================

@router.get("/{declaration_id}/integrity", response_model=IntegrityResponse)
async def verify_integrity(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Recompute the SHA-256 of the stored XML and compare it with the recorded hash."""
    service = DeclarationService(db)
    try:
        declaration = await service.get(declaration_id)
        xml_hash = service.verify_integrity(declaration)
    except IntegrityViolationError:
        return IntegrityResponse(
            declaration_id=declaration_id,
            submitted=True,
            xml_hash=declaration.xml_hash,
            verified=False,
        )
    except CustomsError as e:
        raise http_error(e)
    return IntegrityResponse(
        declaration_id=declaration_id,
        submitted=xml_hash is not None,
        xml_hash=xml_hash,
        verified=xml_hash is not None,
    )


@router.get("/{declaration_id}/xml")
async def export_xml(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Download the XML generated at submission.

    The download is recorded as an EXPORT audit event. Returns 404 for a
    declaration that has no XML yet.
    """
    service = DeclarationService(db)
    try:
        declaration = await service.get(declaration_id)
        service.verify_integrity(declaration)
    except CustomsError as e:
        raise http_error(e)
    if not declaration.xml_content:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "XML_NOT_GENERATED", "message": "Declaration has not been submitted yet"},
        )

    xml_content = declaration.xml_content
    xml_hash = declaration.xml_hash
    filename = generate_filename(declaration) or f"{declaration.id}.xml"
    await audit_logger.record_event(
        db,
        action=AuditAction.EXPORT,
        actor=actor,
        entity_type=declaration.declaration_type.value,
        entity_id=declaration.id,
        note=f"XML exported as {filename}",
    )
    return Response(
        content=xml_content,
        media_type="application/xml",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Content-SHA256": xml_hash,
        },
    )


@router.get("/{declaration_id}/audit", response_model=AuditLogListResponse)
async def declaration_audit_trail(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Complete history of one declaration, oldest first, including its queue items."""
    try:
        require_capability(actor, Capability.VIEW_AUDIT)
        declaration = await DeclarationService(db).get(declaration_id)
    except CustomsError as e:
        raise http_error(e)

    entries = await audit_logger.list_for_entity(db, declaration.id)
    for item in await OutboundQueueService(db).list_items(declaration_id=declaration.id, limit=None):
        entries.extend(await audit_logger.list_for_entity(db, item.id))
    merged = sorted(entries, key=lambda e: (e.created_at, str(e.id)))
    return AuditLogListResponse(
        entries=[AuditLogEntry.model_validate(e) for e in merged],
        total_count=len(merged),
    )
