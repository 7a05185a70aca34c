"""
CEISA EDI API Endpoints

Outbound queue, portal sync, inbound responses, the response archive and
gateway diagnostics. Gateway operations are restricted to admin and system
roles by the capability checks in the services.
"""
from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from customs.api.v1.deps import CurrentActor, get_ceisa_client, http_error
from customs.core.database import get_db
from customs.core.roles import Capability, require_any_capability, require_capability
from customs.integrations.ceisa.client import CeisaClient, CeisaError
from customs.models.declaration import DeclarationType
from customs.models.edi import GatewayOutcome, QueueStatus
from customs.schemas.edi import (
    ArchiveEntryResponse,
    ArchiveListResponse,
    ConnectionStatusResponse,
    DiagnosticsResponse,
    EnqueueRequest,
    FetchFilterRequest,
    IncomingCreate,
    IncomingResponse,
    QueueItemResponse,
    QueueRunItem,
    QueueRunResponse,
    QueueStatsResponse,
    RetryRequest,
    RetryResponse,
    SyncRequest,
    SyncResponse,
)
from customs.services.edi import (
    FetchFilter,
    IncomingMessageService,
    OutboundQueueService,
    SyncParams,
    SyncService,
    connection_monitor,
    diagnostics,
)
from customs.services.errors import CustomsError

router = APIRouter()

CeisaClientDep = Annotated[CeisaClient, Depends(get_ceisa_client)]

# Raw gateway traffic is visible to the roles that operate the gateway
GATEWAY_READ_CAPABILITIES = (Capability.VIEW_DIAGNOSTICS, Capability.RECEIVE_RESPONSE)


def _require_gateway_read(actor) -> None:
    try:
        require_any_capability(actor, *GATEWAY_READ_CAPABILITIES)
    except CustomsError as e:
        raise http_error(e)


def _fetch_filter(request: Optional[FetchFilterRequest]) -> Optional[FetchFilter]:
    if request is None:
        return None
    return FetchFilter(**request.model_dump())


# =============================================================================
# Outbound queue
# =============================================================================

@router.post("/queue", response_model=QueueItemResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_declaration(
    request: EnqueueRequest,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Queue an APPROVED or LOCKED declaration for transmission to CEISA.

    Returns 409 QUEUE_CONFLICT when a transmission for the same declaration
    is already pending.
    """
    try:
        item = await OutboundQueueService(db).enqueue(request.declaration_id, actor)
    except CustomsError as e:
        raise http_error(e)
    return QueueItemResponse.model_validate(item)


@router.get("/queue", response_model=list[QueueItemResponse])
async def list_queue(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    queue_status: Optional[QueueStatus] = Query(None, alias="status"),
    declaration_id: Optional[UUID] = Query(None),
    limit: int = Query(50, ge=1, le=200),
):
    _require_gateway_read(actor)
    items = await OutboundQueueService(db).list_items(
        status=queue_status, declaration_id=declaration_id, limit=limit
    )
    return [QueueItemResponse.model_validate(item) for item in items]


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    _require_gateway_read(actor)
    return QueueStatsResponse(**await OutboundQueueService(db).queue_stats())


@router.post("/queue/process", response_model=QueueRunResponse)
async def process_queue(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    client: CeisaClientDep,
    limit: Optional[int] = Query(None, ge=1, le=500),
):
    """
    Transmit pending queue items.

    Items already claimed by a concurrent run are skipped. Failed attempts
    are reported per item with the gateway error mapping and whether a retry
    is possible.
    """
    service = OutboundQueueService(db, client=client)
    try:
        results = await service.process_queue(actor, limit=limit)
    except (CustomsError, CeisaError) as e:
        raise http_error(e)
    return QueueRunResponse(
        processed=len(results),
        accepted=sum(1 for r in results if r.status == QueueStatus.ACCEPTED),
        failed=sum(1 for r in results if r.status == QueueStatus.FAILED),
        results=[QueueRunItem(**r.to_dict()) for r in results],
    )


@router.post("/queue/retry", response_model=RetryResponse)
async def retry_queue(
    request: RetryRequest,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Return FAILED items to PENDING.

    With a queue_item_id only that item is retried and a refusal is reported
    as an error (409 RETRY_LIMIT_REACHED once attempts are used up). Without
    one every eligible item is retried and ineligible ones are skipped.
    """
    service = OutboundQueueService(db)
    try:
        if request.queue_item_id:
            requeued = [await service.retry_failed(request.queue_item_id, actor)]
        else:
            requeued = await service.retry_all_failed(actor)
    except CustomsError as e:
        raise http_error(e)
    return RetryResponse(requeued=[QueueItemResponse.model_validate(i) for i in requeued])


# =============================================================================
# Portal sync
# =============================================================================

@router.post("/sync", response_model=SyncResponse)
async def sync_from_portal(
    request: SyncRequest,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    client: CeisaClientDep,
):
    """
    Pull PEB and PIB documents from CEISA and upsert them by nomor aju.

    **Required per leg:** nomor_aju, npwp, kode_kantor. A leg with missing
    parameters fails without calling CEISA; the other leg still runs.

    The response always carries both leg results. ``success`` is true only
    when every requested leg succeeded.
    """
    params = SyncParams(peb=_fetch_filter(request.peb), pib=_fetch_filter(request.pib))
    try:
        result = await SyncService(db, client).sync(params, actor)
    except CustomsError as e:
        raise http_error(e)
    return SyncResponse.model_validate(result.to_dict())


# =============================================================================
# Inbound responses and archive
# =============================================================================

@router.post("/incoming", response_model=IncomingResponse, status_code=status.HTTP_201_CREATED)
async def receive_response(
    request: IncomingCreate,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Store a gateway response, either as raw XML or as structured fields.

    The response is only applied to its declaration by the apply endpoint.
    """
    service = IncomingMessageService(db)
    try:
        if request.xml:
            message = await service.receive_xml(request.xml, actor, document_type=request.document_type)
        else:
            message = await service.receive(
                actor,
                document_number=request.document_number,
                outcome=request.outcome,
                document_type=request.document_type,
                errors=[e.model_dump() for e in request.errors],
                registration_number=request.registration_number,
                registration_date=request.registration_date,
                response_code=request.response_code,
                response_message=request.response_message,
            )
    except CustomsError as e:
        raise http_error(e)
    return IncomingResponse.model_validate(message)


@router.get("/incoming", response_model=list[IncomingResponse])
async def list_incoming(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Responses waiting to be applied, oldest first."""
    _require_gateway_read(actor)
    messages = await IncomingMessageService(db).list_incoming(limit=limit, offset=offset)
    return [IncomingResponse.model_validate(m) for m in messages]


@router.post("/incoming/{message_id}/apply", response_model=ArchiveEntryResponse)
async def apply_response(
    message_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Apply a stored response to its declaration.

    The status update, the archive entry and the removal of the incoming
    message happen in one transaction: either all of them or none.
    """
    try:
        entry = await IncomingMessageService(db).apply(message_id, actor)
    except CustomsError as e:
        raise http_error(e)
    return ArchiveEntryResponse.model_validate(entry)


@router.post("/declarations/{declaration_id}/poll", response_model=Optional[IncomingResponse])
async def poll_declaration_status(
    declaration_id: UUID,
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    client: CeisaClientDep,
):
    """Ask CEISA for a final answer; returns null while it is still processing."""
    try:
        message = await IncomingMessageService(db, client=client).poll_status(declaration_id, actor)
    except (CustomsError, CeisaError) as e:
        raise http_error(e)
    return IncomingResponse.model_validate(message) if message else None


@router.get("/archive", response_model=ArchiveListResponse)
async def search_archive(
    actor: CurrentActor,
    db: Annotated[AsyncSession, Depends(get_db)],
    document_number: Optional[str] = Query(None),
    document_type: Optional[DeclarationType] = Query(None),
    outcome: Optional[GatewayOutcome] = Query(None, alias="status"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    _require_gateway_read(actor)
    entries, total = await IncomingMessageService(db).search_archive(
        document_number=document_number,
        document_type=document_type,
        status=outcome,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return ArchiveListResponse(
        entries=[ArchiveEntryResponse.model_validate(e) for e in entries],
        total_count=total,
        limit=limit,
        offset=offset,
    )


# =============================================================================
# Diagnostics and connectivity
# =============================================================================

@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def get_diagnostics(actor: CurrentActor):
    """Last raw fetch per document type and the recent gateway log (admin only)."""
    try:
        return DiagnosticsResponse(**diagnostics.snapshot(actor))
    except CustomsError as e:
        raise http_error(e)


@router.delete("/diagnostics", status_code=status.HTTP_204_NO_CONTENT)
async def clear_diagnostics(actor: CurrentActor):
    try:
        diagnostics.clear(actor)
    except CustomsError as e:
        raise http_error(e)


@router.get("/connection", response_model=ConnectionStatusResponse)
async def connection_status(
    actor: CurrentActor,
    refresh: bool = Query(False, description="Run a connectivity check now"),
):
    """
    Current CEISA connectivity as seen by the background monitor.

    ``refresh=true`` runs a check immediately (admin only).
    """
    if refresh:
        try:
            require_capability(actor, Capability.VIEW_DIAGNOSTICS)
        except CustomsError as e:
            raise http_error(e)
        return ConnectionStatusResponse(**(await connection_monitor.check_now()).to_dict())
    return ConnectionStatusResponse(**connection_monitor.status.to_dict())
