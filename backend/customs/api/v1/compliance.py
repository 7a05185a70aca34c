"""
Compliance API Endpoints

Read-only checks used by the declaration form before anything is saved.
"""
from typing import Optional

from fastapi import APIRouter, Query

from customs.api.v1.deps import CurrentActor
from customs.schemas.compliance import (
    ComplianceCheckRequest,
    ComplianceCheckResponse,
    IncotermListResponse,
    ViolationResponse,
)
from customs.services import compliance

router = APIRouter()


@router.get("/incoterms", response_model=IncotermListResponse)
async def list_incoterms(
    actor: CurrentActor,
    transport_mode: Optional[str] = Query(None, description="AIR, SEA, LAND, RAIL or MULTI"),
):
    """
    Incoterm codes valid for a transport mode.

    Without a mode every Incoterm 2020 code is returned; an unknown mode
    returns an empty list.
    """
    if transport_mode is None:
        return IncotermListResponse(transport_mode=None, incoterms=list(compliance.ALL_INCOTERMS))
    return IncotermListResponse(
        transport_mode=compliance.normalize_transport_mode(transport_mode) or transport_mode,
        incoterms=list(compliance.allowed_incoterms(transport_mode)),
    )


@router.post("/check", response_model=ComplianceCheckResponse)
async def check_compliance(request: ComplianceCheckRequest, actor: CurrentActor):
    result = compliance.validate(
        request.transport_mode,
        request.incoterm,
        request.freight_value,
        request.insurance_value,
    )
    return ComplianceCheckResponse(
        valid=result.valid,
        violations=[ViolationResponse(**v.to_dict()) for v in result.violations],
    )
