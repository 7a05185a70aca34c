from typing import Annotated, AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from customs.core.roles import Actor, actor_for_role
from customs.integrations.ceisa.client import CeisaClient, CeisaError
from customs.services.errors import (
    AuditWriteError,
    AuthorizationError,
    DeclarationNotFoundError,
    ImmutabilityError,
    IncomingMessageNotFoundError,
    IntegrityViolationError,
    InvalidTransitionError,
    QueueConflictError,
    QueueExhaustedError,
    QueueItemNotFoundError,
    ValidationFailedError,
)
from customs.services.edi.error_mapping import map_gateway_error


# =============================================================================
# Identity: actor from the upstream gateway headers
# =============================================================================

async def get_current_actor(
    x_actor_id: Annotated[Optional[UUID], Header()] = None,
    x_actor_email: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Build the acting identity from X-Actor-Id / X-Actor-Email / X-Actor-Role.

    Authentication happens upstream; the role decides the capability set.

    Raises:
        HTTPException: 401 without a role header, 403 for an unknown role
    """
    if not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "NOT_AUTHENTICATED", "message": "X-Actor-Role header is required"},
        )
    try:
        return actor_for_role(x_actor_id, x_actor_role, email=x_actor_email)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN_ROLE", "message": str(e)},
        )


CurrentActor = Annotated[Actor, Depends(get_current_actor)]


# =============================================================================
# CEISA client per request
# =============================================================================

async def get_ceisa_client() -> AsyncGenerator[CeisaClient, None]:
    client = CeisaClient()
    try:
        yield client
    finally:
        await client.close()


# =============================================================================
# Service error -> HTTP error
# =============================================================================

def http_error(error: Exception) -> HTTPException:
    """Translate a service exception into the HTTP error returned to the client."""
    if isinstance(error, ValidationFailedError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "VALIDATION_FAILED",
                "message": str(error),
                "violations": [v.to_dict() for v in error.violations],
            },
        )
    if isinstance(error, AuthorizationError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": str(error), "capability": error.capability},
        )
    if isinstance(error, (DeclarationNotFoundError, IncomingMessageNotFoundError, QueueItemNotFoundError)):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": str(error)},
        )
    if isinstance(error, ImmutabilityError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "DECLARATION_LOCKED", "message": str(error)},
        )
    if isinstance(error, InvalidTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "INVALID_TRANSITION", "message": str(error)},
        )
    if isinstance(error, QueueConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "QUEUE_CONFLICT", "message": str(error)},
        )
    if isinstance(error, QueueExhaustedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "RETRY_LIMIT_REACHED", "message": str(error)},
        )
    if isinstance(error, IntegrityViolationError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "code": "INTEGRITY_VIOLATION",
                "message": str(error),
                "expected_hash": error.expected_hash,
                "actual_hash": error.actual_hash,
            },
        )
    if isinstance(error, AuditWriteError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "AUDIT_WRITE_FAILED", "message": str(error)},
        )
    if isinstance(error, CeisaError):
        mapping = map_gateway_error(error.status_code, error.portal_code, error.message)
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": mapping.code, "message": mapping.message, "action": mapping.action},
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "CUSTOMS_ERROR", "message": str(error)},
    )
