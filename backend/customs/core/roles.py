"""
Role and Capability Module

Defines the user roles known to the customs core and the capability set each
role grants. Capabilities are resolved once per request and handed to every
core operation as part of an explicit ``Actor``; nothing in the services reads
the current user from global state.

Usage:
    from customs.core.roles import Actor, Capability, actor_for_role

    actor = actor_for_role(user_id, "supervisor", email="spv@example.com")
    require_capability(actor, Capability.APPROVE)
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional
from uuid import UUID

from customs.services.errors import AuthorizationError


class UserRole(str, Enum):
    """
    Enumeration of valid user roles.

    - OPERATOR: prepares declarations and submits them for approval
    - SUPERVISOR: approves, rejects and unlocks submitted declarations
    - ADMIN: operates the CEISA gateway (sync, queue, diagnostics)
    - SYSTEM: internal jobs (inbound response processing, health checks)
    """
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"
    SYSTEM = "system"


class Capability(str, Enum):
    """Individual permissions checked at the service boundary."""
    CREATE = "create"
    EDIT = "edit"
    SUBMIT = "submit"
    REVIEW = "review"
    APPROVE = "approve"
    REJECT = "reject"
    UNLOCK = "unlock"
    ENQUEUE = "enqueue"
    PROCESS_QUEUE = "process_queue"
    SYNC = "sync"
    RECEIVE_RESPONSE = "receive_response"
    VIEW_DIAGNOSTICS = "view_diagnostics"
    VIEW_AUDIT = "view_audit"


_OPERATOR_CAPABILITIES = frozenset({
    Capability.CREATE,
    Capability.EDIT,
    Capability.SUBMIT,
    Capability.VIEW_AUDIT,
})

_SUPERVISOR_CAPABILITIES = _OPERATOR_CAPABILITIES | frozenset({
    Capability.REVIEW,
    Capability.APPROVE,
    Capability.REJECT,
    Capability.UNLOCK,
    Capability.ENQUEUE,
})

ROLE_CAPABILITIES: dict[UserRole, FrozenSet[Capability]] = {
    UserRole.OPERATOR: _OPERATOR_CAPABILITIES,
    UserRole.SUPERVISOR: _SUPERVISOR_CAPABILITIES,
    UserRole.ADMIN: _SUPERVISOR_CAPABILITIES | frozenset({
        Capability.PROCESS_QUEUE,
        Capability.SYNC,
        Capability.RECEIVE_RESPONSE,
        Capability.VIEW_DIAGNOSTICS,
    }),
    UserRole.SYSTEM: frozenset({
        Capability.PROCESS_QUEUE,
        Capability.RECEIVE_RESPONSE,
        Capability.SYNC,
    }),
}

VALID_ROLES: set[str] = {role.value for role in UserRole}


def normalize_role(role: str) -> str:
    """
    Normalize a role string to lowercase.

    Raises:
        ValueError: If the normalized role is not valid
    """
    normalized = role.lower().strip()
    if normalized not in VALID_ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of: {', '.join(sorted(VALID_ROLES))}")
    return normalized


@dataclass(frozen=True)
class Actor:
    """Authenticated identity plus the capabilities granted to it."""
    user_id: Optional[UUID]
    role: str
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)
    email: Optional[str] = None

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


def actor_for_role(
    user_id: Optional[UUID],
    role: str,
    email: Optional[str] = None,
) -> Actor:
    """Build an Actor whose capabilities come from the role table."""
    role_value = normalize_role(role)
    return Actor(
        user_id=user_id,
        role=role_value,
        capabilities=ROLE_CAPABILITIES[UserRole(role_value)],
        email=email,
    )


def system_actor() -> Actor:
    """Actor used by background jobs."""
    return actor_for_role(None, UserRole.SYSTEM.value, email="system")


def require_capability(actor: Actor, capability: Capability) -> None:
    """Raise AuthorizationError unless the actor holds the capability."""
    if not actor.can(capability):
        raise AuthorizationError(
            f"Role '{actor.role}' is not allowed to {capability.value.replace('_', ' ')}",
            capability=capability.value,
        )


def require_any_capability(actor: Actor, *capabilities: Capability) -> None:
    """Raise AuthorizationError unless the actor holds at least one of the capabilities."""
    if not any(actor.can(capability) for capability in capabilities):
        raise AuthorizationError(
            f"Role '{actor.role}' is not allowed to "
            f"{' or '.join(c.value.replace('_', ' ') for c in capabilities)}",
            capability=capabilities[0].value,
        )
