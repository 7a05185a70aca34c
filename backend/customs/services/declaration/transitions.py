"""
Declaration status transition table.

Every legal status change is listed here together with the capability that
may drive it and the audit action it records. Anything not in the table is
an InvalidTransitionError; the table is checked at import time to cover
every status.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from customs.core.roles import Actor, Capability
from customs.models.audit_log import AuditAction
from customs.models.declaration import DeclarationStatus
from customs.services.errors import AuthorizationError, InvalidTransitionError


class Driver(str, Enum):
    USER = "USER"
    GATEWAY = "GATEWAY"


@dataclass(frozen=True)
class Transition:
    source: DeclarationStatus
    target: DeclarationStatus
    capabilities: FrozenSet[Capability]
    driver: Driver
    action: AuditAction


def _t(source, target, capabilities, driver, action) -> Tuple[Tuple[DeclarationStatus, DeclarationStatus], Transition]:
    return (source, target), Transition(source, target, frozenset(capabilities), driver, action)


S = DeclarationStatus
C = Capability

TRANSITIONS: Dict[Tuple[DeclarationStatus, DeclarationStatus], Transition] = dict([
    # Submission
    _t(S.DRAFT, S.SUBMITTED, {C.SUBMIT}, Driver.USER, AuditAction.SUBMIT),
    _t(S.REJECTED, S.SUBMITTED, {C.SUBMIT}, Driver.USER, AuditAction.SUBMIT),

    # Review and approval
    _t(S.SUBMITTED, S.UNDER_REVIEW, {C.REVIEW}, Driver.USER, AuditAction.UPDATE),
    _t(S.SUBMITTED, S.APPROVED, {C.APPROVE, C.RECEIVE_RESPONSE}, Driver.USER, AuditAction.APPROVE),
    _t(S.UNDER_REVIEW, S.APPROVED, {C.APPROVE, C.RECEIVE_RESPONSE}, Driver.USER, AuditAction.APPROVE),
    _t(S.SUBMITTED, S.REJECTED, {C.REJECT, C.RECEIVE_RESPONSE}, Driver.USER, AuditAction.REJECT),
    _t(S.UNDER_REVIEW, S.REJECTED, {C.REJECT, C.RECEIVE_RESPONSE}, Driver.USER, AuditAction.REJECT),
    _t(S.APPROVED, S.LOCKED, {C.APPROVE}, Driver.USER, AuditAction.LOCK),

    # Gateway exchange (one-way)
    _t(S.APPROVED, S.SENT_TO_GATEWAY, {C.PROCESS_QUEUE}, Driver.GATEWAY, AuditAction.SEND_GATEWAY),
    _t(S.LOCKED, S.SENT_TO_GATEWAY, {C.PROCESS_QUEUE}, Driver.GATEWAY, AuditAction.SEND_GATEWAY),
    _t(S.SENT_TO_GATEWAY, S.GATEWAY_ACCEPTED, {C.RECEIVE_RESPONSE}, Driver.GATEWAY, AuditAction.RECEIVE_RESPONSE),
    _t(S.SENT_TO_GATEWAY, S.GATEWAY_REJECTED, {C.RECEIVE_RESPONSE}, Driver.GATEWAY, AuditAction.RECEIVE_RESPONSE),

    # Supervisor unlock back to editing
    _t(S.REJECTED, S.DRAFT, {C.UNLOCK}, Driver.USER, AuditAction.UNLOCK),
    _t(S.APPROVED, S.DRAFT, {C.UNLOCK}, Driver.USER, AuditAction.UNLOCK),
    _t(S.LOCKED, S.DRAFT, {C.UNLOCK}, Driver.USER, AuditAction.UNLOCK),
    _t(S.GATEWAY_ACCEPTED, S.DRAFT, {C.UNLOCK}, Driver.USER, AuditAction.UNLOCK),
    _t(S.GATEWAY_REJECTED, S.DRAFT, {C.UNLOCK}, Driver.USER, AuditAction.UNLOCK),
])

del S, C


def _check_table_covers_every_status() -> None:
    reachable = {target for _, target in TRANSITIONS}
    leavable = {source for source, _ in TRANSITIONS}
    missing = [
        status for status in DeclarationStatus
        if (status not in reachable and status is not DeclarationStatus.DRAFT)
        or status not in leavable
    ]
    if missing:
        raise RuntimeError(
            f"Transition table does not cover statuses: {[s.value for s in missing]}"
        )


_check_table_covers_every_status()


def targets_from(status: DeclarationStatus) -> list:
    """Statuses reachable in one step from ``status``."""
    return [target for (source, target) in TRANSITIONS if source == status]


def get_transition(
    source: DeclarationStatus,
    target: DeclarationStatus,
    actor: Actor,
) -> Transition:
    """
    Look up and authorise a transition.

    Raises:
        InvalidTransitionError: The pair is not in the table
        AuthorizationError: The actor holds none of the capabilities for it
    """
    transition = TRANSITIONS.get((DeclarationStatus(source), DeclarationStatus(target)))
    if transition is None:
        raise InvalidTransitionError(
            f"Cannot change declaration status from {DeclarationStatus(source).value} "
            f"to {DeclarationStatus(target).value}"
        )
    if not any(actor.can(capability) for capability in transition.capabilities):
        needed = sorted(c.value for c in transition.capabilities)
        raise AuthorizationError(
            f"Role '{actor.role}' may not move a declaration from {transition.source.value} "
            f"to {transition.target.value}",
            capability=needed[0],
        )
    return transition
