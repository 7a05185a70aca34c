"""
Customs Core Exceptions

Error taxonomy shared by the declaration lifecycle, the EDI layer and the
audit trail. Validation and immutability errors are user-fixable and carry
one message per violated rule; integrity violations are fatal.
"""
from dataclasses import dataclass, asdict
from typing import List, Optional


@dataclass(frozen=True)
class Violation:
    """A single violated rule, addressed to a field where possible."""
    field: str
    code: str
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


class CustomsError(Exception):
    """Base exception for customs core operations."""
    pass


class ValidationFailedError(CustomsError):
    """Raised when one or more local validation rules fail."""
    def __init__(self, violations: List[Violation], message: Optional[str] = None):
        self.violations = list(violations)
        super().__init__(
            message or "; ".join(v.message for v in self.violations) or "Validation failed"
        )


class ImmutabilityError(CustomsError):
    """Raised when a field edit targets a locked declaration."""
    pass


class InvalidTransitionError(CustomsError):
    """Raised when a status transition is not in the transition table."""
    pass


class AuthorizationError(CustomsError):
    """Raised when the actor lacks the capability for an operation."""
    def __init__(self, message: str, capability: Optional[str] = None):
        super().__init__(message)
        self.capability = capability


class DeclarationNotFoundError(CustomsError):
    """Raised when a declaration is not found."""
    pass


class QueueConflictError(CustomsError):
    """Raised when a declaration already has a pending transmission."""
    pass


class QueueExhaustedError(CustomsError):
    """Raised when a queue item has used up its retry budget."""
    pass


class QueueItemNotFoundError(CustomsError):
    """Raised when an outbound queue item is not found."""
    pass


class IncomingMessageNotFoundError(CustomsError):
    """Raised when an incoming gateway message is not found."""
    pass


class IntegrityViolationError(CustomsError):
    """
    Fatal integrity failure.

    Raised on a document hash mismatch or on any attempt to modify or delete
    an audit log entry. Callers must abort the operation.
    """
    def __init__(
        self,
        message: str,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
    ):
        super().__init__(message)
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class AuditWriteError(CustomsError):
    """Raised when the audit entry for a mutation cannot be written."""
    pass
