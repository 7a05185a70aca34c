# Models module
from customs.models.declaration import (
    Declaration,
    DeclarationItem,
    DeclarationSource,
    DeclarationStatus,
    DeclarationType,
    DocumentCategory,
    LOCKED_STATUSES,
    SupportingDocument,
    TransportMode,
)
from customs.models.edi import (
    ArchiveEntry,
    GatewayOutcome,
    IncomingMessage,
    QueueItem,
    QueueStatus,
)
from customs.models.audit_log import AuditAction, AuditLog
