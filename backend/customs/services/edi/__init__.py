# CEISA EDI exchange services
from customs.services.edi.diagnostics import DiagnosticRecorder, diagnostics
from customs.services.edi.error_mapping import ErrorCategory, ErrorMapping, describe_field_error, map_gateway_error
from customs.services.edi.health import ConnectionMonitor, ConnectionStatus, connection_monitor
from customs.services.edi.inbound import IncomingMessageService, parse_gateway_response
from customs.services.edi.queue import OutboundQueueService, QueueRunResult
from customs.services.edi.sync import FetchFilter, LegResult, SyncParams, SyncResult, SyncService

__all__ = [
    "DiagnosticRecorder",
    "diagnostics",
    "ErrorCategory",
    "ErrorMapping",
    "describe_field_error",
    "map_gateway_error",
    "ConnectionMonitor",
    "ConnectionStatus",
    "connection_monitor",
    "IncomingMessageService",
    "parse_gateway_response",
    "OutboundQueueService",
    "QueueRunResult",
    "FetchFilter",
    "LegResult",
    "SyncParams",
    "SyncResult",
    "SyncService",
]
