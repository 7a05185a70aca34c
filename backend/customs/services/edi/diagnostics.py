"""
CEISA diagnostic capture.

Keeps the raw outcome of the most recent fetch per document type and a
rolling operation log for administrators. Recording is observational only:
a failure to record is logged and never reaches the caller.
"""
import logging
from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, Optional

from customs.audit.audit_logger import sanitize_value
from customs.core.config import settings
from customs.core.roles import Actor, Capability, require_capability

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 20000


def _clip(body: Any) -> Any:
    if isinstance(body, str) and len(body) > MAX_BODY_CHARS:
        return body[:MAX_BODY_CHARS] + "...[truncated]"
    return body


class DiagnosticRecorder:
    """Bounded in-process store of gateway diagnostics."""

    def __init__(self, max_entries: Optional[int] = None, enabled: bool = True):
        self.enabled = enabled
        self._last_fetch: Dict[str, dict] = {}
        self._log: Deque[dict] = deque(maxlen=max_entries or settings.DIAGNOSTIC_LOG_SIZE)
        self._mutex = Lock()

    def record_fetch(
        self,
        document_type: str,
        endpoint: str,
        http_status: Optional[int],
        elapsed_ms: int,
        params: Optional[Dict[str, Any]] = None,
        response: Any = None,
        error: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        try:
            snapshot = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "document_type": document_type,
                "endpoint": endpoint,
                "http_status": http_status,
                "elapsed_ms": elapsed_ms,
                "params": {k: sanitize_value(k, v) for k, v in (params or {}).items()},
                "response": _clip(response),
                "error": error,
            }
            with self._mutex:
                self._last_fetch[document_type] = snapshot
            self.log(
                f"fetch_{document_type.lower()}",
                error or f"HTTP {http_status} in {elapsed_ms}ms",
                level="ERROR" if error else "INFO",
            )
        except Exception:
            logger.exception("Failed to record CEISA fetch diagnostics")

    def log(self, operation: str, message: str, level: str = "INFO", **details: Any) -> None:
        if not self.enabled:
            return
        try:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "operation": operation,
                "level": level,
                "message": message,
            }
            if details:
                entry["details"] = {k: sanitize_value(k, v) for k, v in details.items()}
            with self._mutex:
                self._log.append(entry)
        except Exception:
            logger.exception("Failed to append CEISA diagnostic log entry")

    def snapshot(self, actor: Actor) -> dict:
        """Latest fetch per document type and the rolling log, newest first."""
        require_capability(actor, Capability.VIEW_DIAGNOSTICS)
        with self._mutex:
            return {
                "enabled": self.enabled,
                "last_fetch": dict(self._last_fetch),
                "log": list(reversed(self._log)),
            }

    def clear(self, actor: Actor) -> None:
        require_capability(actor, Capability.VIEW_DIAGNOSTICS)
        with self._mutex:
            self._last_fetch.clear()
            self._log.clear()


diagnostics = DiagnosticRecorder()
