"""
CEISA connection monitor.

A background task owned by the application lifespan checks the gateway on a
fixed interval. Request handlers only read the latest result.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Optional

from customs.core.config import settings
from customs.integrations.ceisa.client import CeisaClient, CeisaError
from customs.services.edi.diagnostics import DiagnosticRecorder, diagnostics
from customs.services.edi.error_mapping import map_gateway_error
from customs.services.logging import customs_logger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionStatus:
    configured: bool
    connected: bool
    checked_at: Optional[datetime] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    action: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat() if self.checked_at else None
        return data


class ConnectionMonitor:
    """Periodic CEISA connectivity check."""

    def __init__(
        self,
        client_factory: Callable[[], CeisaClient] = CeisaClient,
        interval_seconds: Optional[float] = None,
        recorder: Optional[DiagnosticRecorder] = None,
    ):
        self._client_factory = client_factory
        self.interval_seconds = interval_seconds or settings.CEISA_HEALTH_CHECK_INTERVAL_SECONDS
        self.recorder = recorder or diagnostics
        self._status = ConnectionStatus(configured=settings.ceisa_enabled, connected=False)
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_now(self) -> ConnectionStatus:
        """Run one check and publish its result."""
        if not settings.ceisa_enabled:
            self._status = ConnectionStatus(
                configured=False,
                connected=False,
                checked_at=datetime.now(timezone.utc),
                error="CEISA API key not configured",
            )
            return self._status

        started = time.perf_counter()
        async with self._client_factory() as client:
            try:
                response = await client.test_connection()
                status = ConnectionStatus(
                    configured=True,
                    connected=True,
                    checked_at=datetime.now(timezone.utc),
                    latency_ms=response.elapsed_ms,
                )
            except CeisaError as e:
                mapping = map_gateway_error(e.status_code, e.portal_code, e.message)
                status = ConnectionStatus(
                    configured=True,
                    connected=False,
                    checked_at=datetime.now(timezone.utc),
                    latency_ms=int((time.perf_counter() - started) * 1000),
                    error=mapping.message,
                    action=mapping.action,
                )

        self._status = status
        customs_logger.connection_checked(status.connected, status.latency_ms, status.error)
        self.recorder.log(
            "connection_check",
            "CEISA reachable" if status.connected else f"CEISA unreachable: {status.error}",
            level="INFO" if status.connected else "WARN",
        )
        return status

    async def _run(self) -> None:
        while True:
            try:
                await self.check_now()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the loop alive; the next tick retries
                logger.exception("CEISA connection check failed")
                customs_logger.operation_failed("ceisa_connection_check", str(e))
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="ceisa-connection-monitor")
        logger.info(f"CEISA connection monitor started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("CEISA connection monitor stopped")


connection_monitor = ConnectionMonitor()
