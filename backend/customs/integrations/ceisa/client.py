"""
CEISA API client wrapper for the customs EDI exchange.

Provides centralized error handling, logging, and API interaction
for fetching PEB/PIB documents, submitting declarations and polling status.

Security:
- Never logs API keys
- Provides structured error responses carrying HTTP status and portal code
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from customs.core.config import settings

logger = logging.getLogger(__name__)


# Document type code sent with fetch requests
DOCUMENT_TYPE_CODES = {
    "PEB": "BC30",
    "PIB": "BC20",
}

# Query parameter naming the trader NPWP per document type
NPWP_PARAMS = {
    "PEB": "npwpEksportir",
    "PIB": "npwpImportir",
}


class CeisaError(Exception):
    """Base exception for CEISA API errors"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        portal_code: Optional[str] = None,
        response: Optional["GatewayResponse"] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.portal_code = portal_code
        self.response = response


class CeisaTimeoutError(CeisaError):
    """Timeout or connection failure; the request may be retried."""
    pass


@dataclass
class GatewayResponse:
    """Raw outcome of one CEISA call, kept for diagnostics."""
    http_status: Optional[int]
    body: Any
    elapsed_ms: int
    endpoint: str
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> list:
        """Documents in a fetch response (``data`` array), empty when absent."""
        if isinstance(self.body, dict) and isinstance(self.body.get("data"), list):
            return self.body["data"]
        return []

    @property
    def meta(self) -> dict:
        if isinstance(self.body, dict) and isinstance(self.body.get("meta"), dict):
            return self.body["meta"]
        return {}


class CeisaClient:
    """
    Wrapper around the CEISA 4.0 API.

    Handles:
    - PEB / PIB document fetch
    - Declaration submission
    - Status polling
    - Connection test
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize CEISA client.

        Args:
            api_key: CEISA API key (defaults to settings.CEISA_API_KEY)
            base_url: API root (defaults to settings.CEISA_API_URL)
            timeout: Seconds before a call is abandoned (defaults to settings.CEISA_TIMEOUT_SECONDS)
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key or settings.CEISA_API_KEY
        self.base_url = base_url or settings.CEISA_API_URL
        self.timeout = timeout if timeout is not None else settings.CEISA_TIMEOUT_SECONDS

        if not self.api_key:
            logger.warning("CEISA API key not configured - CEISA integration disabled")

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
            timeout=self.timeout,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _handle_error(self, response: httpx.Response, gateway_response: GatewayResponse, context: str) -> None:
        """
        Handle CEISA error responses.

        Raises:
            CeisaError: With HTTP status and portal error code
        """
        body = gateway_response.body
        if isinstance(body, dict):
            error_msg = body.get("message") or body.get("error") or "Unknown CEISA error"
            portal_code = body.get("code") or body.get("kodeRespon")
        else:
            error_msg = f"HTTP {response.status_code}"
            portal_code = None

        logger.error(
            f"CEISA API error in {context}: status={response.status_code}, "
            f"code={portal_code}, error={error_msg}"
        )
        raise CeisaError(
            message=f"CEISA API error: {error_msg}",
            status_code=response.status_code,
            portal_code=str(portal_code) if portal_code is not None else None,
            response=gateway_response,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        context: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> GatewayResponse:
        if not self.api_key:
            raise CeisaError("CEISA API key not configured", portal_code="NOT_CONFIGURED")

        start = time.perf_counter()
        try:
            response = await self.client.request(method, endpoint, params=params, json=json)
        except httpx.TimeoutException as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"CEISA timeout in {context} after {elapsed_ms}ms")
            raise CeisaTimeoutError(
                f"CEISA request timed out after {self.timeout:g}s",
                response=GatewayResponse(None, None, elapsed_ms, endpoint, dict(params or {})),
            ) from e
        except httpx.HTTPError as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"HTTP error in CEISA {context}: {e}")
            raise CeisaTimeoutError(
                f"Network error contacting CEISA: {e}",
                response=GatewayResponse(None, None, elapsed_ms, endpoint, dict(params or {})),
            ) from e

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        try:
            body = response.json()
        except ValueError:
            body = response.text

        gateway_response = GatewayResponse(
            http_status=response.status_code,
            body=body,
            elapsed_ms=elapsed_ms,
            endpoint=endpoint,
            params=dict(params or {}),
        )
        if response.status_code >= 400:
            self._handle_error(response, gateway_response, context)
        return gateway_response

    async def fetch_documents(self, document_type: str, params: Dict[str, Any]) -> GatewayResponse:
        """
        Fetch PEB or PIB documents matching the filter.

        Args:
            document_type: "PEB" or "PIB"
            params: nomor_aju, npwp, kode_kantor and optional date_from,
                date_to, page, page_size

        Returns:
            GatewayResponse; an empty ``data`` list is a valid outcome
        """
        document_type = document_type.upper()
        query = {
            "nomorAju": params["nomor_aju"],
            NPWP_PARAMS[document_type]: params["npwp"],
            "kodeKantor": params["kode_kantor"],
            "jenisDokumen": DOCUMENT_TYPE_CODES[document_type],
        }
        for key, name in (("date_from", "dateFrom"), ("date_to", "dateTo"), ("page", "page"), ("page_size", "pageSize")):
            if params.get(key):
                query[name] = str(params[key])

        logger.info(f"Fetching {document_type} from CEISA for nomorAju={params['nomor_aju']}")
        return await self._request("GET", f"/api/v1/{document_type.lower()}", f"fetch_{document_type.lower()}", params=query)

    async def submit_document(
        self,
        document_type: str,
        xml_content: str,
        xml_hash: str,
        nomor_aju: Optional[str] = None,
    ) -> GatewayResponse:
        """Submit a declaration XML. The response may carry the assigned nomor aju."""
        payload = {
            "jenisDokumen": DOCUMENT_TYPE_CODES[document_type.upper()],
            "nomorAju": nomor_aju,
            "dokumen": xml_content,
            "hash": xml_hash,
            "hashAlgorithm": "SHA-256",
        }
        logger.info(f"Submitting {document_type} to CEISA (hash={xml_hash[:12]}...)")
        return await self._request("POST", "/openapi/document", "submit_document", json=payload)

    async def get_status(self, nomor_aju: str) -> GatewayResponse:
        """Poll the processing status of a submitted document."""
        return await self._request("GET", f"/openapi/status/{nomor_aju}", "get_status")

    async def test_connection(self) -> GatewayResponse:
        """Authenticate against CEISA without touching any document."""
        return await self._request("GET", "/openapi/__test__", "test_connection")
