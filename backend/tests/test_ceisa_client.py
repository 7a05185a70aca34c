"""
Tests for the CEISA client with a mocked HTTP transport.

No real API calls are made; every request is answered by an
httpx.MockTransport handler.
"""
import json
from unittest.mock import patch

import httpx
import pytest

from customs.core.config import settings
from customs.integrations.ceisa.client import CeisaClient, CeisaError, CeisaTimeoutError


BASE_URL = "https://ceisa.test"


def make_client(handler, api_key="test_key", timeout=5.0) -> CeisaClient:
    return CeisaClient(
        api_key=api_key,
        base_url=BASE_URL,
        timeout=timeout,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_fetch_pib_builds_query():
    """Fetch sends the importer NPWP and the BC20 document code"""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"data": [{"nomorAju": "A-1"}], "meta": {"total": 1}})

    async with make_client(handler) as client:
        response = await client.fetch_documents("pib", {
            "nomor_aju": "A-1",
            "npwp": "012345678901000",
            "kode_kantor": "040300",
            "page": 2,
        })

    assert seen["path"] == "/api/v1/pib"
    assert seen["params"] == {
        "nomorAju": "A-1",
        "npwpImportir": "012345678901000",
        "kodeKantor": "040300",
        "jenisDokumen": "BC20",
        "page": "2",
    }
    assert seen["auth"] == "Bearer test_key"
    assert response.http_status == 200
    assert response.data == [{"nomorAju": "A-1"}]
    assert response.meta == {"total": 1}
    assert response.endpoint == "/api/v1/pib"


@pytest.mark.asyncio
async def test_fetch_peb_uses_exporter_npwp():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["npwpEksportir"] == "023456789012000"
        assert request.url.params["jenisDokumen"] == "BC30"
        return httpx.Response(200, json={"data": []})

    async with make_client(handler) as client:
        response = await client.fetch_documents("PEB", {
            "nomor_aju": "B-1", "npwp": "023456789012000", "kode_kantor": "040300",
        })

    assert response.data == []


@pytest.mark.asyncio
async def test_submit_document_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"nomorAju": "000020-010203-20261018-000001"})

    async with make_client(handler) as client:
        response = await client.submit_document("PIB", "<PIB/>", "ab" * 32)

    assert captured["method"] == "POST"
    assert captured["path"] == "/openapi/document"
    assert captured["body"] == {
        "jenisDokumen": "BC20",
        "nomorAju": None,
        "dokumen": "<PIB/>",
        "hash": "ab" * 32,
        "hashAlgorithm": "SHA-256",
    }
    assert response.body["nomorAju"] == "000020-010203-20261018-000001"


@pytest.mark.asyncio
async def test_error_response_carries_portal_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"code": "E003", "message": "Invalid HS Code"})

    async with make_client(handler) as client:
        with pytest.raises(CeisaError) as exc_info:
            await client.submit_document("PEB", "<PEB/>", "cd" * 32)

    error = exc_info.value
    assert str(error) == "CEISA API error: Invalid HS Code"
    assert error.status_code == 422
    assert error.portal_code == "E003"
    assert error.response.http_status == 422
    assert not isinstance(error, CeisaTimeoutError)


@pytest.mark.asyncio
async def test_non_json_error_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad gateway</html>")

    async with make_client(handler) as client:
        with pytest.raises(CeisaError) as exc_info:
            await client.get_status("A-1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.portal_code is None
    assert exc_info.value.message == "CEISA API error: HTTP 502"


@pytest.mark.asyncio
async def test_timeout_is_retriable_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with make_client(handler, timeout=2.5) as client:
        with pytest.raises(CeisaTimeoutError) as exc_info:
            await client.test_connection()

    assert str(exc_info.value) == "CEISA request timed out after 2.5s"
    assert exc_info.value.status_code is None
    assert exc_info.value.response.http_status is None


@pytest.mark.asyncio
async def test_connection_failure_is_retriable_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(CeisaTimeoutError) as exc_info:
            await client.test_connection()

    assert "Network error contacting CEISA" in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_api_key_makes_no_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with patch.object(settings, "CEISA_API_KEY", None):
        async with make_client(handler, api_key=None) as client:
            with pytest.raises(CeisaError) as exc_info:
                await client.test_connection()

    assert exc_info.value.portal_code == "NOT_CONFIGURED"
    assert calls == []
