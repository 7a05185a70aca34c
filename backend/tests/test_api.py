"""
Tests for the HTTP API.

Exercises the routers end to end against the test database with the CEISA
client replaced by a mock: identity headers, error translation, and the
declaration journey from draft to archived gateway response.
"""
import uuid
from decimal import Decimal

import pytest

from customs.models.declaration import DeclarationType


NOMOR_AJU = "000020-010203-20261018-000001"

PIB_BODY = {
    "declaration_type": "PIB",
    "trader_npwp": "01.234.567.8-901.000",
    "trader_name": "PT Sinar Impor",
    "counterparty_name": "Acme Trading Ltd",
    "counterparty_country": "SG",
    "customs_office_code": "040300",
    "transport_mode": "SEA",
    "incoterm_code": "CIF",
    "currency_code": "USD",
    "exchange_rate": "15000",
    "freight_value": "300",
    "insurance_value": "50",
    "items": [{
        "hs_code": "8471.30.10",
        "description": "Portable computers",
        "quantity": "10",
        "quantity_unit": "PCE",
        "net_weight": "20",
        "gross_weight": "25",
        "unit_price": "100",
        "country_of_origin": "CN",
        "bm_rate": "5",
    }],
}

ACCEPTED_XML = f"""<RESPONSE>
  <RESPONSE_CODE>00</RESPONSE_CODE>
  <RESPONSE_MESSAGE>Dokumen diterima</RESPONSE_MESSAGE>
  <REFERENCE_NUMBER>{NOMOR_AJU}</REFERENCE_NUMBER>
  <REGISTRATION_NUMBER>654321</REGISTRATION_NUMBER>
  <REGISTRATION_DATE>2026-10-18</REGISTRATION_DATE>
</RESPONSE>"""


@pytest.mark.asyncio
class TestIdentity:

    async def test_missing_role_header(self, async_client):
        response = await async_client.get("/api/v1/declarations")
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "NOT_AUTHENTICATED"

    async def test_unknown_role(self, async_client):
        response = await async_client.get("/api/v1/declarations", headers={"X-Actor-Role": "auditor"})
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN_ROLE"

    async def test_capability_refusal(self, async_client, auth_headers, operator):
        response = await async_client.post("/api/v1/edi/queue/process", headers=auth_headers(operator))
        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["code"] == "FORBIDDEN"
        assert detail["capability"] == "process_queue"


@pytest.mark.asyncio
class TestDeclarationEndpoints:

    async def test_create_computes_taxes(self, async_client, auth_headers, operator):
        response = await async_client.post("/api/v1/declarations", json=PIB_BODY, headers=auth_headers(operator))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "DRAFT"
        assert data["counterparty_country"] == "SG"
        assert Decimal(data["total_value"]) == Decimal("1000")
        assert Decimal(data["total_bm"]) == Decimal("1012500")
        assert Decimal(data["total_tax"]) == Decimal("4946063")
        assert data["items"][0]["hs_code"] == "84713010"

    async def test_submit_reports_every_violation(self, async_client, auth_headers, operator):
        body = {**PIB_BODY, "transport_mode": "AIR", "incoterm_code": "FOB"}
        created = await async_client.post("/api/v1/declarations", json=body, headers=auth_headers(operator))
        declaration_id = created.json()["id"]

        response = await async_client.post(
            f"/api/v1/declarations/{declaration_id}/submit", headers=auth_headers(operator)
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_FAILED"
        codes = {v["code"] for v in detail["violations"]}
        assert "INCOTERM_SEA_ONLY" in codes
        assert len(detail["violations"]) > 1

        unchanged = await async_client.get(f"/api/v1/declarations/{declaration_id}", headers=auth_headers(operator))
        assert unchanged.json()["status"] == "DRAFT"
        assert unchanged.json()["xml_hash"] is None

    async def test_unknown_declaration(self, async_client, auth_headers, operator):
        response = await async_client.get(f"/api/v1/declarations/{uuid.uuid4()}", headers=auth_headers(operator))
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    async def test_list_filters_by_type(self, async_client, auth_headers, operator, declaration_factory):
        await declaration_factory(DeclarationType.PIB)
        await declaration_factory(DeclarationType.PEB)

        response = await async_client.get(
            "/api/v1/declarations", params={"declaration_type": "PEB"}, headers=auth_headers(operator)
        )

        data = response.json()
        assert data["total_count"] == 1
        assert data["declarations"][0]["declaration_type"] == "PEB"

    async def test_locked_declaration_rejects_edits(self, async_client, auth_headers, operator, submitted_pib):
        declaration_id = submitted_pib.id

        response = await async_client.patch(
            f"/api/v1/declarations/{declaration_id}",
            json={"trader_name": "Someone Else"},
            headers=auth_headers(operator),
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "DECLARATION_LOCKED"

    async def test_operator_cannot_approve(self, async_client, auth_headers, operator, submitted_pib):
        response = await async_client.post(
            f"/api/v1/declarations/{submitted_pib.id}/approve", headers=auth_headers(operator)
        )
        assert response.status_code == 403

    async def test_reject_requires_reason(self, async_client, auth_headers, supervisor, submitted_pib):
        response = await async_client.post(
            f"/api/v1/declarations/{submitted_pib.id}/reject",
            json={"reason": "   "},
            headers=auth_headers(supervisor),
        )
        assert response.status_code == 422

    async def test_xml_export_is_audited(self, async_client, auth_headers, operator, submitted_pib):
        declaration_id = submitted_pib.id
        xml_hash = submitted_pib.xml_hash

        response = await async_client.get(
            f"/api/v1/declarations/{declaration_id}/xml", headers=auth_headers(operator)
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert response.headers["x-content-sha256"] == xml_hash
        assert "pib-" in response.headers["content-disposition"]

        trail = await async_client.get(
            f"/api/v1/declarations/{declaration_id}/audit", headers=auth_headers(operator)
        )
        assert trail.json()["entries"][-1]["action"] == "EXPORT"

    async def test_xml_before_submission(self, async_client, auth_headers, operator, draft_pib):
        response = await async_client.get(f"/api/v1/declarations/{draft_pib.id}/xml", headers=auth_headers(operator))
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "XML_NOT_GENERATED"

    async def test_integrity_check(self, async_client, auth_headers, operator, submitted_pib):
        response = await async_client.get(
            f"/api/v1/declarations/{submitted_pib.id}/integrity", headers=auth_headers(operator)
        )
        data = response.json()
        assert data["submitted"] is True
        assert data["verified"] is True
        assert data["xml_hash"] == submitted_pib.xml_hash


@pytest.mark.asyncio
class TestGatewayJourney:

    async def test_approved_declaration_reaches_archive(
        self, async_client, auth_headers, supervisor, admin, approved_pib, mock_ceisa_client
    ):
        declaration_id = str(approved_pib.id)

        queued = await async_client.post(
            "/api/v1/edi/queue", json={"declaration_id": declaration_id}, headers=auth_headers(supervisor)
        )
        assert queued.status_code == 201
        assert queued.json()["status"] == "PENDING"

        duplicate = await async_client.post(
            "/api/v1/edi/queue", json={"declaration_id": declaration_id}, headers=auth_headers(supervisor)
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["code"] == "QUEUE_CONFLICT"

        run = await async_client.post("/api/v1/edi/queue/process", headers=auth_headers(admin))
        assert run.json()["processed"] == 1
        assert run.json()["accepted"] == 1
        mock_ceisa_client.submit_document.assert_awaited_once()

        received = await async_client.post(
            "/api/v1/edi/incoming", json={"xml": ACCEPTED_XML}, headers=auth_headers(admin)
        )
        assert received.status_code == 201
        message_id = received.json()["id"]

        applied = await async_client.post(
            f"/api/v1/edi/incoming/{message_id}/apply", headers=auth_headers(admin)
        )
        assert applied.status_code == 200
        assert applied.json()["archive_path"].endswith(f"{NOMOR_AJU}.xml")

        declaration = await async_client.get(
            f"/api/v1/declarations/{declaration_id}", headers=auth_headers(admin)
        )
        assert declaration.json()["status"] == "GATEWAY_ACCEPTED"
        assert declaration.json()["registration_number"] == "654321"

        archive = await async_client.get(
            "/api/v1/edi/archive", params={"document_number": NOMOR_AJU}, headers=auth_headers(admin)
        )
        assert archive.json()["total_count"] == 1

        trail = await async_client.get(
            f"/api/v1/declarations/{declaration_id}/audit", headers=auth_headers(admin)
        )
        actions = [entry["action"] for entry in trail.json()["entries"]]
        assert "SEND_GATEWAY" in actions
        assert actions[-1] == "RECEIVE_RESPONSE"

    async def test_structured_response_needs_fields(self, async_client, auth_headers, admin):
        response = await async_client.post(
            "/api/v1/edi/incoming", json={"document_number": NOMOR_AJU}, headers=auth_headers(admin)
        )
        assert response.status_code == 422

    async def test_sync_reports_missing_parameters(self, async_client, auth_headers, admin, mock_ceisa_client):
        response = await async_client.post(
            "/api/v1/edi/sync",
            json={"peb": {"nomor_aju": "X"}},
            headers=auth_headers(admin),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["peb"]["errors"][0]["code"] == "MISSING_PARAMETERS"
        assert data["pib"]["skipped"] is True
        mock_ceisa_client.fetch_documents.assert_not_awaited()

    @pytest.mark.parametrize("path", [
        "/api/v1/edi/queue",
        "/api/v1/edi/queue/stats",
        "/api/v1/edi/incoming",
        "/api/v1/edi/archive",
    ])
    async def test_gateway_traffic_hidden_from_operators(
        self, async_client, auth_headers, operator, supervisor, admin, system, path
    ):
        for actor in (operator, supervisor):
            refused = await async_client.get(path, headers=auth_headers(actor))
            assert refused.status_code == 403
            assert refused.json()["detail"]["code"] == "FORBIDDEN"

        for actor in (admin, system):
            allowed = await async_client.get(path, headers=auth_headers(actor))
            assert allowed.status_code == 200

    async def test_diagnostics_are_admin_only(self, async_client, auth_headers, supervisor, admin):
        refused = await async_client.get("/api/v1/edi/diagnostics", headers=auth_headers(supervisor))
        assert refused.status_code == 403

        allowed = await async_client.get("/api/v1/edi/diagnostics", headers=auth_headers(admin))
        assert allowed.status_code == 200
        assert set(allowed.json()) == {"enabled", "last_fetch", "log"}


@pytest.mark.asyncio
class TestComplianceEndpoints:

    async def test_check_air_fob(self, async_client, auth_headers, operator):
        response = await async_client.post(
            "/api/v1/compliance/check",
            json={"transport_mode": "AIR", "incoterm": "FOB"},
            headers=auth_headers(operator),
        )
        data = response.json()
        assert data["valid"] is False
        assert [v["code"] for v in data["violations"]] == ["INCOTERM_SEA_ONLY"]

    async def test_incoterms_for_air(self, async_client, auth_headers, operator):
        response = await async_client.get(
            "/api/v1/compliance/incoterms", params={"transport_mode": "air"}, headers=auth_headers(operator)
        )
        data = response.json()
        assert data["transport_mode"] == "AIR"
        assert "FCA" in data["incoterms"]
        assert "FOB" not in data["incoterms"]


@pytest.mark.asyncio
async def test_audit_search(async_client, auth_headers, operator, submitted_pib):
    response = await async_client.get(
        "/api/v1/audit", params={"action": "SUBMIT"}, headers=auth_headers(operator)
    )
    data = response.json()
    assert data["total_count"] == 1
    assert data["entries"][0]["document_hash"] == submitted_pib.xml_hash
