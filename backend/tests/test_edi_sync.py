"""
Tests for manual CEISA sync.

Covers:
- Independent PEB / PIB legs (one failing does not affect the other)
- Mandatory filter parameters
- "No data" as a non-error outcome
- Idempotent upsert by nomor aju
- Cancellation before start
"""
import asyncio
from decimal import Decimal

import pytest

from customs.audit import audit_logger
from customs.integrations.ceisa.client import CeisaError, CeisaTimeoutError, GatewayResponse
from customs.models.declaration import DeclarationSource, DeclarationStatus, DeclarationType
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.edi.error_mapping import EMPTY_RESULT_MESSAGE
from customs.services.edi.sync import FetchFilter, SyncParams, SyncService, map_payload, map_portal_status
from customs.services.errors import AuthorizationError


PEB_NOMOR_AJU = "000030-040300-20261001-000011"
PIB_NOMOR_AJU = "000020-040300-20261002-000022"

PEB_DOCUMENT = {
    "nomorAju": PEB_NOMOR_AJU,
    "eksportir": {"npwp": "023456789012000", "nama": "PT Kopi Nusantara"},
    "pembeli": {"nama": "Tokyo Beans KK", "negara": "jp"},
    "kantorBc": {"kode": "040300"},
    "modaAngkutan": "1",
    "incoterm": "fob",
    "mataUang": "usd",
    "kurs": "15500",
    "statusDokumen": "DITERIMA",
    "nomorPendaftaran": "123456",
    "tanggalPendaftaran": "2026-10-01",
    "barang": [{
        "nomorUrut": 1,
        "hsCode": "0901.11.10",
        "uraianBarang": "Green coffee beans",
        "jumlahBarang": "100",
        "satuanBarang": "KGM",
        "beratNeto": "100",
        "beratBruto": "105",
        "hargaSatuan": "5",
        "negaraAsal": "id",
    }],
}

PIB_DOCUMENT = {
    "nomorAju": PIB_NOMOR_AJU,
    "importir": {"npwp": "012345678901000", "nama": "PT Sinar Impor", "api": "API-0001"},
    "supplier": {"nama": "Shenzhen Parts Co", "negara": "CN"},
    "kodeKantor": "040300",
    "modaAngkutan": "UDARA",
    "incoterm": "FCA",
    "mataUang": "USD",
    "kurs": "15000",
    "freight": "40",
    "asuransi": "10",
    "statusDokumen": "DRAFT",
    "barang": [{
        "hsCode": "85176200",
        "uraianBarang": "Network switches",
        "jumlahBarang": "20",
        "satuanBarang": "PCE",
        "beratNeto": "30",
        "beratBruto": "32",
        "hargaSatuan": "45",
        "negaraAsal": "CN",
        "tarifBM": "0",
        "tarifPPN": "11",
    }],
}

FULL_FILTER = {"npwp": "012345678901000", "kode_kantor": "040300"}


def _response(documents, document_type="PEB"):
    return GatewayResponse(
        http_status=200,
        body={"data": documents},
        elapsed_ms=15,
        endpoint=f"/api/v1/{document_type.lower()}",
        params={"nomorAju": "x"},
    )


def _fetch_by_type(outcomes):
    async def fetch(document_type, params):
        outcome = outcomes[document_type]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
    return fetch


def _params(peb=True, pib=True):
    return SyncParams(
        peb=FetchFilter(nomor_aju=PEB_NOMOR_AJU, **FULL_FILTER) if peb else None,
        pib=FetchFilter(nomor_aju=PIB_NOMOR_AJU, **FULL_FILTER) if pib else None,
    )


@pytest.fixture
def sync_service(db_session, mock_ceisa_client, recorder):
    return SyncService(db_session, mock_ceisa_client, recorder=recorder)


def test_payload_mapping():
    mapped = map_payload(DeclarationType.PEB, PEB_DOCUMENT)
    header = mapped["header"]

    assert header["trader_name"] == "PT Kopi Nusantara"
    assert header["counterparty_country"] == "JP"
    assert header["transport_mode"] == "SEA"
    assert header["incoterm_code"] == "FOB"
    assert header["exchange_rate"] == Decimal("15500")
    assert mapped["items"][0]["hs_code"] == "09011110"
    assert mapped["status"] == DeclarationStatus.GATEWAY_ACCEPTED


def test_payload_without_nomor_aju_is_refused():
    with pytest.raises(ValueError):
        map_payload(DeclarationType.PIB, {"importir": {}})


@pytest.mark.parametrize("overrides", [
    {"eksportir": "PT Kopi Nusantara"},
    {"pembeli": ["Tokyo Beans KK"]},
    {"kantorBc": "040300"},
    {"barang": {"hsCode": "09011110"}},
    {"barang": ["Green coffee beans"]},
])
def test_malformed_sections_are_refused(overrides):
    with pytest.raises(ValueError):
        map_payload(DeclarationType.PEB, {**PEB_DOCUMENT, **overrides})


@pytest.mark.parametrize("value,expected", [
    ("DITOLAK", DeclarationStatus.GATEWAY_REJECTED),
    ("sppb_terbit", DeclarationStatus.GATEWAY_ACCEPTED),
    ("02", DeclarationStatus.UNDER_REVIEW),
    (None, DeclarationStatus.DRAFT),
    ("SOMETHING_NEW", DeclarationStatus.DRAFT),
])
def test_portal_status_mapping(value, expected):
    assert map_portal_status(value) == expected


@pytest.mark.asyncio
class TestSync:

    async def test_both_legs_saved(self, db_session, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.side_effect = _fetch_by_type({
            "PEB": _response([PEB_DOCUMENT], "PEB"),
            "PIB": _response([PIB_DOCUMENT], "PIB"),
        })

        result = await sync_service.sync(_params(), admin)

        assert result.success is True
        assert (result.peb.fetched, result.peb.saved) == (1, 1)
        assert (result.pib.fetched, result.pib.saved) == (1, 1)

        service = DeclarationService(db_session)
        peb = await service.get_by_nomor_aju(PEB_NOMOR_AJU)
        assert peb.source == DeclarationSource.CEISA
        assert peb.status == DeclarationStatus.GATEWAY_ACCEPTED
        assert peb.total_value == Decimal("500")

        pib = await service.get_by_nomor_aju(PIB_NOMOR_AJU)
        assert pib.transport_mode == "AIR"
        assert pib.items[0].pph_rate == Decimal("2.5")
        entries = await audit_logger.list_for_entity(db_session, pib.id)
        assert entries[0].note == "Imported from CEISA"

        call_types = [c.args[0] for c in mock_ceisa_client.fetch_documents.await_args_list]
        assert call_types == ["PEB", "PIB"]

    async def test_failing_leg_does_not_affect_other(self, db_session, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.side_effect = _fetch_by_type({
            "PEB": CeisaTimeoutError("CEISA request timed out after 30s"),
            "PIB": _response([PIB_DOCUMENT], "PIB"),
        })

        result = await sync_service.sync(_params(), admin)

        assert result.success is False
        assert result.peb.success is False
        assert result.peb.errors[0]["code"] == "TIMEOUT"
        assert result.peb.errors[0]["category"] == "RETRY_LATER"
        assert result.pib.success is True
        assert result.pib.saved == 1
        assert await DeclarationService(db_session).get_by_nomor_aju(PIB_NOMOR_AJU) is not None
        assert "PEB: failed" in result.summary

    async def test_unauthorized_portal_response_is_mapped(self, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.side_effect = CeisaError(
            "CEISA API error: invalid key", status_code=401
        )

        result = await sync_service.sync(_params(pib=False), admin)

        error = result.peb.errors[0]
        assert error["code"] == "UNAUTHORIZED"
        assert error["category"] == "CONTACT_SUPPORT"
        assert error["http_status"] == 401
        assert result.pib.skipped is True

    async def test_empty_result_is_not_an_error(self, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.return_value = _response([])

        result = await sync_service.sync(_params(pib=False), admin)

        assert result.success is True
        assert result.peb.fetched == 0
        assert result.peb.errors == []
        assert result.peb.empty_message == EMPTY_RESULT_MESSAGE

    async def test_missing_parameters_skip_the_call(self, sync_service, mock_ceisa_client, admin):
        params = SyncParams(
            peb=FetchFilter(nomor_aju=PEB_NOMOR_AJU),
            pib=FetchFilter(nomor_aju=PIB_NOMOR_AJU, **FULL_FILTER),
        )
        mock_ceisa_client.fetch_documents.return_value = _response([], "PIB")

        result = await sync_service.sync(params, admin)

        assert result.peb.errors[0]["code"] == "MISSING_PARAMETERS"
        assert result.peb.errors[0]["message"] == "Missing required parameters: npwp, kode_kantor"
        assert [c.args[0] for c in mock_ceisa_client.fetch_documents.await_args_list] == ["PIB"]

    async def test_resync_does_not_duplicate(self, db_session, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.return_value = _response([PIB_DOCUMENT], "PIB")
        params = _params(peb=False)

        first = await sync_service.sync(params, admin)
        second = await sync_service.sync(params, admin)

        assert first.pib.saved == 1
        assert second.pib.fetched == 1
        assert second.pib.saved == 0
        declarations, total = await DeclarationService(db_session).list()
        assert total == 1

    async def test_resync_applies_portal_changes(self, db_session, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.return_value = _response([PIB_DOCUMENT], "PIB")
        await sync_service.sync(_params(peb=False), admin)

        changed = {**PIB_DOCUMENT, "kurs": "15100", "statusDokumen": "DITERIMA", "nomorPendaftaran": "778899"}
        mock_ceisa_client.fetch_documents.return_value = _response([changed], "PIB")
        result = await sync_service.sync(_params(peb=False), admin)

        assert result.pib.saved == 1
        pib = await DeclarationService(db_session).get_by_nomor_aju(PIB_NOMOR_AJU)
        assert pib.exchange_rate == Decimal("15100")
        assert pib.status == DeclarationStatus.GATEWAY_ACCEPTED
        assert pib.registration_number == "778899"

    async def test_invalid_document_reported_per_leg(self, sync_service, mock_ceisa_client, admin):
        broken = {**PIB_DOCUMENT, "kurs": "not-a-number"}
        mock_ceisa_client.fetch_documents.return_value = _response([broken], "PIB")

        result = await sync_service.sync(_params(peb=False), admin)

        assert result.pib.saved == 0
        assert result.pib.errors[0]["code"] == "INVALID_PAYLOAD"
        assert PIB_NOMOR_AJU in result.pib.errors[0]["message"]

    async def test_malformed_document_does_not_stop_other_leg(
        self, db_session, sync_service, mock_ceisa_client, admin
    ):
        mock_ceisa_client.fetch_documents.side_effect = _fetch_by_type({
            "PEB": _response([{**PEB_DOCUMENT, "eksportir": "PT Kopi Nusantara"}], "PEB"),
            "PIB": _response([PIB_DOCUMENT], "PIB"),
        })

        result = await sync_service.sync(_params(), admin)

        assert result.peb.saved == 0
        assert result.peb.errors[0]["code"] == "INVALID_PAYLOAD"
        assert "eksportir" in result.peb.errors[0]["message"]
        assert result.pib.saved == 1
        assert await DeclarationService(db_session).get_by_nomor_aju(PIB_NOMOR_AJU) is not None

    async def test_unexpected_leg_error_is_itemised(self, db_session, sync_service, mock_ceisa_client, admin):
        mock_ceisa_client.fetch_documents.side_effect = _fetch_by_type({
            "PEB": RuntimeError("connection pool exhausted"),
            "PIB": _response([PIB_DOCUMENT], "PIB"),
        })

        result = await sync_service.sync(_params(), admin)

        assert result.success is False
        assert result.peb.errors[0]["code"] == "SYNC_FAILED"
        assert "connection pool exhausted" in result.peb.errors[0]["message"]
        assert result.pib.saved == 1

    async def test_cancel_before_start(self, sync_service, mock_ceisa_client, admin):
        cancel = asyncio.Event()
        cancel.set()

        result = await sync_service.sync(_params(), admin, cancel_event=cancel)

        assert result.cancelled is True
        assert result.success is False
        mock_ceisa_client.fetch_documents.assert_not_awaited()

    async def test_operator_cannot_sync(self, sync_service, operator):
        with pytest.raises(AuthorizationError):
            await sync_service.sync(_params(), operator)

    async def test_fetch_recorded_for_diagnostics(self, sync_service, mock_ceisa_client, recorder, admin):
        mock_ceisa_client.fetch_documents.return_value = _response([PIB_DOCUMENT], "PIB")

        await sync_service.sync(_params(peb=False), admin)

        snapshot = recorder.snapshot(admin)
        assert snapshot["last_fetch"]["PIB"]["http_status"] == 200
        assert snapshot["last_fetch"]["PIB"]["endpoint"] == "/api/v1/pib"
        assert snapshot["log"][0]["operation"] == "sync"
