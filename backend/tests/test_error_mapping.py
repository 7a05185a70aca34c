"""
Tests for CEISA error classification.
"""
import pytest

from customs.services.edi.error_mapping import (
    EDI_ERROR_CODES,
    EMPTY_RESULT_MESSAGE,
    ErrorCategory,
    describe_field_error,
    describe_field_errors,
    map_gateway_error,
    verify_mappings,
)


@pytest.mark.parametrize("status,code,category", [
    (400, "BAD_REQUEST", ErrorCategory.FIX_DATA),
    (401, "UNAUTHORIZED", ErrorCategory.CONTACT_SUPPORT),
    (403, "FORBIDDEN", ErrorCategory.CONTACT_SUPPORT),
    (404, "NOT_FOUND", ErrorCategory.FIX_DATA),
    (408, "TIMEOUT", ErrorCategory.RETRY_LATER),
    (409, "CONFLICT", ErrorCategory.FIX_DATA),
    (422, "UNPROCESSABLE", ErrorCategory.FIX_DATA),
    (429, "RATE_LIMITED", ErrorCategory.RETRY_LATER),
    (500, "SERVER_ERROR", ErrorCategory.RETRY_LATER),
    (502, "BAD_GATEWAY", ErrorCategory.RETRY_LATER),
    (503, "UNAVAILABLE", ErrorCategory.RETRY_LATER),
    (504, "GATEWAY_TIMEOUT", ErrorCategory.RETRY_LATER),
    (507, "SERVER_ERROR", ErrorCategory.RETRY_LATER),
    (418, "UNEXPECTED", ErrorCategory.CONTACT_SUPPORT),
])
def test_http_status_classification(status, code, category):
    mapping = map_gateway_error(status)
    assert mapping.code == code
    assert mapping.category == category
    assert mapping.retriable is (category == ErrorCategory.RETRY_LATER)
    assert mapping.action


def test_no_status_is_a_timeout():
    mapping = map_gateway_error(None, message="CEISA request timed out after 30s")
    assert mapping.code == "TIMEOUT"
    assert mapping.retriable is True
    assert mapping.message == "CEISA request timed out after 30s"


def test_success_status_is_not_an_error():
    mapping = map_gateway_error(200)
    assert mapping.category == ErrorCategory.NOT_AN_ERROR
    assert mapping.message == EMPTY_RESULT_MESSAGE


def test_portal_code_wins_over_status():
    mapping = map_gateway_error(500, portal_code="e003")
    assert mapping.code == "E003"
    assert mapping.category == ErrorCategory.FIX_DATA
    assert mapping.message == "HS Code: Invalid HS Code"
    assert "tariff" in mapping.action


def test_missing_api_key():
    mapping = map_gateway_error(None, portal_code="NOT_CONFIGURED")
    assert mapping.category == ErrorCategory.CONTACT_SUPPORT
    assert mapping.retriable is False


def test_unknown_portal_code_falls_back_to_status():
    assert map_gateway_error(401, portal_code="X999").code == "UNAUTHORIZED"


def test_to_dict_is_json_friendly():
    assert map_gateway_error(429).to_dict() == {
        "code": "RATE_LIMITED",
        "message": "Too many requests to CEISA",
        "action": "Wait a few minutes and retry",
        "category": "RETRY_LATER",
    }


class TestFieldErrors:

    def test_known_code(self):
        detail = describe_field_error("E001", value="123")
        assert detail.field == "exporter_npwp"
        assert detail.field_label == "Exporter NPWP"
        assert detail.severity == "error"
        assert detail.critical is True
        assert detail.suggestion.startswith("NPWP must be 15 digits")
        assert detail.value == "123"

    def test_item_field_uses_base_label(self):
        detail = describe_field_error("E003", field="items[2].hs_code", message="Bad HS")
        assert detail.field == "items[2].hs_code"
        assert detail.field_label == "HS Code"
        assert detail.message == "Bad HS"

    @pytest.mark.parametrize("code,critical", [("E011", False), ("E016", False), ("E024", True)])
    def test_criticality(self, code, critical):
        assert describe_field_error(code).critical is critical

    def test_unknown_warning_code(self):
        detail = describe_field_error("w100", field="port_of_loading")
        assert detail.code == "W100"
        assert detail.severity == "warning"
        assert detail.field_label == "Port Of Loading"
        assert detail.message == "Unknown error"
        assert detail.suggestion is None

    def test_describe_list(self):
        details = describe_field_errors([{"code": "E005"}, {"code": "E020", "field": "items[1].net_weight"}])
        assert [d.code for d in details] == ["E005", "E020"]
        assert describe_field_errors(None) == []


def test_every_portal_code_is_described():
    verify_mappings()
    assert len(EDI_ERROR_CODES) == 25
