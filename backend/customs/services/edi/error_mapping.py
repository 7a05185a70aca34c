"""
CEISA error classification.

Maps a gateway failure (HTTP status, portal error code, message) onto a user
message and a recommended action, and enriches portal field errors
(E001-E025) with labels and correction hints.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Optional


class ErrorCategory(str, Enum):
    RETRY_LATER = "RETRY_LATER"
    FIX_DATA = "FIX_DATA"
    CONTACT_SUPPORT = "CONTACT_SUPPORT"
    NOT_AN_ERROR = "NOT_AN_ERROR"


@dataclass(frozen=True)
class ErrorMapping:
    code: str
    message: str
    action: str
    category: ErrorCategory

    @property
    def retriable(self) -> bool:
        return self.category == ErrorCategory.RETRY_LATER

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


EMPTY_RESULT_MESSAGE = "Tidak ada data dari CEISA untuk parameter ini"

# HTTP status -> (code, message, action, category)
HTTP_STATUS_MAPPINGS: Dict[int, tuple] = {
    400: ("BAD_REQUEST", "CEISA rejected the request parameters",
          "Check the submission number, NPWP and office code", ErrorCategory.FIX_DATA),
    401: ("UNAUTHORIZED", "Unauthorized - Invalid API Key",
          "Ask an administrator to verify the CEISA API key", ErrorCategory.CONTACT_SUPPORT),
    403: ("FORBIDDEN", "Forbidden - Access denied to this resource",
          "Ask an administrator to check the CEISA access rights for this NPWP", ErrorCategory.CONTACT_SUPPORT),
    404: ("NOT_FOUND", "Document not found in CEISA",
          "Check the submission number and document type", ErrorCategory.FIX_DATA),
    408: ("TIMEOUT", "CEISA did not answer in time",
          "Retry later", ErrorCategory.RETRY_LATER),
    409: ("CONFLICT", "Document already exists in CEISA",
          "Check whether the declaration was already transmitted", ErrorCategory.FIX_DATA),
    422: ("UNPROCESSABLE", "CEISA rejected the document content",
          "Correct the reported fields and resubmit", ErrorCategory.FIX_DATA),
    429: ("RATE_LIMITED", "Too many requests to CEISA",
          "Wait a few minutes and retry", ErrorCategory.RETRY_LATER),
    500: ("SERVER_ERROR", "CEISA internal server error",
          "Retry later; contact support if it persists", ErrorCategory.RETRY_LATER),
    502: ("BAD_GATEWAY", "CEISA gateway error",
          "Retry later", ErrorCategory.RETRY_LATER),
    503: ("UNAVAILABLE", "CEISA is temporarily unavailable",
          "Retry later", ErrorCategory.RETRY_LATER),
    504: ("GATEWAY_TIMEOUT", "CEISA gateway timeout",
          "Retry later", ErrorCategory.RETRY_LATER),
}

# Portal field error codes
EDI_ERROR_CODES: Dict[str, Dict[str, str]] = {
    "E001": {"field": "exporter_npwp", "message": "Invalid NPWP format"},
    "E002": {"field": "importer_npwp", "message": "Invalid NPWP format"},
    "E003": {"field": "hs_code", "message": "Invalid HS Code"},
    "E004": {"field": "hs_code", "message": "HS Code not found in tariff database"},
    "E005": {"field": "quantity", "message": "Quantity must be greater than 0"},
    "E006": {"field": "fob_value", "message": "FOB value is required"},
    "E007": {"field": "cif_value", "message": "CIF value is required"},
    "E008": {"field": "customs_office_code", "message": "Invalid customs office code"},
    "E009": {"field": "port_code", "message": "Invalid port code"},
    "E010": {"field": "currency_code", "message": "Invalid currency code"},
    "E011": {"field": "exchange_rate", "message": "Exchange rate must be greater than 0"},
    "E012": {"field": "incoterm_code", "message": "Invalid incoterm code"},
    "E013": {"field": "transport_mode", "message": "Invalid transport mode"},
    "E014": {"field": "bl_awb_number", "message": "B/L or AWB number is required"},
    "E015": {"field": "document_number", "message": "Duplicate document number"},
    "E016": {"field": "registration_date", "message": "Document already registered"},
    "E017": {"field": "api_number", "message": "Invalid API number"},
    "E018": {"field": "ppjk_npwp", "message": "Invalid PPJK NPWP"},
    "E019": {"field": "country_of_origin", "message": "Invalid country code"},
    "E020": {"field": "net_weight", "message": "Net weight must be greater than 0"},
    "E021": {"field": "gross_weight", "message": "Gross weight must be greater than net weight"},
    "E022": {"field": "total_packages", "message": "Package count must be greater than 0"},
    "E023": {"field": "items", "message": "At least one item is required"},
    "E024": {"field": "xml_hash", "message": "XML integrity verification failed"},
    "E025": {"field": "signature", "message": "Digital signature verification failed"},
}

ERROR_SUGGESTIONS: Dict[str, str] = {
    "E001": "NPWP must be 15 digits in format XX.XXX.XXX.X-XXX.XXX",
    "E002": "NPWP must be 15 digits in format XX.XXX.XXX.X-XXX.XXX",
    "E003": "HS Code must be 6-10 digits, check the tariff database",
    "E004": "Verify the HS Code in the official BTKI (Buku Tarif Kepabeanan Indonesia)",
    "E005": "Enter a quantity greater than 0",
    "E006": "FOB value is required for export declarations",
    "E007": "CIF value is required for import declarations",
    "E008": "Select a valid customs office from the master data",
    "E009": "Select a valid port from the master data",
    "E010": "Select a valid currency code (e.g., USD, EUR, CNY)",
    "E011": "Enter a positive exchange rate value",
    "E012": "Select a valid incoterm (e.g., FOB, CIF, EXW)",
    "E013": "Select transport mode: SEA, AIR, LAND, RAIL, or MULTIMODAL",
    "E014": "Enter the Bill of Lading or Air Waybill number",
    "E015": "This document number already exists in the system",
    "E016": "Document with this registration already processed",
    "E017": "Verify API number format and validity with customs",
    "E018": "Verify PPJK NPWP and license validity",
    "E019": "Use valid 2-letter ISO country code",
    "E020": "Net weight must be greater than 0 kg",
    "E021": "Gross weight should be greater than or equal to net weight",
    "E022": "Enter at least 1 package",
    "E023": "Add at least one item to the declaration",
    "E024": "Document may have been modified. Please regenerate the XML",
    "E025": "Digital signature verification failed. Please re-sign the document",
}

# Codes that block transmission until corrected
CRITICAL_CODES = frozenset(
    [f"E{n:03d}" for n in range(1, 11)]
    + [f"E{n:03d}" for n in range(12, 16)]
    + [f"E{n:03d}" for n in range(20, 26)]
)

FIELD_LABELS: Dict[str, str] = {
    "exporter_npwp": "Exporter NPWP",
    "importer_npwp": "Importer NPWP",
    "api_number": "API Number",
    "ppjk_npwp": "PPJK NPWP",
    "hs_code": "HS Code",
    "quantity": "Quantity",
    "unit_price": "Unit Price",
    "net_weight": "Net Weight",
    "gross_weight": "Gross Weight",
    "country_of_origin": "Country of Origin",
    "fob_value": "FOB Value",
    "cif_value": "CIF Value",
    "customs_office_code": "Customs Office",
    "port_code": "Port Code",
    "currency_code": "Currency",
    "exchange_rate": "Exchange Rate",
    "incoterm_code": "Incoterm",
    "transport_mode": "Transport Mode",
    "bl_awb_number": "B/L or AWB Number",
    "document_number": "Document Number",
    "registration_date": "Registration Date",
    "total_packages": "Total Packages",
    "items": "Items",
    "xml_hash": "XML Hash",
    "signature": "Digital Signature",
}


@dataclass(frozen=True)
class FieldErrorDetail:
    code: str
    field: str
    field_label: str
    message: str
    severity: str
    suggestion: Optional[str] = None
    value: Optional[str] = None
    critical: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _severity(code: str) -> str:
    if code.startswith("W"):
        return "warning"
    if code.startswith("I"):
        return "info"
    return "error"


def describe_field_error(
    code: str,
    field: Optional[str] = None,
    message: Optional[str] = None,
    value: Optional[str] = None,
) -> FieldErrorDetail:
    """Enrich a portal error with its field label and correction hint."""
    code = (code or "UNKNOWN").strip().upper()
    known = EDI_ERROR_CODES.get(code, {})
    field = field or known.get("field") or "unknown"
    # Item errors arrive as "items[2].hs_code"
    base_field = field.rsplit(".", 1)[-1]
    return FieldErrorDetail(
        code=code,
        field=field,
        field_label=FIELD_LABELS.get(base_field, base_field.replace("_", " ").title()),
        message=message or known.get("message") or "Unknown error",
        severity=_severity(code),
        suggestion=ERROR_SUGGESTIONS.get(code),
        value=value,
        critical=code in CRITICAL_CODES,
    )


def describe_field_errors(errors: List[dict]) -> List[FieldErrorDetail]:
    return [
        describe_field_error(e.get("code"), e.get("field"), e.get("message"), e.get("value"))
        for e in errors or []
    ]


def map_gateway_error(
    http_status: Optional[int],
    portal_code: Optional[str] = None,
    message: Optional[str] = None,
) -> ErrorMapping:
    """
    Classify a gateway outcome.

    A missing HTTP status means the request never got an answer (timeout or
    network failure). Portal field codes take precedence over the HTTP status.
    """
    if portal_code:
        code = portal_code.strip().upper()
        if code == "NOT_CONFIGURED":
            return ErrorMapping(
                code, "CEISA API key not configured",
                "Ask an administrator to configure the CEISA integration",
                ErrorCategory.CONTACT_SUPPORT,
            )
        if code in EDI_ERROR_CODES:
            detail = describe_field_error(code, message=None)
            return ErrorMapping(
                code,
                f"{detail.field_label}: {detail.message}",
                detail.suggestion or "Correct the data and resubmit",
                ErrorCategory.FIX_DATA,
            )

    if http_status is None:
        return ErrorMapping(
            "TIMEOUT",
            message or "Request timeout",
            "Check the network connection and retry later",
            ErrorCategory.RETRY_LATER,
        )

    if 200 <= http_status < 300:
        return ErrorMapping("NO_DATA", EMPTY_RESULT_MESSAGE, "No action needed", ErrorCategory.NOT_AN_ERROR)

    if http_status in HTTP_STATUS_MAPPINGS:
        code, default_message, action, category = HTTP_STATUS_MAPPINGS[http_status]
        return ErrorMapping(code, default_message, action, category)

    if http_status >= 500:
        return ErrorMapping(
            "SERVER_ERROR", message or f"CEISA server error (HTTP {http_status})",
            "Retry later; contact support if it persists", ErrorCategory.RETRY_LATER,
        )
    return ErrorMapping(
        "UNEXPECTED", message or f"Unexpected CEISA response (HTTP {http_status})",
        "Contact support with the diagnostic log", ErrorCategory.CONTACT_SUPPORT,
    )


def verify_mappings() -> None:
    """Checked at startup: every portal code has a suggestion and a label."""
    missing = [
        code for code, known in EDI_ERROR_CODES.items()
        if code not in ERROR_SUGGESTIONS or known["field"] not in FIELD_LABELS
    ]
    if missing:
        raise RuntimeError(f"Incomplete CEISA error mappings for: {', '.join(missing)}")
