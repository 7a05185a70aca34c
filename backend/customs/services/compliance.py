"""
Compliance Validator

Pure checks of trade-term legality against transport mode, plus the per-item
value invariants. Nothing here touches the database; every function returns
the same result for the same input.

Rules (fixed table):
- FOB, CFR, CIF and FAS are sea/inland-waterway terms and are valid only for SEA
- CIF and CIP require both freight and insurance to be greater than zero
- Every other Incoterm 2020 code is valid for every transport mode
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from customs.models.declaration import TransportMode
from customs.services.errors import ValidationFailedError, Violation


UNIVERSAL_INCOTERMS: Tuple[str, ...] = ("EXW", "FCA", "CPT", "CIP", "DAP", "DPU", "DDP")
SEA_ONLY_INCOTERMS: Tuple[str, ...] = ("FOB", "CFR", "CIF", "FAS")
INSURED_INCOTERMS: Tuple[str, ...] = ("CIF", "CIP")

ALL_INCOTERMS: Tuple[str, ...] = UNIVERSAL_INCOTERMS + SEA_ONLY_INCOTERMS

# Labels accepted on input besides the enum values
_MODE_ALIASES = {
    "MULTIMODAL": TransportMode.MULTI.value,
    "OCEAN": TransportMode.SEA.value,
}

HS_CODE_PATTERN = re.compile(r"^\d{6,10}$")


@dataclass
class ComplianceResult:
    """Outcome of a compliance check; ``valid`` is True only with no violations."""
    violations: List[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]


def normalize_transport_mode(mode: Optional[str]) -> Optional[str]:
    """Return the canonical transport mode code, or None when unknown."""
    if not mode:
        return None
    code = mode.strip().upper()
    code = _MODE_ALIASES.get(code, code)
    if code in {m.value for m in TransportMode}:
        return code
    return None


def is_sea_only(incoterm: Optional[str]) -> bool:
    """True for FOB, CFR, CIF and FAS, which only apply to sea freight."""
    return bool(incoterm) and incoterm.strip().upper() in SEA_ONLY_INCOTERMS


def allowed_incoterms(mode: Optional[str]) -> Tuple[str, ...]:
    """
    Incoterm codes valid for a transport mode.

    Used to pre-filter choices before the user picks a term. An unknown mode
    allows nothing.
    """
    code = normalize_transport_mode(mode)
    if code is None:
        return ()
    if code == TransportMode.SEA.value:
        return ALL_INCOTERMS
    return UNIVERSAL_INCOTERMS


def _as_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def validate(
    transport_mode: Optional[str],
    incoterm: Optional[str],
    freight_value=None,
    insurance_value=None,
) -> ComplianceResult:
    """
    Check an Incoterm / transport mode pairing and its ancillary values.

    Every violated rule is reported, not just the first one.
    """
    result = ComplianceResult()
    mode = normalize_transport_mode(transport_mode)
    term = incoterm.strip().upper() if incoterm else ""

    if not transport_mode:
        result.violations.append(Violation(
            "transport_mode", "TRANSPORT_MODE_REQUIRED", "Transport mode is required"
        ))
    elif mode is None:
        result.violations.append(Violation(
            "transport_mode", "TRANSPORT_MODE_UNKNOWN",
            f"Unknown transport mode '{transport_mode}'"
        ))

    if not term:
        result.violations.append(Violation(
            "incoterm_code", "INCOTERM_REQUIRED", "Incoterm is required"
        ))
        return result

    if term not in ALL_INCOTERMS:
        result.violations.append(Violation(
            "incoterm_code", "INCOTERM_UNKNOWN", f"Unknown Incoterm '{term}'"
        ))
        return result

    if mode is not None and is_sea_only(term) and mode != TransportMode.SEA.value:
        result.violations.append(Violation(
            "incoterm_code", "INCOTERM_SEA_ONLY",
            f"Incoterm {term} is only valid for SEA transport, not {mode}"
        ))

    if term in INSURED_INCOTERMS:
        freight = _as_decimal(freight_value)
        insurance = _as_decimal(insurance_value)
        if freight is None or freight <= 0:
            result.violations.append(Violation(
                "freight_value", "FREIGHT_REQUIRED",
                f"Freight value must be greater than 0 for Incoterm {term}"
            ))
        if insurance is None or insurance <= 0:
            result.violations.append(Violation(
                "insurance_value", "INSURANCE_REQUIRED",
                f"Insurance value must be greater than 0 for Incoterm {term}"
            ))

    return result


def assert_valid(
    transport_mode: Optional[str],
    incoterm: Optional[str],
    freight_value=None,
    insurance_value=None,
) -> None:
    """Raise ValidationFailedError listing every violated rule."""
    result = validate(transport_mode, incoterm, freight_value, insurance_value)
    if not result.valid:
        raise ValidationFailedError(result.violations)


def validate_item_values(
    item_number: int,
    hs_code: Optional[str] = None,
    quantity=None,
    net_weight=None,
    gross_weight=None,
    unit_price=None,
    line_value=None,
) -> List[Violation]:
    """
    Per-item invariants: gross weight >= net weight, non-negative quantities
    and values, HS code of 6 to 10 digits.
    """
    violations: List[Violation] = []
    prefix = f"items[{item_number}]"

    if hs_code is not None and not HS_CODE_PATTERN.match(hs_code.replace(".", "")):
        violations.append(Violation(
            f"{prefix}.hs_code", "HS_CODE_INVALID",
            f"Item {item_number}: HS code must be 6 to 10 digits"
        ))

    for name, raw in (
        ("quantity", quantity),
        ("net_weight", net_weight),
        ("gross_weight", gross_weight),
        ("unit_price", unit_price),
        ("line_value", line_value),
    ):
        if raw is None:
            continue
        value = _as_decimal(raw)
        if value is None:
            violations.append(Violation(
                f"{prefix}.{name}", "NOT_A_NUMBER",
                f"Item {item_number}: {name.replace('_', ' ')} is not a valid number"
            ))
        elif value < 0:
            violations.append(Violation(
                f"{prefix}.{name}", "NEGATIVE_VALUE",
                f"Item {item_number}: {name.replace('_', ' ')} must not be negative"
            ))

    net = _as_decimal(net_weight)
    gross = _as_decimal(gross_weight)
    if net is not None and gross is not None and gross < net:
        violations.append(Violation(
            f"{prefix}.gross_weight", "GROSS_BELOW_NET",
            f"Item {item_number}: gross weight must be greater than or equal to net weight"
        ))

    return violations
