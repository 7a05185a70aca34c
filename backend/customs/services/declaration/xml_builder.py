"""
Declaration XML Generator

Builds the canonical PEB/PIB XML document submitted to CEISA and computes its
SHA-256 tamper-evidence hash.

The output is deterministic: fixed element order, fixed decimal places and no
generation timestamps, so the same declaration always yields the same bytes.
The hash is taken over a normalised form (no XML declaration, no comments, no
whitespace between tags) so reformatting alone does not change it.
"""
import hashlib
import re
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Optional
from xml.dom import minidom

from customs.models.declaration import Declaration, DeclarationType


_XML_DECLARATION = re.compile(r"<\?xml[^>]*\?>")
_XML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_INTER_TAG_WHITESPACE = re.compile(r">\s+<")


def _text(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _amount(value, places: int = 2) -> str:
    if value is None:
        value = Decimal("0")
    quantum = Decimal(1).scaleb(-places)
    return str(Decimal(value).quantize(quantum))


def _sub(parent: ET.Element, tag: str, value=None) -> ET.Element:
    element = ET.SubElement(parent, tag)
    element.text = _text(value)
    return element


def normalize_xml(xml: str) -> str:
    """Strip the XML declaration, comments and whitespace between tags."""
    normalized = _XML_DECLARATION.sub("", xml)
    normalized = _XML_COMMENT.sub("", normalized)
    normalized = _INTER_TAG_WHITESPACE.sub("><", normalized)
    return normalized.strip()


def hash_xml(xml: str) -> str:
    """SHA-256 hex digest of the normalised XML."""
    return hashlib.sha256(normalize_xml(xml).encode("utf-8")).hexdigest()


def build_declaration_xml(declaration: Declaration) -> str:
    """
    Generate the declaration XML.

    Returns:
        Pretty-printed XML string for CEISA submission
    """
    is_pib = DeclarationType(declaration.declaration_type) == DeclarationType.PIB
    root = ET.Element("PIB" if is_pib else "PEB")

    header = ET.SubElement(root, "HEADER")
    _sub(header, "REFERENCE_ID", declaration.id)
    _sub(header, "DOCUMENT_NUMBER", declaration.nomor_aju)
    _sub(header, "REGISTRATION_NUMBER", declaration.registration_number)
    _sub(header, "REGISTRATION_DATE", declaration.registration_date)

    office = ET.SubElement(header, "CUSTOMS_OFFICE")
    _sub(office, "CODE", declaration.customs_office_code)

    trader = ET.SubElement(header, "IMPORTER" if is_pib else "EXPORTER")
    _sub(trader, "NPWP", declaration.trader_npwp)
    _sub(trader, "NAME", declaration.trader_name)
    if is_pib:
        _sub(trader, "API", declaration.importer_api_number)

    counterparty = ET.SubElement(header, "SUPPLIER" if is_pib else "BUYER")
    _sub(counterparty, "NAME", declaration.counterparty_name)
    _sub(counterparty, "COUNTRY", declaration.counterparty_country)

    transport = ET.SubElement(header, "TRANSPORT")
    _sub(transport, "MODE", declaration.transport_mode)

    terms = ET.SubElement(header, "TRADE_TERMS")
    _sub(terms, "INCOTERM", declaration.incoterm_code)
    _sub(terms, "CURRENCY", declaration.currency_code)
    _sub(terms, "EXCHANGE_RATE", _amount(declaration.exchange_rate, 6))

    items = list(declaration.items or [])
    totals = ET.SubElement(header, "TOTALS")
    _sub(totals, "GROSS_WEIGHT", _amount(sum((i.gross_weight or 0 for i in items), Decimal("0")), 4))
    _sub(totals, "NET_WEIGHT", _amount(sum((i.net_weight or 0 for i in items), Decimal("0")), 4))
    _sub(totals, "CIF_VALUE" if is_pib else "FOB_VALUE", _amount(declaration.total_value))
    _sub(totals, "FREIGHT", _amount(declaration.freight_value))
    _sub(totals, "INSURANCE", _amount(declaration.insurance_value))

    if is_pib:
        taxes = ET.SubElement(header, "TAX_SUMMARY")
        _sub(taxes, "BM_TOTAL", _amount(declaration.total_bm))
        _sub(taxes, "PPN_TOTAL", _amount(declaration.total_ppn))
        _sub(taxes, "PPH_TOTAL", _amount(declaration.total_pph))
        _sub(taxes, "TAX_TOTAL", _amount(declaration.total_tax))

    items_element = ET.SubElement(root, "ITEMS")
    for item in sorted(items, key=lambda i: i.item_number):
        item_element = ET.SubElement(items_element, "ITEM")
        _sub(item_element, "NUMBER", item.item_number)
        _sub(item_element, "HS_CODE", item.hs_code)
        _sub(item_element, "DESCRIPTION", item.description)
        _sub(item_element, "QUANTITY", _amount(item.quantity, 4))
        _sub(item_element, "UNIT", item.quantity_unit)
        _sub(item_element, "NET_WEIGHT", _amount(item.net_weight, 4))
        _sub(item_element, "GROSS_WEIGHT", _amount(item.gross_weight, 4))
        _sub(item_element, "UNIT_PRICE", _amount(item.unit_price, 4))
        _sub(item_element, "TOTAL_PRICE", _amount(item.line_value))
        _sub(item_element, "COUNTRY_OF_ORIGIN", item.country_of_origin)
        if is_pib:
            _sub(item_element, "CIF_VALUE", _amount(item.cif_value))
            _sub(item_element, "CIF_IDR", _amount(item.cif_idr))
            tax = ET.SubElement(item_element, "TAX")
            _sub(tax, "BM_RATE", _amount(item.bm_rate, 4))
            _sub(tax, "BM_AMOUNT", _amount(item.bm_amount))
            _sub(tax, "PPN_RATE", _amount(item.ppn_rate, 4))
            _sub(tax, "PPN_AMOUNT", _amount(item.ppn_amount))
            _sub(tax, "PPH_RATE", _amount(item.pph_rate, 4))
            _sub(tax, "PPH_AMOUNT", _amount(item.pph_amount))
            _sub(tax, "TOTAL_TAX", _amount(item.total_tax))

    xml_str = ET.tostring(root, encoding="unicode")
    dom = minidom.parseString(xml_str)
    return dom.toprettyxml(indent="  ", encoding="UTF-8").decode("utf-8")


def generate_filename(declaration: Declaration) -> Optional[str]:
    """File name used when the document is exported or archived."""
    number = declaration.nomor_aju or str(declaration.id)
    return f"{_text(declaration.declaration_type).lower()}-{number}.xml"
