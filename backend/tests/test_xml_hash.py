"""
Tests for declaration XML generation and its tamper-evidence hash.
"""
import xml.etree.ElementTree as ET
from decimal import Decimal

import pytest

from customs.models.declaration import DeclarationType
from customs.services.declaration.xml_builder import (
    build_declaration_xml,
    generate_filename,
    hash_xml,
    normalize_xml,
)


def test_normalize_ignores_declaration_comments_and_layout():
    pretty = '<?xml version="1.0" encoding="UTF-8"?>\n<!-- generated -->\n<PEB>\n  <A>1</A>\n</PEB>\n'
    compact = "<PEB><A>1</A></PEB>"
    assert normalize_xml(pretty) == compact
    assert hash_xml(pretty) == hash_xml(compact)


def test_text_change_changes_hash():
    assert hash_xml("<PEB><A>1</A></PEB>") != hash_xml("<PEB><A>2</A></PEB>")


def test_hash_is_sha256_hex():
    digest = hash_xml("<PIB/>")
    assert len(digest) == 64
    int(digest, 16)


@pytest.mark.asyncio
class TestDeclarationXml:

    async def test_pib_document_carries_taxes(self, draft_pib):
        root = ET.fromstring(build_declaration_xml(draft_pib).encode("utf-8"))

        assert root.tag == "PIB"
        assert root.findtext("HEADER/IMPORTER/NAME") == "PT Sinar Impor"
        assert root.findtext("HEADER/SUPPLIER/COUNTRY") == "SG"
        assert root.findtext("HEADER/TRADE_TERMS/INCOTERM") == "CIF"
        assert Decimal(root.findtext("HEADER/TAX_SUMMARY/TAX_TOTAL")) == draft_pib.total_tax

        items = root.findall("ITEMS/ITEM")
        assert len(items) == 1
        assert items[0].findtext("HS_CODE") == "84713010"
        assert Decimal(items[0].findtext("TAX/BM_AMOUNT")) == Decimal("1012500")

    async def test_peb_document_has_exporter_and_no_taxes(self, declaration_factory):
        peb = await declaration_factory(DeclarationType.PEB)
        root = ET.fromstring(build_declaration_xml(peb).encode("utf-8"))

        assert root.tag == "PEB"
        assert root.findtext("HEADER/EXPORTER/NAME") == "PT Ekspor Nusantara"
        assert root.find("HEADER/TAX_SUMMARY") is None
        assert Decimal(root.findtext("HEADER/TOTALS/FOB_VALUE")) == Decimal("1000")

    async def test_generation_is_deterministic(self, draft_pib):
        first = build_declaration_xml(draft_pib)
        second = build_declaration_xml(draft_pib)
        assert first == second
        assert hash_xml(first) == hash_xml(second)

    async def test_header_edit_changes_hash(self, draft_pib):
        before = hash_xml(build_declaration_xml(draft_pib))
        draft_pib.counterparty_name = "Another Supplier"
        assert hash_xml(build_declaration_xml(draft_pib)) != before

    async def test_filename_falls_back_to_id(self, draft_pib):
        assert generate_filename(draft_pib) == f"pib-{draft_pib.id}.xml"
        draft_pib.nomor_aju = "000020-010203-20261018-000001"
        assert generate_filename(draft_pib) == "pib-000020-010203-20261018-000001.xml"
