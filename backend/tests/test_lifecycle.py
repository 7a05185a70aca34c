"""
Tests for the declaration lifecycle service.

Covers:
- Creation, item maintenance and tax recalculation
- Immutability of locked declarations
- Submission validation (all rules reported at once)
- Review, approval, rejection and unlock
- Hash verification of the stored XML
"""
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

from customs.audit import audit_logger
from customs.models.audit_log import AuditAction, AuditLog
from customs.models.declaration import DeclarationStatus, DeclarationType, DocumentCategory
from customs.services.declaration.lifecycle import DeclarationService
from customs.services.declaration.xml_builder import hash_xml
from customs.services.errors import (
    AuthorizationError,
    DeclarationNotFoundError,
    ImmutabilityError,
    IntegrityViolationError,
    InvalidTransitionError,
    ValidationFailedError,
)


async def _audit_actions(db, declaration_id):
    return [e.action for e in await audit_logger.list_for_entity(db, declaration_id)]


@pytest.mark.asyncio
class TestCreateAndEdit:

    async def test_create_draft_with_defaults(self, db_session, operator):
        service = DeclarationService(db_session)
        declaration = await service.create_declaration(operator, DeclarationType.PEB)

        assert declaration.status == DeclarationStatus.DRAFT
        assert declaration.currency_code == "USD"
        assert declaration.exchange_rate == Decimal("1")
        assert declaration.created_by == operator.user_id
        assert await _audit_actions(db_session, declaration.id) == [AuditAction.CREATE]

    async def test_pib_taxes_computed_on_create(self, draft_pib):
        # CIF 1,350 USD at 15,000 = 20,250,000 IDR
        assert draft_pib.total_value == Decimal("1350")
        assert draft_pib.total_bm == Decimal("1012500")
        assert draft_pib.total_ppn == Decimal("2338875")
        assert draft_pib.total_pph == Decimal("1594688")
        assert draft_pib.total_tax == sum(i.total_tax for i in draft_pib.items)

        item = draft_pib.items[0]
        assert item.hs_code == "84713010"
        assert item.country_of_origin == "CN"
        assert item.ppn_rate == Decimal("11")
        assert item.pph_rate == Decimal("7.5")

    async def test_api_holder_gets_lower_pph(self, db_session, operator, draft_pib):
        service = DeclarationService(db_session)
        updated = await service.update_fields(draft_pib.id, operator, {"importer_api_number": "API-123"})
        assert updated.items[0].pph_rate == Decimal("2.5")
        assert updated.total_pph < Decimal("1594688")

    async def test_peb_total_is_fob_without_taxes(self, declaration_factory):
        peb = await declaration_factory(DeclarationType.PEB)
        assert peb.total_value == Decimal("1000")
        assert peb.total_tax == Decimal("0")

    async def test_update_records_changed_fields_only(self, db_session, operator, draft_pib):
        service = DeclarationService(db_session)
        await service.update_fields(
            draft_pib.id, operator, {"trader_name": "PT Sinar Impor", "counterparty_name": "New Supplier"}
        )

        entries = await audit_logger.list_for_entity(db_session, draft_pib.id)
        last = entries[-1]
        assert last.action == AuditAction.UPDATE
        assert last.changes == {"counterparty_name": {"old": "Acme Trading Ltd", "new": "New Supplier"}}

    async def test_update_without_changes_is_not_audited(self, db_session, operator, draft_pib):
        service = DeclarationService(db_session)
        before = len(await audit_logger.list_for_entity(db_session, draft_pib.id))
        await service.update_fields(draft_pib.id, operator, {"trader_name": "PT Sinar Impor"})
        assert len(await audit_logger.list_for_entity(db_session, draft_pib.id)) == before

    async def test_update_rejects_bad_values(self, db_session, operator, draft_pib):
        service = DeclarationService(db_session)
        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_fields(draft_pib.id, operator, {
                "exchange_rate": "0",
                "freight_value": "-1",
                "transport_mode": "ROCKET",
            })
        codes = {v.code for v in exc_info.value.violations}
        assert codes == {"NOT_POSITIVE", "NEGATIVE_VALUE", "TRANSPORT_MODE_UNKNOWN"}

    @pytest.mark.parametrize("field", ["exchange_rate", "freight_value", "insurance_value"])
    async def test_null_amount_is_a_validation_error(self, db_session, operator, draft_pib, field):
        declaration_id = draft_pib.id
        total_tax = draft_pib.total_tax
        service = DeclarationService(db_session)

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_fields(declaration_id, operator, {field: None})

        violation = exc_info.value.violations[0]
        assert (violation.field, violation.code) == (field, "REQUIRED")
        unchanged = await service.get(declaration_id)
        assert getattr(unchanged, field) is not None
        assert unchanged.total_tax == total_tax

    async def test_status_is_not_editable_as_a_field(self, db_session, operator, draft_pib):
        with pytest.raises(ValidationFailedError) as exc_info:
            await DeclarationService(db_session).update_fields(
                draft_pib.id, operator, {"status": "APPROVED"}
            )
        assert exc_info.value.violations[0].code == "FIELD_NOT_EDITABLE"

    async def test_add_and_remove_items(self, db_session, operator, draft_pib, item_data):
        service = DeclarationService(db_session)
        second = await service.add_item(draft_pib.id, operator, {**item_data, "unit_price": Decimal("50")})
        assert second.item_number == 2

        declaration = await service.get(draft_pib.id)
        assert len(declaration.items) == 2

        first_id = declaration.items[0].id
        declaration = await service.remove_item(draft_pib.id, first_id, operator)
        assert [i.item_number for i in declaration.items] == [1]
        assert declaration.items[0].unit_price == Decimal("50")

    async def test_invalid_item_is_refused(self, db_session, operator, draft_pib):
        with pytest.raises(ValidationFailedError) as exc_info:
            await DeclarationService(db_session).add_item(draft_pib.id, operator, {
                "hs_code": "12",
                "description": "",
                "quantity": "1",
                "net_weight": "5",
                "gross_weight": "4",
                "unit_price": "1",
            })
        codes = {v.code for v in exc_info.value.violations}
        assert {"HS_CODE_INVALID", "GROSS_BELOW_NET", "REQUIRED"} <= codes

    async def test_unknown_declaration(self, db_session, operator):
        with pytest.raises(DeclarationNotFoundError):
            await DeclarationService(db_session).update_fields(uuid.uuid4(), operator, {"trader_name": "X"})


@pytest.mark.asyncio
class TestImmutability:

    async def test_locked_edit_rejected_without_partial_change(self, db_session, operator, submitted_pib):
        service = DeclarationService(db_session)
        audit_count = len(await audit_logger.list_for_entity(db_session, submitted_pib.id))

        with pytest.raises(ImmutabilityError):
            await service.update_fields(submitted_pib.id, operator, {
                "trader_name": "Changed",
                "exchange_rate": "16000",
            })

        declaration = await service.get(submitted_pib.id)
        assert declaration.trader_name == "PT Sinar Impor"
        assert declaration.exchange_rate == Decimal("15000")
        assert len(await audit_logger.list_for_entity(db_session, submitted_pib.id)) == audit_count

    @pytest.mark.parametrize("operation", ["add_item", "add_document", "recalculate"])
    async def test_locked_declaration_refuses_item_changes(self, db_session, operator, approved_pib, operation, item_data):
        service = DeclarationService(db_session)
        with pytest.raises(ImmutabilityError):
            if operation == "add_item":
                await service.add_item(approved_pib.id, operator, item_data)
            elif operation == "add_document":
                await service.add_supporting_document(
                    approved_pib.id, operator, DocumentCategory.OTHER, "CERT-1"
                )
            else:
                await service.recalculate_taxes(approved_pib.id, operator)


@pytest.mark.asyncio
class TestSubmission:

    async def test_submit_locks_and_hashes(self, db_session, operator, draft_pib):
        declaration = await DeclarationService(db_session).submit(draft_pib.id, operator)

        assert declaration.status == DeclarationStatus.SUBMITTED
        assert declaration.xml_content.startswith("<?xml")
        assert declaration.xml_hash == hash_xml(declaration.xml_content)
        assert declaration.locked_by == operator.user_id
        assert declaration.locked_at is not None
        assert declaration.submitted_at is not None

        entries = await audit_logger.list_for_entity(db_session, declaration.id)
        submit_entry = entries[-1]
        assert submit_entry.action == AuditAction.SUBMIT
        assert submit_entry.document_hash == declaration.xml_hash
        assert submit_entry.changes["status"] == {"old": "DRAFT", "new": "SUBMITTED"}

    async def test_every_violation_reported_and_nothing_changed(self, db_session, operator):
        service = DeclarationService(db_session)
        declaration = await service.create_declaration(operator, DeclarationType.PIB, fields={
            "transport_mode": "AIR",
            "incoterm_code": "FOB",
        })
        declaration_id = declaration.id

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.submit(declaration_id, operator)

        violations = exc_info.value.violations
        codes = [v.code for v in violations]
        assert "INCOTERM_SEA_ONLY" in codes
        assert "ITEMS_REQUIRED" in codes
        assert codes.count("DOCUMENT_REQUIRED") == 3  # invoice, packing list, AWB
        assert {v.field for v in violations if v.code == "REQUIRED"} == {
            "trader_npwp", "trader_name", "counterparty_name", "customs_office_code",
        }

        reloaded = await service.get(declaration_id)
        assert reloaded.status == DeclarationStatus.DRAFT
        assert reloaded.xml_hash is None
        assert await _audit_actions(db_session, declaration_id) == [AuditAction.CREATE]

    async def test_sea_declaration_needs_bill_of_lading(self, db_session, operator, item_data):
        service = DeclarationService(db_session)
        declaration = await service.create_declaration(
            operator, DeclarationType.PIB, fields={"transport_mode": "SEA"}, items=[item_data]
        )
        violations = service.collect_submission_violations(declaration)
        messages = [v.message for v in violations if v.code == "DOCUMENT_REQUIRED"]
        assert any("BILL_OF_LADING" in m for m in messages)
        assert not any("AIR_WAYBILL" in m for m in messages)

    async def test_cif_requires_freight_and_insurance(self, declaration_factory, db_session, operator):
        draft = await declaration_factory(DeclarationType.PIB, freight_value=Decimal("0"))
        with pytest.raises(ValidationFailedError) as exc_info:
            await DeclarationService(db_session).submit(draft.id, operator)
        assert [v.code for v in exc_info.value.violations] == ["FREIGHT_REQUIRED"]

    async def test_supervisor_cannot_submit_twice(self, db_session, supervisor, submitted_pib):
        with pytest.raises(InvalidTransitionError):
            await DeclarationService(db_session).submit(submitted_pib.id, supervisor)


@pytest.mark.asyncio
class TestReview:

    async def test_operator_cannot_approve(self, db_session, operator, submitted_pib):
        with pytest.raises(AuthorizationError):
            await DeclarationService(db_session).approve(submitted_pib.id, operator)

    async def test_review_then_approve_then_lock(self, db_session, supervisor, submitted_pib):
        service = DeclarationService(db_session)
        await service.start_review(submitted_pib.id, supervisor)
        approved = await service.approve(submitted_pib.id, supervisor, note="Checked")
        assert approved.status == DeclarationStatus.APPROVED

        locked = await service.lock(submitted_pib.id, supervisor)
        assert locked.status == DeclarationStatus.LOCKED
        actions = await _audit_actions(db_session, submitted_pib.id)
        assert actions[-3:] == [
            AuditAction.UPDATE, AuditAction.APPROVE, AuditAction.LOCK,
        ]

    async def test_reject_reopens_editing(self, db_session, operator, supervisor, submitted_pib):
        service = DeclarationService(db_session)
        rejected = await service.reject(submitted_pib.id, supervisor, "Wrong supplier")

        assert rejected.status == DeclarationStatus.REJECTED
        assert rejected.locked_at is None
        assert rejected.gateway_errors[0]["message"] == "Wrong supplier"

        edited = await service.update_fields(rejected.id, operator, {"counterparty_name": "Right Supplier"})
        assert edited.counterparty_name == "Right Supplier"

        resubmitted = await service.submit(rejected.id, operator)
        assert resubmitted.status == DeclarationStatus.SUBMITTED
        assert resubmitted.gateway_errors is None

    async def test_reject_needs_reason(self, db_session, supervisor, submitted_pib):
        with pytest.raises(ValidationFailedError):
            await DeclarationService(db_session).reject(submitted_pib.id, supervisor, "  ")

    async def test_unlock_clears_xml_and_keeps_old_hash_in_audit(self, db_session, supervisor, approved_pib):
        service = DeclarationService(db_session)
        old_hash = approved_pib.xml_hash

        unlocked = await service.unlock(approved_pib.id, supervisor, "Correct HS code")

        assert unlocked.status == DeclarationStatus.DRAFT
        assert unlocked.xml_content is None
        assert unlocked.xml_hash is None
        entries = await audit_logger.list_for_entity(db_session, approved_pib.id)
        assert entries[-1].action == AuditAction.UNLOCK
        assert entries[-1].document_hash == old_hash
        assert entries[-1].note == "Correct HS code"

    async def test_operator_cannot_unlock(self, db_session, operator, approved_pib):
        with pytest.raises(AuthorizationError):
            await DeclarationService(db_session).unlock(approved_pib.id, operator, "Please")


@pytest.mark.asyncio
class TestIntegrity:

    async def test_verify_returns_hash(self, db_session, submitted_pib):
        service = DeclarationService(db_session)
        assert service.verify_integrity(submitted_pib) == submitted_pib.xml_hash

    async def test_never_submitted_has_nothing_to_verify(self, db_session, draft_pib):
        assert DeclarationService(db_session).verify_integrity(draft_pib) is None

    async def test_tampered_xml_blocks_approval(self, db_session, supervisor, submitted_pib):
        submitted_pib.xml_content = submitted_pib.xml_content.replace("PT Sinar Impor", "PT Lain")
        await db_session.commit()

        with pytest.raises(IntegrityViolationError) as exc_info:
            await DeclarationService(db_session).approve(submitted_pib.id, supervisor)

        assert exc_info.value.expected_hash == submitted_pib.xml_hash
        assert exc_info.value.actual_hash != submitted_pib.xml_hash
        result = await db_session.execute(
            select(AuditLog).where(AuditLog.entity_id == submitted_pib.id, AuditLog.action == AuditAction.APPROVE)
        )
        assert result.scalars().first() is None

    async def test_whitespace_only_change_keeps_hash(self, db_session, submitted_pib):
        submitted_pib.xml_content = submitted_pib.xml_content.replace("\n", "\r\n    ")
        await db_session.commit()
        assert DeclarationService(db_session).verify_integrity(submitted_pib) == submitted_pib.xml_hash
