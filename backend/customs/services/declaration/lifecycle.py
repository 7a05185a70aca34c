"""
Declaration Lifecycle Service

Owns declaration status, field edits, item maintenance and submission.

Business rules:
- Declarations are created as DRAFT
- Field edits are refused while the status is in the locked set
- Submission validates compliance, items, documents and value, then builds
  the canonical XML, hashes it and locks the declaration
- Every state-changing operation writes exactly one audit entry in the same
  transaction as the change
- Mutations of one declaration are serialised by a per-declaration lock
"""
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from customs.audit import audit_logger
from customs.core.config import settings
from customs.core.roles import Actor, Capability, require_capability
from customs.models.audit_log import AuditAction
from customs.models.declaration import (
    Declaration,
    DeclarationItem,
    DeclarationSource,
    DeclarationStatus,
    DeclarationType,
    DocumentCategory,
    SupportingDocument,
    TransportMode,
)
from customs.services import compliance, duty_tax
from customs.services.declaration.transitions import get_transition
from customs.services.declaration.xml_builder import build_declaration_xml, hash_xml
from customs.services.errors import (
    DeclarationNotFoundError,
    ImmutabilityError,
    IntegrityViolationError,
    ValidationFailedError,
    Violation,
)
from customs.services.locks import declaration_locks
from customs.services.logging import customs_logger

logger = logging.getLogger(__name__)


# Header fields a user may edit while the declaration is unlocked
EDITABLE_FIELDS = (
    "trader_npwp",
    "trader_name",
    "importer_api_number",
    "counterparty_name",
    "counterparty_country",
    "customs_office_code",
    "transport_mode",
    "incoterm_code",
    "currency_code",
    "exchange_rate",
    "freight_value",
    "insurance_value",
)

_DECIMAL_FIELDS = {"exchange_rate", "freight_value", "insurance_value"}

# Applied in memory on create so totals can be computed before the first flush
_HEADER_DEFAULTS = {
    "currency_code": "USD",
    "exchange_rate": Decimal("1"),
    "freight_value": Decimal("0"),
    "insurance_value": Decimal("0"),
}
_UPPERCASE_FIELDS = {"counterparty_country", "currency_code", "incoterm_code"}

# Header fields required before submission, with their labels
REQUIRED_HEADER_FIELDS = {
    DeclarationType.PEB: (
        ("trader_npwp", "Exporter NPWP"),
        ("trader_name", "Exporter name"),
        ("counterparty_name", "Buyer name"),
        ("customs_office_code", "Customs office"),
        ("currency_code", "Currency"),
    ),
    DeclarationType.PIB: (
        ("trader_npwp", "Importer NPWP"),
        ("trader_name", "Importer name"),
        ("counterparty_name", "Supplier name"),
        ("customs_office_code", "Customs office"),
        ("currency_code", "Currency"),
    ),
}

# Transport-specific supporting documents
TRANSPORT_DOCUMENTS = {
    TransportMode.AIR.value: DocumentCategory.AIR_WAYBILL,
    TransportMode.SEA.value: DocumentCategory.BILL_OF_LADING,
}

_ITEM_FIELDS = (
    "hs_code", "description", "quantity", "quantity_unit", "net_weight",
    "gross_weight", "unit_price", "country_of_origin", "bm_rate", "ppn_rate",
)


def entity_type_for(declaration: Declaration) -> str:
    return DeclarationType(declaration.declaration_type).value


def snapshot(declaration: Declaration, fields: Sequence[str]) -> Dict[str, Any]:
    return {name: getattr(declaration, name) for name in fields}


def _to_decimal(field_name: str, value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailedError([Violation(
            field_name, "NOT_A_NUMBER", f"{field_name.replace('_', ' ').capitalize()} is not a valid number"
        )])


def required_documents(declaration: Declaration) -> List[DocumentCategory]:
    """Invoice and packing list always; AWB for AIR, B/L for SEA."""
    required = [DocumentCategory.INVOICE, DocumentCategory.PACKING_LIST]
    mode = compliance.normalize_transport_mode(declaration.transport_mode)
    if mode in TRANSPORT_DOCUMENTS:
        required.append(TRANSPORT_DOCUMENTS[mode])
    return required


class DeclarationService:
    """
    Service for declaration lifecycle operations.

    Every public operation takes the acting ``Actor`` explicitly and commits
    its own unit of work.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _load(self, declaration_id: uuid.UUID, for_update: bool = False) -> Declaration:
        query = select(Declaration).where(Declaration.id == declaration_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        declaration = result.scalar_one_or_none()
        if declaration is None:
            raise DeclarationNotFoundError(f"Declaration {declaration_id} not found")
        return declaration

    async def get(self, declaration_id: uuid.UUID) -> Declaration:
        return await self._load(declaration_id)

    async def get_by_nomor_aju(self, nomor_aju: str) -> Optional[Declaration]:
        result = await self.db.execute(
            select(Declaration).where(Declaration.nomor_aju == nomor_aju)
        )
        return result.scalar_one_or_none()

    async def list(
        self,
        declaration_type: Optional[DeclarationType] = None,
        status: Optional[DeclarationStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[Declaration], int]:
        """List declarations, newest first, with the total count."""
        query = select(Declaration)
        count_query = select(func.count()).select_from(Declaration)
        if declaration_type:
            query = query.where(Declaration.declaration_type == declaration_type)
            count_query = count_query.where(Declaration.declaration_type == declaration_type)
        if status:
            query = query.where(Declaration.status == status)
            count_query = count_query.where(Declaration.status == status)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(
            query.order_by(Declaration.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the declaration lock and commits)
    # ------------------------------------------------------------------

    def _assert_editable(self, declaration: Declaration, actor: Actor) -> None:
        if declaration.is_locked():
            customs_logger.declaration_edit_blocked(
                declaration.id, DeclarationStatus(declaration.status).value, user_id=actor.user_id
            )
            raise ImmutabilityError(
                f"Declaration {declaration.nomor_aju or declaration.id} is "
                f"{DeclarationStatus(declaration.status).value} and cannot be edited"
            )

    def _coerce_fields(self, values: Dict[str, Any]) -> Dict[str, Any]:
        unknown = [name for name in values if name not in EDITABLE_FIELDS]
        if unknown:
            raise ValidationFailedError([
                Violation(name, "FIELD_NOT_EDITABLE", f"Field '{name}' cannot be edited")
                for name in unknown
            ])

        coerced: Dict[str, Any] = {}
        violations: List[Violation] = []
        for name, value in values.items():
            if value is None and name in _DECIMAL_FIELDS:
                violations.append(Violation(
                    name, "REQUIRED", f"{name.replace('_', ' ').capitalize()} is required"
                ))
                continue
            if name in _DECIMAL_FIELDS:
                try:
                    value = _to_decimal(name, value)
                except ValidationFailedError as e:
                    violations.extend(e.violations)
                    continue
                if name == "exchange_rate" and value <= 0:
                    violations.append(Violation(name, "NOT_POSITIVE", "Exchange rate must be greater than 0"))
                elif value < 0:
                    violations.append(Violation(
                        name, "NEGATIVE_VALUE", f"{name.replace('_', ' ').capitalize()} must not be negative"
                    ))
            elif isinstance(value, str):
                value = value.strip()
                if name in _UPPERCASE_FIELDS:
                    value = value.upper()
                if name == "transport_mode" and value:
                    mode = compliance.normalize_transport_mode(value)
                    if mode is None:
                        violations.append(Violation(
                            name, "TRANSPORT_MODE_UNKNOWN", f"Unknown transport mode '{value}'"
                        ))
                        continue
                    value = mode
            coerced[name] = value

        if violations:
            raise ValidationFailedError(violations)
        return coerced

    def apply_taxes(self, declaration: Declaration) -> None:
        """
        Recompute item valuation and header totals in place.

        PEB totals are the FOB sum; PIB items additionally get BM/PPN/PPh.
        """
        items = sorted(declaration.items or [], key=lambda i: i.item_number)
        for item in items:
            item.line_value = (Decimal(item.quantity) * Decimal(item.unit_price)).quantize(Decimal("0.01"))

        if DeclarationType(declaration.declaration_type) == DeclarationType.PEB:
            declaration.total_value = sum((i.line_value for i in items), Decimal("0"))
            for field_name in ("total_bm", "total_ppn", "total_pph", "total_tax"):
                setattr(declaration, field_name, Decimal("0"))
            return

        breakdown = duty_tax.compute_declaration(
            [
                duty_tax.ItemTaxInput(
                    item_value=item.line_value,
                    bm_rate=item.bm_rate,
                    ppn_rate=item.ppn_rate,
                )
                for item in items
            ],
            exchange_rate=declaration.exchange_rate,
            freight_value=declaration.freight_value,
            insurance_value=declaration.insurance_value,
            has_api=bool(declaration.importer_api_number),
        )
        for item, figures in zip(items, breakdown.items):
            item.freight_share = figures.freight_share
            item.insurance_share = figures.insurance_share
            item.cif_value = figures.cif_value
            item.cif_idr = figures.cif_idr
            item.pph_rate = figures.pph_rate
            item.bm_amount = figures.bm_amount
            item.ppn_amount = figures.ppn_amount
            item.pph_amount = figures.pph_amount
            item.total_tax = figures.total_tax

        declaration.total_value = breakdown.total_cif_value
        declaration.total_bm = breakdown.total_bm
        declaration.total_ppn = breakdown.total_ppn
        declaration.total_pph = breakdown.total_pph
        declaration.total_tax = breakdown.total_tax

    def _build_item(self, declaration: Declaration, data: Dict[str, Any]) -> DeclarationItem:
        next_number = max((i.item_number for i in declaration.items), default=0) + 1
        values = {name: data.get(name) for name in _ITEM_FIELDS if data.get(name) is not None}

        violations = compliance.validate_item_values(
            next_number,
            hs_code=values.get("hs_code"),
            quantity=values.get("quantity"),
            net_weight=values.get("net_weight"),
            gross_weight=values.get("gross_weight"),
            unit_price=values.get("unit_price"),
        )
        if not values.get("hs_code"):
            violations.append(Violation(
                f"items[{next_number}].hs_code", "REQUIRED", f"Item {next_number}: HS code is required"
            ))
        if not values.get("description"):
            violations.append(Violation(
                f"items[{next_number}].description", "REQUIRED", f"Item {next_number}: description is required"
            ))
        if violations:
            raise ValidationFailedError(violations)

        for name in ("quantity", "net_weight", "gross_weight", "unit_price", "bm_rate", "ppn_rate"):
            if name in values:
                values[name] = Decimal(str(values[name]))
            elif name != "ppn_rate":
                values[name] = Decimal("0")
        if "ppn_rate" not in values:
            values["ppn_rate"] = Decimal(settings.DEFAULT_PPN_RATE)
        if values.get("country_of_origin"):
            values["country_of_origin"] = values["country_of_origin"].upper()
        values["hs_code"] = values["hs_code"].replace(".", "")

        item = DeclarationItem(item_number=next_number, **values)
        declaration.items.append(item)
        return item

    def _transition(
        self,
        declaration: Declaration,
        target: DeclarationStatus,
        actor: Actor,
        *,
        extra_changes: Optional[Dict[str, Dict[str, Any]]] = None,
        note: Optional[str] = None,
        document_hash: Optional[str] = None,
    ) -> None:
        source = DeclarationStatus(declaration.status)
        transition = get_transition(source, target, actor)

        declaration.status = target
        changes = audit_logger.status_change(source, target)
        changes.update(extra_changes or {})
        audit_logger.record(
            self.db,
            entity_type=entity_type_for(declaration),
            entity_id=declaration.id,
            entity_number=declaration.nomor_aju,
            action=transition.action,
            actor=actor,
            changes=changes,
            note=note,
            document_hash=document_hash,
        )
        customs_logger.declaration_transitioned(
            declaration.id, source.value, target.value, user_id=actor.user_id, xml_hash=document_hash
        )

    def verify_integrity(self, declaration: Declaration) -> Optional[str]:
        """
        Recompute the hash of the stored XML.

        Returns the hash, or None for a declaration that was never submitted.

        Raises:
            IntegrityViolationError: Stored XML and stored hash disagree
        """
        if declaration.xml_content is None and declaration.xml_hash is None:
            return None
        if declaration.xml_content is None or declaration.xml_hash is None:
            customs_logger.integrity_violation(
                declaration.id, "XML content or hash missing", expected_hash=declaration.xml_hash
            )
            raise IntegrityViolationError(
                f"Declaration {declaration.id} has an incomplete integrity record",
                expected_hash=declaration.xml_hash,
            )
        actual = hash_xml(declaration.xml_content)
        if actual != declaration.xml_hash:
            customs_logger.integrity_violation(
                declaration.id, "hash mismatch", expected_hash=declaration.xml_hash, actual_hash=actual
            )
            raise IntegrityViolationError(
                f"Declaration {declaration.id} XML does not match its recorded hash",
                expected_hash=declaration.xml_hash,
                actual_hash=actual,
            )
        return actual

    def mark_sent_to_gateway(
        self,
        declaration: Declaration,
        actor: Actor,
        gateway_reference: Optional[str] = None,
    ) -> None:
        """APPROVED/LOCKED → SENT_TO_GATEWAY. Caller holds the lock and commits."""
        extra = {}
        if gateway_reference and gateway_reference != declaration.nomor_aju and not declaration.nomor_aju:
            extra["nomor_aju"] = {"old": None, "new": gateway_reference}
            declaration.nomor_aju = gateway_reference
        self._transition(
            declaration,
            DeclarationStatus.SENT_TO_GATEWAY,
            actor,
            extra_changes=extra,
            document_hash=declaration.xml_hash,
        )

    def apply_gateway_outcome(
        self,
        declaration: Declaration,
        accepted: bool,
        actor: Actor,
        *,
        errors: Optional[List[dict]] = None,
        registration_number: Optional[str] = None,
        registration_date: Optional[date] = None,
        note: Optional[str] = None,
    ) -> None:
        """
        SENT_TO_GATEWAY → GATEWAY_ACCEPTED / GATEWAY_REJECTED.

        A response arriving before local approval drives the review decision
        instead (SUBMITTED/UNDER_REVIEW → APPROVED / REJECTED). Caller holds
        the lock and commits.
        """
        status = DeclarationStatus(declaration.status)
        if status in (DeclarationStatus.SUBMITTED, DeclarationStatus.UNDER_REVIEW):
            target = DeclarationStatus.APPROVED if accepted else DeclarationStatus.REJECTED
        else:
            target = DeclarationStatus.GATEWAY_ACCEPTED if accepted else DeclarationStatus.GATEWAY_REJECTED

        extra: Dict[str, Dict[str, Any]] = {}
        if registration_number and registration_number != declaration.registration_number:
            extra["registration_number"] = {"old": declaration.registration_number, "new": registration_number}
            declaration.registration_number = registration_number
        if registration_date and registration_date != declaration.registration_date:
            extra["registration_date"] = {
                "old": audit_logger.to_json_safe(declaration.registration_date),
                "new": registration_date.isoformat(),
            }
            declaration.registration_date = registration_date
        if not accepted:
            extra["gateway_errors"] = {"old": declaration.gateway_errors, "new": errors or []}
            declaration.gateway_errors = errors or []
            if target == DeclarationStatus.REJECTED:
                declaration.locked_at = None
                declaration.locked_by = None
        else:
            declaration.gateway_errors = None

        self._transition(declaration, target, actor, extra_changes=extra, note=note)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_declaration(
        self,
        actor: Actor,
        declaration_type: DeclarationType,
        fields: Optional[Dict[str, Any]] = None,
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> Declaration:
        """Create a DRAFT declaration with optional header fields and items."""
        require_capability(actor, Capability.CREATE)
        values = self._coerce_fields(fields or {})

        declaration = Declaration(
            id=uuid.uuid4(),
            declaration_type=DeclarationType(declaration_type),
            status=DeclarationStatus.DRAFT,
            source=DeclarationSource.LOCAL,
            created_by=actor.user_id,
            **{**_HEADER_DEFAULTS, **{k: v for k, v in values.items() if v is not None}},
        )
        declaration.items = []
        declaration.documents = []
        self.db.add(declaration)

        for item_data in items or []:
            self._build_item(declaration, item_data)
        self.apply_taxes(declaration)

        changes = audit_logger.compute_changes(None, {
            "declaration_type": declaration.declaration_type,
            "status": DeclarationStatus.DRAFT,
            **values,
        })
        if declaration.items:
            changes["items"] = {"old": None, "new": len(declaration.items)}
        audit_logger.record(
            self.db,
            entity_type=entity_type_for(declaration),
            entity_id=declaration.id,
            action=AuditAction.CREATE,
            actor=actor,
            changes=changes,
        )
        await self.db.commit()

        customs_logger.declaration_created(
            declaration.id, declaration.declaration_type.value, user_id=actor.user_id
        )
        return declaration

    async def update_fields(
        self,
        declaration_id: uuid.UUID,
        actor: Actor,
        values: Dict[str, Any],
    ) -> Declaration:
        """
        Edit header fields.

        Raises:
            ImmutabilityError: Declaration is in the locked set
            ValidationFailedError: Unknown field or malformed value
        """
        require_capability(actor, Capability.EDIT)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._assert_editable(declaration, actor)
            coerced = self._coerce_fields(values)

            before = snapshot(declaration, list(coerced))
            changes = audit_logger.compute_changes(before, coerced)
            if not changes:
                return declaration

            for name, value in coerced.items():
                setattr(declaration, name, value)
            self.apply_taxes(declaration)

            audit_logger.record(
                self.db,
                entity_type=entity_type_for(declaration),
                entity_id=declaration.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.UPDATE,
                actor=actor,
                changes=changes,
            )
            await self.db.commit()

        customs_logger.declaration_updated(declaration.id, sorted(changes), user_id=actor.user_id)
        return declaration

    async def add_item(
        self,
        declaration_id: uuid.UUID,
        actor: Actor,
        data: Dict[str, Any],
    ) -> DeclarationItem:
        require_capability(actor, Capability.EDIT)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._assert_editable(declaration, actor)

            before_total = declaration.total_value
            item = self._build_item(declaration, data)
            self.apply_taxes(declaration)

            changes = {
                f"items[{item.item_number}]": {
                    "old": None,
                    "new": audit_logger.to_json_safe({name: getattr(item, name) for name in _ITEM_FIELDS}),
                },
            }
            changes.update(audit_logger.compute_changes(
                {"total_value": before_total}, {"total_value": declaration.total_value}
            ))
            audit_logger.record(
                self.db,
                entity_type=entity_type_for(declaration),
                entity_id=declaration.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.UPDATE,
                actor=actor,
                changes=changes,
            )
            await self.db.commit()

        customs_logger.declaration_updated(declaration.id, [f"items[{item.item_number}]"], user_id=actor.user_id)
        return item

    async def remove_item(
        self,
        declaration_id: uuid.UUID,
        item_id: uuid.UUID,
        actor: Actor,
    ) -> Declaration:
        require_capability(actor, Capability.EDIT)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._assert_editable(declaration, actor)

            item = next((i for i in declaration.items if i.id == item_id), None)
            if item is None:
                raise ValidationFailedError([
                    Violation("item_id", "NOT_FOUND", f"Item {item_id} does not belong to this declaration")
                ])

            removed = audit_logger.to_json_safe({name: getattr(item, name) for name in _ITEM_FIELDS})
            removed_number = item.item_number
            declaration.items.remove(item)
            # Keep item numbers contiguous
            for position, remaining in enumerate(sorted(declaration.items, key=lambda i: i.item_number), start=1):
                remaining.item_number = position
            self.apply_taxes(declaration)

            audit_logger.record(
                self.db,
                entity_type=entity_type_for(declaration),
                entity_id=declaration.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.UPDATE,
                actor=actor,
                changes={f"items[{removed_number}]": {"old": removed, "new": None}},
            )
            await self.db.commit()

        customs_logger.declaration_updated(declaration.id, [f"items[{removed_number}]"], user_id=actor.user_id)
        return declaration

    async def add_supporting_document(
        self,
        declaration_id: uuid.UUID,
        actor: Actor,
        category: DocumentCategory,
        reference_number: str,
        document_date: Optional[date] = None,
    ) -> SupportingDocument:
        require_capability(actor, Capability.EDIT)
        if not reference_number or not reference_number.strip():
            raise ValidationFailedError([
                Violation("reference_number", "REQUIRED", "Document reference number is required")
            ])
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._assert_editable(declaration, actor)

            document = SupportingDocument(
                category=DocumentCategory(category),
                reference_number=reference_number.strip(),
                document_date=document_date,
            )
            declaration.documents.append(document)

            audit_logger.record(
                self.db,
                entity_type=entity_type_for(declaration),
                entity_id=declaration.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.UPDATE,
                actor=actor,
                changes={f"documents.{document.category.value}": {"old": None, "new": document.reference_number}},
            )
            await self.db.commit()

        customs_logger.declaration_updated(
            declaration.id, [f"documents.{document.category.value}"], user_id=actor.user_id
        )
        return document

    async def recalculate_taxes(self, declaration_id: uuid.UUID, actor: Actor) -> Declaration:
        """Recompute valuation and duties; audited only when a total changed."""
        require_capability(actor, Capability.EDIT)
        totals = ("total_value", "total_bm", "total_ppn", "total_pph", "total_tax")
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._assert_editable(declaration, actor)

            before = snapshot(declaration, totals)
            self.apply_taxes(declaration)
            changes = audit_logger.compute_changes(before, snapshot(declaration, totals))
            if not changes:
                return declaration

            audit_logger.record(
                self.db,
                entity_type=entity_type_for(declaration),
                entity_id=declaration.id,
                entity_number=declaration.nomor_aju,
                action=AuditAction.UPDATE,
                actor=actor,
                changes=changes,
                note="Duties and taxes recalculated",
            )
            await self.db.commit()
        return declaration

    def collect_submission_violations(self, declaration: Declaration) -> List[Violation]:
        """Every rule that blocks submission, one violation per rule."""
        violations: List[Violation] = []
        declaration_type = DeclarationType(declaration.declaration_type)

        for field_name, label in REQUIRED_HEADER_FIELDS[declaration_type]:
            if not getattr(declaration, field_name):
                violations.append(Violation(field_name, "REQUIRED", f"{label} is required"))

        if declaration.exchange_rate is None or Decimal(declaration.exchange_rate) <= 0:
            violations.append(Violation("exchange_rate", "NOT_POSITIVE", "Exchange rate must be greater than 0"))

        violations.extend(compliance.validate(
            declaration.transport_mode,
            declaration.incoterm_code,
            declaration.freight_value,
            declaration.insurance_value,
        ).violations)

        items = sorted(declaration.items or [], key=lambda i: i.item_number)
        if not items:
            violations.append(Violation("items", "ITEMS_REQUIRED", "At least one item is required"))
        for item in items:
            violations.extend(compliance.validate_item_values(
                item.item_number,
                hs_code=item.hs_code,
                quantity=item.quantity,
                net_weight=item.net_weight,
                gross_weight=item.gross_weight,
                unit_price=item.unit_price,
                line_value=item.line_value,
            ))
            if not item.quantity or Decimal(item.quantity) <= 0:
                violations.append(Violation(
                    f"items[{item.item_number}].quantity", "NOT_POSITIVE",
                    f"Item {item.item_number}: quantity must be greater than 0"
                ))
            if not item.unit_price or Decimal(item.unit_price) <= 0:
                violations.append(Violation(
                    f"items[{item.item_number}].unit_price", "NOT_POSITIVE",
                    f"Item {item.item_number}: unit price must be greater than 0"
                ))

        present = {DocumentCategory(d.category) for d in declaration.documents or []}
        for category in required_documents(declaration):
            if category not in present:
                violations.append(Violation(
                    "documents", "DOCUMENT_REQUIRED",
                    f"Supporting document {category.value} is required"
                ))

        if items and sum((Decimal(i.line_value or 0) for i in items), Decimal("0")) <= 0:
            violations.append(Violation("total_value", "NOT_POSITIVE", "Total goods value must be greater than 0"))

        return violations

    async def submit(self, declaration_id: uuid.UUID, actor: Actor) -> Declaration:
        """
        DRAFT/REJECTED → SUBMITTED.

        Nothing is changed unless every rule passes. On success the XML and its
        hash are stored and the SUBMIT audit entry carries the hash.
        """
        require_capability(actor, Capability.SUBMIT)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            # Authorise the transition before validating content
            get_transition(DeclarationStatus(declaration.status), DeclarationStatus.SUBMITTED, actor)

            self.apply_taxes(declaration)
            violations = self.collect_submission_violations(declaration)
            if violations:
                await self.db.rollback()
                raise ValidationFailedError(violations)

            xml_content = build_declaration_xml(declaration)
            xml_hash = hash_xml(xml_content)
            now = datetime.now(timezone.utc)

            declaration.xml_content = xml_content
            declaration.xml_hash = xml_hash
            declaration.locked_at = now
            declaration.locked_by = actor.user_id
            declaration.submitted_at = now
            declaration.gateway_errors = None

            self._transition(
                declaration,
                DeclarationStatus.SUBMITTED,
                actor,
                extra_changes={
                    "xml_hash": {"old": None, "new": xml_hash},
                    "total_tax": {"old": None, "new": str(declaration.total_tax)},
                },
                document_hash=xml_hash,
            )
            await self.db.commit()
        return declaration

    async def start_review(self, declaration_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Declaration:
        require_capability(actor, Capability.REVIEW)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._transition(declaration, DeclarationStatus.UNDER_REVIEW, actor, note=note)
            await self.db.commit()
        return declaration

    async def approve(self, declaration_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Declaration:
        require_capability(actor, Capability.APPROVE)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self.verify_integrity(declaration)
            self._transition(
                declaration, DeclarationStatus.APPROVED, actor, note=note, document_hash=declaration.xml_hash
            )
            await self.db.commit()
        return declaration

    async def lock(self, declaration_id: uuid.UUID, actor: Actor, note: Optional[str] = None) -> Declaration:
        """APPROVED → LOCKED (final hold before transmission)."""
        require_capability(actor, Capability.APPROVE)
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            self._transition(
                declaration, DeclarationStatus.LOCKED, actor, note=note, document_hash=declaration.xml_hash
            )
            await self.db.commit()
        return declaration

    async def reject(
        self,
        declaration_id: uuid.UUID,
        actor: Actor,
        reason: str,
        errors: Optional[List[dict]] = None,
    ) -> Declaration:
        """SUBMITTED/UNDER_REVIEW → REJECTED; re-opens editing."""
        require_capability(actor, Capability.REJECT)
        if not reason or not reason.strip():
            raise ValidationFailedError([Violation("reason", "REQUIRED", "A rejection reason is required")])
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            rejection = errors or [{"code": "REVIEW", "field": None, "message": reason.strip()}]
            old_errors = declaration.gateway_errors
            # Validate the transition before touching any field
            get_transition(DeclarationStatus(declaration.status), DeclarationStatus.REJECTED, actor)

            declaration.gateway_errors = rejection
            declaration.locked_at = None
            declaration.locked_by = None
            self._transition(
                declaration,
                DeclarationStatus.REJECTED,
                actor,
                extra_changes={"gateway_errors": {"old": old_errors, "new": rejection}},
                note=reason.strip(),
            )
            await self.db.commit()
        return declaration

    async def unlock(self, declaration_id: uuid.UUID, actor: Actor, reason: str) -> Declaration:
        """
        Return a declaration to DRAFT for correction.

        Clears the lock markers, XML and hash; the previous hash stays in the
        audit entry.
        """
        require_capability(actor, Capability.UNLOCK)
        if not reason or not reason.strip():
            raise ValidationFailedError([Violation("reason", "REQUIRED", "An unlock reason is required")])
        async with declaration_locks.hold(declaration_id):
            declaration = await self._load(declaration_id, for_update=True)
            get_transition(DeclarationStatus(declaration.status), DeclarationStatus.DRAFT, actor)

            old_hash = declaration.xml_hash
            declaration.xml_content = None
            declaration.xml_hash = None
            declaration.locked_at = None
            declaration.locked_by = None
            self._transition(
                declaration,
                DeclarationStatus.DRAFT,
                actor,
                extra_changes={"xml_hash": {"old": old_hash, "new": None}} if old_hash else None,
                note=reason.strip(),
                document_hash=old_hash,
            )
            await self.db.commit()
        return declaration
