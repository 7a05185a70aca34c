"""
CEISA Sync Service

Manual pull of PEB/PIB documents from CEISA into local declarations.

Business rules:
- One sync call has an independent leg per document type; either may be skipped
- Each leg validates its mandatory filter (nomor aju, NPWP, office code)
- A leg failure is recorded in the result and never affects the other leg
- "No data" is a successful, non-error outcome with an explanatory message
- Documents are upserted by nomor aju, so re-running a filter never duplicates
- A locally locked declaration only receives status and registration updates
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from customs.audit import audit_logger
from customs.core.roles import Actor, Capability, require_capability
from customs.integrations.ceisa.client import CeisaClient, CeisaError, GatewayResponse
from customs.models.audit_log import AuditAction
from customs.models.declaration import (
    Declaration,
    DeclarationItem,
    DeclarationSource,
    DeclarationStatus,
    DeclarationType,
    TransportMode,
)
from customs.services import compliance
from customs.services.declaration.lifecycle import DeclarationService, entity_type_for
from customs.services.declaration.transitions import TRANSITIONS
from customs.services.edi.diagnostics import DiagnosticRecorder, diagnostics
from customs.services.edi.error_mapping import EMPTY_RESULT_MESSAGE, ErrorCategory, map_gateway_error
from customs.services.errors import AuditWriteError
from customs.services.locks import declaration_locks
from customs.services.logging import customs_logger

logger = logging.getLogger(__name__)


REQUIRED_FILTER_FIELDS = ("nomor_aju", "npwp", "kode_kantor")

# Portal document status -> local status
PORTAL_STATUS_MAP: Dict[str, DeclarationStatus] = {
    "DRAFT": DeclarationStatus.DRAFT,
    "SUBMITTED": DeclarationStatus.SUBMITTED,
    "DIKIRIM": DeclarationStatus.SUBMITTED,
    "DITERIMA": DeclarationStatus.GATEWAY_ACCEPTED,
    "ACCEPTED": DeclarationStatus.GATEWAY_ACCEPTED,
    "NPE_TERBIT": DeclarationStatus.GATEWAY_ACCEPTED,
    "SPPB_TERBIT": DeclarationStatus.GATEWAY_ACCEPTED,
    "SPPB_ISSUED": DeclarationStatus.GATEWAY_ACCEPTED,
    "SELESAI": DeclarationStatus.GATEWAY_ACCEPTED,
    "COMPLETED": DeclarationStatus.GATEWAY_ACCEPTED,
    "DITOLAK": DeclarationStatus.GATEWAY_REJECTED,
    "REJECTED": DeclarationStatus.GATEWAY_REJECTED,
    # Numeric review codes
    "01": DeclarationStatus.SUBMITTED,
    "02": DeclarationStatus.UNDER_REVIEW,
    "03": DeclarationStatus.APPROVED,
    "04": DeclarationStatus.REJECTED,
}

# Portal transport codes (cara pengangkutan)
PORTAL_TRANSPORT_MAP: Dict[str, str] = {
    "1": TransportMode.SEA.value,
    "LAUT": TransportMode.SEA.value,
    "2": TransportMode.RAIL.value,
    "KERETA": TransportMode.RAIL.value,
    "3": TransportMode.LAND.value,
    "DARAT": TransportMode.LAND.value,
    "4": TransportMode.AIR.value,
    "UDARA": TransportMode.AIR.value,
    "6": TransportMode.MULTI.value,
    "MULTIMODA": TransportMode.MULTI.value,
}


def map_portal_status(value: Optional[str]) -> DeclarationStatus:
    if not value:
        return DeclarationStatus.DRAFT
    return PORTAL_STATUS_MAP.get(str(value).strip().upper(), DeclarationStatus.DRAFT)


def map_portal_transport(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    code = str(value).strip().upper()
    return PORTAL_TRANSPORT_MAP.get(code) or compliance.normalize_transport_mode(code)


def _decimal(payload: dict, key: str, default: str = "0") -> Decimal:
    value = payload.get(key)
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{key} is not a number: {value!r}")


def _section(payload: dict, key: str) -> dict:
    value = payload.get(key)
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object, got {type(value).__name__}")
    return value


def _document_label(payload) -> str:
    if isinstance(payload, dict) and payload.get("nomorAju"):
        return str(payload["nomorAju"])
    return "unknown"


def _date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value!r}")


@dataclass
class FetchFilter:
    nomor_aju: Optional[str] = None
    npwp: Optional[str] = None
    kode_kantor: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: Optional[int] = None
    page_size: Optional[int] = None

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FILTER_FIELDS if not (getattr(self, name) or "").strip()]


@dataclass
class SyncParams:
    """Filters per document type; a leg with no filter is skipped."""
    peb: Optional[FetchFilter] = None
    pib: Optional[FetchFilter] = None


@dataclass
class LegResult:
    document_type: str
    fetched: int = 0
    saved: int = 0
    skipped: bool = False
    errors: List[dict] = field(default_factory=list)
    empty_message: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        data = asdict(self)
        data["success"] = self.success
        return data


@dataclass
class SyncResult:
    success: bool
    timestamp: datetime
    total_time_ms: int
    peb: LegResult
    pib: LegResult
    summary: str
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "total_time_ms": self.total_time_ms,
            "peb": self.peb.to_dict(),
            "pib": self.pib.to_dict(),
            "summary": self.summary,
            "cancelled": self.cancelled,
        }


def map_payload(document_type: DeclarationType, payload: dict) -> Dict[str, Any]:
    """
    Translate one portal document into declaration header fields and items.

    Raises:
        ValueError: Payload is missing its nomor aju or carries malformed values
    """
    if not isinstance(payload, dict):
        raise ValueError(f"Document must be an object, got {type(payload).__name__}")
    nomor_aju = str(payload.get("nomorAju") or "").strip()
    if not nomor_aju:
        raise ValueError("Document without nomorAju")

    is_pib = document_type == DeclarationType.PIB
    trader = _section(payload, "importir" if is_pib else "eksportir")
    counterparty = _section(payload, "supplier" if is_pib else "pembeli")
    office = _section(payload, "kantorBc")

    header = {
        "nomor_aju": nomor_aju,
        "registration_number": payload.get("nomorPendaftaran") or None,
        "registration_date": _date(payload.get("tanggalPendaftaran")),
        "trader_npwp": trader.get("npwp"),
        "trader_name": trader.get("nama"),
        "importer_api_number": trader.get("api") if is_pib else None,
        "counterparty_name": counterparty.get("nama"),
        "counterparty_country": (counterparty.get("negara") or "").upper()[:2] or None,
        "customs_office_code": office.get("kode") or payload.get("kodeKantor"),
        "transport_mode": map_portal_transport(payload.get("modaAngkutan")),
        "incoterm_code": (payload.get("incoterm") or "").upper() or None,
        "currency_code": (payload.get("mataUang") or "USD").upper(),
        "exchange_rate": _decimal(payload, "kurs", "1"),
        "freight_value": _decimal(payload, "freight"),
        "insurance_value": _decimal(payload, "asuransi"),
    }
    if header["exchange_rate"] <= 0:
        raise ValueError("kurs must be greater than 0")

    goods = payload.get("barang") or []
    if not isinstance(goods, list):
        raise ValueError(f"barang must be a list, got {type(goods).__name__}")

    items = []
    for position, raw in enumerate(goods, start=1):
        if not isinstance(raw, dict):
            raise ValueError(f"barang #{position} must be an object, got {type(raw).__name__}")
        item = {
            "item_number": int(raw.get("nomorUrut") or position),
            "hs_code": str(raw.get("hsCode") or "").replace(".", ""),
            "description": raw.get("uraianBarang") or "",
            "quantity": _decimal(raw, "jumlahBarang"),
            "quantity_unit": raw.get("satuanBarang"),
            "net_weight": _decimal(raw, "beratNeto"),
            "gross_weight": _decimal(raw, "beratBruto"),
            "unit_price": _decimal(raw, "hargaSatuan"),
            "country_of_origin": (raw.get("negaraAsal") or "").upper()[:2] or None,
            "bm_rate": _decimal(raw, "tarifBM"),
            "ppn_rate": _decimal(raw, "tarifPPN", "11"),
        }
        violations = compliance.validate_item_values(
            item["item_number"],
            hs_code=item["hs_code"],
            quantity=item["quantity"],
            net_weight=item["net_weight"],
            gross_weight=item["gross_weight"],
            unit_price=item["unit_price"],
        )
        if violations:
            raise ValueError("; ".join(v.message for v in violations))
        items.append(item)

    return {
        "header": header,
        "items": items,
        "status": map_portal_status(payload.get("statusDokumen") or payload.get("kodeStatus")),
    }


class SyncService:
    """
    Service for manual CEISA synchronisation.

    Each leg commits on its own so a failing leg cannot undo the other.
    """

    def __init__(
        self,
        db: AsyncSession,
        client: CeisaClient,
        recorder: Optional[DiagnosticRecorder] = None,
    ):
        self.db = db
        self.client = client
        self.recorder = recorder or diagnostics
        self.declarations = DeclarationService(db)

    async def sync(
        self,
        params: SyncParams,
        actor: Actor,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """
        Run the PEB leg then the PIB leg.

        ``cancel_event`` is checked once before any leg starts; a started leg
        always runs to completion or timeout.
        """
        require_capability(actor, Capability.SYNC)
        started = time.perf_counter()
        timestamp = datetime.now(timezone.utc)

        peb = LegResult(DeclarationType.PEB.value, skipped=params.peb is None)
        pib = LegResult(DeclarationType.PIB.value, skipped=params.pib is None)

        if cancel_event is not None and cancel_event.is_set():
            return SyncResult(
                success=False,
                timestamp=timestamp,
                total_time_ms=0,
                peb=peb,
                pib=pib,
                summary="Sync cancelled before start",
                cancelled=True,
            )

        legs = [leg.document_type for leg in (peb, pib) if not leg.skipped]
        customs_logger.sync_started(legs, user_id=actor.user_id)
        self.recorder.log("sync", f"Sync started: {', '.join(legs) or 'no legs'}")

        if params.peb is not None:
            await self._run_leg(DeclarationType.PEB, params.peb, peb, actor)
        if params.pib is not None:
            await self._run_leg(DeclarationType.PIB, params.pib, pib, actor)

        total_time_ms = int((time.perf_counter() - started) * 1000)
        success = bool(legs) and all(leg.success for leg in (peb, pib))
        summary = self._summarize(peb, pib)

        customs_logger.sync_completed(success, total_time_ms, summary, user_id=actor.user_id)
        self.recorder.log("sync", summary, level="INFO" if success else "WARN")
        return SyncResult(
            success=success,
            timestamp=timestamp,
            total_time_ms=total_time_ms,
            peb=peb,
            pib=pib,
            summary=summary,
        )

    @staticmethod
    def _summarize(peb: LegResult, pib: LegResult) -> str:
        parts = []
        for leg in (peb, pib):
            if leg.skipped:
                parts.append(f"{leg.document_type}: skipped")
            elif leg.errors:
                parts.append(f"{leg.document_type}: failed ({leg.errors[0]['message']})")
            elif leg.empty_message:
                parts.append(f"{leg.document_type}: {leg.empty_message}")
            else:
                parts.append(f"{leg.document_type}: {leg.saved}/{leg.fetched} saved")
        return "; ".join(parts)

    async def _run_leg(
        self,
        document_type: DeclarationType,
        fetch_filter: FetchFilter,
        result: LegResult,
        actor: Actor,
    ) -> None:
        started = time.perf_counter()
        try:
            await self._fetch_and_save(document_type, fetch_filter, result, actor)
        except Exception as e:
            # A leg never takes the other leg down with it
            await self.db.rollback()
            logger.exception(f"{document_type.value} sync leg failed")
            result.errors.append({
                "code": "SYNC_FAILED",
                "message": f"Unexpected error: {e}",
                "action": "Retry the sync; contact support if it persists",
                "category": ErrorCategory.CONTACT_SUPPORT.value,
            })
        finally:
            result.elapsed_ms = int((time.perf_counter() - started) * 1000)
        if result.errors:
            customs_logger.sync_leg_failed(document_type.value, result.errors[0]["message"])

    async def _fetch_and_save(
        self,
        document_type: DeclarationType,
        fetch_filter: FetchFilter,
        result: LegResult,
        actor: Actor,
    ) -> None:
        missing = fetch_filter.missing_fields()
        if missing:
            result.errors.append({
                "code": "MISSING_PARAMETERS",
                "message": f"Missing required parameters: {', '.join(missing)}",
                "action": "Fill in the mandatory filter fields",
                "category": ErrorCategory.FIX_DATA.value,
            })
            return

        try:
            response = await self.client.fetch_documents(document_type.value, asdict(fetch_filter))
        except CeisaError as e:
            mapping = map_gateway_error(e.status_code, e.portal_code, e.message)
            self._record_fetch(document_type, e.response, error=e.message)
            result.errors.append({**mapping.to_dict(), "detail": e.message, "http_status": e.status_code})
            return

        self._record_fetch(document_type, response)
        documents = response.data
        result.fetched = len(documents)
        if not documents:
            result.empty_message = EMPTY_RESULT_MESSAGE
            return

        for payload in documents:
            try:
                mapped = map_payload(document_type, payload)
            except (ValueError, TypeError) as e:
                result.errors.append({
                    "code": "INVALID_PAYLOAD",
                    "message": f"{_document_label(payload)}: {e}",
                    "action": "Check the document in the CEISA portal",
                    "category": ErrorCategory.CONTACT_SUPPORT.value,
                })
                continue
            try:
                if await self._upsert(document_type, mapped, payload, actor):
                    result.saved += 1
            except (SQLAlchemyError, AuditWriteError) as e:
                await self.db.rollback()
                logger.error(f"Failed to save {mapped['header']['nomor_aju']} from CEISA: {e}")
                result.errors.append({
                    "code": "SAVE_FAILED",
                    "message": f"{mapped['header']['nomor_aju']}: could not be saved",
                    "action": "Retry the sync; contact support if it persists",
                    "category": ErrorCategory.RETRY_LATER.value,
                })

    def _record_fetch(
        self,
        document_type: DeclarationType,
        response: Optional[GatewayResponse],
        error: Optional[str] = None,
    ) -> None:
        if response is None:
            self.recorder.log(f"fetch_{document_type.value.lower()}", error or "No response", level="ERROR")
            return
        self.recorder.record_fetch(
            document_type.value,
            endpoint=response.endpoint,
            http_status=response.http_status,
            elapsed_ms=response.elapsed_ms,
            params=response.params,
            response=response.body,
            error=error,
        )

    async def _upsert(
        self,
        document_type: DeclarationType,
        mapped: Dict[str, Any],
        payload: dict,
        actor: Actor,
    ) -> bool:
        """Create or refresh one declaration; True when something was written."""
        header = mapped["header"]
        existing = await self.declarations.get_by_nomor_aju(header["nomor_aju"])
        if existing is None:
            await self._create_from_portal(document_type, mapped, payload, actor)
            return True

        async with declaration_locks.hold(existing.id):
            declaration = await self.declarations._load(existing.id, for_update=True)
            if DeclarationType(declaration.declaration_type) != document_type:
                logger.warning(
                    f"Skipping {header['nomor_aju']}: local declaration is "
                    f"{declaration.declaration_type.value}, portal sent {document_type.value}"
                )
                return False
            changed = self._refresh(declaration, mapped, payload, actor)
            if changed:
                await self.db.commit()
            return changed

    async def _create_from_portal(
        self,
        document_type: DeclarationType,
        mapped: Dict[str, Any],
        payload: dict,
        actor: Actor,
    ) -> Declaration:
        now = datetime.now(timezone.utc)
        declaration = Declaration(
            declaration_type=document_type,
            status=mapped["status"],
            source=DeclarationSource.CEISA,
            remote_payload=payload,
            synced_at=now,
            created_by=actor.user_id,
            **mapped["header"],
        )
        declaration.items = [DeclarationItem(**item) for item in mapped["items"]]
        declaration.documents = []
        self.declarations.apply_taxes(declaration)
        self.db.add(declaration)
        await self.db.flush()

        audit_logger.record(
            self.db,
            entity_type=entity_type_for(declaration),
            entity_id=declaration.id,
            entity_number=declaration.nomor_aju,
            action=AuditAction.CREATE,
            actor=actor,
            changes=audit_logger.compute_changes(None, {
                **mapped["header"],
                "status": declaration.status,
                "items": len(declaration.items),
            }),
            note="Imported from CEISA",
        )
        await self.db.commit()
        customs_logger.declaration_created(declaration.id, document_type.value, user_id=actor.user_id)
        return declaration

    @staticmethod
    def _may_transition(current: DeclarationStatus, target: DeclarationStatus, actor: Actor) -> bool:
        transition = TRANSITIONS.get((current, target))
        return transition is not None and any(actor.can(c) for c in transition.capabilities)

    def _refresh(self, declaration: Declaration, mapped: Dict[str, Any], payload: dict, actor: Actor) -> bool:
        header = mapped["header"]
        target = mapped["status"]
        registration_fields = ("registration_number", "registration_date")

        if declaration.is_locked() or declaration.source == DeclarationSource.LOCAL:
            # Only the portal-owned fields move on a local or locked declaration
            incoming = {name: header[name] for name in registration_fields if header[name] is not None}
        else:
            incoming = dict(header)

        changes = audit_logger.compute_changes(
            {name: getattr(declaration, name) for name in incoming}, incoming
        )
        for name, value in incoming.items():
            setattr(declaration, name, value)

        replace_items = not declaration.is_locked() and declaration.source == DeclarationSource.CEISA
        if replace_items:
            before = [(i.item_number, i.hs_code, i.quantity, i.unit_price) for i in declaration.items]
            after = [(i["item_number"], i["hs_code"], i["quantity"], i["unit_price"]) for i in mapped["items"]]
            if before != after:
                declaration.items.clear()
                declaration.items.extend(DeclarationItem(**item) for item in mapped["items"])
                changes["items"] = {"old": len(before), "new": len(after)}
            self.declarations.apply_taxes(declaration)

        current = DeclarationStatus(declaration.status)
        action = AuditAction.UPDATE
        if target != current:
            if declaration.source == DeclarationSource.CEISA and not declaration.is_locked():
                changes.update(audit_logger.status_change(current, target))
                declaration.status = target
            elif self._may_transition(current, target, actor):
                changes.update(audit_logger.status_change(current, target))
                declaration.status = target
                action = TRANSITIONS[(current, target)].action
            else:
                logger.info(
                    f"Portal status {target.value} for {declaration.nomor_aju} not applicable "
                    f"from local status {current.value}; keeping local status"
                )

        if not changes:
            return False

        declaration.remote_payload = payload
        declaration.synced_at = datetime.now(timezone.utc)
        audit_logger.record(
            self.db,
            entity_type=entity_type_for(declaration),
            entity_id=declaration.id,
            entity_number=declaration.nomor_aju,
            action=action,
            actor=actor,
            changes=changes,
            note="Synchronised from CEISA",
        )
        customs_logger.declaration_updated(declaration.id, sorted(changes), user_id=actor.user_id)
        return True
