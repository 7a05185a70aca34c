"""
Duty and Tax Calculator

Import duties (BM) and taxes (PPN, PPh) for PIB declarations.

Per item:
    CIF_idr = (item value + freight share + insurance share) * exchange rate
    BM      = CIF_idr * bm_rate
    PPN     = (CIF_idr + BM) * ppn_rate
    PPh     = (CIF_idr + BM) * pph_rate
    total   = BM + PPN + PPh

Header freight and insurance are split across items in proportion to each
item's share of total goods value. All arithmetic uses Decimal at full
precision; only the per-item figures that are reported are rounded, and the
item total is rounded from the unrounded sum. Header totals are plain sums of
the rounded item figures and are never recomputed independently.

The rounded BM, PPN and PPh amounts are informational. They are rounded one
by one, so their sum can differ from the item total by up to one minor unit
per component; total_tax is the amount payable. For CIF_idr 10 at BM 5%,
PPN 11% and PPh 7.5% each component reports 1 while the total is 2.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from customs.core.config import settings


ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _quantum(precision: int) -> Decimal:
    return Decimal(1).scaleb(-precision)


def round_local(amount: Decimal, precision: Optional[int] = None) -> Decimal:
    """Round to the local currency minor unit (ROUND_HALF_UP)."""
    if precision is None:
        precision = settings.LOCAL_CURRENCY_PRECISION
    return amount.quantize(_quantum(precision), rounding=ROUND_HALF_UP)


def pph_rate_for(has_api: bool) -> Decimal:
    """PPh rate in percent: the lower tier for importers holding an API number."""
    if has_api:
        return Decimal(settings.PPH_RATE_WITH_API)
    return Decimal(settings.PPH_RATE_WITHOUT_API)


def distribute_proportionally(
    item_values: Sequence[Decimal],
    header_amount: Decimal,
) -> List[Decimal]:
    """
    Split a header amount across items by their share of total value.

    Shares are returned at full precision. A zero total yields zero shares.
    """
    values = [Decimal(v) for v in item_values]
    header_amount = Decimal(header_amount)
    total = sum(values, ZERO)
    if total == ZERO:
        return [ZERO for _ in values]
    return [(value / total) * header_amount for value in values]


@dataclass(frozen=True)
class ItemTaxInput:
    """Financial inputs of one goods line."""
    item_value: Decimal
    bm_rate: Decimal = ZERO
    ppn_rate: Decimal = Decimal("11")


@dataclass
class ItemTaxBreakdown:
    freight_share: Decimal
    insurance_share: Decimal
    cif_value: Decimal
    cif_idr: Decimal
    bm_rate: Decimal
    ppn_rate: Decimal
    pph_rate: Decimal
    bm_amount: Decimal
    ppn_amount: Decimal
    pph_amount: Decimal
    total_tax: Decimal


@dataclass
class DeclarationTaxBreakdown:
    items: List[ItemTaxBreakdown] = field(default_factory=list)
    total_cif_value: Decimal = ZERO
    total_cif_idr: Decimal = ZERO
    total_bm: Decimal = ZERO
    total_ppn: Decimal = ZERO
    total_pph: Decimal = ZERO
    total_tax: Decimal = ZERO


def compute_item(
    item_value: Decimal,
    exchange_rate: Decimal,
    bm_rate: Decimal,
    ppn_rate: Decimal,
    pph_rate: Decimal,
    freight_share: Decimal = ZERO,
    insurance_share: Decimal = ZERO,
    precision: Optional[int] = None,
) -> ItemTaxBreakdown:
    """
    Compute BM, PPN and PPh for one item. Rates are in percent.

    Intermediate values stay unrounded; the item total is rounded once from
    the exact sum of the three components.
    """
    cif_value = Decimal(item_value) + Decimal(freight_share) + Decimal(insurance_share)
    cif_idr = cif_value * Decimal(exchange_rate)

    bm = cif_idr * Decimal(bm_rate) / HUNDRED
    import_value = cif_idr + bm
    ppn = import_value * Decimal(ppn_rate) / HUNDRED
    pph = import_value * Decimal(pph_rate) / HUNDRED

    return ItemTaxBreakdown(
        freight_share=round_local(Decimal(freight_share), 2),
        insurance_share=round_local(Decimal(insurance_share), 2),
        cif_value=round_local(cif_value, 2),
        cif_idr=round_local(cif_idr, precision),
        bm_rate=Decimal(bm_rate),
        ppn_rate=Decimal(ppn_rate),
        pph_rate=Decimal(pph_rate),
        bm_amount=round_local(bm, precision),
        ppn_amount=round_local(ppn, precision),
        pph_amount=round_local(pph, precision),
        total_tax=round_local(bm + ppn + pph, precision),
    )


def compute_declaration(
    items: Sequence[ItemTaxInput],
    exchange_rate: Decimal,
    freight_value: Decimal = ZERO,
    insurance_value: Decimal = ZERO,
    has_api: bool = False,
    precision: Optional[int] = None,
) -> DeclarationTaxBreakdown:
    """
    Compute every item and aggregate.

    Header totals are the sums of the item figures.
    """
    values = [Decimal(i.item_value) for i in items]
    freight_shares = distribute_proportionally(values, Decimal(freight_value))
    insurance_shares = distribute_proportionally(values, Decimal(insurance_value))
    pph_rate = pph_rate_for(has_api)

    breakdown = DeclarationTaxBreakdown()
    for item, freight, insurance in zip(items, freight_shares, insurance_shares):
        breakdown.items.append(compute_item(
            item_value=item.item_value,
            exchange_rate=exchange_rate,
            bm_rate=item.bm_rate,
            ppn_rate=item.ppn_rate,
            pph_rate=pph_rate,
            freight_share=freight,
            insurance_share=insurance,
            precision=precision,
        ))

    breakdown.total_cif_value = sum((i.cif_value for i in breakdown.items), ZERO)
    breakdown.total_cif_idr = sum((i.cif_idr for i in breakdown.items), ZERO)
    breakdown.total_bm = sum((i.bm_amount for i in breakdown.items), ZERO)
    breakdown.total_ppn = sum((i.ppn_amount for i in breakdown.items), ZERO)
    breakdown.total_pph = sum((i.pph_amount for i in breakdown.items), ZERO)
    breakdown.total_tax = sum((i.total_tax for i in breakdown.items), ZERO)
    return breakdown
