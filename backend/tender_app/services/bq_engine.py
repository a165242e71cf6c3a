"""
BQ Engine: Bill-of-Quantities item money and section roll-ups.

  quantity = signed dimension-sheet total when the item has rows,
             otherwise the directly entered scalar
  amount   = quantity × rate (2 dp), None when no rate

Negative quantities/amounts are kept as-is (they come from deductions) and are
tallied separately in summaries so reports can flag them.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from tender_app.config import MONEY_QUANT, QUANTITY_QUANT
from tender_app.services.dimension_engine import DimensionEngine, DimensionRow, to_decimal
from tender_app.services.errors import ValidationError

logger = logging.getLogger("tender-bq")

UNSECTIONED = "unsectioned"


def normalize_unit(unit: Any) -> str:
    text = str(unit).strip() if unit is not None else ""
    if not text:
        raise ValidationError(
            "Unit is required. Please ensure the selected NRM2 rule has a unit.",
            field="unit",
        )
    return text


def normalize_rate(rate: Any) -> Optional[Decimal]:
    """Empty and zero rates are stored as "no rate" (NULL)."""
    value = to_decimal(rate, "rate")
    if value is None or value == 0:
        return None
    return value


def item_quantity(rows: Iterable[DimensionRow], direct_quantity: Any = None) -> Decimal:
    rows = list(rows)
    if rows:
        return DimensionEngine.aggregate_quantity(rows).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)
    value = to_decimal(direct_quantity, "quantity")
    return Decimal("0") if value is None else value.quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def compute_amount(quantity: Any, rate: Any) -> Optional[Decimal]:
    q = to_decimal(quantity, "quantity")
    r = to_decimal(rate, "rate")
    if q is None or r is None:
        return None
    return (q * r).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


@dataclass
class BQTotals:
    quantity: Decimal
    amount: Optional[Decimal]
    from_dimensions: bool


def recompute_item(rows: Iterable[DimensionRow], rate: Any, direct_quantity: Any = None) -> BQTotals:
    rows = list(rows)
    quantity = item_quantity(rows, direct_quantity)
    return BQTotals(quantity=quantity, amount=compute_amount(quantity, rate), from_dimensions=bool(rows))


@dataclass
class SectionSummary:
    section_id: Optional[str]
    name: str = ""
    code: str = ""
    sort_order: int = 0
    item_count: int = 0
    total: Decimal = Decimal("0")
    negative_items: int = 0
    unpriced_items: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "section_id": self.section_id,
            "name": self.name,
            "code": self.code,
            "sort_order": self.sort_order,
            "item_count": self.item_count,
            "total": str(self.total),
            "negative_items": self.negative_items,
            "unpriced_items": self.unpriced_items,
        }


@dataclass
class ProjectSummary:
    sections: List[SectionSummary] = field(default_factory=list)
    unsectioned: SectionSummary = field(default_factory=lambda: SectionSummary(section_id=None, name=UNSECTIONED))

    @property
    def grand_total(self) -> Decimal:
        return sum((s.total for s in self.sections), Decimal("0")) + self.unsectioned.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summaries": [s.to_dict() for s in self.sections],
            "unsectioned": {
                "item_count": self.unsectioned.item_count,
                "total": str(self.unsectioned.total),
                "negative_items": self.unsectioned.negative_items,
            },
            "grand_total": str(self.grand_total),
        }


def summarize_sections(sections: Iterable[Dict[str, Any]], items: Iterable[Dict[str, Any]]) -> ProjectSummary:
    """
    Roll BQ item amounts up per project section.

    ``sections``: dicts with id, name, code, sort_order.
    ``items``: dicts with section_id and amount (None = unpriced).
    Items pointing at an unknown section are counted as unsectioned.
    """
    summary = ProjectSummary()
    by_id: Dict[str, SectionSummary] = {}
    for s in sorted(sections, key=lambda s: s.get("sort_order") or 0):
        entry = SectionSummary(
            section_id=str(s["id"]),
            name=s.get("name") or "",
            code=s.get("code") or "",
            sort_order=s.get("sort_order") or 0,
        )
        summary.sections.append(entry)
        by_id[entry.section_id] = entry

    for item in items:
        section_id = item.get("section_id")
        bucket = by_id.get(str(section_id)) if section_id else None
        if bucket is None:
            if section_id:
                logger.warning("BQ item %s references unknown section %s", item.get("id"), section_id)
            bucket = summary.unsectioned
        amount = to_decimal(item.get("amount"), "amount")
        bucket.item_count += 1
        if amount is None:
            bucket.unpriced_items += 1
            continue
        bucket.total += amount
        if amount < 0:
            bucket.negative_items += 1
    return summary
