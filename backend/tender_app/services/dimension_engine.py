"""
DimensionEngine: dimension-sheet (taking-off) arithmetic.

Covers:
  - Per-row calculated value:
        value = timesing × (dim_a or 1) × (dim_b or 1) × (dim_c or 1) × (1 + waste/100)
  - Signed contribution (deduction rows subtract)
  - Sheet aggregation into the owning BQ item's quantity (recomputed from scratch)
  - Partial patch application with tri-state timesing (unset → 1, explicit 0 → 0)
  - Mean-girth helper: perimeter − corners × thickness

All arithmetic is Decimal. Row inputs are held at storage scale (4 dp) and
products keep full precision for summation; rounding to DISPLAY_DECIMALS
only happens in ``DimensionEngine.display``.
"""
import logging
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tender_app.config import (
    DEFAULT_GIRTH_CORNERS,
    DEFAULT_TIMESING,
    DEFAULT_WASTE_PCT,
    DIMENSION_NUMERIC_FIELDS,
    DISPLAY_DECIMALS,
    QUANTITY_QUANT,
)
from tender_app.services.errors import ValidationError

logger = logging.getLogger("tender-dimensions")

_ONE = Decimal("1")
_HUNDRED = Decimal("100")
_DISPLAY_QUANT = Decimal(1).scaleb(-DISPLAY_DECIMALS)

_PATCHABLE_FIELDS = ("description", "timesing", "dim_a", "dim_b", "dim_c", "waste", "is_deduction", "sort_order")


def to_decimal(value: Any, field_name: str = "value") -> Optional[Decimal]:
    """
    Coerce user/database input to Decimal.

    None and empty strings are "unset" and return None. Floats go through
    ``str()`` so 0.1 stays 0.1 instead of its binary expansion.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric", field=field_name, value=value)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValidationError(f"{field_name} must be numeric", field=field_name, value=value)
    else:
        raise ValidationError(f"{field_name} must be numeric", field=field_name, value=repr(value))
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", field=field_name, value=str(value))
    return result


def to_dimension(value: Any, field_name: str = "value") -> Optional[Decimal]:
    """
    Numeric row input at storage scale (4 dp, half-up), so a row recomputed
    from its persisted columns gives the same calculated value.
    """
    result = to_decimal(value, field_name)
    if result is None:
        return None
    try:
        return result.quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field_name} is too large", field=field_name, value=str(value))


@dataclass
class DimensionRow:
    """One taking-off line. ``None`` on a numeric field means "not entered"."""
    id: Optional[str] = None
    bq_item_id: Optional[str] = None
    description: str = ""
    timesing: Optional[Decimal] = None
    dim_a: Optional[Decimal] = None
    dim_b: Optional[Decimal] = None
    dim_c: Optional[Decimal] = None
    waste: Optional[Decimal] = None
    is_deduction: bool = False
    sort_order: int = 0

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "DimensionRow":
        """Build from an API payload or ORM-ish dict; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in DIMENSION_NUMERIC_FIELDS:
            if name in kwargs:
                kwargs[name] = to_dimension(kwargs[name], name)
        if kwargs.get("description") is None:
            kwargs["description"] = ""
        kwargs["is_deduction"] = bool(kwargs.get("is_deduction") or False)
        kwargs["sort_order"] = int(kwargs.get("sort_order") or 0)
        row = cls(**kwargs)
        DimensionEngine.validate_row(row)
        return row

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class SheetSummary:
    """Aggregate of one BQ item's dimension sheet."""
    total_quantity: Decimal = Decimal("0")
    gross_additions: Decimal = Decimal("0")
    gross_deductions: Decimal = Decimal("0")
    row_count: int = 0
    deduction_count: int = 0
    row_values: List[Tuple[Optional[str], Decimal]] = field(default_factory=list)

    @property
    def is_negative(self) -> bool:
        return self.total_quantity < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_quantity": str(self.total_quantity),
            "total_display": DimensionEngine.display(self.total_quantity),
            "gross_additions": str(self.gross_additions),
            "gross_deductions": str(self.gross_deductions),
            "row_count": self.row_count,
            "deduction_count": self.deduction_count,
            "is_negative": self.is_negative,
        }


class DimensionEngine:
    """Stateless taking-off calculator. Safe to share as a module singleton."""

    # ------------------------------------------------------------------
    # Row level
    # ------------------------------------------------------------------

    @staticmethod
    def validate_row(row: DimensionRow) -> None:
        """Linear dimensions must be ≥ 0. Waste may be negative (lap reduction)."""
        for name in ("dim_a", "dim_b", "dim_c"):
            value = getattr(row, name)
            if value is not None and value < 0:
                raise ValidationError(
                    f"{name} cannot be negative; use a deduction row instead",
                    field=name, value=str(value),
                )
        if row.timesing is not None and row.timesing < 0:
            raise ValidationError(
                "timesing cannot be negative; use a deduction row instead",
                field="timesing", value=str(row.timesing),
            )

    @staticmethod
    def calculated_value(row: DimensionRow) -> Decimal:
        """
        Unsigned value of one row, full precision.

        Absent dimensions are a multiplicative identity. An unset timesing
        defaults to 1; an explicit 0 disables the row.
        """
        timesing = DEFAULT_TIMESING if row.timesing is None else row.timesing
        waste = DEFAULT_WASTE_PCT if row.waste is None else row.waste
        value = timesing
        for dim in (row.dim_a, row.dim_b, row.dim_c):
            value *= _ONE if dim is None else dim
        return value * (_ONE + waste / _HUNDRED)

    @classmethod
    def signed_value(cls, row: DimensionRow) -> Decimal:
        value = cls.calculated_value(row)
        return -value if row.is_deduction else value

    @classmethod
    def stored_value(cls, row: DimensionRow) -> Decimal:
        """Value persisted in ``dimension_sheets.calculated_value`` (4 dp)."""
        return cls.calculated_value(row).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)

    # ------------------------------------------------------------------
    # Sheet level
    # ------------------------------------------------------------------

    @staticmethod
    def ordered(rows: Iterable[DimensionRow]) -> List[DimensionRow]:
        # sorted() is stable, so equal sort_order keeps insertion (created_at) order
        return sorted(rows, key=lambda r: r.sort_order)

    @classmethod
    def summarize(cls, rows: Iterable[DimensionRow]) -> SheetSummary:
        """
        Recompute the sheet from scratch:
            total = Σ (+value | −value for deductions)

        The total is never clamped; a negative running total is left visible
        so the surveyor can catch the over-deduction.
        """
        summary = SheetSummary()
        for row in cls.ordered(rows):
            value = cls.calculated_value(row)
            summary.row_count += 1
            if row.is_deduction:
                summary.deduction_count += 1
                summary.gross_deductions += value
                summary.total_quantity -= value
                summary.row_values.append((row.id, -value))
            else:
                summary.gross_additions += value
                summary.total_quantity += value
                summary.row_values.append((row.id, value))
        if summary.is_negative:
            logger.warning(
                "Dimension sheet total is negative (%s): deductions exceed additions",
                summary.total_quantity,
            )
        return summary

    @classmethod
    def aggregate_quantity(cls, rows: Iterable[DimensionRow]) -> Decimal:
        return cls.summarize(rows).total_quantity

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def new_row(bq_item_id: Optional[str], existing_count: int = 0, **overrides: Any) -> DimensionRow:
        """Defaults used when a user clicks "Add Row"."""
        data: Dict[str, Any] = {
            "bq_item_id": bq_item_id,
            "description": "",
            "timesing": DEFAULT_TIMESING,
            "dim_a": None,
            "dim_b": None,
            "dim_c": None,
            "waste": DEFAULT_WASTE_PCT,
            "is_deduction": False,
            "sort_order": existing_count + 1,
        }
        data.update(overrides)
        return DimensionRow.from_mapping(data)

    @staticmethod
    def apply_patch(row: DimensionRow, patch: Dict[str, Any]) -> Tuple[DimensionRow, List[str]]:
        """
        Merge a partial patch onto ``row``. Only keys present in the patch are
        touched (last write wins per field). Returns the new row and the names
        of fields whose value actually changed.
        """
        unknown = sorted(set(patch) - set(_PATCHABLE_FIELDS) - {"id", "bq_item_id", "calculated_value"})
        if unknown:
            raise ValidationError("Unknown dimension fields", fields=unknown)

        updates: Dict[str, Any] = {}
        for name in _PATCHABLE_FIELDS:
            if name not in patch:
                continue
            value = patch[name]
            if name in DIMENSION_NUMERIC_FIELDS:
                value = to_dimension(value, name)
            elif name == "is_deduction":
                value = bool(value)
            elif name == "sort_order":
                try:
                    value = int(value or 0)
                except (TypeError, ValueError):
                    raise ValidationError("sort_order must be an integer", field=name, value=value)
            elif name == "description":
                value = "" if value is None else str(value)
            updates[name] = value

        updated = replace(row, **updates)
        DimensionEngine.validate_row(updated)
        changed = [name for name, value in updates.items() if getattr(row, name) != value]
        return updated, changed

    # ------------------------------------------------------------------
    # Mean girth
    # ------------------------------------------------------------------

    @staticmethod
    def mean_girth(perimeter: Any, thickness: Any, corners: Any = DEFAULT_GIRTH_CORNERS) -> Optional[Decimal]:
        """
        Centre-line girth of a wall run:
            girth = external perimeter − (corners × wall thickness)

        Returns None (no result) for missing or non-numeric input.
        """
        try:
            p = to_decimal(perimeter, "perimeter")
            w = to_decimal(thickness, "thickness")
            c = to_decimal(corners, "corners")
        except ValidationError:
            return None
        if p is None or w is None or c is None:
            return None
        return p - c * w

    @classmethod
    def mean_girth_row(cls, bq_item_id: Optional[str], girth: Decimal, existing_count: int = 0) -> DimensionRow:
        """Pre-filled row offered after a mean-girth calculation."""
        return cls.new_row(
            bq_item_id,
            existing_count,
            description="Mean Girth Calculation",
            dim_a=girth,
        )

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    @staticmethod
    def display(value: Optional[Decimal]) -> str:
        if value is None:
            return f"{Decimal(0):.{DISPLAY_DECIMALS}f}"
        return str(value.quantize(_DISPLAY_QUANT, rounding=ROUND_HALF_UP))


engine = DimensionEngine()
