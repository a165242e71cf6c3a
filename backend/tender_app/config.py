"""
Taking-off configuration: single source of truth for hierarchy limits,
numeric precision, and dimension-sheet edit policy.

Import from here in services and routes rather than hardcoding values.
"""
from __future__ import annotations

from decimal import Decimal

# ── Rule hierarchy ────────────────────────────────────────────────────────────
MIN_RULE_LEVEL: int = 1
MAX_RULE_LEVEL: int = 4
PATH_DELIMITER: str = "."

LEVEL_NAMES: dict[int, str] = {
    1: "Category",
    2: "Sub-Category",
    3: "Detail",
    4: "Specification",
}


# ── Numeric precision ─────────────────────────────────────────────────────────
# Quantities are stored to 4 dp (BQ export shows #,##0.0000); money to 2 dp.
# Display rounding is 2 dp and happens only at presentation.
QUANTITY_QUANT: Decimal = Decimal("0.0001")
MONEY_QUANT: Decimal = Decimal("0.01")
DISPLAY_DECIMALS: int = 2

DEFAULT_TIMESING: Decimal = Decimal("1")
DEFAULT_WASTE_PCT: Decimal = Decimal("0")


# ── Dimension sheet edit policy ───────────────────────────────────────────────
# Toggles commit on change; typed fields wait for the debounce window.
EDIT_DEBOUNCE_MS: int = 800
IMMEDIATE_COMMIT_FIELDS: frozenset[str] = frozenset({"is_deduction"})
DEBOUNCED_FIELDS: frozenset[str] = frozenset({
    "description", "timesing", "dim_a", "dim_b", "dim_c", "waste", "sort_order",
})
DIMENSION_NUMERIC_FIELDS: tuple[str, ...] = ("timesing", "dim_a", "dim_b", "dim_c", "waste")


# ── Mean girth helper ─────────────────────────────────────────────────────────
DEFAULT_GIRTH_CORNERS: int = 4   # rectangular building
