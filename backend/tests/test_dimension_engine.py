"""
test_dimension_engine.py: Unit tests for DimensionEngine.

Tests cover:
  - Per-row calculated value (timesing × dims × (1 + waste/100))
  - Tri-state timesing: unset → 1, explicit 0 → 0
  - Pure-count rows (no dimensions), negative waste, commutativity of dims
  - Sheet aggregation with deductions; negative totals are not clamped
  - Stored (4 dp) vs display (2 dp) rounding
  - Partial patch application and validation
  - Mean-girth helper and its pre-filled row

All tests are pure unit tests; no database or external services required.
"""

from decimal import Decimal
from itertools import permutations

import pytest

from tender_app.services.dimension_engine import DimensionEngine, DimensionRow, to_decimal
from tender_app.services.errors import ValidationError


# ---------------------------------------------------------------------------
# Module-level constants mirrored from config (for assertion math)
# ---------------------------------------------------------------------------
_DEFAULT_CORNERS = 4


# ===========================================================================
# Class 1: Row value
# ===========================================================================

class TestCalculatedValue:
    """value = timesing × (dim_a or 1) × (dim_b or 1) × (dim_c or 1) × (1 + waste/100)"""

    def test_full_row(self, dimension_engine, make_row):
        """2 × 3.5 × 2 × 0.5 × 1.10 = 7.7"""
        row = make_row(timesing=2, dim_a="3.5", dim_b=2, dim_c="0.5", waste=10)
        assert dimension_engine.calculated_value(row) == Decimal("7.7")

    def test_pure_count_row(self, dimension_engine, make_row):
        """No dimensions: value == timesing × (1 + waste/100)."""
        row = make_row(timesing=12, waste=5)
        assert dimension_engine.calculated_value(row) == Decimal("12") * Decimal("1.05")

    def test_absent_dimensions_are_neutral(self, dimension_engine, make_row):
        row = make_row(timesing=1, dim_a=4)
        assert dimension_engine.calculated_value(row) == Decimal("4")

    def test_unset_timesing_defaults_to_one(self, dimension_engine, make_row):
        row = make_row(dim_a=3)
        assert row.timesing is None
        assert dimension_engine.calculated_value(row) == Decimal("3")

    def test_explicit_zero_timesing_contributes_zero(self, dimension_engine, make_row):
        """An explicit 0 disables the row; it is not the same as "unset"."""
        disabled = make_row(timesing=0, dim_a=3)
        unset = make_row(dim_a=3)
        assert dimension_engine.calculated_value(disabled) == Decimal("0")
        assert dimension_engine.calculated_value(unset) == Decimal("3")

    def test_explicit_zero_dimension_is_zero(self, dimension_engine, make_row):
        row = make_row(timesing=2, dim_a=5, dim_b=0)
        assert dimension_engine.calculated_value(row) == Decimal("0")

    def test_negative_waste_reduces_value(self, dimension_engine, make_row):
        """Lap reduction: -5% on 10 m → 9.5 m."""
        row = make_row(timesing=1, dim_a=10, waste=-5)
        assert dimension_engine.calculated_value(row) == Decimal("9.5")

    def test_dimensions_commute(self, dimension_engine):
        values = ["2.25", "3.1", "0.4"]
        results = set()
        for a, b, c in permutations(values):
            row = DimensionRow.from_mapping({"timesing": 3, "dim_a": a, "dim_b": b, "dim_c": c, "waste": "7.5"})
            results.add(dimension_engine.calculated_value(row))
        assert len(results) == 1

    def test_float_input_keeps_decimal_precision(self, dimension_engine, make_row):
        """0.1 × 3 must be exactly 0.3 (no binary float drift)."""
        row = make_row(timesing=3, dim_a=0.1)
        assert dimension_engine.calculated_value(row) == Decimal("0.3")

    def test_signed_value_for_deduction(self, dimension_engine, make_row):
        row = make_row(timesing=2, dim_a=3, is_deduction=True)
        assert dimension_engine.signed_value(row) == Decimal("-6")
        assert dimension_engine.calculated_value(row) == Decimal("6")

    def test_stored_value_rounds_to_four_places(self, dimension_engine, make_row):
        """1.23456 → stored 1.2346 (half-up)."""
        row = make_row(timesing=1, dim_a="1.23456")
        assert dimension_engine.stored_value(row) == Decimal("1.2346")

    def test_inputs_held_at_storage_scale(self, make_row):
        row = make_row(dim_a="1.23456", waste="2.50005")
        assert row.dim_a == Decimal("1.2346")
        assert row.waste == Decimal("2.5001")

    def test_stored_value_survives_column_round_trip(self, dimension_engine, make_row):
        """
        1.23456 × 1.23456: inputs held as 1.2346, so the product is 1.52423716
        → 1.5242 both at write time and when recomputed from 4 dp columns.
        """
        row = make_row(timesing=1, dim_a="1.23456", dim_b="1.23456")
        stored = dimension_engine.stored_value(row)
        reloaded = DimensionRow.from_mapping(row.to_dict())
        assert stored == Decimal("1.5242")
        assert dimension_engine.stored_value(reloaded) == stored

    def test_unrelated_patch_keeps_stored_value(self, dimension_engine, make_row):
        row = make_row(timesing=1, dim_a="1.23456", dim_b="1.23456")
        before = dimension_engine.stored_value(row)
        patched, changed = dimension_engine.apply_patch(row, {"description": "Renamed"})
        assert changed == ["description"]
        assert dimension_engine.stored_value(patched) == before


# ===========================================================================
# Class 2: Validation
# ===========================================================================

class TestRowValidation:
    """Dimensions and timesing must be ≥ 0; waste may be negative."""

    @pytest.mark.parametrize("field", ["dim_a", "dim_b", "dim_c", "timesing"])
    def test_negative_rejected(self, make_row, field):
        with pytest.raises(ValidationError) as exc:
            make_row(**{field: -1})
        assert exc.value.context["field"] == field

    def test_non_numeric_rejected(self, make_row):
        with pytest.raises(ValidationError):
            make_row(dim_a="three")

    def test_boolean_is_not_numeric(self):
        with pytest.raises(ValidationError):
            to_decimal(True, "dim_a")

    def test_non_finite_rejected(self):
        with pytest.raises(ValidationError):
            to_decimal("NaN", "dim_a")

    def test_empty_string_is_unset(self):
        assert to_decimal("", "dim_a") is None
        assert to_decimal("   ", "dim_a") is None

    def test_thousands_separator_accepted(self):
        assert to_decimal("1,250.5", "dim_a") == Decimal("1250.5")

    def test_validation_error_maps_to_400(self, make_row):
        with pytest.raises(ValidationError) as exc:
            make_row(dim_a=-2)
        assert exc.value.status_code == 400
        body = exc.value.to_dict()
        assert body["type"] == "ValidationError"
        assert body["field"] == "dim_a"


# ===========================================================================
# Class 3: Aggregation
# ===========================================================================

class TestAggregation:
    """total = Σ (+value | −value for deductions), recomputed from scratch."""

    def test_reference_scenario(self, dimension_engine, make_row):
        """[2×3 addition, 1×1 deduction] → 6 − 1 = 5"""
        rows = [
            make_row(timesing=2, dim_a=3, is_deduction=False, sort_order=1),
            make_row(timesing=1, dim_a=1, is_deduction=True, sort_order=2),
        ]
        assert dimension_engine.aggregate_quantity(rows) == Decimal("5")

    def test_empty_sheet_is_zero(self, dimension_engine):
        assert dimension_engine.aggregate_quantity([]) == Decimal("0")

    def test_negative_total_is_not_clamped(self, dimension_engine, make_row):
        rows = [
            make_row(timesing=1, dim_a=2),
            make_row(timesing=1, dim_a=5, is_deduction=True),
        ]
        summary = dimension_engine.summarize(rows)
        assert summary.total_quantity == Decimal("-3")
        assert summary.is_negative
        assert summary.to_dict()["total_display"] == "-3.00"

    def test_flipping_deduction_changes_total_by_twice_value(self, dimension_engine, make_row):
        rows = [
            make_row(id="a", timesing=2, dim_a="4.5", sort_order=1),
            make_row(id="b", timesing=3, dim_a="1.2", dim_b="0.75", waste=10, sort_order=2),
        ]
        before = dimension_engine.aggregate_quantity(rows)
        flipped = [rows[0], DimensionEngine.apply_patch(rows[1], {"is_deduction": True})[0]]
        after = dimension_engine.aggregate_quantity(flipped)
        assert before - after == 2 * dimension_engine.calculated_value(rows[1])

    def test_recompute_is_idempotent(self, dimension_engine, make_row):
        rows = [make_row(timesing=7, dim_a="0.333", waste="2.5"), make_row(timesing=1, dim_a="1.01")]
        assert dimension_engine.aggregate_quantity(rows) == dimension_engine.aggregate_quantity(rows)

    def test_full_precision_kept_for_summation(self, dimension_engine, make_row):
        """Three rows of 0.005 sum to 0.015, not 3 × round(0.005, 2)."""
        rows = [make_row(timesing=1, dim_a="0.005") for _ in range(3)]
        total = dimension_engine.aggregate_quantity(rows)
        assert total == Decimal("0.015")
        assert dimension_engine.display(total) == "0.02"

    def test_summary_breakdown(self, dimension_engine, make_row):
        rows = [
            make_row(id="a", timesing=2, dim_a=3, sort_order=2),
            make_row(id="b", timesing=1, dim_a=1, is_deduction=True, sort_order=1),
        ]
        summary = dimension_engine.summarize(rows)
        assert summary.row_count == 2
        assert summary.deduction_count == 1
        assert summary.gross_additions == Decimal("6")
        assert summary.gross_deductions == Decimal("1")
        # Ordered by sort_order
        assert [rid for rid, _ in summary.row_values] == ["b", "a"]

    def test_ordered_is_stable_for_equal_sort_order(self, make_row):
        rows = [make_row(id=str(i), sort_order=1) for i in range(5)]
        assert [r.id for r in DimensionEngine.ordered(rows)] == ["0", "1", "2", "3", "4"]


# ===========================================================================
# Class 4: Display
# ===========================================================================

class TestDisplay:

    def test_half_up_rounding(self):
        assert DimensionEngine.display(Decimal("2.345")) == "2.35"
        assert DimensionEngine.display(Decimal("2.344")) == "2.34"

    def test_none_shows_zero(self):
        assert DimensionEngine.display(None) == "0.00"


# ===========================================================================
# Class 5: Row creation and patches
# ===========================================================================

class TestRowMutation:

    def test_new_row_defaults(self):
        """Add Row: timesing 1, waste 0, addition, appended after existing rows."""
        row = DimensionEngine.new_row("bq-9", existing_count=3)
        assert row.timesing == Decimal("1")
        assert row.waste == Decimal("0")
        assert row.is_deduction is False
        assert row.sort_order == 4
        assert row.bq_item_id == "bq-9"

    def test_patch_touches_only_given_fields(self, make_row):
        row = make_row(id="x", timesing=2, dim_a=3, dim_b=4, description="Wall A")
        updated, changed = DimensionEngine.apply_patch(row, {"dim_b": "5"})
        assert updated.dim_b == Decimal("5")
        assert updated.dim_a == Decimal("3")
        assert updated.description == "Wall A"
        assert changed == ["dim_b"]
        # Original untouched
        assert row.dim_b == Decimal("4")

    def test_patch_can_clear_a_dimension(self, dimension_engine, make_row):
        row = make_row(timesing=2, dim_a=3, dim_b=4)
        updated, _ = DimensionEngine.apply_patch(row, {"dim_b": None})
        assert updated.dim_b is None
        assert dimension_engine.calculated_value(updated) == Decimal("6")

    def test_patch_same_value_reports_no_change(self, make_row):
        row = make_row(timesing=2)
        _, changed = DimensionEngine.apply_patch(row, {"timesing": "2"})
        assert changed == []

    def test_patch_ignores_server_computed_value(self, make_row):
        row = make_row(timesing=2, dim_a=3)
        updated, changed = DimensionEngine.apply_patch(row, {"calculated_value": 999})
        assert changed == []
        assert updated == row

    def test_patch_unknown_field_rejected(self, make_row):
        with pytest.raises(ValidationError) as exc:
            DimensionEngine.apply_patch(make_row(), {"height": 3})
        assert exc.value.context["fields"] == ["height"]

    def test_patch_negative_dimension_rejected(self, make_row):
        with pytest.raises(ValidationError):
            DimensionEngine.apply_patch(make_row(dim_a=1), {"dim_a": "-0.5"})


# ===========================================================================
# Class 6: Mean girth
# ===========================================================================

class TestMeanGirth:
    """girth = perimeter − corners × thickness"""

    def test_rectangular_default_corners(self):
        """40 m perimeter, 0.225 m wall, 4 corners → 40 − 0.9 = 39.1"""
        assert DimensionEngine.mean_girth(40, "0.225") == Decimal("39.1")

    def test_explicit_corner_count(self):
        """L-shaped plan: 6 corners."""
        assert DimensionEngine.mean_girth("30", "0.3", 6) == Decimal("28.2")

    @pytest.mark.parametrize("perimeter,thickness", [("abc", "0.2"), (None, "0.2"), ("10", ""), ("10", None)])
    def test_bad_input_yields_no_result(self, perimeter, thickness):
        assert DimensionEngine.mean_girth(perimeter, thickness) is None

    def test_prefilled_row(self, dimension_engine):
        girth = DimensionEngine.mean_girth(40, "0.225", _DEFAULT_CORNERS)
        row = DimensionEngine.mean_girth_row("bq-1", girth, existing_count=2)
        assert row.description == "Mean Girth Calculation"
        assert row.dim_a == Decimal("39.1")
        assert row.sort_order == 3
        assert dimension_engine.calculated_value(row) == Decimal("39.1")

    def test_negative_girth_cannot_become_a_row(self):
        girth = DimensionEngine.mean_girth(1, 1, 4)
        assert girth == Decimal("-3")
        with pytest.raises(ValidationError):
            DimensionEngine.mean_girth_row("bq-1", girth)
