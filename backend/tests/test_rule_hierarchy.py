"""
test_rule_hierarchy.py: Unit tests for the NRM2 rule hierarchy resolver.

Tests cover:
  - Path helpers and code sanitation
  - Child resolution cascade: parent_path → path_structure → level_prefix → lenient
  - Missing-parent fallback (expected level = segment count of the parent path)
  - Level-filtered listing and plain lexicographic ordering ("1.10" < "1.2")
  - Parent resolution, child counts, auto-expand and the admin tree view
  - Insertion as child / sibling, depth limit, duplicate detection
  - Drift report

All tests are pure unit tests; no database or external services required.
"""

import logging

import pytest

from tender_app.services.errors import ConflictError, ValidationError
from tender_app.services.rule_hierarchy import (
    MODE_CHILD,
    MODE_SIBLING,
    RuleHierarchy,
    RuleNode,
    derive_parent_path,
    level_name,
    path_depth,
    sanitize_code,
    validate_level,
)

_MAX_LEVEL = 4


def _snapshot(hierarchy):
    return sorted((n.path, n.level, n.parent_path) for n in hierarchy)


# ===========================================================================
# Class 1: Helpers
# ===========================================================================

class TestPathHelpers:

    def test_depth_and_parent(self):
        assert path_depth("1.2.3") == 3
        assert path_depth("") == 0
        assert derive_parent_path("1.2.3") == "1.2"
        assert derive_parent_path("1") is None

    @pytest.mark.parametrize("raw,expected", [
        ("a", "a"),
        ("  A1 ", "A1"),
        ("a-b..c.", "ab.c"),
        (".7.", "7"),
        ("x y/z", "x.yz"),
        ("a b", "a.b"),
        ("1 \t 2", "1.2"),
        ("2 . 3", "2.3"),
    ])
    def test_sanitize_code(self, raw, expected):
        assert sanitize_code(raw) == expected

    @pytest.mark.parametrize("raw", ["", "  ", "--", "...", None])
    def test_sanitize_code_empty_rejected(self, raw):
        with pytest.raises(ValidationError):
            sanitize_code(raw)

    def test_validate_level_bounds(self):
        assert validate_level(1) == 1
        assert validate_level("4") == 4
        for bad in (0, 5, "x", 2.5, None):
            with pytest.raises(ValidationError):
                validate_level(bad)

    def test_level_names(self):
        assert level_name(1) == "Category (Level 1)"
        assert level_name(4) == "Specification (Level 4)"
        assert level_name(7) == "Rule"

    def test_path_is_always_text(self):
        """A store-native path object is coerced to its text form."""

        class NativePath:
            def __str__(self):
                return "1.2"

        node = RuleNode.from_mapping({"path": NativePath(), "level": 2, "id": 17})
        assert node.path == "1.2"
        assert isinstance(node.to_dict()["path"], str)
        assert node.id == "17"


# ===========================================================================
# Class 2: Child resolution
# ===========================================================================

class TestChildResolution:

    def test_reference_scenario_children(self, simple_hierarchy):
        """Children of "1" are ["1.1", "1.2"] in that order, confidently matched."""
        result = simple_hierarchy.children("1")
        assert result.paths == ["1.1", "1.2"]
        assert result.expected_level == 2
        assert result.strategy == "parent_path"
        assert not result.uncertain

    def test_leaf_has_no_children(self, simple_hierarchy):
        result = simple_hierarchy.children("1.1")
        assert result.children == []
        assert not result.uncertain

    def test_case_insensitive_parent_lookup(self):
        hierarchy = RuleHierarchy([
            {"path": "A", "level": 1},
            {"path": "A.1", "level": 2, "parent_path": "A"},
        ])
        result = hierarchy.children("  a ")
        assert result.paths == ["A.1"]
        assert result.parent.path == "A"

    def test_structure_match_without_parent_path(self):
        hierarchy = RuleHierarchy([
            {"path": "4", "level": 1},
            {"path": "4.1", "level": 2},
        ])
        result = hierarchy.children("4")
        assert result.paths == ["4.1"]
        assert result.matched_by == {"4.1": "path_structure"}
        assert not result.uncertain

    def test_drift_uses_level_prefix_fallback(self, drifted_hierarchy, caplog):
        """2.1.x is stored at level 2 under parent "2.1": only level+prefix accepts it under "2"."""
        with caplog.at_level(logging.WARNING, logger="tender-rules"):
            result = drifted_hierarchy.children("2")
        assert result.paths == ["2.1", "2.1.x", "2.3", "2.4", "2.B"]
        assert result.matched_by["2.1"] == "parent_path"
        assert result.matched_by["2.3"] == "path_structure"   # stale parent_path "9"
        assert result.matched_by["2.4"] == "path_structure"
        assert result.matched_by["2.B"] == "parent_path"
        assert result.matched_by["2.1.x"] == "level_prefix"
        assert result.strategy == "level_prefix"
        assert result.uncertain
        assert result.ambiguity.parent_found is True
        assert any("level_prefix" in r.getMessage() or "fallback" in r.getMessage() for r in caplog.records)

    def test_missing_parent_uses_segment_count(self, drifted_hierarchy, caplog):
        """Parent "3.9" has no row: expected child level = 2 segments."""
        with caplog.at_level(logging.WARNING, logger="tender-rules"):
            result = drifted_hierarchy.children("3.9")
        assert result.expected_level == 2
        assert result.parent is None
        assert result.children == []
        assert result.uncertain
        assert result.ambiguity.parent_found is False
        assert any("not found" in r.getMessage() for r in caplog.records)

    def test_lenient_first_segment_match(self, simple_hierarchy):
        """No rule lives under "1.7"; level-2 rules sharing first segment "1" are offered."""
        result = simple_hierarchy.children("1.7")
        assert result.paths == ["1.1", "1.2"]
        assert result.strategy == "lenient"
        assert result.uncertain
        diagnostics = result.diagnostics()
        assert diagnostics["uncertain"] is True
        assert diagnostics["ambiguity"]["strategy"] == "lenient"

    def test_resolution_never_raises_on_garbage(self, simple_hierarchy):
        result = simple_hierarchy.children("%%%")
        assert result.children == []


# ===========================================================================
# Class 3: Listing
# ===========================================================================

class TestListing:

    def test_level_one_listing(self, drifted_hierarchy):
        result = drifted_hierarchy.list_rules(level=1)
        assert result.paths == ["2", "3"]
        assert result.strategy == "level"

    def test_listing_all_ordered_by_path(self, simple_hierarchy):
        assert simple_hierarchy.list_rules().paths == ["1", "1.1", "1.2"]

    def test_lexicographic_order_is_kept(self):
        """Plain text ordering: "1.10" sorts before "1.2"."""
        hierarchy = RuleHierarchy([
            {"path": "1", "level": 1},
            {"path": "1.2", "level": 2},
            {"path": "1.10", "level": 2},
        ])
        assert hierarchy.children("1").paths == ["1.10", "1.2"]
        assert hierarchy.at_level(2)[0].path == "1.10"

    def test_listing_annotates_child_count(self, simple_hierarchy):
        result = simple_hierarchy.list_rules(level=1)
        assert result.children[0].child_count == 2
        assert not result.children[0].is_leaf
        leaves = simple_hierarchy.list_rules(parent_path="1").children
        assert all(n.child_count == 0 for n in leaves)

    def test_parent_path_takes_precedence_over_level(self, simple_hierarchy):
        result = simple_hierarchy.list_rules(parent_path="1", level=1)
        assert result.paths == ["1.1", "1.2"]


# ===========================================================================
# Class 4: Parent resolution and tree view
# ===========================================================================

class TestTreeView:

    def test_parent_by_level(self, simple_hierarchy):
        parent, how = simple_hierarchy.resolve_parent(simple_hierarchy.find("1.2"))
        assert parent.path == "1"
        assert how == "level"

    def test_top_level_has_no_parent(self, simple_hierarchy):
        assert simple_hierarchy.resolve_parent(simple_hierarchy.find("1")) == (None, "none")

    def test_parent_by_segments_when_level_unknown(self):
        hierarchy = RuleHierarchy([{"path": "5", "level": 1}, {"path": "5.1"}])
        parent, how = hierarchy.resolve_parent(hierarchy.find("5.1"))
        assert parent.path == "5"
        assert how == "segments"

    def test_parent_by_prefix(self, drifted_hierarchy):
        parent, how = drifted_hierarchy.resolve_parent(drifted_hierarchy.find("3.9.1"))
        assert parent.path == "3"
        assert how == "prefix"

    def test_parent_by_stored_parent_path(self):
        hierarchy = RuleHierarchy([{"path": "5", "level": 1}, {"path": "X9", "level": 2, "parent_path": "5"}])
        parent, how = hierarchy.resolve_parent(hierarchy.find("X9"))
        assert parent.path == "5"
        assert how == "parent_path"

    def test_child_counts(self, drifted_hierarchy):
        counts = drifted_hierarchy.child_counts()
        assert counts["2"] == 5
        assert counts["3"] == 1
        assert "7" not in counts

    def test_auto_expand_opens_every_parent(self, drifted_hierarchy):
        assert drifted_hierarchy.auto_expand_paths() == {"2", "3"}

    def test_default_tree_shows_everything(self, drifted_hierarchy):
        visible = [n.path for n in drifted_hierarchy.visible_rules()]
        assert visible == ["2", "3", "2.1", "2.1.x", "2.3", "2.4", "2.B", "7.1", "3.9.1"]

    def test_collapsed_tree_keeps_orphans_visible(self, drifted_hierarchy):
        visible = [n.path for n in drifted_hierarchy.visible_rules(expanded_paths=[])]
        assert visible == ["2", "3", "7.1"]

    def test_partially_expanded_tree(self, drifted_hierarchy):
        visible = [n.path for n in drifted_hierarchy.visible_rules(expanded_paths=["3"])]
        assert visible == ["2", "3", "7.1", "3.9.1"]

    def test_descendants_by_prefix(self, drifted_hierarchy):
        assert [n.path for n in drifted_hierarchy.descendants("2.1")] == ["2.1.x"]
        assert len(drifted_hierarchy.descendants("2")) == 5
        assert drifted_hierarchy.descendants("2.4") == []


# ===========================================================================
# Class 5: Insertion
# ===========================================================================

class TestInsertion:

    def test_reference_scenario_child(self, simple_hierarchy):
        """Child of "1.1" with code "a" → {path: "1.1.a", level: 3}."""
        node = simple_hierarchy.insert_child(simple_hierarchy.find("1.1"), "a", content="Stripping")
        assert (node.path, node.level, node.parent_path) == ("1.1.a", 3, "1.1")
        assert node.section_id == "S"
        assert simple_hierarchy.find("1.1.A") is node

    def test_reference_scenario_sibling(self, simple_hierarchy):
        """Sibling of "1.2" with code "3" → {path: "1.3", level: 2}."""
        node = simple_hierarchy.insert_sibling(simple_hierarchy.find("1.2"), "3", content="Pits")
        assert (node.path, node.level) == ("1.3", 2)

    def test_sibling_uses_stored_parent_path(self):
        hierarchy = RuleHierarchy([
            {"path": "1", "level": 1},
            {"path": "1.2", "level": 2, "parent_path": "1"},
            {"path": "1.2.5", "level": 3, "parent_path": "1.2"},
        ])
        plan = hierarchy.plan_insertion(hierarchy.find("1.2.5"), MODE_SIBLING, "7")
        assert plan.path == "1.2.7"
        assert plan.level == 3

    def test_sibling_of_top_level(self, simple_hierarchy):
        plan = simple_hierarchy.plan_insertion(simple_hierarchy.find("1"), MODE_SIBLING, "2")
        assert (plan.path, plan.level, plan.parent_path) == ("2", 1, None)

    def test_no_anchor_creates_top_level(self, simple_hierarchy):
        plan = simple_hierarchy.plan_insertion(None, MODE_CHILD, " 9 ")
        assert (plan.path, plan.level) == ("9", 1)

    def test_code_is_sanitized(self, simple_hierarchy):
        plan = simple_hierarchy.plan_insertion(simple_hierarchy.find("1.1"), MODE_CHILD, "b-2")
        assert plan.path == "1.1.b2"

    def test_empty_code_rejected(self, simple_hierarchy):
        with pytest.raises(ValidationError):
            simple_hierarchy.plan_insertion(simple_hierarchy.find("1.1"), MODE_CHILD, "---")

    def test_unknown_mode_rejected(self, simple_hierarchy):
        with pytest.raises(ValidationError):
            simple_hierarchy.plan_insertion(simple_hierarchy.find("1.1"), "cousin", "x")

    def test_depth_limit(self):
        hierarchy = RuleHierarchy([
            {"path": "1", "level": 1},
            {"path": "1.1", "level": 2},
            {"path": "1.1.1", "level": 3},
            {"path": "1.1.1.1", "level": _MAX_LEVEL},
        ])
        with pytest.raises(ValidationError) as exc:
            hierarchy.insert_child(hierarchy.find("1.1.1.1"), "1", content="Too deep")
        assert exc.value.context["level"] == _MAX_LEVEL + 1
        assert exc.value.context["path"] == "1.1.1.1.1"
        assert len(hierarchy) == 4

    def test_duplicate_is_conflict_and_state_unchanged(self, simple_hierarchy):
        before = _snapshot(simple_hierarchy)
        with pytest.raises(ConflictError) as exc:
            simple_hierarchy.insert_sibling(simple_hierarchy.find("1.1"), "2", content="Dup")
        assert exc.value.status_code == 409
        assert exc.value.context["path"] == "1.2"
        assert exc.value.context["section_id"] == "S"
        assert "sibling" in exc.value.context["suggestion"]
        assert _snapshot(simple_hierarchy) == before

    def test_duplicate_is_case_insensitive(self):
        hierarchy = RuleHierarchy([{"path": "B", "level": 1}, {"path": "B.A", "level": 2}])
        with pytest.raises(ConflictError):
            hierarchy.insert_child(hierarchy.find("b"), "a", content="Dup")

    def test_depth_mismatch_warns_but_inserts(self, simple_hierarchy, caplog):
        """A dotted code makes path depth 4 at level 3: logged, not blocked."""
        with caplog.at_level(logging.WARNING, logger="tender-rules"):
            plan = simple_hierarchy.plan_insertion(simple_hierarchy.find("1.1"), MODE_CHILD, "x.y")
        assert plan.path == "1.1.x.y"
        assert plan.level == 3
        assert not plan.depth_matches_level
        assert plan.warnings
        node = simple_hierarchy.insert(plan, content="Drifted on purpose")
        assert node.level == 3
        assert any("non-blocking" in r.getMessage() for r in caplog.records)

    def test_insert_never_rewrites_existing(self, drifted_hierarchy):
        before = _snapshot(drifted_hierarchy)
        drifted_hierarchy.insert_sibling(drifted_hierarchy.find("2.1.x"), "y", content="New")
        after = _snapshot(drifted_hierarchy)
        assert set(before) <= set(after)
        assert len(after) == len(before) + 1

    def test_insert_rechecks_uniqueness(self, simple_hierarchy):
        plan = simple_hierarchy.plan_insertion(simple_hierarchy.find("1"), MODE_CHILD, "5")
        simple_hierarchy.insert(plan, content="First")
        with pytest.raises(ConflictError):
            simple_hierarchy.insert(plan, content="Second")

    def test_explicit_plan(self, simple_hierarchy):
        plan = simple_hierarchy.plan_explicit("1.5", 2)
        assert (plan.path, plan.level, plan.parent_path) == ("1.5", 2, "1")

    @pytest.mark.parametrize("path,level", [("1/5", 2), ("1..5", 2), ("", 1), ("1.5", 0), ("1.5", 5)])
    def test_explicit_plan_rejects_bad_input(self, simple_hierarchy, path, level):
        with pytest.raises(ValidationError):
            simple_hierarchy.plan_explicit(path, level)

    def test_explicit_plan_duplicate(self, simple_hierarchy):
        with pytest.raises(ConflictError):
            simple_hierarchy.plan_explicit("1.1", 2)


# ===========================================================================
# Class 6: Drift report
# ===========================================================================

class TestDriftReport:

    def test_clean_section(self, simple_hierarchy):
        report = simple_hierarchy.drift_report()
        assert report["clean"] is True
        assert report["rule_count"] == 3

    def test_drifted_section(self, drifted_hierarchy):
        report = drifted_hierarchy.drift_report()
        assert report["clean"] is False
        assert report["level_mismatch"] == [{"path": "2.1.x", "level": 2, "depth": 3}]
        assert [e["path"] for e in report["stale_parent_path"]] == ["2.3"]
        assert report["orphans"] == ["7.1"]
        assert report["duplicates"] == []
        assert report["too_deep"] == []

    def test_duplicates_detected(self):
        hierarchy = RuleHierarchy([{"path": "C", "level": 1}, {"path": "c", "level": 1}])
        assert hierarchy.drift_report()["duplicates"] == [["C", "c"]]
