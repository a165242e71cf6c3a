"""
conftest.py: Shared pytest fixtures for the tender backend test suite.

No database or external service fixtures are defined here.  All tests in this
suite are pure unit tests that exercise the taking-off core in isolation.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``tender_app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any tender_app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# DimensionEngine fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def dimension_engine():
    """DimensionEngine is stateless; one instance serves the whole session."""
    from tender_app.services.dimension_engine import DimensionEngine
    return DimensionEngine()


@pytest.fixture
def make_row():
    """Factory for DimensionRow with keyword overrides (validated)."""
    from tender_app.services.dimension_engine import DimensionRow

    def _make(**kwargs):
        kwargs.setdefault("bq_item_id", "bq-1")
        return DimensionRow.from_mapping(kwargs)

    return _make


# ---------------------------------------------------------------------------
# Rule hierarchy fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def simple_section_rules():
    """
    Minimal consistent section:
        1 (L1)
        ├── 1.1 (L2)
        └── 1.2 (L2)
    """
    return [
        {"id": "r1", "section_id": "S", "path": "1", "level": 1, "content": "Excavation"},
        {"id": "r2", "section_id": "S", "path": "1.1", "level": 2, "parent_path": "1", "content": "Topsoil"},
        {"id": "r3", "section_id": "S", "path": "1.2", "level": 2, "parent_path": "1", "content": "Trenches"},
    ]


@pytest.fixture
def simple_hierarchy(simple_section_rules):
    from tender_app.services.rule_hierarchy import RuleHierarchy
    return RuleHierarchy(simple_section_rules, section_id="S")


@pytest.fixture
def drifted_section_rules():
    """
    Section with legacy bookkeeping problems:
      - 2.1.x stored with level 2 (depth 3) after an ad-hoc sibling insert
      - 2.3 has a stale parent_path
      - 2.4 has no parent_path at all
      - 3.9.1 has no level-2 parent row (resolved by prefix to "3")
      - 7.1 has no parent row at all (orphan)
      - mixed-case path "2.B"
    """
    return [
        {"id": "a", "section_id": "D", "path": "2", "level": 1, "content": "Concrete"},
        {"id": "b", "section_id": "D", "path": "2.1", "level": 2, "parent_path": "2", "content": "Foundations"},
        {"id": "c", "section_id": "D", "path": "2.1.x", "level": 2, "parent_path": "2.1", "content": "Drifted"},
        {"id": "d", "section_id": "D", "path": "2.3", "level": 2, "parent_path": "9", "content": "Stale parent"},
        {"id": "e", "section_id": "D", "path": "2.4", "level": 2, "content": "No parent path"},
        {"id": "f", "section_id": "D", "path": "2.B", "level": 2, "parent_path": "2", "content": "Mixed case"},
        {"id": "g", "section_id": "D", "path": "3", "level": 1, "content": "Masonry"},
        {"id": "h", "section_id": "D", "path": "3.9.1", "level": 3, "content": "Deep without level-2 row"},
        {"id": "i", "section_id": "D", "path": "7.1", "level": 2, "content": "Orphan"},
    ]


@pytest.fixture
def drifted_hierarchy(drifted_section_rules):
    from tender_app.services.rule_hierarchy import RuleHierarchy
    return RuleHierarchy(drifted_section_rules, section_id="D")


# ---------------------------------------------------------------------------
# Sheet edit session clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced millisecond clock for debounce tests."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()
