#!/usr/bin/env python3
"""
Rule Database Check: drift scanner for the NRM2 rule tables.

Loads every section's rules and reports bookkeeping drift (level vs path
depth, stale parent_path, orphans, duplicates, rules deeper than level 4),
plus BQ items whose stored quantity disagrees with their dimension sheet.

Usage:
    python scripts/check_database.py              # All sections
    python scripts/check_database.py --section 2  # One section by code
    python scripts/check_database.py --json       # Machine-readable output
"""

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv
from sqlalchemy import inspect, select

_BACKEND_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

load_dotenv()

from tender_app.db import AsyncSessionLocal, engine  # noqa: E402
from tender_app.models.orm_models import BQItem, DimensionSheetRow, NrmRule, NrmSection  # noqa: E402
from tender_app.api.dimension_routes import to_domain  # noqa: E402
from tender_app.api.rule_routes import rule_to_mapping  # noqa: E402
from tender_app.services.bq_engine import item_quantity  # noqa: E402
from tender_app.services.rule_hierarchy import RuleHierarchy  # noqa: E402

REQUIRED_TABLES = [
    "organizations", "users", "projects", "project_sections",
    "nrm_sections", "nrm_rules", "bill_of_quantities", "dimension_sheets",
]

# ANSI colors
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"
DIM = "\033[2m"


async def missing_tables() -> list:
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return [t for t in REQUIRED_TABLES if t not in existing]


async def load_reports(section_code: str = None) -> list:
    """One drift report per section, with level counts attached."""
    reports = []
    async with AsyncSessionLocal() as db:
        query = select(NrmSection).order_by(NrmSection.sort_order, NrmSection.code)
        if section_code:
            query = query.where(NrmSection.code == section_code)
        sections = (await db.execute(query)).scalars().all()
        for section in sections:
            rules = (await db.execute(
                select(NrmRule).where(NrmRule.section_id == section.id).order_by(NrmRule.path)
            )).scalars().all()
            hierarchy = RuleHierarchy([rule_to_mapping(r) for r in rules], section_id=section.id)
            report = hierarchy.drift_report()
            report["code"] = section.code
            report["title"] = section.title
            levels = {}
            for node in hierarchy:
                levels[node.level] = levels.get(node.level, 0) + 1
            report["levels"] = {str(k): v for k, v in sorted(levels.items(), key=lambda kv: kv[0] or 0)}
            reports.append(report)
    return reports


async def load_quantity_mismatches() -> list:
    """BQ items whose stored quantity differs from the sum of their rows."""
    mismatches = []
    async with AsyncSessionLocal() as db:
        items = (await db.execute(select(BQItem))).scalars().all()
        for item in items:
            rows = (await db.execute(
                select(DimensionSheetRow).where(DimensionSheetRow.bq_item_id == item.id)
            )).scalars().all()
            if not rows:
                continue
            expected = item_quantity([to_domain(r) for r in rows])
            if item.quantity is None or expected != item.quantity:
                mismatches.append({
                    "bq_item_id": str(item.id),
                    "stored": str(item.quantity),
                    "expected": str(expected),
                })
    return mismatches


def print_separator():
    print(f"{DIM}{'-' * 70}{RESET}")


def print_report(reports: list, mismatches: list):
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    print(f"\n{BOLD}{CYAN}+{'=' * 62}+{RESET}")
    print(f"{BOLD}{CYAN}|  RULE DATABASE CHECK{' ' * 42}|{RESET}")
    print(f"{BOLD}{CYAN}|  Scan: {now}{' ' * (55 - len(now))}|{RESET}")
    print(f"{BOLD}{CYAN}+{'=' * 62}+{RESET}")

    if not reports:
        print(f"\n{YELLOW}No NRM sections found{RESET}")

    all_clean = True
    for report in reports:
        print_separator()
        print(f"{BOLD}Section {report['code']}: {report['title']}{RESET}  ({report['rule_count']} rules)")
        print(f"  {DIM}Rules per level: {report['levels']}{RESET}")
        if report["clean"]:
            print(f"  {GREEN}[OK] No drift{RESET}")
            continue
        all_clean = False
        for entry in report["level_mismatch"]:
            print(f"  {YELLOW}!{RESET} level {entry['level']} but depth {entry['depth']}: {entry['path']}")
        for entry in report["stale_parent_path"]:
            print(f"  {YELLOW}!{RESET} parent_path {entry['parent_path']} != {entry['derived']}: {entry['path']}")
        for path in report["orphans"]:
            print(f"  {RED}x{RESET} orphan (no resolvable parent): {path}")
        for paths in report["duplicates"]:
            print(f"  {RED}x{RESET} duplicate paths: {', '.join(paths)}")
        for path in report["too_deep"]:
            print(f"  {RED}x{RESET} deeper than the maximum level: {path}")

    print_separator()
    if mismatches:
        all_clean = False
        print(f"{RED}BQ QUANTITY MISMATCHES ({len(mismatches)}):{RESET}")
        for m in mismatches[:20]:
            print(f"  {RED}x{RESET} {m['bq_item_id']}: stored {m['stored']}, rows sum to {m['expected']}")

    if all_clean:
        print(f"\n{GREEN}{BOLD}[OK] Rule tables and BQ quantities are consistent{RESET}\n")
    else:
        print(f"\n{RED}{BOLD}[FAIL] Issues detected -- see above{RESET}\n")


async def run(section_code: str = None, as_json: bool = False) -> int:
    missing = await missing_tables()
    if missing:
        print(f"{RED}Missing tables: {', '.join(missing)} (run alembic upgrade head){RESET}", file=sys.stderr)
        return 2
    reports = await load_reports(section_code)
    mismatches = await load_quantity_mismatches()
    if as_json:
        print(json.dumps({"sections": reports, "quantity_mismatches": mismatches}, indent=2, default=str))
    else:
        print_report(reports, mismatches)
    clean = all(r["clean"] for r in reports) and not mismatches
    return 0 if clean else 1


def main():
    if not os.getenv("DATABASE_URL"):
        print(f"{RED}ERROR: DATABASE_URL environment variable is not set.{RESET}", file=sys.stderr)
        sys.exit(2)

    section_code = None
    if "--section" in sys.argv:
        idx = sys.argv.index("--section")
        if idx + 1 < len(sys.argv):
            section_code = sys.argv[idx + 1]

    sys.exit(asyncio.run(run(section_code, as_json="--json" in sys.argv)))


if __name__ == "__main__":
    main()
