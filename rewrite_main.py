#!/usr/bin/env python3
"""
MV Rewrite Main Script: explain the rewrite of one query against a catalog.

Run directly: python rewrite_main.py
"""

import logging
from pathlib import Path

from mv_rewrite.catalog import load_catalog
from mv_rewrite.pipeline import RewriteConfig, rewrite
from mv_rewrite.plan_builder import build_plan_with_warnings
from mv_rewrite.trace import format_explain, write_trace


# ============================================================
# Configuration - Modify these paths as needed
# ============================================================
PROJECT_ROOT = Path(__file__).parent

CONFIG = {
    "catalog": PROJECT_ROOT / "sample" / "catalog.json",  # Tables, partitions, views, row counts
    "sql_file": PROJECT_ROOT / "sample" / "query.sql",     # Query to rewrite
    "out_dir": PROJECT_ROOT / "output",                    # rewrite_trace.json goes here
    "dialect": "spark",
    "enabled": True,
    "staleness_tolerance_versions": None,  # None = strict freshness
    "candidate_limit": None,               # None = consider every MV
    "verbose": False,
}


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.DEBUG if CONFIG["verbose"] else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print("MV Rewrite: explain")
    print("=" * 60)

    catalog_path = Path(CONFIG["catalog"])
    if not catalog_path.is_file():
        print(f"Error: catalog file not found: {catalog_path}")
        return 1

    loaded = load_catalog(catalog_path, dialect=CONFIG["dialect"])
    snapshot = loaded.catalog.snapshot()
    print(f"Loaded catalog with {len(snapshot.tables)} tables and {len(snapshot.views)} views")
    for warning in loaded.warnings:
        print(f"Warning: {warning}")

    sql_path = Path(CONFIG["sql_file"])
    if not sql_path.is_file():
        print(f"Error: sql_file not found: {sql_path}")
        return 1
    sql = sql_path.read_text(encoding="utf-8")

    built = build_plan_with_warnings(sql, snapshot.tables, dialect=CONFIG["dialect"])
    for warning in built.warnings:
        print(f"Warning: {warning}")

    config = RewriteConfig(
        enabled=CONFIG["enabled"],
        staleness_tolerance_versions=CONFIG["staleness_tolerance_versions"],
        candidate_limit=CONFIG["candidate_limit"],
    )
    result = rewrite(built.plan, snapshot, config, loaded.statistics, loaded.versions)

    print()
    print(format_explain(result, dialect=CONFIG["dialect"]))

    out_path = write_trace(Path(CONFIG["out_dir"]), result, sql=sql)
    print(f"\nOutput written to {out_path}")

    print("\n" + "=" * 60)
    print("Done!")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    exit(main())
