"""
CLI entry point: explain how a query would be rewritten against a catalog.

    python -m mv_rewrite.cli --catalog catalog.json --sql "SELECT ..."

--bump / --refresh simulate committed mutations and MV refreshes before
the rewrite runs, in that order.
"""

import argparse
import logging
import sys
from pathlib import Path

from mv_rewrite.catalog import load_catalog
from mv_rewrite.errors import InvariantViolationError, PlanBuildError
from mv_rewrite.pipeline import RewriteConfig, rewrite
from mv_rewrite.plan_builder import build_plan_with_warnings
from mv_rewrite.trace import format_explain, write_trace


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="mv_rewrite",
        description="Materialized-view query rewrite: explain the rewrite of one query",
    )

    parser.add_argument(
        "--catalog",
        type=Path,
        required=True,
        help="Path to catalog JSON (tables, partitions, views, row counts)",
    )
    query = parser.add_mutually_exclusive_group(required=True)
    query.add_argument(
        "--sql",
        type=str,
        help="Query text",
    )
    query.add_argument(
        "--sql_file",
        type=Path,
        help="File containing the query",
    )
    parser.add_argument(
        "--dialect",
        type=str,
        default="spark",
        help="SQL dialect understood by sqlglot (default: spark)",
    )
    parser.add_argument(
        "--staleness_tolerance",
        type=int,
        default=None,
        help="Accepted version lag per partition (default: strict freshness)",
    )
    parser.add_argument(
        "--candidate_limit",
        type=int,
        default=None,
        help="Maximum number of MVs considered (default: all)",
    )
    parser.add_argument(
        "--disable",
        action="store_true",
        help="Disable rewriting (the query is returned unchanged)",
    )
    parser.add_argument(
        "--bump",
        action="append",
        default=[],
        metavar="TABLE.PARTITION",
        help="Record a committed mutation of a partition before rewriting (repeatable)",
    )
    parser.add_argument(
        "--refresh",
        action="append",
        default=[],
        metavar="MV",
        help="Refresh an MV after the bumps (repeatable)",
    )
    parser.add_argument(
        "--out_dir",
        type=Path,
        default=None,
        help="Write rewrite_trace.json to this directory",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log per-stage verdicts",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.catalog.is_file():
        print(f"Error: catalog file does not exist: {args.catalog}", file=sys.stderr)
        return 1
    if args.sql_file is not None and not args.sql_file.is_file():
        print(f"Error: sql_file does not exist: {args.sql_file}", file=sys.stderr)
        return 1

    try:
        loaded = load_catalog(args.catalog, dialect=args.dialect)
    except ValueError as e:
        print(f"Error: invalid catalog: {e}", file=sys.stderr)
        return 1
    for warning in loaded.warnings:
        print(f"Warning: {warning}")

    catalog = loaded.catalog
    snapshot = catalog.snapshot()
    print(f"Loaded catalog with {len(snapshot.tables)} tables and {len(snapshot.views)} views")

    for partition_id in args.bump:
        version = loaded.versions.bump(partition_id.lower())
        print(f"Bumped {partition_id} to version {version}")
    for mv_name in args.refresh:
        if mv_name.lower() not in catalog.snapshot().views:
            print(f"Error: unknown MV: {mv_name}", file=sys.stderr)
            return 1
        catalog.refresh_view(mv_name)
        print(f"Refreshed {mv_name}")

    sql = args.sql if args.sql is not None else args.sql_file.read_text(encoding="utf-8")
    snapshot = catalog.snapshot()
    try:
        built = build_plan_with_warnings(sql, snapshot.tables, dialect=args.dialect)
    except PlanBuildError as e:
        print(f"Error: cannot build query plan: {e}", file=sys.stderr)
        return 1
    for warning in built.warnings:
        print(f"Warning: {warning}")

    config = RewriteConfig(
        enabled=not args.disable,
        staleness_tolerance_versions=args.staleness_tolerance,
        candidate_limit=args.candidate_limit,
    )
    try:
        result = rewrite(built.plan, snapshot, config, loaded.statistics, loaded.versions)
    except InvariantViolationError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 2

    print()
    print(format_explain(result, dialect=args.dialect))

    if args.out_dir is not None:
        out_path = write_trace(args.out_dir, result, sql=sql)
        print()
        print(f"Wrote {out_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
