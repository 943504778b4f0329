#!/usr/bin/env python3
"""
usageledger - usage statistics integrity pipeline

Turns raw app foreground sessions into hourly/daily/weekly/monthly
per-category totals, and validates, repairs and migrates them.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from .config import DEFAULT_CONFIG, load_config
from .ingest import parse_records
from .pipeline import UsagePipeline
from .validator import format_duration

log = logging.getLogger("usageledger")


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )


def build_pipeline(args) -> UsagePipeline:
    try:
        config = load_config(args.config)
    except (ValueError, OSError) as e:
        print(f"Error: invalid config {args.config}: {e}", file=sys.stderr)
        sys.exit(2)
    if args.db:
        config.db_path = args.db
    log.debug(f"Using database {config.db_path}")
    return UsagePipeline(config)


def cmd_ingest(args):
    """Ingest a JSON / JSON-lines file of sessions."""
    path = Path(args.file)
    if not path.exists():
        print(f"Error: {path} not found", file=sys.stderr)
        sys.exit(1)
    try:
        records = parse_records(path.read_text())
    except json.JSONDecodeError as e:
        print(f"Error: cannot parse {path}: {e}", file=sys.stderr)
        sys.exit(1)

    pipeline = build_pipeline(args)
    stats = pipeline.ingest(records, aggregate=not args.no_aggregate)

    print(f"Stored:    {stats.stored}")
    print(f"Excluded:  {stats.excluded}")
    print(f"Noise:     {stats.noise}")
    print(f"Duplicate: {stats.duplicate}")
    print(f"Rejected:  {stats.rejected}")
    if stats.dates:
        print(f"Dates:     {', '.join(sorted(stats.dates))}")


def cmd_aggregate(args):
    pipeline = build_pipeline(args)
    stats = pipeline.run_aggregation(args.date)
    if stats['pruned']:
        print(f"{args.date}: sessions removed by retention, summaries left as stored")
        return
    names = {c.id: c.name for c in pipeline.db.get_categories()}

    print(f"Aggregated {args.date}: {stats['sessions']} sessions, "
          f"{stats['timer_sessions']} timer sessions, {stats['excluded']} excluded")
    for category_id, total in stats['daily'].items():
        print(f"  {names.get(category_id, category_id)!s:<15} {format_duration(total)}")


def cmd_validate(args):
    pipeline = build_pipeline(args)
    reports = pipeline.run_validation(args.date)
    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        print(pipeline.validator.quality_report(args.date, reports))
    if not all(r.is_consistent for r in reports):
        sys.exit(1)


def cmd_repair(args):
    pipeline = build_pipeline(args)
    result = pipeline.run_repair(args.date)

    if not result.actions:
        print("Nothing to repair.")
        return
    for action in result.actions:
        print(f"  {action.action:<17} {action.package_name} (session {action.session_id}): "
              f"{action.before_sec}s -> {action.after_sec}s")
    print(f"\n{result.total} action(s); re-aggregated {', '.join(sorted(result.dates))}")


def cmd_migrate(args):
    pipeline = build_pipeline(args)

    if args.report:
        report = pipeline.migration_report()
        print("Categories:")
        for category_id, name in sorted(report.category_names.items()):
            print(f"  {category_id}: {name}")
        print("\nRows by category id:")
        for table, counts in report.rows_by_category.items():
            dist = ', '.join(f"{k}={v}" for k, v in sorted(counts.items())) or "empty"
            print(f"  {table:<16} {dist}")
        if report.invalid_category_ids:
            print(f"\nUnknown category ids: {report.invalid_category_ids}")
        return

    if args.check:
        needed = pipeline.needs_migration()
        print("Migration needed." if needed else "No migration needed.")
        sys.exit(1 if needed else 0)

    result = pipeline.run_migration()
    for table, count in result.per_table_migrated.items():
        print(f"  {table}: {count} rows")
    print(f"\nState: {result.state.value}, {result.total_migrated} rows migrated")
    if not result.success:
        print(f"Error: {result.error_message}", file=sys.stderr)
        sys.exit(1)


def cmd_classify(args):
    pipeline = build_pipeline(args)
    info = pipeline.classify(args.package)
    for key, value in info.items():
        print(f"  {key:<24} {value}")


def cmd_categories(args):
    pipeline = build_pipeline(args)
    for category in pipeline.db.get_categories():
        print(f"  {category.id:>3}  {category.name:<15} (order {category.display_order})")


def cmd_maintenance(args):
    """Run database maintenance."""
    pipeline = build_pipeline(args)

    print("Running maintenance...")
    result = pipeline.db.maintenance(
        sessions_days=args.sessions_days,
        buckets_days=args.buckets_days
    )

    print(f"\nBefore:")
    print(f"  Size: {result['before']['file_size_mb']:.2f} MB")
    print(f"  Sessions: {result['before']['raw_sessions_count']}")

    print(f"\nDeleted:")
    pruned = result['deleted'].pop('pruned_dates', 0)
    for table, count in result['deleted'].items():
        print(f"  {table}: {count} rows")
    if pruned:
        print(f"  ({pruned} dates now served from stored summaries only)")

    print(f"\nAfter:")
    print(f"  Size: {result['after']['file_size_mb']:.2f} MB")
    print(f"  Sessions: {result['after']['raw_sessions_count']}")


def main(argv=None):
    examples = """
Examples:
  # Load sessions exported from a device and aggregate the dates they touch
  usageledger ingest sessions.jsonl

  # Rebuild aggregates for one day
  usageledger aggregate 2024-03-11

  # Check summaries against session detail
  usageledger validate 2024-03-11
  usageledger validate 2024-03-11 --json

  # Remove duplicates and fix suspicious sessions, then re-aggregate
  usageledger repair 2024-03-11

  # Category id migration
  usageledger migrate --check
  usageledger migrate --report
  usageledger migrate

  # How is a package classified?
  usageledger classify com.tencent.mm
"""
    parser = argparse.ArgumentParser(
        prog="usageledger",
        description="Usage statistics integrity pipeline",
        epilog=examples,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--db", help="Path to database (overrides config)")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG, help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest session records")
    ingest_parser.add_argument("file", help="JSON array or JSON-lines file")
    ingest_parser.add_argument("--no-aggregate", action="store_true",
                               help="Store sessions without re-aggregating")

    agg_parser = subparsers.add_parser("aggregate", help="Rebuild aggregates for a date")
    agg_parser.add_argument("date", help="Date (YYYY-MM-DD)")

    val_parser = subparsers.add_parser("validate", help="Validate a date")
    val_parser.add_argument("date", help="Date (YYYY-MM-DD)")
    val_parser.add_argument("--json", action="store_true", help="Print reports as JSON")

    rep_parser = subparsers.add_parser("repair", help="Repair flagged sessions of a date")
    rep_parser.add_argument("date", help="Date (YYYY-MM-DD)")

    mig_parser = subparsers.add_parser("migrate", help="Migrate stale category ids")
    mig_group = mig_parser.add_mutually_exclusive_group()
    mig_group.add_argument("--check", action="store_true", help="Only report whether needed")
    mig_group.add_argument("--report", action="store_true", help="Show category id distribution")

    cls_parser = subparsers.add_parser("classify", help="Show how a package is classified")
    cls_parser.add_argument("package", help="Package name")

    cat_parser = subparsers.add_parser("categories", help="Manage categories")
    cat_sub = cat_parser.add_subparsers(dest="action")
    cat_sub.add_parser("list", help="List categories")

    maint_parser = subparsers.add_parser("maintenance", help="Run database maintenance")
    maint_parser.add_argument("--sessions-days", type=int, default=90,
                              help="Keep sessions for this many days")
    maint_parser.add_argument("--buckets-days", type=int, default=365,
                              help="Keep hourly buckets for this many days")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "ingest":
        cmd_ingest(args)
    elif args.command == "aggregate":
        cmd_aggregate(args)
    elif args.command == "validate":
        cmd_validate(args)
    elif args.command == "repair":
        cmd_repair(args)
    elif args.command == "migrate":
        cmd_migrate(args)
    elif args.command == "classify":
        cmd_classify(args)
    elif args.command == "categories":
        if args.action:
            cmd_categories(args)
        else:
            cat_parser.print_help()
    elif args.command == "maintenance":
        cmd_maintenance(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
