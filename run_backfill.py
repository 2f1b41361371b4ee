#!/usr/bin/env python3
"""
Rebuild runs from the click log, or reconcile monthly run totals.

Run:  python run_backfill.py [--dry-run] [--batch-size N] [--skip-backup] [--user-id ID ...]
      python run_backfill.py --reconcile [YYYY-MM] [--repair] [--user-id ID ...]

Exit codes:
  0 - Done, no failures
  1 - Some users failed or invariant violations were found
  2 - Fatal error (database connection, bad arguments)
"""
import argparse
import logging
import sys

from app.application.reconciliation import ReconciliationService
from app.application.run_backfill import BackfillOptions, RunBackfillService
from app.application.runs import RunValidationError
from app.infrastructure.db.session import Database

logger = logging.getLogger("run_backfill")


def _print_summary(title: str, summary: dict) -> None:
    print(f"\n{'=' * 50}")
    print(title)
    for key, value in summary.items():
        if key == "errors" and isinstance(value, list):
            print(f"{key + ':':<22}{len(value)}")
            for item in value:
                print(f"    user {item['user_id']}: {item['error']}")
        else:
            print(f"{key + ':':<22}{value}")
    print(f"{'=' * 50}")


def run_backfill(args, database: Database) -> int:
    service = RunBackfillService(database.session_factory)
    summary = service.backfill(BackfillOptions(
        dry_run=args.dry_run,
        batch_size=args.batch_size,
        skip_backup=args.skip_backup,
        user_ids=args.user_id,
    ))
    _print_summary("[DRY RUN] Backfill preview" if args.dry_run else "Backfill", summary)
    if summary["failed_users"] or summary["invariant_violations"]:
        return 1
    return 0


def run_reconcile(args, database: Database) -> int:
    service = ReconciliationService(database.session_factory)
    summary = service.bulk_reconciliation(
        user_ids=args.user_id,
        ym=args.reconcile or None,
        repair=args.repair,
        batch_size=args.batch_size,
    )
    _print_summary("Reconciliation", summary)
    if summary["failed_user_ids"] or summary["mismatches"] or summary["errors"]:
        return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run rebuild / totals reconciliation")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    parser.add_argument("--batch-size", type=int, default=None, help="Users per batch")
    parser.add_argument("--skip-backup", action="store_true", help="Do not snapshot runs before rebuild")
    parser.add_argument("--user-id", type=int, action="append", help="Limit to user (repeatable)")
    parser.add_argument(
        "--reconcile",
        nargs="?",
        const="",
        default=None,
        metavar="YYYY-MM",
        help="Reconcile monthly totals instead of rebuilding (default: current month)",
    )
    parser.add_argument("--repair", action="store_true", help="With --reconcile: rewrite drifted totals")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.batch_size is not None and args.batch_size < 1:
        print("ERROR: --batch-size must be positive")
        return 2

    database = Database.from_settings()
    try:
        try:
            database.check_connection()
        except Exception as e:
            print(f"ERROR: database connection failed: {e}")
            return 2

        try:
            if args.reconcile is not None:
                return run_reconcile(args, database)
            return run_backfill(args, database)
        except RunValidationError as e:
            print(f"ERROR: {e}")
            return 2
    finally:
        database.dispose()


if __name__ == "__main__":
    sys.exit(main())
