"""Nudge -- Command Line Entry Point.

Subcommands:

    run-reminders        Run the daily reminder batch once
    backfill-templates   Give template-less invoices the default template set

Usage::

    # From the project root:
    python -m nudge.main run-reminders

    # Preview what today's run would send, without sending:
    python -m nudge.main run-reminders --dry-run

    # Replay a specific day (UTC):
    python -m nudge.main run-reminders --date 2024-06-30

    # Backfill, with a custom config:
    python -m nudge.main --config path/to/custom.yaml backfill-templates --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date, datetime, timezone
from typing import Optional

from .config import NudgeConfig, configure_logging, get_config
from .email_sender import LogOnlyEmailSender, build_email_sender
from .errors import NudgeError
from .invoices import InvoiceService
from .reminder_scheduler import BatchResult, run_daily_reminders
from .store import DocumentStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

def _print_batch_summary(result: BatchResult) -> None:
    """Print a human-readable summary of a reminder run."""
    print()
    print("=" * 65)
    print("  Nudge -- Reminder Run Summary" + ("  [DRY RUN]" if result.dry_run else ""))
    print("=" * 65)
    print(f"  Run date            : {result.run_date}")
    print(f"  Invoices processed  : {result.processed}")
    print(f"  Reminders sent      : {result.reminders_sent}")
    print(f"  Failures            : {result.failures}")
    print(f"  Duration            : {result.duration_seconds:.1f}s")

    if result.skipped:
        print("-" * 65)
        print("  Skip Reasons:")
        for reason, count in sorted(result.skipped.items(), key=lambda x: -x[1]):
            print(f"    {reason.value:<45s}: {count}")

    if result.sent:
        print("-" * 65)
        print("  Sent:")
        for invoice_id, slot_id in result.sent:
            print(f"    {invoice_id}  {slot_id}")

    print("=" * 65)


def _parse_run_date(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    day = date.fromisoformat(raw)
    return datetime(day.year, day.month, day.day, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_run_reminders(config: NudgeConfig, args: argparse.Namespace) -> int:
    store = DocumentStore(config.database.resolved_path)
    sender = LogOnlyEmailSender() if args.dry_run else build_email_sender(config)
    result = run_daily_reminders(
        store, sender, config,
        now=_parse_run_date(args.date),
        dry_run=args.dry_run,
    )
    _print_batch_summary(result)
    return 0 if result.failures == 0 else 1


def cmd_backfill_templates(config: NudgeConfig, args: argparse.Namespace) -> int:
    store = DocumentStore(config.database.resolved_path)
    result = InvoiceService(store, config).backfill_templates(dry_run=args.dry_run)
    verb = "Would update" if args.dry_run else "Updated"
    print(f"\nScanned {result.scanned} invoices. {verb} {result.updated}.")
    for invoice_id in result.updated_ids:
        print(f"  {invoice_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nudge",
        description="Nudge - Payment reminder emails on a schedule",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m nudge.main run-reminders\n"
            "  python -m nudge.main run-reminders --dry-run --date 2024-06-30\n"
            "  python -m nudge.main backfill-templates --dry-run\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run-reminders", help="Send today's due reminders")
    run.add_argument("--dry-run", action="store_true", help="Plan only; send and record nothing")
    run.add_argument("--date", type=str, default=None, help="Run as of this UTC date (YYYY-MM-DD)")
    run.set_defaults(handler=cmd_run_reminders)

    backfill = sub.add_parser("backfill-templates", help="Add default templates where missing")
    backfill.add_argument("--dry-run", action="store_true", help="Report without writing")
    backfill.set_defaults(handler=cmd_backfill_templates)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error or failed sends).
    """
    args = build_parser().parse_args(argv)

    try:
        config = get_config(args.config)
        configure_logging(config.logging, verbose=args.verbose)
        return args.handler(config, args)
    except ValueError as exc:
        logger.error("Bad argument: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except NudgeError as exc:
        logger.error("%s", exc.message)
        print(f"\nERROR: {exc.message}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
