#!/usr/bin/env python3
"""
KRX Valuation Pipeline Runner

Manual triggers for the directory refresh, fundamentals refresh and full
valuation sweep, a snapshot query, and a long-running scheduler mode.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from src.data_collector.krx_valuation.data_models import JobSummary, ValuationResult
from src.data_collector.krx_valuation.scheduler import ScheduleTrigger
from src.data_collector.krx_valuation.service import ValuationService
from src.data_collector.krx_valuation.snapshot_store import ResultSnapshotStore
from src.database.connection import check_database_health, close_global_pool
from src.utils.logger import get_logger, set_console_level, shutdown_logging

logger = get_logger(__name__)


def print_summary(summary: JobSummary) -> None:
    print("\n" + "=" * 60)
    print(f"{summary.job.upper()}: {summary.status}")
    print("=" * 60)
    print(f"   Successful: {summary.success_count}")
    print(f"   Failed: {summary.failure_count}")
    if summary.detail:
        print(f"   Detail: {summary.detail}")
    if summary.finished_at:
        elapsed = (summary.finished_at - summary.started_at).total_seconds()
        print(f"   Elapsed: {elapsed / 60:.1f} minutes")


def print_results(results: List[ValuationResult]) -> None:
    if not results:
        print("No valuation results available")
        return
    print(f"\n{'code':<8}{'name':<20}{'price':>12}{'intrinsic':>14}{'margin %':>10}")
    for r in results:
        price = f"{r.current_price:,.0f}" if r.current_price is not None else "-"
        value = f"{r.intrinsic_value:,.0f}" if r.intrinsic_value is not None else "-"
        margin = f"{r.safety_margin:.2f}" if r.safety_margin is not None else "-"
        print(f"{r.code:<8}{r.name[:18]:<20}{price:>12}{value:>14}{margin:>10}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="KRX Valuation Pipeline Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
            Examples:
            # Refresh the instrument directory from KRX
            python -m src.data_collector.krx_valuation.run_pipeline directory

            # Clear and reload the directory
            python -m src.data_collector.krx_valuation.run_pipeline directory --full-resync

            # Full valuation sweep for two instruments
            python -m src.data_collector.krx_valuation.run_pipeline sweep --codes 005930 000660

            # Top 20 instruments by safety margin from the last sweep
            python -m src.data_collector.krx_valuation.run_pipeline top -n 20
    """,
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    directory = sub.add_parser("directory", help="Refresh the instrument directory")
    directory.add_argument(
        "--full-resync", action="store_true", help="Clear and reload the instrument set"
    )

    for name, help_text in (
        ("fundamentals", "Scrape and store fundamentals"),
        ("sweep", "Run a full valuation sweep and write the snapshot"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--codes", nargs="+", help="Restrict to these instrument codes")

    top = sub.add_parser("top", help="Show top positive safety margins from the snapshot")
    top.add_argument("-n", type=int, default=None, help="Number of instruments (default: 50)")

    sub.add_parser("schedule", help="Run the recurring scheduler until interrupted")
    sub.add_parser("health", help="Check database connectivity")
    return parser


async def run_scheduler(service: ValuationService) -> None:
    trigger = ScheduleTrigger(service)
    trigger.start()
    logger.info("Scheduler running; Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        trigger.stop()


async def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function with command-line interface"""
    args = build_parser().parse_args(argv)

    if args.verbose:
        set_console_level("DEBUG")

    if args.command == "health":
        healthy = check_database_health()
        print(f"Database healthy: {healthy}")
        return 0 if healthy else 1

    if args.command == "top":
        print_results(ResultSnapshotStore().top_positive(args.n))
        return 0

    service = ValuationService()

    if args.command == "schedule":
        await run_scheduler(service)
        return 0

    if args.command == "directory":
        summary = await service.refresh_directory_now(full_resync=args.full_resync)
    elif args.command == "fundamentals":
        summary = await service.refresh_fundamentals_now(args.codes)
    else:
        summary = await service.run_full_valuation_sweep_now(args.codes)

    print_summary(summary)
    return 0 if summary.status != "failed" else 1


def cli() -> None:
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        exit_code = 130
    finally:
        close_global_pool()
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
