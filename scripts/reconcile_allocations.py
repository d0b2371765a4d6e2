#!/usr/bin/env python3
"""
Reconcile Allocations

Runs the repair sweep: recomputes allocation called/paid/status and fund
metrics from the capital calls, writing only rows that drifted.

Usage:
    # Full sweep
    python -m scripts.reconcile_allocations --all

    # Single allocation
    python -m scripts.reconcile_allocations --allocation-id 42

    # Smaller transactions on a busy database
    python -m scripts.reconcile_allocations --all --batch-size 25
"""

import argparse
import asyncio
from datetime import datetime

from scripts.common import banner, database_label, init_dependencies


async def run(args) -> int:
    """Main sweep logic. Returns the process exit code."""
    banner("ALLOCATION RECONCILIATION")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Database: {database_label()}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, engine = await init_dependencies(sweep_batch_size=args.batch_size)

    try:
        scope = args.allocation_id if args.allocation_id else 'all'
        print(f"\n🔄 Reconciling scope={scope} (batch size {engine.config.sweep_batch_size})...")
        report = await engine.reconcile(scope)
    finally:
        await db.disconnect()

    print()
    banner("REPAIR REPORT")
    print(report)

    if report.corrections:
        print(f"\n🔧 Corrections ({len(report.corrections)}):")
        for i, correction in enumerate(report.corrections[:args.show], 1):
            print(f"  {i}. {correction}")
        if len(report.corrections) > args.show:
            print(f"  ... and {len(report.corrections) - args.show} more")

    if report.anomalies:
        print(f"\n⚠️  Anomalies need a business decision (refund vs. credit):")
        for i, anomaly in enumerate(report.anomalies[:args.show], 1):
            print(f"  {i}. {anomaly}")
        print(f"  Total excess: ${report.total_overpayment:,.2f}")

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return 1 if report.has_failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Repair drift between allocations, funds and their capital calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m scripts.reconcile_allocations --all
  python -m scripts.reconcile_allocations --allocation-id 42

Running the sweep twice in a row writes nothing the second time.
        """
    )

    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--allocation-id', type=int, help='Reconcile a single allocation')
    target.add_argument('--all', action='store_true', help='Reconcile every allocation and fund')

    parser.add_argument('--batch-size', type=int, default=None, help='Allocations per transaction')
    parser.add_argument('--show', type=int, default=10, help='Corrections/anomalies to print')
    return parser


def main():
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
