#!/usr/bin/env python3
"""
Validate Allocations

Read-only integrity check of allocations, capital calls and fund metrics.

Usage:
    # Validate everything
    python -m scripts.validate_allocations

    # One allocation
    python -m scripts.validate_allocations --allocation-id 42

    # Strict validation (anomalies = errors)
    python -m scripts.validate_allocations --strict
"""

import argparse
import asyncio
from datetime import datetime

from scripts.common import banner, database_label, init_dependencies


async def run(args) -> int:
    """Main validation logic."""
    banner("ALLOCATION VALIDATION")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Database: {database_label()}")
    print(f"Strict mode: {'ON' if args.strict else 'OFF'}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, engine = await init_dependencies()

    try:
        print(f"\n🔍 Validating allocations...")
        result = await engine.validate(args.allocation_id or 'all', strict=args.strict)
    finally:
        await db.disconnect()

    print()
    banner("VALIDATION RESULTS")
    status_emoji = "✅" if result.is_valid else "❌"
    status_text = "PASSED" if result.is_valid else "FAILED"
    print(f"{status_emoji} Validation {status_text}")

    print(f"\nStatistics:")
    print(f"  - Allocations: {result.total_allocations:,}")
    print(f"  - Active capital calls: {result.total_capital_calls:,}")
    print(f"  - Funds: {result.total_funds:,}")

    print(f"\nDiscrepancies:")
    print(f"  - Status drift: {result.status_mismatches:,}")
    print(f"  - Called/paid drift: {result.amount_mismatches:,}")
    print(f"  - Calls above commitment: {result.ceiling_breaches:,}")
    print(f"  - Overpaid calls: {result.overpaid_calls:,}")
    print(f"  - Payments with unapplied excess: {result.unapplied_payments:,}")
    print(f"  - Duplicate (fund, deal) pairs: {result.duplicate_pairs:,}")
    print(f"  - Fund metric drift: {result.fund_metric_mismatches:,}")

    if result.error_messages:
        print(f"\n❌ Errors ({len(result.error_messages)}):")
        for i, msg in enumerate(result.error_messages[:10], 1):
            print(f"  {i}. {msg}")
        if len(result.error_messages) > 10:
            print(f"  ... and {len(result.error_messages) - 10} more")

    if result.warnings:
        print(f"\n⚠️  Warnings ({len(result.warnings)}):")
        for i, msg in enumerate(result.warnings[:10], 1):
            print(f"  {i}. {msg}")

    print(f"\n📋 Recommendations:")
    if result.is_valid:
        print(f"  ✅ Allocations are consistent.")
    else:
        if result.duplicate_pairs:
            print(f"     - Merge duplicates: python -m scripts.merge_duplicate_allocations --all")
        if result.status_mismatches or result.amount_mismatches or result.fund_metric_mismatches:
            print(f"     - Repair drift: python -m scripts.reconcile_allocations --all")
        if result.ceiling_breaches:
            print(f"     - Calls above commitment need manual review")

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return 0 if result.is_valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate allocation and fund figures against capital calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Validation Checks:
  - Status matches the status calculator
  - Called/paid match the active capital calls
  - Calls do not exceed the commitment
  - No call paid above its amount
  - One allocation per (fund, deal)
  - Fund metrics match their allocations
        """
    )
    parser.add_argument('--allocation-id', type=int, default=None, help='Validate a single allocation')
    parser.add_argument('--strict', action='store_true', help='Strict mode: treat anomalies as errors')
    return parser


def main():
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
