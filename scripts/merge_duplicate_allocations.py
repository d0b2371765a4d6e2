#!/usr/bin/env python3
"""
Merge Duplicate Allocations

Folds allocations that share a (fund, deal) pair into one row.

Usage:
    # List duplicates without touching anything
    python -m scripts.merge_duplicate_allocations --all --dry-run

    # Merge one pair
    python -m scripts.merge_duplicate_allocations --fund-id 1 --deal-id 7

    # Merge everything
    python -m scripts.merge_duplicate_allocations --all
"""

import argparse
import asyncio
from datetime import datetime

from scripts.common import banner, database_label, init_dependencies


async def run(args) -> int:
    banner("DUPLICATE ALLOCATION MERGE")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"Database: {database_label()}")
    print(f"Dry run: {'ON' if args.dry_run else 'OFF'}")

    print("\n🔧 Initializing dependencies...")
    db, logger_manager, engine = await init_dependencies()

    try:
        groups = await engine.find_duplicate_allocations()
        if not args.all:
            groups = [g for g in groups if g.fund_id == args.fund_id and g.deal_id == args.deal_id]

        if not groups:
            print("\n✅ No duplicate allocations found")
            return 0

        print(f"\n📊 Found {len(groups)} duplicate (fund, deal) pair(s):")
        for group in groups:
            print(f"  - fund {group.fund_id} / deal {group.deal_id}: allocations {group.allocation_ids}")

        if args.dry_run:
            print("\n⚠️  Dry run, nothing merged")
            return 0

        for group in groups:
            survivor = await engine.merge_duplicates(group.fund_id, group.deal_id)
            print(
                f"  🔀 fund {group.fund_id} / deal {group.deal_id} → allocation {survivor.id}: "
                f"amount ${survivor.amount:,.2f}, paid ${survivor.paid_amount:,.2f}, {survivor.status}"
            )
    finally:
        await db.disconnect()

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Merge allocations that share a (fund, deal) pair",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Merge policy:
  - the most recently created allocation survives
  - amounts are summed, capital calls move to the survivor
  - status and fund metrics are recomputed in the same transaction
        """
    )
    parser.add_argument('--fund-id', type=int, help='Fund of the pair to merge')
    parser.add_argument('--deal-id', type=int, help='Deal of the pair to merge')
    parser.add_argument('--all', action='store_true', help='Merge every duplicate pair')
    parser.add_argument('--dry-run', action='store_true', help='List duplicates only')
    return parser


def parse_args(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.all and (args.fund_id is None or args.deal_id is None):
        parser.error("give --fund-id and --deal-id, or --all")
    return args


def main():
    raise SystemExit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
