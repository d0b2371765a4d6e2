#!/usr/bin/env python3
"""
Mark Overdue Capital Calls

Moves open capital calls past their due date to 'overdue'. Meant for a daily
scheduler.

Usage:
    python -m scripts.mark_overdue_calls
    python -m scripts.mark_overdue_calls --as-of 2025-03-31
"""

import argparse
import asyncio
from datetime import date

from dateutil import parser as date_parser

from scripts.common import init_dependencies


def parse_as_of(value: str) -> date:
    try:
        return date_parser.isoparse(value).date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}")


async def run(args) -> int:
    db, logger_manager, engine = await init_dependencies()
    try:
        moved = await engine.mark_overdue_calls(args.as_of)
    finally:
        await db.disconnect()

    print(f"⏰ {moved} capital call(s) marked overdue as of {args.as_of or date.today()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mark past-due capital calls as overdue")
    parser.add_argument('--as-of', type=parse_as_of, default=None, help='Reference date (YYYY-MM-DD), default today')
    return parser


def main():
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
