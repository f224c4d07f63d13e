#!/usr/bin/env python3
"""
Job Runner
==========

Run the time-triggered jobs directly against the database, without going
through the cron endpoints.

Usage:
    python scripts/run_jobs.py monthly-credits [--month 2026-10]
    python scripts/run_jobs.py consistency
    python scripts/run_jobs.py expired-keys
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from credits_api.cron import (
    check_ledger_consistency,
    delete_expired_api_keys,
    grant_monthly_free_credits,
)
from credits_api.database import close_db, get_session_factory, init_db
from credits_api.logging_config import configure_logging


def _parse_month(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m")
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}")


async def main(args: argparse.Namespace) -> int:
    await init_db()
    session_factory = get_session_factory()

    try:
        if args.job == "monthly-credits":
            summary = await grant_monthly_free_credits(session_factory, now=args.month)
            result = summary.to_dict()
            ok = summary.success and summary.error_count == 0
        elif args.job == "consistency":
            result = await check_ledger_consistency(session_factory)
            ok = result["consistent"]
        else:
            result = await delete_expired_api_keys(session_factory)
            ok = True
    finally:
        await close_db()

    print(json.dumps(result, indent=2, default=str))
    return 0 if ok else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run Credits Ledger jobs")
    subparsers = parser.add_subparsers(dest="job", required=True)

    monthly = subparsers.add_parser("monthly-credits", help="Grant monthly free credits")
    monthly.add_argument("--month", type=_parse_month, default=None, help="Billing month (YYYY-MM)")

    subparsers.add_parser("consistency", help="Check balances against the ledger")
    subparsers.add_parser("expired-keys", help="Delete expired API keys")

    configure_logging()
    sys.exit(asyncio.run(main(parser.parse_args())))
