#!/usr/bin/env python3
"""
Grant Credits Script

Adds credits to a user's balance directly against the database, for support
and QA use when the payment flow is bypassed.

Usage:
    # Grant 50 credits
    python3 scripts/grant_credits.py user-123 50

    # Record a custom reason
    python3 scripts/grant_credits.py user-123 50 --reason support_refund

    # Show the balance without changing it
    python3 scripts/grant_credits.py user-123 --show
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from timeline_ai.services.credit_ledger import DEFAULT_STARTING_BALANCE, CreditLedger
from timeline_ai.services.credit_store import SqlCreditStore

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Grant credits to a timeline user")
    parser.add_argument("user_id", help="User id as forwarded in X-User-Id")
    parser.add_argument("amount", type=int, nargs="?", default=0, help="Credits to add")
    parser.add_argument("--reason", default="manual_grant", help="Audit reason")
    parser.add_argument("--show", action="store_true", help="Only print the balance")
    parser.add_argument(
        "--starting-balance",
        type=int,
        default=int(os.environ.get("DEFAULT_CREDIT_GRANT", DEFAULT_STARTING_BALANCE)),
        help="Balance for accounts created by this script",
    )
    args = parser.parse_args(argv)
    if args.amount < 0:
        parser.error("amount cannot be negative")
    return args


async def grant(args: argparse.Namespace) -> int:
    """Apply the grant and return the resulting balance."""
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not set in environment")
        return 1

    engine = create_async_engine(database_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    ledger = CreditLedger(SqlCreditStore(session_factory), default_balance=args.starting_balance)

    try:
        if args.show or args.amount == 0:
            balance = await ledger.get_balance(args.user_id)
        else:
            balance = await ledger.increment(args.user_id, args.amount, reason=args.reason)
    finally:
        await engine.dispose()

    logger.info("credit_balance", user_id=args.user_id, balance=balance)
    print(f"{args.user_id}: {balance} credits")
    return 0


def main() -> None:
    """Main entry point."""
    sys.exit(asyncio.run(grant(parse_args())))


if __name__ == "__main__":
    main()
