#!/usr/bin/env python3
"""Command-line interface for out-of-band reconciliation.

Usage:
    fee-settlement verify 3f9a0c1d2e4b5a6c7d8e
    fee-settlement verify 3f9a0c1d2e4b5a6c7d8e --attempts 5 --delay 2
    fee-settlement sweep --older-than-minutes 30 --limit 200
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..database import DatabaseManager
from ..errors import FeeSettlementError
from ..gateways import get_gateway
from ..services import build_services
from .engine import poll_until_settled

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_verify_async(
    order_id: str,
    attempts: int = 3,
    delay: float = 3.0,
    provider: Optional[str] = None,
) -> int:
    """Poll the gateway for one order until it settles.

    Returns:
        0 for success, 1 for a failed payment, 2 while still pending,
        3 on errors.
    """
    db = DatabaseManager()
    await db.initialize()
    services = None
    try:
        gateway = get_gateway(provider) if provider else None
        services = build_services(db.session_factory, gateway=gateway)
        result = await poll_until_settled(services.engine, order_id, attempts=attempts, delay=delay)
        print(json.dumps({
            "orderId": order_id,
            "status": result.status,
            "message": result.message,
            "transaction": result.transaction.to_dict(),
        }, indent=2))
        return {"success": 0, "failed": 1}.get(result.status, 2)
    except FeeSettlementError as e:
        logger.error(f"Could not verify {order_id}: {e}")
        return 3
    finally:
        if services is not None:
            await services.aclose()
        await db.shutdown()


async def run_sweep_async(
    older_than_minutes: int = 15,
    limit: int = 100,
    provider: Optional[str] = None,
) -> int:
    """Re-reconcile stale pending orders.

    Returns:
        0 if every order was looked up, 1 if some lookups failed.
    """
    db = DatabaseManager()
    await db.initialize()
    services = None
    try:
        gateway = get_gateway(provider) if provider else None
        services = build_services(db.session_factory, gateway=gateway)
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        counts = await services.engine.sweep(cutoff, limit=limit)
        print(json.dumps(counts, indent=2, sort_keys=True))
        if counts.get("error"):
            logger.warning(f"Sweep finished with {counts['error']} orders left unreconciled")
            return 1
        return 0
    finally:
        if services is not None:
            await services.aclose()
        await db.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="fee-settlement",
        description="Reconcile fee payments with the payment gateway.",
    )
    parser.add_argument(
        "--provider", "-p",
        help="Gateway provider (default: PAYMENT_PROVIDER or cashfree)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify a single order, polling while it is pending",
    )
    verify_parser.add_argument("order_id", help="Order id to verify")
    verify_parser.add_argument(
        "--attempts", "-n",
        type=int,
        default=3,
        help="Number of gateway lookups (default: 3)",
    )
    verify_parser.add_argument(
        "--delay", "-d",
        type=float,
        default=3.0,
        help="Seconds between lookups (default: 3)",
    )

    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Re-reconcile pending orders the webhook never settled",
    )
    sweep_parser.add_argument(
        "--older-than-minutes", "-m",
        type=int,
        default=15,
        help="Only orders created at least this long ago (default: 15)",
    )
    sweep_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=100,
        help="Maximum number of orders to process (default: 100)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "verify":
        if parsed_args.attempts < 1:
            logger.error("--attempts must be at least 1")
            return 1
        return asyncio.run(run_verify_async(
            order_id=parsed_args.order_id,
            attempts=parsed_args.attempts,
            delay=parsed_args.delay,
            provider=parsed_args.provider,
        ))

    if parsed_args.command == "sweep":
        return asyncio.run(run_sweep_async(
            older_than_minutes=parsed_args.older_than_minutes,
            limit=parsed_args.limit,
            provider=parsed_args.provider,
        ))

    return 0


if __name__ == "__main__":
    sys.exit(main())
