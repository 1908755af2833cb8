"""
Operator tooling.

    bazaar-admin --operator alice force-release ORD-20260101-000042
    bazaar-admin --operator alice replay-event 3f2a...
    bazaar-admin --operator alice mark-disputed 9c1e... --note "chargeback 7781"
    bazaar-admin --operator alice sweep
    bazaar-admin --operator alice dispatch

Every command runs under a named operator; the name lands in the audit log.
"""
import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import httpx
from structlog import get_logger

from bazaar.common.config import Settings, get_settings
from bazaar.common.db.session import configure_database
from bazaar.common.errors import SettlementError
from bazaar.common.logging import configure_logging
from bazaar.outbox.dispatcher import OutboxDispatcher
from bazaar.settlement.orchestrator import SettlementOrchestrator
from bazaar.settlement.services import build_services

logger = get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bazaar-admin", description="Settlement operator tooling")
    parser.add_argument("--operator", required=True, help="Who is running this (recorded in the audit log)")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    release = commands.add_parser("force-release", help="Release an order's stock reservation")
    release.add_argument("order_id")

    replay = commands.add_parser("replay-event", help="Re-queue an outbox event (usually a DEAD one)")
    replay.add_argument("event_id")

    dispute = commands.add_parser("mark-disputed", help="Record a dispute against a payment attempt")
    dispute.add_argument("attempt_id")
    dispute.add_argument("--note", help="Free text, e.g. the provider's case number")

    sweep = commands.add_parser("sweep", help="Expire stale checkouts and close abandoned orders now")
    sweep.add_argument("--limit", type=int, default=100)

    dispatch = commands.add_parser("dispatch", help="Deliver one batch of pending outbox events now")
    dispatch.add_argument("--limit", type=int, default=None)

    return parser


async def run_command(
    args: argparse.Namespace,
    orchestrator: SettlementOrchestrator,
    dispatcher: OutboxDispatcher,
) -> Dict[str, Any]:
    operator = args.operator
    logger.info("admin_command", command=args.command, operator=operator)

    if args.command == "force-release":
        order = await orchestrator.force_release(args.order_id, operator)
        return {"orderId": order.id, "state": order.state, "released": True}

    if args.command == "replay-event":
        event = await dispatcher.replay(args.event_id, operator)
        return {"eventId": event.id, "status": event.status}

    if args.command == "mark-disputed":
        dispute = await orchestrator.mark_disputed(args.attempt_id, operator, args.note)
        return {"disputeId": dispute.id, "attemptId": dispute.attempt_id}

    if args.command == "sweep":
        swept = await orchestrator.expire_stale_checkouts(args.limit)
        closed = await orchestrator.close_abandoned_orders(args.limit)
        return {**swept.as_dict(), "closed": closed}

    if args.command == "dispatch":
        stats = await dispatcher.dispatch_pending(args.limit)
        return stats.as_dict()

    raise ValueError(f"unknown command {args.command}")


async def _main(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    configure_database(args.database_url or settings.database_url)
    async with httpx.AsyncClient() as http:
        orchestrator, dispatcher = build_services(settings, http)
        return await run_command(args, orchestrator, dispatcher)


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging("bazaar-admin")
    args = build_parser().parse_args(argv)
    if not args.operator.strip():
        print("error: --operator must not be empty", file=sys.stderr)
        return 2

    try:
        result = asyncio.run(_main(args, get_settings()))
    except SettlementError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
