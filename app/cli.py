"""
Operator commands for the reconciliation engine.

Usage:
  python -m app.cli replay <provider_event_id>   # re-dispatch a stored, not-yet-processed event
  python -m app.cli replay-failed [--limit N]    # re-dispatch failed and abandoned events
  python -m app.cli summary <tenant_id>          # ledger totals for a tenant
"""
import argparse
import asyncio
import json
import logging
import sys

from app.config import settings
from app.database import AsyncSessionLocal
from app.services.event_store import EventStore
from app.services.ledger import Ledger
from app.services.notifications import EmailNotifier
from app.services.orchestrator import ReconciliationOrchestrator
from app.services.stripe_client import StripeGateway

logger = logging.getLogger(__name__)


def _orchestrator(db, provider) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(
        db,
        provider,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        fail_open=settings.IDEMPOTENCY_FAIL_OPEN,
    )


async def replay(event_ids, provider, notifier, session_factory=AsyncSessionLocal) -> bool:
    ok = True
    for event_id in event_ids:
        async with session_factory() as db:
            outcome = await _orchestrator(db, provider).replay(event_id)
        for notification in outcome.notifications:
            await notifier.send(notification)
        print(f"{event_id}: HTTP {outcome.http_status} {json.dumps(outcome.body)}")
        ok = ok and outcome.http_status == 200
    return ok


async def retryable_event_ids(limit: int, session_factory=AsyncSessionLocal):
    async with session_factory() as db:
        return [e.provider_event_id for e in await EventStore(db).list_retryable(limit=limit)]


async def summary(tenant_id: str, session_factory=AsyncSessionLocal) -> dict:
    async with session_factory() as db:
        return (await Ledger(db).summarize(tenant_id)).as_dict()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Payment-event reconciliation tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_replay = sub.add_parser("replay", help="Re-dispatch stored events by provider event id")
    p_replay.add_argument("event_ids", nargs="+")

    p_failed = sub.add_parser("replay-failed", help="Re-dispatch failed events and events abandoned mid-dispatch")
    p_failed.add_argument("--limit", type=int, default=100)

    p_summary = sub.add_parser("summary", help="Print ledger totals for a tenant")
    p_summary.add_argument("tenant_id")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    provider = StripeGateway(settings.STRIPE_SECRET_KEY)
    notifier = EmailNotifier(settings.RESEND_API_KEY, settings.EMAIL_FROM)

    if args.command == "summary":
        print(json.dumps(asyncio.run(summary(args.tenant_id)), indent=2))
        return 0

    async def _replay():
        if args.command == "replay":
            ids = args.event_ids
        else:
            ids = await retryable_event_ids(args.limit)
            if not ids:
                print("No events to replay")
                return True
        return await replay(ids, provider, notifier)

    return 0 if asyncio.run(_replay()) else 1


if __name__ == "__main__":
    sys.exit(main())
