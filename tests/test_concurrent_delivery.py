import asyncio
import json

from app.models.audit_record import AuditRecord
from app.models.ledger_entry import LedgerEntry
from app.models.payment_event import InboundEvent, ProcessingStatus
from app.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from app.services.ledger import Ledger
from app.services.orchestrator import ReconciliationOrchestrator
from app.services.signature import VerifiedEvent
from conftest import WEBHOOK_SECRET, build_signature_header, fetch_all, fetch_one, make_event


def checkout_payload():
    return make_event(
        "evt_race",
        "checkout.session.completed",
        {
            "id": "cs_race",
            "customer": "cus_race",
            "payment_intent": "pi_race",
            "amount_total": 2500,
            "currency": "usd",
            "metadata": {"tenantId": "t_race"},
        },
    )


def verified_event(payload):
    body = json.dumps(payload).encode()
    return VerifiedEvent(
        event_id=payload["id"],
        event_type=payload["type"],
        created=payload["created"],
        payload=payload,
        raw_body=body,
    )


def test_both_deliveries_passing_dedup_converge(session_factory, provider, monkeypatch):
    verified = verified_event(checkout_payload())

    async def deliver():
        async with session_factory() as db:
            orchestrator = ReconciliationOrchestrator(db, provider, webhook_secret=WEBHOOK_SECRET)
            return await orchestrator.process(verified)

    winner = asyncio.run(deliver())
    assert winner.http_status == 200

    # the second delivery looked up the ledger before the winner committed
    original_get = Ledger.get

    async def stale_get(self, payment_ref):
        return None

    monkeypatch.setattr(Ledger, "get", stale_get)
    loser = asyncio.run(deliver())
    assert loser.http_status == 500
    assert loser.body["error"] == "Webhook processing failed"
    monkeypatch.setattr(Ledger, "get", original_get)

    # the losing attempt must not flip the winner's row back to failed
    event = fetch_one(session_factory, InboundEvent, InboundEvent.provider_event_id == "evt_race")
    assert event.processing_status == ProcessingStatus.processed
    assert event.attempt_count == 2

    retry = asyncio.run(deliver())
    assert retry.http_status == 200

    entries = fetch_all(session_factory, LedgerEntry)
    assert len(entries) == 1
    assert entries[0].amount_minor_units == 2500
    subs = fetch_all(session_factory, TenantSubscription)
    assert len(subs) == 1
    assert subs[0].subscription_status == SubscriptionStatus.active

    audits = fetch_all(session_factory, AuditRecord, AuditRecord.resource_id == "evt_race")
    activations = [
        a for a in audits
        if a.outcome == "processed" and a.meta["transition"]["from"] == SubscriptionStatus.inactive.value
    ]
    assert len(activations) == 1


def test_provider_redelivery_after_race_is_already_processed(session_factory, provider):
    payload = checkout_payload()
    body = json.dumps(payload).encode()
    header = build_signature_header(body, WEBHOOK_SECRET)

    async def deliver():
        async with session_factory() as db:
            orchestrator = ReconciliationOrchestrator(db, provider, webhook_secret=WEBHOOK_SECRET)
            return await orchestrator.handle(body, header)

    assert asyncio.run(deliver()).body["status"] == "processed"
    assert asyncio.run(deliver()).body["status"] == "already_processed"
    assert len(fetch_all(session_factory, LedgerEntry)) == 1
