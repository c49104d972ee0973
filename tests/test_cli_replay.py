import asyncio

from sqlalchemy.exc import OperationalError

from app import cli
from app.models.ledger_entry import LedgerEntry, LedgerStatus
from app.models.payment_event import InboundEvent, ProcessingStatus
from app.services.ledger import Ledger
from conftest import fetch_one, make_event, post_event


def checkout(event_id, amount=4900):
    obj = {
        "id": f"cs_{event_id}",
        "customer": "cus_1",
        "payment_intent": "pi_1",
        "amount_total": amount,
        "currency": "usd",
        "metadata": {"tenantId": "t1"},
    }
    return make_event(event_id, "checkout.session.completed", obj)


def refund(event_id):
    obj = {"id": "ch_1", "payment_intent": "pi_1", "amount": 4900, "amount_refunded": 4900, "currency": "usd"}
    return make_event(event_id, "charge.refunded", obj)


def test_replay_failed_recovers_charge_and_its_refund(client, session_factory, provider, notifier, capsys, monkeypatch):
    original = Ledger.record_charge

    async def broken_record_charge(self, *args, **kwargs):
        raise OperationalError("INSERT INTO ledger_entries", {}, Exception("connection refused"))

    post_event(client, refund("evt_refund"))
    monkeypatch.setattr(Ledger, "record_charge", broken_record_charge)
    assert post_event(client, checkout("evt_checkout")).status_code == 500
    monkeypatch.setattr(Ledger, "record_charge", original)

    ids = asyncio.run(cli.retryable_event_ids(10, session_factory=session_factory))
    assert ids == ["evt_refund", "evt_checkout"]

    ok = asyncio.run(cli.replay(ids, provider, notifier, session_factory=session_factory))
    assert ok
    out = capsys.readouterr().out
    assert "evt_refund: HTTP 200" in out
    assert "deferred" in out
    assert "evt_checkout: HTTP 200" in out

    entry = fetch_one(session_factory, LedgerEntry, LedgerEntry.external_payment_ref == "pi_1")
    assert entry.status == LedgerStatus.refunded
    for event_id in ("evt_refund", "evt_checkout"):
        event = fetch_one(session_factory, InboundEvent, InboundEvent.provider_event_id == event_id)
        assert event.processing_status == ProcessingStatus.processed
    assert asyncio.run(cli.retryable_event_ids(10, session_factory=session_factory)) == []


def test_replay_processed_event_is_noop(client, session_factory, provider, notifier, capsys):
    post_event(client, checkout("evt_checkout"))
    ok = asyncio.run(cli.replay(["evt_checkout"], provider, notifier, session_factory=session_factory))
    assert ok
    assert "already_processed" in capsys.readouterr().out
    event = fetch_one(session_factory, InboundEvent, InboundEvent.provider_event_id == "evt_checkout")
    assert event.attempt_count == 1


def test_replay_unknown_event_fails(session_factory, provider, notifier, capsys):
    ok = asyncio.run(cli.replay(["evt_missing"], provider, notifier, session_factory=session_factory))
    assert not ok
    assert "HTTP 404" in capsys.readouterr().out


def test_summary(client, session_factory):
    post_event(client, checkout("evt_checkout"))
    totals = asyncio.run(cli.summary("t1", session_factory=session_factory))
    assert totals["currencies"]["USD"]["charged"] == 4900
