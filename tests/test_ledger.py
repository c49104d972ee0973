import asyncio

import pytest

from app.core.errors import UnknownPaymentReference
from app.models.ledger_entry import LedgerEntry, LedgerStatus
from app.services.ledger import Ledger
from conftest import fetch_all


def test_record_charge_upserts_on_payment_ref(session_factory):
    async def run():
        async with session_factory() as db:
            ledger = Ledger(db)
            for _ in range(3):
                await ledger.record_charge("pi_1", "t1", 4900, "usd", LedgerStatus.succeeded)
                await db.commit()

    asyncio.run(run())
    entries = fetch_all(session_factory, LedgerEntry)
    assert len(entries) == 1
    assert entries[0].currency == "USD"
    assert entries[0].amount_minor_units == 4900


def test_negative_charge_is_rejected(session_factory):
    async def run():
        async with session_factory() as db:
            with pytest.raises(ValueError):
                await Ledger(db).record_charge("pi_neg", "t1", -1, "usd", LedgerStatus.succeeded)

    asyncio.run(run())


def test_refund_sets_cumulative_amount(session_factory):
    async def run():
        async with session_factory() as db:
            ledger = Ledger(db)
            await ledger.record_charge("pi_1", "t1", 5000, "eur", LedgerStatus.succeeded)
            await ledger.record_refund("pi_1", 1000)
            entry = await ledger.record_refund("pi_1", 3000)
            assert entry.status == LedgerStatus.refunded
            assert entry.refunded_amount_minor_units == 3000
            assert entry.refunded_at is not None
            await db.commit()

    asyncio.run(run())


def test_refund_without_charge_raises(session_factory):
    async def run():
        async with session_factory() as db:
            with pytest.raises(UnknownPaymentReference) as exc_info:
                await Ledger(db).record_refund("pi_missing", 100)
            assert exc_info.value.payment_ref == "pi_missing"

    asyncio.run(run())


def test_late_charge_does_not_undo_refund(session_factory):
    async def run():
        async with session_factory() as db:
            ledger = Ledger(db)
            await ledger.record_charge("pi_1", "t1", 5000, "usd", LedgerStatus.succeeded)
            await ledger.record_refund("pi_1", 5000)
            entry = await ledger.record_charge("pi_1", "t1", 5000, "usd", LedgerStatus.succeeded)
            assert entry.status == LedgerStatus.refunded
            assert entry.refunded_amount_minor_units == 5000

    asyncio.run(run())


def test_failed_charge_can_later_succeed(session_factory):
    async def run():
        async with session_factory() as db:
            ledger = Ledger(db)
            await ledger.record_charge("in_1", "t1", 900, "usd", LedgerStatus.failed)
            entry = await ledger.record_charge("in_1", "t1", 900, "usd", LedgerStatus.succeeded)
            assert entry.status == LedgerStatus.succeeded

    asyncio.run(run())


def test_summarize_groups_by_currency(session_factory):
    async def run():
        async with session_factory() as db:
            ledger = Ledger(db)
            await ledger.record_charge("pi_1", "t1", 4900, "usd", LedgerStatus.succeeded)
            await ledger.record_charge("pi_2", "t1", 1000, "usd", LedgerStatus.succeeded)
            await ledger.record_refund("pi_2", 400)
            await ledger.record_charge("pi_3", "t1", 2500, "eur", LedgerStatus.failed)
            await ledger.record_charge("pi_4", "t2", 7000, "usd", LedgerStatus.succeeded)
            await db.commit()
            return (await ledger.summarize("t1")).as_dict()

    summary = asyncio.run(run())
    assert summary["tenant_id"] == "t1"
    assert summary["currencies"]["USD"] == {
        "charged": 5900,
        "failed": 0,
        "refunded": 400,
        "net": 5500,
        "entries": 2,
    }
    assert summary["currencies"]["EUR"] == {
        "charged": 0,
        "failed": 2500,
        "refunded": 0,
        "net": 0,
        "entries": 1,
    }
