import asyncio

import pytest

from app.models.tenant_subscription import SubscriptionStatus
from app.services.ledger import Ledger
from app.services.subscriptions import (
    SubscriptionStateMachine,
    is_transition_allowed,
    map_provider_status,
)


@pytest.mark.parametrize(
    "provider_status, expected",
    [
        ("active", SubscriptionStatus.active),
        ("past_due", SubscriptionStatus.past_due),
        ("canceled", SubscriptionStatus.cancelled),
        ("unpaid", SubscriptionStatus.suspended),
        ("trialing", SubscriptionStatus.trial),
        ("incomplete", SubscriptionStatus.inactive),
        ("incomplete_expired", SubscriptionStatus.cancelled),
        ("paused", SubscriptionStatus.suspended),
    ],
)
def test_known_provider_statuses(provider_status, expected):
    assert map_provider_status(provider_status) == expected


@pytest.mark.parametrize("provider_status", ["brand_new_status", "", None])
def test_unknown_status_never_grants_access(provider_status):
    status = map_provider_status(provider_status)
    assert status == SubscriptionStatus.suspended
    assert status not in (SubscriptionStatus.active, SubscriptionStatus.trial)


def test_cancelled_only_restarts_as_active():
    assert is_transition_allowed(SubscriptionStatus.cancelled, SubscriptionStatus.active)
    assert is_transition_allowed(SubscriptionStatus.cancelled, SubscriptionStatus.cancelled)
    assert not is_transition_allowed(SubscriptionStatus.cancelled, SubscriptionStatus.past_due)
    assert not is_transition_allowed(SubscriptionStatus.cancelled, SubscriptionStatus.trial)


def test_other_statuses_move_freely():
    for current in SubscriptionStatus:
        if current == SubscriptionStatus.cancelled:
            continue
        for target in SubscriptionStatus:
            assert is_transition_allowed(current, target)


def test_transition_creates_row_and_rejects_late_past_due(session_factory):
    async def run():
        async with session_factory() as db:
            machine = SubscriptionStateMachine(db, Ledger(db), provider=None)

            row, info = await machine.transition("t1", SubscriptionStatus.active, customer_ref="cus_1")
            assert info == {"from": "inactive", "to": "active", "applied": True}
            assert row.external_customer_ref == "cus_1"

            await machine.transition("t1", SubscriptionStatus.cancelled)
            row, info = await machine.transition("t1", SubscriptionStatus.past_due)
            assert info["applied"] is False
            assert info["transition_rejected"] is True
            assert row.subscription_status == SubscriptionStatus.cancelled

            row, info = await machine.transition("t1", SubscriptionStatus.active)
            assert info["applied"] is True
            assert row.subscription_status == SubscriptionStatus.active
            await db.commit()

    asyncio.run(run())


def test_customer_ref_resolves_tenant_without_metadata(session_factory):
    async def run():
        async with session_factory() as db:
            machine = SubscriptionStateMachine(db, Ledger(db), provider=None)
            await machine.transition("t7", SubscriptionStatus.active, customer_ref="cus_7")
            await db.commit()

            assert await machine._resolve_tenant({}, "cus_7") == "t7"
            assert await machine._resolve_tenant({"tenantId": "t8"}, "cus_7") == "t8"
            assert await machine._resolve_tenant({}, "cus_unknown") is None
            assert await machine._resolve_tenant({}, None) is None

    asyncio.run(run())
