"""Tenant subscription state machine.

Handlers are keyed by event kind. Every write is a set-to-value on rows
keyed by ``tenant_id`` or ``external_payment_ref``, so running a handler twice
for the same event (redelivery racing a retry) ends in the same state as
running it once.

A handler that cannot resolve a tenant raises ``MalformedEvent`` before it
writes anything.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.errors import MalformedEvent, UnknownPaymentReference
from app.models.ledger_entry import LedgerStatus
from app.models.payment_event import EventType
from app.models.tenant_subscription import SubscriptionStatus, TenantSubscription
from app.schemas.events import (
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from app.services.notifications import Notification, payment_failed, subscription_activated
from app.services.ledger import Ledger
from app.utils.timestamps import from_unix

logger = logging.getLogger(__name__)

TENANT_METADATA_KEY = "tenantId"

# Stripe subscription.status -> local status. Anything unlisted reduces access.
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "canceled": SubscriptionStatus.cancelled,
    "unpaid": SubscriptionStatus.suspended,
    "trialing": SubscriptionStatus.trial,
    "incomplete": SubscriptionStatus.inactive,
    "incomplete_expired": SubscriptionStatus.cancelled,
    "paused": SubscriptionStatus.suspended,
}
UNKNOWN_STATUS_FALLBACK = SubscriptionStatus.suspended

# cancelled ends a lifecycle; only a new subscription (active) restarts it
RESTRICTED_SOURCES: Dict[SubscriptionStatus, set] = {
    SubscriptionStatus.cancelled: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    status = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        logger.warning(
            f"Unknown provider subscription status {provider_status!r}, "
            f"falling back to {UNKNOWN_STATUS_FALLBACK.value}"
        )
        return UNKNOWN_STATUS_FALLBACK
    return status


def is_transition_allowed(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    allowed = RESTRICTED_SOURCES.get(current)
    return allowed is None or target in allowed


@dataclass
class DispatchResult:
    """What a handler did, for the audit trail and the response."""

    outcome: str = "processed"
    tenant_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    notifications: List[Notification] = field(default_factory=list)


class SubscriptionStateMachine:
    def __init__(self, db: AsyncSession, ledger: Ledger, provider):
        self.db = db
        self.ledger = ledger
        self.provider = provider
        self._handlers: Dict[EventType, Callable] = {
            EventType.checkout_completed: self.on_checkout_completed,
            EventType.invoice_paid: self.on_invoice_paid,
            EventType.invoice_payment_failed: self.on_invoice_payment_failed,
            EventType.subscription_updated: self.on_subscription_updated,
            EventType.subscription_deleted: self.on_subscription_deleted,
            EventType.charge_refunded: self.on_charge_refunded,
        }

    async def dispatch(self, event) -> DispatchResult:
        handler = self._handlers.get(event.kind)
        if handler is None:
            return DispatchResult(outcome="ignored", metadata={"reason": f"no handler for {event.kind.value}"})
        return await handler(event)

    async def get_subscription(self, tenant_id: str) -> Optional[TenantSubscription]:
        return await self.db.get(TenantSubscription, tenant_id)

    async def _tenant_for_customer(self, customer_ref: Optional[str]) -> Optional[str]:
        if not customer_ref:
            return None
        result = await self.db.execute(
            select(TenantSubscription.tenant_id).where(
                TenantSubscription.external_customer_ref == customer_ref
            )
        )
        return result.scalars().first()

    async def _resolve_tenant(self, metadata: Dict[str, str], customer_ref: Optional[str]) -> Optional[str]:
        tenant_id = metadata.get(TENANT_METADATA_KEY)
        if tenant_id:
            return tenant_id
        tenant_id = await self._tenant_for_customer(customer_ref)
        if tenant_id:
            logger.info(f"Resolved tenant {tenant_id} from customer {customer_ref}")
        return tenant_id

    async def transition(
        self,
        tenant_id: str,
        target: SubscriptionStatus,
        period_end: Optional[datetime] = None,
        customer_ref: Optional[str] = None,
        subscription_ref: Optional[str] = None,
        billing_email: Optional[str] = None,
    ) -> Tuple[TenantSubscription, Dict[str, Any]]:
        """Move *tenant_id* to *target*, creating its row on first sight.

        Returns the row and a description of the transition for the audit
        record. A transition out of ``cancelled`` to anything but ``active``
        is rejected and leaves the status unchanged.
        """
        row = await self.get_subscription(tenant_id)
        if row is None:
            row = TenantSubscription(tenant_id=tenant_id, subscription_status=SubscriptionStatus.inactive)
            self.db.add(row)

        current = row.subscription_status or SubscriptionStatus.inactive
        info: Dict[str, Any] = {"from": current.value, "to": target.value}
        if is_transition_allowed(current, target):
            row.subscription_status = target
            info["applied"] = True
            if current != target:
                logger.info(f"Tenant {tenant_id} subscription {current.value} -> {target.value}")
        else:
            info["applied"] = False
            info["transition_rejected"] = True
            logger.warning(
                f"Rejected transition {current.value} -> {target.value} for tenant {tenant_id}"
            )

        if period_end is not None:
            row.current_period_end = period_end
        if customer_ref:
            row.external_customer_ref = customer_ref
        if subscription_ref:
            row.external_subscription_ref = subscription_ref
        if billing_email:
            row.billing_email = billing_email
        await self.db.flush()
        return row, info

    async def on_checkout_completed(self, event: CheckoutCompleted) -> DispatchResult:
        session = event.session
        tenant_id = session.metadata.get(TENANT_METADATA_KEY)
        if not tenant_id:
            raise MalformedEvent(f"Checkout session {session.id} has no {TENANT_METADATA_KEY} in metadata")

        period_end = None
        if session.subscription:
            subscription = await self.provider.retrieve_subscription(session.subscription)
            period_end = from_unix(subscription.period_end)

        email = session.customer_details.email if session.customer_details else None
        row, info = await self.transition(
            tenant_id,
            SubscriptionStatus.active,
            period_end=period_end,
            customer_ref=session.customer,
            subscription_ref=session.subscription,
            billing_email=email,
        )
        result = DispatchResult(tenant_id=tenant_id, metadata={"transition": info})

        # in subscription mode the first invoice.paid carries the same money;
        # only one-off payments are recorded from the session
        if session.amount_total and not session.subscription:
            entry = await self.ledger.record_charge(
                session.payment_intent or session.id,
                tenant_id,
                session.amount_total,
                session.currency or "usd",
                LedgerStatus.succeeded,
                description=f"Checkout completed: {session.id}",
                customer_ref=session.customer,
                source_event_id=event.id,
            )
            result.metadata["ledger_ref"] = entry.external_payment_ref

        if info["applied"] and info["from"] != SubscriptionStatus.active.value and row.billing_email:
            result.notifications.append(subscription_activated(row.billing_email, tenant_id))
        return result

    async def _invoice_tenant(self, invoice) -> Tuple[Optional[str], Any]:
        subscription = await self.provider.retrieve_subscription(invoice.subscription)
        tenant_id = await self._resolve_tenant(subscription.metadata, invoice.customer)
        if not tenant_id:
            raise MalformedEvent(
                f"Invoice {invoice.id}: subscription {invoice.subscription} has no {TENANT_METADATA_KEY}"
            )
        return tenant_id, subscription

    async def on_invoice_paid(self, event: InvoicePaid) -> DispatchResult:
        invoice = event.invoice
        if not invoice.subscription:
            return DispatchResult(outcome="ignored", metadata={"reason": "invoice has no subscription"})

        tenant_id, subscription = await self._invoice_tenant(invoice)
        _, info = await self.transition(
            tenant_id,
            SubscriptionStatus.active,
            period_end=from_unix(subscription.period_end),
            customer_ref=invoice.customer,
            subscription_ref=invoice.subscription,
        )
        result = DispatchResult(tenant_id=tenant_id, metadata={"transition": info})

        if invoice.amount_paid:
            entry = await self.ledger.record_charge(
                invoice.payment_intent or invoice.id,
                tenant_id,
                invoice.amount_paid,
                invoice.currency or "usd",
                LedgerStatus.succeeded,
                description=f"Invoice paid: {invoice.id}",
                customer_ref=invoice.customer,
                source_event_id=event.id,
            )
            result.metadata["ledger_ref"] = entry.external_payment_ref
        return result

    async def on_invoice_payment_failed(self, event: InvoicePaymentFailed) -> DispatchResult:
        invoice = event.invoice
        if not invoice.subscription:
            return DispatchResult(outcome="ignored", metadata={"reason": "invoice has no subscription"})

        tenant_id, _ = await self._invoice_tenant(invoice)
        # past_due keeps access; cancellation comes from the provider's own dunning
        row, info = await self.transition(
            tenant_id,
            SubscriptionStatus.past_due,
            customer_ref=invoice.customer,
            subscription_ref=invoice.subscription,
        )
        result = DispatchResult(tenant_id=tenant_id, metadata={"transition": info})

        if invoice.amount_due:
            entry = await self.ledger.record_charge(
                invoice.payment_intent or invoice.id,
                tenant_id,
                invoice.amount_due,
                invoice.currency or "usd",
                LedgerStatus.failed,
                description=f"Payment failed: {invoice.id}",
                customer_ref=invoice.customer,
                source_event_id=event.id,
            )
            result.metadata["ledger_ref"] = entry.external_payment_ref

        email = row.billing_email or invoice.customer_email
        if info["applied"] and info["from"] != SubscriptionStatus.past_due.value and email:
            result.notifications.append(payment_failed(email, tenant_id))
        return result

    async def on_subscription_updated(self, event: SubscriptionUpdated) -> DispatchResult:
        subscription = event.subscription
        tenant_id = await self._resolve_tenant(subscription.metadata, subscription.customer)
        if not tenant_id:
            raise MalformedEvent(f"Subscription {subscription.id} has no {TENANT_METADATA_KEY}")

        target = map_provider_status(subscription.status)
        _, info = await self.transition(
            tenant_id,
            target,
            period_end=from_unix(subscription.period_end),
            customer_ref=subscription.customer,
            subscription_ref=subscription.id,
        )
        info["provider_status"] = subscription.status
        return DispatchResult(tenant_id=tenant_id, metadata={"transition": info})

    async def on_subscription_deleted(self, event: SubscriptionDeleted) -> DispatchResult:
        subscription = event.subscription
        tenant_id = await self._resolve_tenant(subscription.metadata, subscription.customer)
        if not tenant_id:
            raise MalformedEvent(f"Subscription {subscription.id} has no {TENANT_METADATA_KEY}")

        _, info = await self.transition(
            tenant_id,
            SubscriptionStatus.cancelled,
            customer_ref=subscription.customer,
            subscription_ref=subscription.id,
        )
        return DispatchResult(tenant_id=tenant_id, metadata={"transition": info})

    async def on_charge_refunded(self, event: ChargeRefunded) -> DispatchResult:
        charge = event.charge
        payment_ref = charge.payment_intent or charge.id
        try:
            entry = await self.ledger.record_refund(payment_ref, charge.amount_refunded)
        except UnknownPaymentReference as exc:
            # refund delivered before its charge; applied once the charge is recorded
            logger.warning(f"Refund for {payment_ref} arrived before its charge: {exc}")
            return DispatchResult(
                outcome="deferred",
                error=str(exc),
                metadata={"ledger_ref": payment_ref, "reason": exc.code},
            )
        return DispatchResult(
            tenant_id=entry.tenant_id,
            metadata={"ledger_ref": payment_ref, "refunded_amount": charge.amount_refunded},
        )
