"""Ledger of money movements, keyed by the provider payment reference.

Writes are upserts on ``external_payment_ref`` so a re-dispatched or
concurrently duplicated event converges on the same row instead of adding a
second one. Entries are never deleted; refunds update the original charge.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.errors import UnknownPaymentReference
from app.models.ledger_entry import LedgerEntry, LedgerStatus

logger = logging.getLogger(__name__)


@dataclass
class CurrencyTotals:
    charged: int = 0
    failed: int = 0
    refunded: int = 0
    entries: int = 0

    @property
    def net(self) -> int:
        return self.charged - self.refunded

    def as_dict(self) -> Dict[str, int]:
        return {
            "charged": self.charged,
            "failed": self.failed,
            "refunded": self.refunded,
            "net": self.net,
            "entries": self.entries,
        }


@dataclass
class LedgerSummary:
    tenant_id: str
    currencies: Dict[str, CurrencyTotals] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "currencies": {code: totals.as_dict() for code, totals in sorted(self.currencies.items())},
        }


class Ledger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, payment_ref: str) -> Optional[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.external_payment_ref == payment_ref)
        )
        return result.scalar_one_or_none()

    async def record_charge(
        self,
        payment_ref: str,
        tenant_id: str,
        amount_minor_units: int,
        currency: str,
        status: LedgerStatus,
        description: Optional[str] = None,
        customer_ref: Optional[str] = None,
        source_event_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Insert a charge, or update the existing entry for *payment_ref*.

        A refunded entry keeps its refunded status; a late charge event must
        not undo a refund that already happened.
        """
        if amount_minor_units < 0:
            raise ValueError(f"Charge amount must not be negative: {amount_minor_units}")
        currency = (currency or "usd").upper()

        entry = await self.get(payment_ref)
        if entry is None:
            entry = LedgerEntry(
                external_payment_ref=payment_ref,
                tenant_id=tenant_id,
                external_customer_ref=customer_ref,
                amount_minor_units=amount_minor_units,
                currency=currency,
                status=status,
                description=description,
                source_event_id=source_event_id,
                occurred_at=datetime.utcnow(),
            )
            self.db.add(entry)
            # a concurrent duplicate losing the insert race raises IntegrityError
            # here; the event fails and its retry takes the update path below
            await self.db.flush()
            logger.info(
                f"Ledger: recorded {status.value} charge {payment_ref} "
                f"{amount_minor_units} {currency} for tenant {tenant_id}"
            )
            return entry

        if entry.status == LedgerStatus.refunded:
            logger.info(f"Ledger: charge {payment_ref} already refunded, keeping refunded status")
        else:
            entry.status = status
        entry.amount_minor_units = amount_minor_units
        entry.currency = currency
        if description:
            entry.description = description
        if customer_ref and not entry.external_customer_ref:
            entry.external_customer_ref = customer_ref
        await self.db.flush()
        logger.info(f"Ledger: updated existing entry {payment_ref} (status={entry.status.value})")
        return entry

    async def record_refund(self, payment_ref: str, refunded_amount_minor_units: int) -> LedgerEntry:
        """Mark the charge for *payment_ref* refunded.

        *refunded_amount_minor_units* is the cumulative refunded amount reported
        by the provider, so it replaces the stored value rather than adding to
        it. Raises ``UnknownPaymentReference`` when no charge exists yet.
        """
        entry = await self.get(payment_ref)
        if entry is None:
            raise UnknownPaymentReference(payment_ref)
        if refunded_amount_minor_units > entry.amount_minor_units:
            logger.warning(
                f"Ledger: refund {refunded_amount_minor_units} exceeds charge "
                f"{entry.amount_minor_units} for {payment_ref}"
            )
        entry.status = LedgerStatus.refunded
        entry.refunded_amount_minor_units = refunded_amount_minor_units
        entry.refunded_at = datetime.utcnow()
        await self.db.flush()
        logger.info(f"Ledger: {payment_ref} refunded {refunded_amount_minor_units} {entry.currency}")
        return entry

    async def entries_for_tenant(self, tenant_id: str) -> List[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.tenant_id == tenant_id)
            .order_by(LedgerEntry.occurred_at, LedgerEntry.external_payment_ref)
        )
        return list(result.scalars().all())

    async def summarize(self, tenant_id: str) -> LedgerSummary:
        summary = LedgerSummary(tenant_id=tenant_id)
        for entry in await self.entries_for_tenant(tenant_id):
            totals = summary.currencies.setdefault(entry.currency, CurrencyTotals())
            totals.entries += 1
            if entry.status == LedgerStatus.failed:
                totals.failed += entry.amount_minor_units
                continue
            totals.charged += entry.amount_minor_units
            if entry.status == LedgerStatus.refunded:
                totals.refunded += entry.refunded_amount_minor_units or 0
        return summary
