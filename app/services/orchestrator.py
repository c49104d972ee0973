"""Entry point for provider notifications.

Lifecycle of one delivery::

    Received -> Verified -> Deduplicated -> Dispatched -> Recorded -> Responded
        \\__________\\____________\\______________\\__________> Faulted

The HTTP status returned is what drives the provider's retry behaviour: 400
for payloads that fail verification (nothing is stored), 200 for anything that
should not be redelivered, 500 for failures that a later retry can fix.

Transaction boundaries: ``record_attempt`` commits on its own. Handler writes,
the audit record and the ``processed`` mark commit together. On an unexpected
error everything since ``record_attempt`` is rolled back and the failure is
recorded in a fresh unit of work, leaving the event ``failed`` so a
redelivery re-enters dispatch.
"""
import json
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import MalformedEvent, SignatureInvalid
from app.models.payment_event import ProcessingStatus
from app.models.processing_failure import ProcessingFailure
from app.schemas.events import parse_provider_event
from app.services.audit import AuditSink
from app.services.event_store import EventRecordHandle, EventStore
from app.services.ledger import Ledger
from app.services.notifications import Notification
from app.services.signature import DEFAULT_TOLERANCE_SECONDS, VerifiedEvent, verify_signature
from app.services.subscriptions import DispatchResult, SubscriptionStateMachine

logger = logging.getLogger(__name__)

STATUS_PROCESSED = "processed"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_DEFERRED = "deferred"


@dataclass
class WebhookOutcome:
    http_status: int
    body: Dict[str, Any]
    notifications: List[Notification] = field(default_factory=list)


def _ack(status: str, notifications: Optional[List[Notification]] = None) -> WebhookOutcome:
    return WebhookOutcome(200, {"received": True, "status": status}, notifications or [])


def _error(http_status: int, error: str, **extra) -> WebhookOutcome:
    return WebhookOutcome(http_status, {"error": error, **extra})


def _payload_tenant_id(payload: Dict[str, Any]) -> Optional[str]:
    obj = (payload.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") if isinstance(obj, dict) else None
    if isinstance(metadata, dict):
        return metadata.get("tenantId")
    return None


class ReconciliationOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        provider,
        webhook_secret: Optional[str],
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        fail_open: bool = True,
        clock=None,
    ):
        self.db = db
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.fail_open = fail_open
        self.clock = clock
        self.events = EventStore(db)
        self.ledger = Ledger(db)
        self.audit = AuditSink(db)
        self.state_machine = SubscriptionStateMachine(db, self.ledger, provider)

    async def handle(self, body: bytes, signature_header: Optional[str]) -> WebhookOutcome:
        try:
            verified = verify_signature(
                body,
                signature_header,
                self.webhook_secret,
                now=self.clock() if self.clock else None,
                tolerance=self.tolerance_seconds,
            )
        except SignatureInvalid as exc:
            logger.warning(f"Webhook signature verification failed: {exc}")
            return _error(400, f"Webhook Error: {exc}")
        except MalformedEvent as exc:
            logger.warning(f"Verified webhook payload is unusable: {exc}")
            return _error(400, f"Webhook Error: {exc}")

        try:
            if await self.events.has_been_processed(verified.event_id):
                logger.info(f"Event {verified.event_id} already processed, skipping")
                return _ack(STATUS_ALREADY_PROCESSED)
        except SQLAlchemyError as exc:
            await self._safe_rollback()
            if not self.fail_open:
                logger.error(f"Idempotency check failed for {verified.event_id}, rejecting: {exc}")
                return _error(500, "Webhook processing failed", message="idempotency check unavailable")
            logger.error(f"Idempotency check failed for {verified.event_id}, processing anyway: {exc}")

        return await self.process(verified)

    async def replay(self, provider_event_id: str) -> WebhookOutcome:
        """Re-dispatch a stored payload that was verified when it first arrived."""
        stored = await self.events.get(provider_event_id)
        if stored is None:
            return _error(404, f"Unknown event {provider_event_id}")
        if stored.processing_status == ProcessingStatus.processed:
            return _ack(STATUS_ALREADY_PROCESSED)

        payload = json.loads(stored.raw_payload)
        verified = VerifiedEvent(
            event_id=stored.provider_event_id,
            event_type=stored.provider_event_type,
            created=payload.get("created"),
            payload=payload,
            raw_body=stored.raw_payload.encode("utf-8"),
        )
        logger.info(f"Replaying event {provider_event_id} (attempt {stored.attempt_count + 1})")
        return await self.process(verified)

    async def process(self, verified: VerifiedEvent) -> WebhookOutcome:
        try:
            handle = await self.events.record_attempt(verified)
        except SQLAlchemyError as exc:
            await self._safe_rollback()
            logger.exception(f"Could not record event {verified.event_id}")
            return _error(500, "Webhook processing failed", message=str(exc))

        result: Optional[DispatchResult] = None
        try:
            result = await self._dispatch(verified)
            await self._record_outcome(handle, verified, result)
            await self.db.commit()
        except Exception as exc:
            logger.exception(f"Webhook processing error for {verified.event_id}")
            await self._safe_rollback()
            await self._record_failure(handle, verified, exc, tenant_id=result.tenant_id if result else None)
            return _error(500, "Webhook processing failed", message=str(exc))

        if result.outcome == "deferred":
            return _ack(STATUS_DEFERRED)
        return _ack(STATUS_PROCESSED, result.notifications)

    async def _dispatch(self, verified: VerifiedEvent) -> DispatchResult:
        try:
            event = parse_provider_event(verified.payload)
            if event is None:
                logger.info(f"Unhandled event type {verified.event_type}")
                return DispatchResult(outcome="ignored", metadata={"reason": "unhandled event type"})
            return await self.state_machine.dispatch(event)
        except MalformedEvent as exc:
            # permanent: retrying can't fix the payload, so acknowledge and audit
            await self.db.rollback()
            logger.warning(f"Soft failure for {verified.event_id}: {exc}")
            return DispatchResult(
                outcome="soft_failed",
                tenant_id=_payload_tenant_id(verified.payload),
                error=str(exc),
                metadata={"reason": exc.code},
            )

    async def _record_outcome(
        self, handle: EventRecordHandle, verified: VerifiedEvent, result: DispatchResult
    ) -> None:
        await self.audit.record_event_outcome(
            verified.event_id,
            verified.event_type,
            result.outcome,
            tenant_id=result.tenant_id,
            error=result.error,
            metadata={**result.metadata, "attempt": handle.attempt_count},
        )
        if result.outcome == "deferred":
            await self.events.mark_failed(
                handle,
                result.error or "deferred",
                tenant_id=result.tenant_id,
                pending_payment_ref=result.metadata.get("ledger_ref"),
            )
            return
        await self.events.mark_processed(handle, tenant_id=result.tenant_id)
        await self._resolve_failures(verified.event_id)

        charge_ref = result.metadata.get("ledger_ref")
        if charge_ref and verified.event_type != "charge.refunded":
            await self._apply_pending_refunds(charge_ref, verified.event_id)

    async def _apply_pending_refunds(self, payment_ref: str, charge_event_id: str) -> None:
        """Re-dispatch refunds that arrived before the charge on *payment_ref*.

        Runs in the charge event's unit of work, so the charge and its refunds
        commit together.
        """
        for stored in await self.events.pending_refunds(payment_ref):
            event = parse_provider_event(json.loads(stored.raw_payload))
            result = await self.state_machine.dispatch(event)
            if result.outcome == "deferred":
                continue
            logger.info(f"Applied deferred refund {stored.provider_event_id} after {charge_event_id}")
            await self.audit.record_event_outcome(
                stored.provider_event_id,
                stored.provider_event_type,
                result.outcome,
                tenant_id=result.tenant_id,
                error=result.error,
                metadata={**result.metadata, "applied_after": charge_event_id},
            )
            handle = EventRecordHandle(
                id=stored.id,
                provider_event_id=stored.provider_event_id,
                attempt_count=stored.attempt_count,
            )
            await self.events.mark_processed(handle, tenant_id=result.tenant_id)
            await self._resolve_failures(stored.provider_event_id)

    async def _resolve_failures(self, provider_event_id: str) -> None:
        await self.db.execute(
            update(ProcessingFailure)
            .where(
                ProcessingFailure.provider_event_id == provider_event_id,
                ProcessingFailure.resolved_at.is_(None),
            )
            .values(resolved_at=datetime.utcnow())
        )

    async def _record_failure(
        self,
        handle: EventRecordHandle,
        verified: VerifiedEvent,
        exc: Exception,
        tenant_id: Optional[str] = None,
    ) -> None:
        error = f"{type(exc).__name__}: {exc}"
        try:
            await self.events.mark_failed(handle, error, tenant_id=tenant_id)
            self.db.add(
                ProcessingFailure(
                    provider_event_id=verified.event_id,
                    attempt_number=handle.attempt_count,
                    error_type=type(exc).__name__,
                    error_message=str(exc) or type(exc).__name__,
                    traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                )
            )
            await self.audit.record_event_outcome(
                verified.event_id,
                verified.event_type,
                "failed",
                tenant_id=tenant_id,
                error=error,
                metadata={"attempt": handle.attempt_count, "error_code": getattr(exc, "code", "internal_error")},
            )
            await self.db.commit()
        except Exception:
            await self._safe_rollback()
            logger.exception(f"Failed to record webhook error for {verified.event_id}")

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except Exception:
            logger.exception("Rollback failed")
