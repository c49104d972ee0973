from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.services.notifications import EmailNotifier
from app.services.orchestrator import ReconciliationOrchestrator
from app.services.stripe_client import StripeGateway


def get_payment_provider(request: Request) -> StripeGateway:
    """The Stripe gateway built once at startup (see ``app.main.lifespan``)."""
    return request.app.state.payment_provider


def get_notifier(request: Request) -> EmailNotifier:
    return request.app.state.notifier


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_payment_provider),
) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(
        db,
        provider,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        fail_open=settings.IDEMPOTENCY_FAIL_OPEN,
    )


def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=503, detail="Operator endpoints are disabled")
    if x_admin_token != settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
