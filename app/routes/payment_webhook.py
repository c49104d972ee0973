import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse

from app.core.dependencies import get_notifier, get_orchestrator
from app.services.orchestrator import ReconciliationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Payment Webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
    notifier=Depends(get_notifier),
):
    # the signature covers the exact bytes; never parse before verifying
    body = await request.body()
    outcome = await orchestrator.handle(body, stripe_signature)

    for notification in outcome.notifications:
        background_tasks.add_task(notifier.send, notification)

    return JSONResponse(status_code=outcome.http_status, content=outcome.body)
