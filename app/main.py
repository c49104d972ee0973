import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from app.config import settings
from app.routes import payment_webhook, reconciliation
from app.services.notifications import EmailNotifier
from app.services.stripe_client import StripeGateway

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # process-lifetime clients, injected into routes through app.state
    app.state.payment_provider = StripeGateway(settings.STRIPE_SECRET_KEY)
    app.state.notifier = EmailNotifier(settings.RESEND_API_KEY, settings.EMAIL_FROM)
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook will be rejected")
    yield


app = FastAPI(title=settings.PROJECT_NAME, version=settings.PROJECT_VERSION, lifespan=lifespan)

app.include_router(payment_webhook.router)
app.include_router(reconciliation.router)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}


# Document the operator token in Swagger
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        description="Payment-event reconciliation service",
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "AdminToken": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Admin-Token",
        }
    }
    for path in openapi_schema["paths"]:
        if not path.startswith("/billing"):
            continue
        for method in openapi_schema["paths"][path]:
            openapi_schema["paths"][path][method]["security"] = [{"AdminToken": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi
