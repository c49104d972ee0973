import asyncio
import hashlib
import hmac
import json
import time

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings
from app.core.dependencies import get_notifier, get_payment_provider
from app.core.errors import MalformedEvent
from app.database import Base, get_db
from app.main import app
from app.schemas.events import Subscription

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"


class FakeProvider:
    """Stands in for the Stripe gateway; subscriptions are plain dicts keyed by id."""

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self.error = None

    def add_subscription(self, sub_id, tenant_id=None, status="active", period_end=1893456000, customer="cus_1"):
        self.subscriptions[sub_id] = {
            "id": sub_id,
            "customer": customer,
            "status": status,
            "current_period_end": period_end,
            "metadata": {"tenantId": tenant_id} if tenant_id else {},
        }

    async def retrieve_subscription(self, subscription_id):
        self.calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        if subscription_id not in self.subscriptions:
            raise MalformedEvent(f"Subscription {subscription_id} does not exist")
        return Subscription.model_validate(self.subscriptions[subscription_id])


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, notification):
        self.sent.append(notification)
        return True


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    factory = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async def init_db():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    asyncio.run(init_db())
    yield factory
    asyncio.run(engine.dispose())


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(session_factory, provider, notifier, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "IDEMPOTENCY_FAIL_OPEN", True)

    async def override_get_db():
        async with session_factory() as session:
            yield session
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_event(event_id, event_type, obj, created=None):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def post_event(client, event, secret=WEBHOOK_SECRET, timestamp=None):
    body = json.dumps(event).encode()
    headers = {
        "Stripe-Signature": build_signature_header(body, secret, timestamp=timestamp),
        "Content-Type": "application/json",
    }
    return client.post("/webhooks/stripe", content=body, headers=headers)


def fetch_all(factory, model, *criteria):
    async def _fetch():
        async with factory() as session:
            stmt = select(model)
            if criteria:
                stmt = stmt.where(*criteria)
            result = await session.execute(stmt)
            return result.scalars().all()
    return asyncio.run(_fetch())


def fetch_one(factory, model, *criteria):
    rows = fetch_all(factory, model, *criteria)
    assert len(rows) <= 1
    return rows[0] if rows else None


def compute_signature(body, timestamp, secret):
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def build_signature_header(body, secret, timestamp=None):
    """Sign *body* the way Stripe does when it delivers a webhook."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(body, ts, secret)}"
