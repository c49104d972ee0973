"""Thin async wrapper over the Stripe API calls the reconciliation engine needs."""
import asyncio
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError

from app.core.errors import MalformedEvent, TransientDependencyFailure
from app.schemas.events import Subscription

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


class StripeGateway:
    """Fetches authoritative provider objects.

    Blocking SDK calls run in a worker thread. Errors are translated into the
    reconciliation taxonomy: network, rate-limit and provider-side errors are
    transient; a subscription that does not exist is a malformed event.
    """

    def __init__(self, api_key: Optional[str], timeout: float = 10.0):
        self.api_key = api_key
        self.timeout = timeout

    async def retrieve_subscription(self, subscription_id: str) -> Subscription:
        if not self.api_key:
            raise TransientDependencyFailure("STRIPE_SECRET_KEY is not configured")

        def do_request():
            return stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)

        try:
            raw = await asyncio.wait_for(asyncio.to_thread(do_request), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientDependencyFailure(
                f"Timed out fetching subscription {subscription_id}"
            ) from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise MalformedEvent(f"Subscription {subscription_id} does not exist") from exc
            raise TransientDependencyFailure(f"Stripe rejected subscription lookup: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error(f"Stripe error fetching subscription {subscription_id}: {exc}")
            raise TransientDependencyFailure(f"Stripe unavailable: {exc}") from exc

        try:
            return Subscription.model_validate(_as_dict(raw))
        except ValidationError as exc:
            raise MalformedEvent(f"Unexpected subscription object {subscription_id}: {exc}") from exc
