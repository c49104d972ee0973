"""Billing e-mails. Delivery is fire-and-forget: a failed send is logged and dropped."""
import asyncio
import logging
from dataclasses import dataclass

import resend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    html: str
    tenant_id: str | None = None


def subscription_activated(to: str, tenant_id: str) -> Notification:
    return Notification(
        to=to,
        tenant_id=tenant_id,
        subject="Payment card verified",
        html=(
            "<h2>Payment Card Verified</h2>"
            "<p>Your payment card has been verified and your subscription is now active.</p>"
            "<p>You can manage your billing details at any time from your dashboard.</p>"
        ),
    )


def payment_failed(to: str, tenant_id: str) -> Notification:
    return Notification(
        to=to,
        tenant_id=tenant_id,
        subject="Payment failed",
        html=(
            "<h2>We couldn't process your payment</h2>"
            "<p>Your latest invoice could not be charged. Your account stays available "
            "while we retry; please update your payment method to avoid interruption.</p>"
        ),
    )


class EmailNotifier:
    def __init__(self, api_key: str | None, sender: str):
        self.api_key = api_key
        self.sender = sender

    async def send(self, notification: Notification) -> bool:
        if not self.api_key:
            logger.info(f"Email disabled, not sending '{notification.subject}' to {notification.to}")
            return False
        resend.api_key = self.api_key
        try:
            await asyncio.to_thread(
                resend.Emails.send,
                {
                    "from": self.sender,
                    "to": notification.to,
                    "subject": notification.subject,
                    "html": notification.html,
                },
            )
        except Exception:
            # notification failure must never affect webhook processing
            logger.exception(
                f"Failed to send '{notification.subject}' for tenant {notification.tenant_id}"
            )
            return False
        return True
