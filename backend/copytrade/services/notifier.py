"""
Outbound user notifications.

Delivery is best effort: callers log and continue when a notification fails.
Uses the Resend HTTP API when RESEND_API_KEY is configured, otherwise only logs.
"""

from decimal import Decimal
from typing import Optional, Protocol
import logging

import httpx

from copytrade.core.config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when the email provider rejects or cannot receive a message"""
    pass


class Notifier(Protocol):
    async def notify(self, address: str, subject: str, body: str) -> None: ...


class LogNotifier:
    """Development notifier: writes the message to the log"""

    async def notify(self, address: str, subject: str, body: str) -> None:
        logger.info(f"Notification to {address}: {subject}")


class ResendNotifier:

    def __init__(self, api_key: str, sender: str, url: str, timeout: float = 10.0):
        self.api_key = api_key
        self.sender = sender
        self.url = url
        self.timeout = timeout

    async def notify(self, address: str, subject: str, body: str) -> None:
        payload = {"from": self.sender, "to": [address], "subject": subject, "html": body}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Email to {address} failed: {e}") from e


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        if settings.RESEND_API_KEY:
            _notifier = ResendNotifier(settings.RESEND_API_KEY, settings.RESEND_FROM_EMAIL, settings.RESEND_API_URL)
        else:
            _notifier = LogNotifier()
    return _notifier


# ============================================================================
# TEMPLATES
# ============================================================================

def payment_completed(name: Optional[str], amount: Decimal, transaction_id: str) -> tuple[str, str]:
    subject = "Your payment has been approved"
    body = (
        f"<p>Hi {name or 'there'},</p>"
        f"<p>Your payment <b>{transaction_id}</b> was verified and "
        f"<b>${amount:,.2f}</b> has been credited to your wallet.</p>"
        f"<p><a href=\"{settings.FRONTEND_URL}/wallet\">View your wallet</a></p>"
    )
    return subject, body


def payment_rejected(name: Optional[str], transaction_id: str, reason: Optional[str]) -> tuple[str, str]:
    subject = "Your payment could not be verified"
    body = (
        f"<p>Hi {name or 'there'},</p>"
        f"<p>Your payment <b>{transaction_id}</b> was rejected.</p>"
        f"<p>Reason: {reason or 'not specified'}</p>"
    )
    return subject, body


def admin_message(name: Optional[str], transaction_id: str, message: str) -> tuple[str, str]:
    subject = "Action needed on your payment"
    body = (
        f"<p>Hi {name or 'there'},</p>"
        f"<p>Our team left a message about payment <b>{transaction_id}</b>:</p>"
        f"<blockquote>{message}</blockquote>"
    )
    return subject, body
