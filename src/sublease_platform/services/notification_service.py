"""Fire-and-forget agreement notifications via SendGrid.

Delivery failures are logged and never raised: a notification can not roll
back the transition that triggered it. With no SENDGRID_API_KEY configured
notifications are only logged.
"""

import asyncio
import logging
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

from sublease_platform.app.config import get_settings
from sublease_platform.domain.enums import NotificationEvent

logger = logging.getLogger(__name__)

SUBJECTS: dict[NotificationEvent, str] = {
    NotificationEvent.AGREEMENT_LOCKED: "A sublease agreement is ready for your signature",
    NotificationEvent.AGREEMENT_RECALLED: "A sublease agreement was recalled for editing",
    NotificationEvent.AGREEMENT_SIGNED: "Your tenant signed the sublease agreement",
    NotificationEvent.AGREEMENT_COMPLETED: "Your sublease agreement is complete",
    NotificationEvent.AGREEMENT_CANCELLED: "A sublease agreement was cancelled",
    NotificationEvent.AGREEMENT_DECLINED: "The tenant declined the sublease agreement",
    NotificationEvent.PAYMENT_PROCESSING: "Your service fee payment is processing",
    NotificationEvent.PAYMENT_RECEIVED: "Service fee payment received",
    NotificationEvent.PAYMENT_FAILED: "Your service fee payment failed",
}


def _build_html(event: NotificationEvent, agreement_id: str, detail: Optional[str]) -> str:
    frontend_url = get_settings().frontend_url.rstrip("/")
    link = f"{frontend_url}/agreements/{agreement_id}"
    extra = f"<p style=\"color: #4b5563;\">{detail}</p>" if detail else ""
    return f"""
<html>
<body style="font-family: Arial, sans-serif; color: #111827;">
    <h2 style="font-size: 18px;">{SUBJECTS[event]}</h2>
    {extra}
    <p><a href="{link}" style="color: #2563eb;">View the agreement</a></p>
</body>
</html>
"""


def _send_mail(api_key: str, mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = sendgrid.SendGridAPIClient(api_key=api_key)
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error("SendGrid returned status %s: %s", response.status_code, response.body)
    return False


class NotificationService:
    """Notification sink for agreement lifecycle and payment events."""

    def __init__(self, api_key: Optional[str] = None, sender: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.sender = sender or settings.notification_from

    async def notify(
        self,
        event: NotificationEvent,
        agreement_id: str,
        recipient_email: Optional[str],
        detail: Optional[str] = None,
    ) -> bool:
        """Deliver one notification. Returns True if it was handed to SendGrid."""
        logger.info("Notification %s for agreement %s -> %s", event.value, agreement_id, recipient_email)
        if not recipient_email:
            return False
        if not self.api_key:
            logger.debug("SENDGRID_API_KEY not set, %s logged only", event.value)
            return False

        try:
            mail = Mail(
                from_email=Email(self.sender, "Sublease Agreements"),
                to_emails=To(recipient_email),
                subject=SUBJECTS[event],
                html_content=HtmlContent(_build_html(event, agreement_id, detail)),
            )
            return await asyncio.to_thread(_send_mail, self.api_key, mail)
        except Exception:
            logger.warning(
                "Failed to send %s notification for agreement %s", event.value, agreement_id,
                exc_info=True,
            )
            return False


def get_notification_service() -> NotificationService:
    """FastAPI dependency: notification sink configured from settings."""
    return NotificationService()
