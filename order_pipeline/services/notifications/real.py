"""
SendGrid Notifier

Production implementation delivering kitchen tickets and payment
receipts by email through SendGrid.
"""

import asyncio
import logging
from typing import Any, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from order_pipeline.core.config import get_settings
from order_pipeline.services.notifications.base import (
    BaseNotifier,
    NotificationResult,
)
from order_pipeline.services.notifications.templates import render

logger = logging.getLogger(__name__)


class SendGridNotifier(BaseNotifier):
    """Production notifier using SendGrid."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        settings = get_settings()
        api_key = api_key or settings.sendgrid_api_key

        if api_key:
            self.sendgrid_client = SendGridAPIClient(api_key)
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        self.from_email = from_email or settings.sendgrid_from_email
        logger.info("SendGridNotifier initialized")

    @property
    def provider_name(self) -> str:
        return "sendgrid"

    async def send(
        self,
        destination: str,
        template: str,
        data: dict[str, Any],
    ) -> NotificationResult:
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid"
            )

        rendered = render(template, data)

        try:
            message = Mail(
                from_email=self.from_email,
                to_emails=destination,
                subject=rendered.subject,
                html_content=rendered.html,
                plain_text_content=rendered.text,
            )

            # The SendGrid client is blocking
            response = await asyncio.to_thread(self.sendgrid_client.send, message)

            logger.info(f"Email sent to {destination}: {response.status_code}")

            return NotificationResult(
                success=response.status_code in [200, 201, 202],
                message_id=response.headers.get("X-Message-Id"),
                error_message=None if response.status_code in [200, 201, 202] else f"HTTP {response.status_code}",
                provider="sendgrid"
            )

        except Exception as e:
            logger.error(f"SendGrid error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="sendgrid"
            )

    async def health_check(self) -> bool:
        return self.sendgrid_client is not None
