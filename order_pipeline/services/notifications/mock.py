"""
Mock Notifier

Simulates email delivery for development.
No actual messages are sent - rendered messages are logged and kept in
``sent`` for inspection.
"""

import asyncio
import logging
import random
import uuid
from typing import Any

from order_pipeline.services.notifications.base import (
    BaseNotifier,
    NotificationResult,
)
from order_pipeline.services.notifications.templates import RenderedMessage, render

logger = logging.getLogger(__name__)


class MockNotifier(BaseNotifier):
    """Mock notifier for development and tests."""

    def __init__(self, failure_rate: float = 0.0, latency: float = 0.0):
        self.failure_rate = failure_rate
        self.latency = latency
        self.sent: list[tuple[str, str, RenderedMessage]] = []
        logger.info(f"MockNotifier initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send(
        self,
        destination: str,
        template: str,
        data: dict[str, Any],
    ) -> NotificationResult:
        if self.latency:
            await asyncio.sleep(self.latency)

        message = render(template, data)

        if self._should_fail():
            logger.warning(f"Mock email failed (simulated) to {destination}")
            return NotificationResult(
                success=False,
                error_message="Simulated email failure",
                provider="mock"
            )

        message_id = f"email_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append((destination, template, message))
        logger.info(f"Mock email sent to {destination}: {message.subject} (ID: {message_id})")

        return NotificationResult(
            success=True,
            message_id=message_id,
            provider="mock"
        )

    async def health_check(self) -> bool:
        return True
