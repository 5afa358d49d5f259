"""
Mock Payment Gateway Implementation

Simulates Stripe payment links without making real API calls.
Used in development mode (ENV_MODE=development) to:
    - Test the complete stage -> pay -> migrate flow locally
    - Run load simulations without incurring costs

Behavior:
    - Simulates response times
    - Optionally fails a share of link creations
    - Generates Stripe-like IDs (plink_mock_xxx)
    - Webhooks are accepted without signature verification

Version: 1.0.0
"""

import asyncio
import json
import logging
import random
import uuid
from datetime import datetime
from typing import Any, Optional

from order_pipeline.services.payment.base import (
    BasePaymentGateway,
    PaymentLinkResult,
)

logger = logging.getLogger(__name__)


class MockPaymentGateway(BasePaymentGateway):
    """
    Mock implementation of the payment gateway.

    Attributes:
        failure_rate: Probability of simulated link creation failure (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        links: Every link created, keyed by link id (handy in tests)
    """

    def __init__(
        self,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.links: dict[str, dict[str, Any]] = {}

        logger.info(
            f"MockPaymentGateway initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> float:
        latency = random.uniform(self.min_latency, self.max_latency)
        if latency > 0:
            await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def create_payment_link(
        self,
        order_ref: str,
        amount: float,
        customer_info: dict[str, Any],
        expires_at: datetime,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> PaymentLinkResult:
        if amount <= 0:
            return PaymentLinkResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()

        if self._should_fail():
            logger.debug(f"Mock: Payment link creation failed for {order_ref}")
            return PaymentLinkResult(
                success=False,
                amount=amount,
                error_message="Simulated payment link failure",
                error_code="processing_error",
                response_time_ms=latency_ms,
            )

        link_id = f"plink_mock_{uuid.uuid4().hex[:24]}"
        url = f"https://buy.stripe.com/mock/{link_id}"
        self.links[link_id] = {
            "order_ref": order_ref,
            "amount": amount,
            "customer_info": customer_info,
            "metadata": {"staging_id": order_ref, **(metadata or {})},
        }

        logger.info(f"Mock: Payment link created - {link_id} - ${amount:.2f} for {order_ref}")

        return PaymentLinkResult(
            success=True,
            link_id=link_id,
            url=url,
            expires_at=expires_at,
            amount=amount,
            response_time_ms=latency_ms,
            metadata={"mock": True, "description": description},
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """In mock mode the payload is parsed without verification."""
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Invalid webhook payload")
            return None
        return event if isinstance(event, dict) else None

    async def health_check(self) -> bool:
        return True
