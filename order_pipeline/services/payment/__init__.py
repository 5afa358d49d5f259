"""
Payment Gateway Factory

Provides a single entry point for obtaining a payment gateway instance.

Usage:
    from order_pipeline.services.payment import get_payment_gateway

    # Returns MockPaymentGateway or StripePaymentGateway based on ENV_MODE
    gateway = get_payment_gateway()

Environment Switching:
    - ENV_MODE=development → MockPaymentGateway (no API calls)
    - ENV_MODE=staging → StripePaymentGateway (test keys)
    - ENV_MODE=production → StripePaymentGateway (live keys)
"""

import logging
from functools import lru_cache

from order_pipeline.core.config import get_settings
from order_pipeline.services.payment.base import (
    BasePaymentGateway,
    PaymentLinkResult,
)
from order_pipeline.services.payment.mock import MockPaymentGateway
from order_pipeline.services.payment.stripe import StripePaymentGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_gateway() -> BasePaymentGateway:
    """
    Get the configured payment gateway instance (cached).

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Gateway: Using MockPaymentGateway (development mode)")
        return MockPaymentGateway(min_latency=0.05, max_latency=0.2)

    logger.info(
        f"Payment Gateway: Using StripePaymentGateway "
        f"({settings.env_mode.value} mode)"
    )
    return StripePaymentGateway()


def reset_payment_gateway() -> None:
    """Clear the cached gateway instance."""
    get_payment_gateway.cache_clear()
    logger.debug("Payment gateway cache cleared")


__all__ = [
    "get_payment_gateway",
    "reset_payment_gateway",
    "BasePaymentGateway",
    "PaymentLinkResult",
    "MockPaymentGateway",
    "StripePaymentGateway",
]
