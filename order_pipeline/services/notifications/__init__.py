"""
Notifier Factory

Returns the Mock or SendGrid notifier based on ENV_MODE.
"""

import logging
from functools import lru_cache

from order_pipeline.core.config import get_settings
from order_pipeline.services.notifications.base import (
    BaseNotifier,
    NotificationResult,
)
from order_pipeline.services.notifications.mock import MockNotifier
from order_pipeline.services.notifications.real import SendGridNotifier
from order_pipeline.services.notifications.templates import (
    KITCHEN_TICKET,
    PAYMENT_RECEIPT,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_notifier() -> BaseNotifier:
    """Get the configured notifier."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notifier: Using MockNotifier (development mode)")
        return MockNotifier(failure_rate=0.05, latency=0.1)

    logger.info(f"Notifier: Using SendGridNotifier ({settings.env_mode.value} mode)")
    return SendGridNotifier()


def reset_notifier() -> None:
    """Clear the cached notifier instance."""
    get_notifier.cache_clear()


__all__ = [
    "get_notifier",
    "reset_notifier",
    "BaseNotifier",
    "NotificationResult",
    "MockNotifier",
    "SendGridNotifier",
    "KITCHEN_TICKET",
    "PAYMENT_RECEIPT",
]
