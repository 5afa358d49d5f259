"""
Notifier Abstract Base Class

Defines the interface for delivering templated messages: kitchen intake
tickets and customer payment receipts. Supports both Mock (development)
and SendGrid (production) implementations.

Every call reports success or failure through NotificationResult; callers
treat delivery as best-effort and never raise on a failed send.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotifier(ABC):
    """Abstract base class for notifiers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send(
        self,
        destination: str,
        template: str,
        data: dict[str, Any],
    ) -> NotificationResult:
        """
        Render ``template`` with ``data`` and deliver it to ``destination``.

        Args:
            destination: Email address (kitchen intake or customer)
            template: Template name, see notifications.templates
            data: Template context
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass
