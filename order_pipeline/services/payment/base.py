"""
Payment Gateway Abstract Base Class

Defines the interface contract for all payment gateway implementations.
Both MockPaymentGateway and StripePaymentGateway implement these methods,
so the staging pipeline behaves identically regardless of which is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations

Webhook events from every provider are normalized into GatewayEvent
(checkout_completed / payment_succeeded / payment_failed / checkout_expired)
before they reach the reconciler.

Version: 1.0.0
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from order_pipeline.schemas import GatewayEvent, GatewayEventType

logger = logging.getLogger(__name__)


# Stripe event type -> shared vocabulary
STRIPE_EVENT_TYPES = {
    "checkout.session.completed": GatewayEventType.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": GatewayEventType.CHECKOUT_COMPLETED,
    "payment_intent.succeeded": GatewayEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventType.PAYMENT_FAILED,
    "checkout.session.async_payment_failed": GatewayEventType.PAYMENT_FAILED,
    "checkout.session.expired": GatewayEventType.CHECKOUT_EXPIRED,
}

# Metadata keys that may carry the staging id
STAGING_ID_KEYS = ("staging_id", "stagingId", "tempOrderId", "orderId")


@dataclass
class PaymentLinkResult:
    """
    Standardized result from payment link creation.

    Attributes:
        success: Whether the link was created
        link_id: Provider identifier of the link (Stripe format: plink_xxx)
        url: Customer-facing payment URL
        expires_at: When the link should be treated as expired
        amount: Amount in dollars
        error_message: Error description if creation failed
        error_code: Machine-readable error code
        response_time_ms: Time taken by the provider
    """
    success: bool
    link_id: Optional[str] = None
    url: Optional[str] = None
    expires_at: Optional[datetime] = None
    amount: Optional[float] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(ABC):
    """
    Abstract base class for payment gateways.

    Example:
        >>> gateway = get_payment_gateway()  # Returns Mock or Stripe
        >>> result = await gateway.create_payment_link(
        ...     order_ref="TEMP-1700000000000-0042",
        ...     amount=22.10,
        ...     customer_info={"name": "Jane", "email": "jane@example.com"},
        ...     expires_at=tomorrow,
        ... )
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider."""
        pass

    @abstractmethod
    async def create_payment_link(
        self,
        order_ref: str,
        amount: float,
        customer_info: dict[str, Any],
        expires_at: datetime,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> PaymentLinkResult:
        """
        Create a hosted payment link for a staged order.

        Args:
            order_ref: Staging id; echoed back in webhook metadata
            amount: Amount in dollars (e.g., 22.10)
            customer_info: Name / email of the payer
            expires_at: Expiry recorded with the link
            description: Line shown on the checkout page
            metadata: Extra key-value data attached to the link
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """
        Verify and parse a webhook from the payment provider.

        Returns:
            dict: Parsed webhook event if valid, None if invalid
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the payment provider."""
        pass

    def normalize_event(self, event: dict[str, Any]) -> Optional[GatewayEvent]:
        """
        Translate a provider event into the shared vocabulary.

        Accepts Stripe-shaped events (``{"type": "checkout.session.completed",
        "data": {"object": {...}}}``) and events already expressed in the
        shared vocabulary. Returns None for event types the pipeline ignores.
        """
        raw_type = event.get("type")
        if not raw_type:
            return None

        try:
            event_type = GatewayEventType(raw_type)
        except ValueError:
            event_type = STRIPE_EVENT_TYPES.get(raw_type)

        if event_type is None:
            logger.info(f"Ignoring unhandled payment event type: {raw_type}")
            return None

        obj = (event.get("data") or {}).get("object")
        if obj is None:
            # Already normalized
            return GatewayEvent(
                type=event_type,
                gateway_id=str(event.get("gateway_id") or event.get("id") or ""),
                staging_id=event.get("staging_id"),
                transaction_id=event.get("transaction_id"),
                failure_reason=event.get("failure_reason"),
                raw_type=raw_type,
            )

        metadata = obj.get("metadata") or {}
        staging_id = next((metadata[k] for k in STAGING_ID_KEYS if metadata.get(k)), None)
        staging_id = staging_id or obj.get("client_reference_id")

        failure_reason = None
        if event_type == GatewayEventType.PAYMENT_FAILED:
            last_error = obj.get("last_payment_error") or {}
            failure_reason = last_error.get("message") or "Payment failed"

        object_id = obj.get("id")
        gateway_id = obj.get("payment_link") or object_id or event.get("id")

        return GatewayEvent(
            type=event_type,
            gateway_id=str(gateway_id or ""),
            staging_id=staging_id,
            transaction_id=obj.get("payment_intent") or object_id,
            failure_reason=failure_reason,
            raw_type=raw_type,
        )
