"""
Stripe Payment Gateway Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Payment links carry the staging id in their metadata and in the metadata
of the PaymentIntents they create, so every webhook can be traced back to
the staged order.

Version: 1.0.0
"""

import logging
from datetime import datetime
from typing import Any, Optional

import stripe

from order_pipeline.core.config import get_settings
from order_pipeline.services.payment.base import (
    BasePaymentGateway,
    PaymentLinkResult,
)

logger = logging.getLogger(__name__)


class StripePaymentGateway(BasePaymentGateway):
    """
    Production Stripe gateway.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
        Uses STRIPE_WEBHOOK_SECRET for webhook verification.
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        self._webhook_secret = settings.stripe_webhook_secret
        self._currency = settings.stripe_currency
        self._base_url = settings.app_base_url

        logger.info(
            f"StripePaymentGateway initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        return "stripe"

    def _convert_to_cents(self, amount: float) -> int:
        """Stripe expects amounts in the smallest currency unit (cents for USD)."""
        return int(round(amount * 100))

    async def create_payment_link(
        self,
        order_ref: str,
        amount: float,
        customer_info: dict[str, Any],
        expires_at: datetime,
        description: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> PaymentLinkResult:
        start_time = datetime.now()

        if amount <= 0:
            return PaymentLinkResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        link_metadata = {
            "staging_id": order_ref,
            "customer_name": customer_info.get("name") or "",
            "customer_email": customer_info.get("email") or "",
            "expires_at": expires_at.isoformat(),
            **(metadata or {}),
        }

        try:
            price = stripe.Price.create(
                unit_amount=self._convert_to_cents(amount),
                currency=self._currency,
                product_data={"name": description or f"Order {order_ref}"},
            )
            link = stripe.PaymentLink.create(
                line_items=[{"price": price.id, "quantity": 1}],
                metadata=link_metadata,
                payment_intent_data={"metadata": link_metadata},
                after_completion={
                    "type": "redirect",
                    "redirect": {
                        "url": f"{self._base_url}/order-confirmation?staging_id={order_ref}"
                    },
                },
            )

            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.info(f"Stripe: PaymentLink created - {link.id} for {order_ref}")

            return PaymentLinkResult(
                success=True,
                link_id=link.id,
                url=link.url,
                expires_at=expires_at,
                amount=amount,
                currency=self._currency,
                response_time_ms=elapsed_ms,
            )

        except stripe.InvalidRequestError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Invalid request - {e}")
            return PaymentLinkResult(
                success=False,
                error_message=str(e),
                error_code="invalid_request",
                response_time_ms=elapsed_ms,
            )

        except stripe.AuthenticationError as e:
            logger.critical(f"Stripe: Authentication failed - {e}")
            return PaymentLinkResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        except stripe.APIConnectionError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Connection error - {e}")
            return PaymentLinkResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                response_time_ms=elapsed_ms,
            )

        except stripe.StripeError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Error - {e}")
            return PaymentLinkResult(
                success=False,
                error_message="Payment processing error",
                error_code="stripe_error",
                response_time_ms=elapsed_ms,
            )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """
        Verify and parse a Stripe webhook event.

        SECURITY: Always verify webhook signatures in production
        to prevent spoofed events.
        """
        if not self._webhook_secret:
            logger.error("Stripe: Webhook secret not configured, rejecting event")
            return None

        if not signature:
            logger.warning("Stripe: Webhook received without signature")
            return None

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None
        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload invalid - {e}")
            return None

        logger.debug(f"Stripe: Webhook verified - {event['type']}")
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    async def health_check(self) -> bool:
        try:
            stripe.Account.retrieve()
            logger.debug("Stripe: Health check passed")
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
