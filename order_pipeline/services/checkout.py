"""
Checkout Service

Caller-facing operations on staged orders:
    - stage an order (totals computed when the caller leaves them out)
    - create a hosted payment link for it
    - report its payment / migration status
"""

import logging
from datetime import timedelta
from typing import Optional

from order_pipeline.core.clock import Clock, utcnow
from order_pipeline.core.config import get_settings
from order_pipeline.core.exceptions import PaymentLinkError, StagedOrderNotFound
from order_pipeline.schemas import (
    LineItem,
    OrderDraft,
    PaymentLinkInfo,
    PaymentStatus,
    StagedOrder,
    StageOrderRequest,
    StagingStatus,
)
from order_pipeline.services.payment import BasePaymentGateway
from order_pipeline.services.pricing import PriceCalculator
from order_pipeline.services.staging_store import StagingStore

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(
        self,
        store: StagingStore,
        gateway: BasePaymentGateway,
        price_calculator: Optional[PriceCalculator] = None,
        link_expiry_days: Optional[int] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.price_calculator = price_calculator or PriceCalculator()
        self.link_expiry_days = link_expiry_days or get_settings().payment_link_expiry_days
        self.clock = clock

    def stage(self, request: StageOrderRequest) -> StagedOrder:
        items = [LineItem(**item.model_dump()) for item in request.items]

        if request.subtotal is None or request.tax is None or request.total is None:
            prices = self.price_calculator.calculate_for_items(items)
            subtotal, tax, total = prices.subtotal, prices.tax, prices.total
        else:
            subtotal, tax, total = request.subtotal, request.tax, request.total

        draft = OrderDraft(
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            customer_phone=request.customer_phone,
            restaurant_id=request.restaurant_id,
            restaurant_name=request.restaurant_name,
            items=items,
            subtotal=subtotal,
            tax=tax,
            total=total,
        )
        return self.store.put(draft)

    def _require(self, staging_id: str) -> StagedOrder:
        order = self.store.get(staging_id)
        if order is None:
            raise StagedOrderNotFound(staging_id)
        return order

    async def create_payment_link(
        self,
        staging_id: str,
        expiration_days: Optional[int] = None,
    ) -> PaymentLinkInfo:
        """
        Create a payment link for the staged total and record it on the order.

        Raises:
            StagedOrderNotFound: Unknown or expired staging id
            PaymentLinkError: Order already paid, or the gateway refused
        """
        order = self._require(staging_id)
        if order.metadata.payment_status == PaymentStatus.PAID:
            raise PaymentLinkError(f"Order {staging_id} is already paid", "already_paid")

        now = self.clock()
        expires_at = now + timedelta(days=expiration_days or self.link_expiry_days)

        result = await self.gateway.create_payment_link(
            order_ref=order.id,
            amount=order.total,
            customer_info={"name": order.customer_name, "email": order.customer_email},
            expires_at=expires_at,
            description=f"{order.restaurant_name} order {order.order_number or order.id}",
            metadata={
                "restaurant_id": order.restaurant_id,
                "restaurant_name": order.restaurant_name,
            },
        )
        if not result.success:
            logger.error(
                f"Payment link creation failed for {staging_id}: "
                f"{result.error_code} - {result.error_message}"
            )
            raise PaymentLinkError(
                result.error_message or "Payment link creation failed", result.error_code
            )

        link = PaymentLinkInfo(
            id=result.link_id,
            url=result.url,
            expires_at=result.expires_at or expires_at,
            created_at=now,
        )
        self.store.update(
            staging_id,
            {"metadata": {"payment_link": link, "payment_status": PaymentStatus.PENDING}},
        )

        logger.info(f"Payment link {link.id} created for {staging_id} (${order.total:.2f})")
        return link

    def get_staging_status(self, staging_id: str) -> StagingStatus:
        order = self._require(staging_id)
        metadata = order.metadata
        return StagingStatus(
            staging_id=order.id,
            status=metadata.payment_status,
            payment_link=metadata.payment_link,
            paid_at=metadata.paid_at,
            moved_to_permanent=metadata.moved_to_permanent,
            permanent_order_id=metadata.permanent_order_id,
        )
