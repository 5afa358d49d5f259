"""
Pydantic Schemas

Domain records for the staging pipeline plus request/response validation
for the HTTP surface:
- StagedOrder and its typed metadata bag
- Retry journal entries
- Normalized payment gateway events

Version: 1.0.0
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# ENUMS
# =============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class GatewayEventType(str, Enum):
    """Shared event vocabulary, whatever the payment provider."""
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_EXPIRED = "checkout_expired"


# =============================================================================
# STAGED ORDERS
# =============================================================================

class LineItem(BaseModel):
    """
    Single item in a staged order.

    ``unit_price`` is optional here on purpose: snapshots are stored as
    received and validated again by the migration step.
    """
    name: str
    unit_price: Optional[float] = None
    quantity: int = Field(default=1, ge=1)
    special_instructions: Optional[str] = None

    @property
    def total_price(self) -> float:
        return round(self.quantity * (self.unit_price or 0.0), 2)


class OrderDraft(BaseModel):
    """An order as placed, before the staging store assigns identity."""
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    restaurant_id: str
    restaurant_name: str
    items: List[LineItem]
    subtotal: float
    tax: float
    total: float


class PaymentLinkInfo(BaseModel):
    id: str
    url: str
    expires_at: datetime
    created_at: datetime


class NotificationRecord(BaseModel):
    sent: bool = False
    sent_at: Optional[datetime] = None
    message_id: Optional[str] = None
    destination: Optional[str] = None
    error: Optional[str] = None


class StagedOrderMetadata(BaseModel):
    """
    Well-known metadata fields. Fields arrive incrementally through
    StagingStore.update(); unknown keys are kept as extras.
    """
    model_config = ConfigDict(extra="allow")

    payment_link: Optional[PaymentLinkInfo] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    moved_to_permanent: bool = False
    permanent_order_id: Optional[int] = None
    moved_to_permanent_at: Optional[datetime] = None
    queue_item_id: Optional[int] = None

    kitchen_notification: Optional[NotificationRecord] = None
    receipt_notification: Optional[NotificationRecord] = None

    @model_validator(mode="after")
    def check_permanent_id(self) -> "StagedOrderMetadata":
        if self.moved_to_permanent and self.permanent_order_id is None:
            raise ValueError("moved_to_permanent requires permanent_order_id")
        return self

    @property
    def kitchen_notified(self) -> bool:
        return bool(self.kitchen_notification and self.kitchen_notification.sent)

    @property
    def receipt_sent(self) -> bool:
        return bool(self.receipt_notification and self.receipt_notification.sent)


class StagedOrder(OrderDraft):
    """An order held transiently while the customer completes payment."""
    id: str
    order_number: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    metadata: StagedOrderMetadata = Field(default_factory=StagedOrderMetadata)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


# =============================================================================
# RETRY JOURNAL
# =============================================================================

class RetryJournalEntry(BaseModel):
    """A failed migration, stored by value so it survives staging-store loss."""
    order: StagedOrder
    caller_identity: Optional[dict[str, Any]] = None
    correlation_id: str
    failure_reason: str
    retry_count: int = 0
    last_retry_time: Optional[datetime] = None
    next_retry_time: Optional[datetime] = None
    created_at: datetime


# =============================================================================
# PAYMENT GATEWAY EVENTS
# =============================================================================

class GatewayEvent(BaseModel):
    """
    Normalized payment gateway event.

    Attributes:
        type: Event type from the shared vocabulary
        gateway_id: Provider identifier (payment link id, intent id, ...)
        staging_id: Caller-supplied staging id found in the event metadata
        transaction_id: Provider transaction id (checkout session / intent)
        failure_reason: Decline message for payment_failed events
        raw_type: Provider-specific event type, for logging
    """
    type: GatewayEventType
    gateway_id: str
    staging_id: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_type: Optional[str] = None


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LineItemCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, examples=["Pizza Margherita"])
    unit_price: float = Field(..., gt=0, examples=[14.99])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    special_instructions: Optional[str] = Field(None, max_length=500)


class StageOrderRequest(BaseModel):
    """Request schema for staging a new order."""
    customer_name: str = Field(..., min_length=1, max_length=255, examples=["John Doe"])
    customer_email: Optional[str] = Field(None, examples=["john@example.com"])
    customer_phone: Optional[str] = Field(None, max_length=20)
    restaurant_id: str = Field(..., examples=["pizza-palace"])
    restaurant_name: str = Field(..., examples=["Pizza Palace"])
    items: List[LineItemCreate] = Field(..., min_length=1)

    # Totals are computed when omitted
    subtotal: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)
    total: Optional[float] = Field(None, ge=0)

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if "@" not in v:
            raise ValueError("Invalid email format")
        return v


class PaymentLinkRequest(BaseModel):
    expiration_days: Optional[int] = Field(None, ge=1, le=30)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class StagingStatus(BaseModel):
    staging_id: str
    status: PaymentStatus
    payment_link: Optional[PaymentLinkInfo] = None
    paid_at: Optional[datetime] = None
    moved_to_permanent: bool = False
    permanent_order_id: Optional[int] = None


class StageOrderResponse(BaseModel):
    success: bool = True
    staging_id: str
    order_number: Optional[str]
    total: float
    expires_at: datetime


class WebhookAck(BaseModel):
    received: bool = True


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_gateway: str
    notifier: str
    staged_orders: int
    timestamp: datetime
