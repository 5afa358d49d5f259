"""
SQLAlchemy Database Models

Permanent store for migrated orders:
- Customers, restaurants and their menu items
- Orders and their line items
- The durable migration queue (order_queue)

All timestamp columns hold naive UTC datetimes.

Version: 1.0.0
"""

import enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Boolean,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from order_pipeline.core.clock import utcnow_naive
from order_pipeline.database import Base


class PermanentOrderStatus(str, enum.Enum):
    """Order status workflow once an order is in permanent storage."""
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QueueStatus(str, enum.Enum):
    """Lifecycle of a durable queue item."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=True, unique=True)
    phone = Column(String(20), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow_naive)
    updated_at = Column(DateTime, onupdate=utcnow_naive)

    orders = relationship("Order", back_populates="customer")

    def __repr__(self):
        return f"<Customer #{self.id} - {self.name}>"


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    external_id = Column(String(100), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow_naive)

    menu_items = relationship("MenuItem", back_populates="restaurant")

    def __repr__(self):
        return f"<Restaurant #{self.id} - {self.name}>"


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "name", name="uq_menu_item_restaurant_name"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    category = Column(String(100), nullable=True)
    is_available = Column(Boolean, default=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)

    restaurant = relationship("Restaurant", back_populates="menu_items")

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} ${self.price:.2f}>"


class Order(Base):
    """
    A paid order, migrated from the staging store.

    ``staging_id`` is unique, so migrating the same staged order twice
    resolves to the same row.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(50), nullable=False, unique=True)
    staging_id = Column(String(50), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default=PermanentOrderStatus.CONFIRMED.value, index=True)

    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    tax = Column(Float, nullable=False)
    processing_fee = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_status = Column(String(20), default="paid")
    payment_link_id = Column(String(100), nullable=True)
    payment_transaction_id = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow_naive)
    updated_at = Column(DateTime, onupdate=utcnow_naive)

    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Order #{self.id} - {self.order_number} - {self.status}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_at_time = Column(Float, nullable=False)
    special_instructions = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")


class OrderQueueItem(Base):
    """
    Durable migration work item.

    Survives process restarts, unlike the staging store. At most one
    worker holds a row in ``processing``; see DurableQueue.claim().
    """
    __tablename__ = "order_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Staged order snapshot and optional caller identity
    order_data = Column(JSON, nullable=False)
    caller_identity = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    created_at = Column(DateTime, nullable=False, default=utcnow_naive)
    updated_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True, index=True)
    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    error_message = Column(Text, nullable=True)
    correlation_id = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<OrderQueueItem #{self.id} - {self.status} ({self.attempts}/{self.max_attempts})>"
