"""
Order Migration

Writes a paid staged order into the permanent store:
    1. Validate the snapshot (every line item needs a valid price)
    2. Resolve or create the customer (email, then phone, then name)
    3. Resolve or create the restaurant by name
    4. Resolve or create each menu item by (name, restaurant)
    5. Insert the order and its items, all inside one transaction

Prices are recomputed with the canonical price function instead of being
copied from the snapshot. The migration does not retry; callers route
failures to the durable queue or the retry journal.

Migrating the same staged order twice returns the existing permanent id.
"""

import logging
import math
import random
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_pipeline.core.config import get_settings
from order_pipeline.core.exceptions import DataIntegrityError, MigrationError
from order_pipeline.models import (
    Customer,
    MenuItem,
    Order,
    OrderItem,
    PermanentOrderStatus,
    Restaurant,
)
from order_pipeline.schemas import LineItem, StagedOrder
from order_pipeline.services.pricing import PriceCalculator

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def validate_staged_order(order: StagedOrder) -> None:
    """
    Reject snapshots that retrying cannot fix.

    Raises:
        DataIntegrityError: No items, missing customer name, or an item
            without a positive finite price
    """
    if not order.items:
        raise DataIntegrityError(f"Staged order {order.id} has no items")
    if not order.customer_name or not order.customer_name.strip():
        raise DataIntegrityError(f"Staged order {order.id} has no customer name")

    for item in order.items:
        price = item.unit_price
        if price is None or not math.isfinite(price) or price <= 0:
            raise DataIntegrityError(
                f"Invalid price for menu item: {item.name}. All items must have valid prices."
            )


class OrderMigrator:
    """
    Callable migration function: ``await migrator(staged_order) -> order id``.

    Used by the reconciler (direct path), the queue worker and the retry
    sweeper (deferred paths).
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        price_calculator: Optional[PriceCalculator] = None,
        order_number_prefix: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.price_calculator = price_calculator or PriceCalculator()
        self.order_number_prefix = order_number_prefix or get_settings().order_number_prefix

    async def __call__(self, order: StagedOrder) -> int:
        return await self.migrate(order)

    async def migrate(self, order: StagedOrder) -> int:
        validate_staged_order(order)

        try:
            async with self.session_maker() as session:
                async with session.begin():
                    existing_id = await session.scalar(
                        select(Order.id).where(Order.staging_id == order.id)
                    )
                    if existing_id is not None:
                        logger.info(
                            f"Staged order {order.id} already migrated as order #{existing_id}"
                        )
                        return existing_id

                    order_id = await self._insert_order(session, order)
        except DataIntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to migrate staged order {order.id}: {e}")
            raise MigrationError(f"Permanent store write failed for {order.id}: {e}") from e

        logger.info(f"✅ Staged order {order.id} migrated as order #{order_id}")
        return order_id

    async def _insert_order(self, session: AsyncSession, order: StagedOrder) -> int:
        customer = await self._resolve_customer(session, order)
        restaurant = await self._resolve_restaurant(session, order)

        prices = self.price_calculator.calculate_for_items(order.items)
        if abs(prices.total - order.total) >= 0.01:
            logger.warning(
                f"Staged total ${order.total:.2f} for {order.id} differs from "
                f"recomputed ${prices.total:.2f}; using recomputed prices"
            )

        metadata = order.metadata
        db_order = Order(
            order_number=await self._available_order_number(session, order),
            staging_id=order.id,
            status=PermanentOrderStatus.CONFIRMED.value,
            customer_id=customer.id,
            restaurant_id=restaurant.id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            subtotal=prices.subtotal,
            tax=prices.tax,
            processing_fee=prices.processing_fee,
            total=prices.total,
            payment_status="paid",
            payment_link_id=metadata.payment_link.id if metadata.payment_link else None,
            payment_transaction_id=metadata.payment_transaction_id,
            paid_at=_naive_utc(metadata.paid_at),
        )
        session.add(db_order)
        await session.flush()

        for item in order.items:
            menu_item = await self._resolve_menu_item(session, restaurant, item)
            session.add(
                OrderItem(
                    order_id=db_order.id,
                    menu_item_id=menu_item.id,
                    quantity=item.quantity,
                    price_at_time=item.unit_price,
                    special_instructions=item.special_instructions,
                )
            )
        await session.flush()
        return db_order.id

    def _generate_order_number(self) -> str:
        now = datetime.now(timezone.utc)
        return f"{self.order_number_prefix}-{now:%Y%m%d}-{random.randint(0, 99999):05d}"

    async def _available_order_number(self, session: AsyncSession, order: StagedOrder) -> str:
        """
        The staged order number, or a fresh one if another permanent order
        already holds it. Order numbers are assigned at staging time without
        a global check, so two staged orders can share one.
        """
        candidate = order.order_number or self._generate_order_number()
        while await session.scalar(
            select(Order.id).where(Order.order_number == candidate)
        ) is not None:
            replacement = self._generate_order_number()
            logger.warning(
                f"Order number {candidate} already taken; "
                f"staged order {order.id} migrates as {replacement}"
            )
            candidate = replacement
        return candidate

    # =========================================================================
    # RESOLVE-OR-CREATE
    # =========================================================================

    async def _resolve_customer(self, session: AsyncSession, order: StagedOrder) -> Customer:
        lookups = []
        if order.customer_email:
            lookups.append(Customer.email == order.customer_email)
        if order.customer_phone:
            lookups.append(Customer.phone == order.customer_phone)
        lookups.append(Customer.name == order.customer_name)

        for condition in lookups:
            customer = (
                await session.execute(select(Customer).where(condition).limit(1))
            ).scalar_one_or_none()
            if customer is not None:
                if order.customer_email and not customer.email:
                    customer.email = order.customer_email
                if order.customer_phone and not customer.phone:
                    customer.phone = order.customer_phone
                return customer

        customer = Customer(
            name=order.customer_name,
            email=order.customer_email,
            phone=order.customer_phone,
        )
        session.add(customer)
        await session.flush()
        logger.debug(f"Created customer #{customer.id} ({customer.name})")
        return customer

    async def _resolve_restaurant(self, session: AsyncSession, order: StagedOrder) -> Restaurant:
        restaurant = (
            await session.execute(
                select(Restaurant).where(Restaurant.name == order.restaurant_name)
            )
        ).scalar_one_or_none()
        if restaurant is not None:
            return restaurant

        restaurant = Restaurant(name=order.restaurant_name, external_id=order.restaurant_id)
        session.add(restaurant)
        await session.flush()
        logger.debug(f"Created restaurant #{restaurant.id} ({restaurant.name})")
        return restaurant

    async def _resolve_menu_item(
        self,
        session: AsyncSession,
        restaurant: Restaurant,
        item: LineItem,
    ) -> MenuItem:
        menu_item = (
            await session.execute(
                select(MenuItem).where(
                    MenuItem.restaurant_id == restaurant.id,
                    MenuItem.name == item.name,
                )
            )
        ).scalar_one_or_none()
        if menu_item is not None:
            return menu_item

        menu_item = MenuItem(name=item.name, price=item.unit_price, restaurant_id=restaurant.id)
        session.add(menu_item)
        await session.flush()
        return menu_item
