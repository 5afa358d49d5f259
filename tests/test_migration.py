import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from order_pipeline.core.exceptions import DataIntegrityError, MigrationError
from order_pipeline.models import Customer, MenuItem, Order, Restaurant
from order_pipeline.schemas import LineItem
from order_pipeline.services.migration import OrderMigrator


@pytest.fixture
def migrator(session_maker, price_calculator):
    return OrderMigrator(session_maker, price_calculator)


async def count(session_maker, model) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count(model.id)))


async def load_order(session_maker, order_id) -> Order:
    async with session_maker() as session:
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.customer))
        )
        return result.scalar_one()


async def test_migrates_order_with_items(migrator, session_maker, staged_order):
    order_id = await migrator(staged_order)

    order = await load_order(session_maker, order_id)
    assert order.staging_id == staged_order.id
    assert order.order_number == staged_order.order_number
    assert order.subtotal == 20.46
    assert order.tax == 1.64
    assert order.total == 22.10
    assert order.processing_fee == 1.04
    assert order.payment_status == "paid"
    assert order.customer.email == "jane@example.com"
    assert sorted((i.quantity, i.price_at_time) for i in order.items) == [(1, 5.47), (1, 14.99)]
    assert next(i for i in order.items if i.price_at_time == 5.47).special_instructions == "extra garlic"

    async with session_maker() as session:
        restaurant = (await session.execute(select(Restaurant))).scalar_one()
    assert restaurant.name == "Pizza Palace"
    assert restaurant.external_id == "pizza-palace"


async def test_migration_is_idempotent(migrator, session_maker, staged_order):
    first = await migrator(staged_order)
    second = await migrator(staged_order)

    assert first == second
    assert await count(session_maker, Order) == 1


async def test_prices_are_recomputed(migrator, session_maker, staged_order):
    tampered = staged_order.model_copy(update={"subtotal": 1.0, "tax": 0.0, "total": 1.0})

    order = await load_order(session_maker, await migrator(tampered))
    assert order.total == 22.10


async def test_reuses_customer_restaurant_and_menu_items(migrator, session_maker, store, draft):
    await migrator(store.put(draft))
    await migrator(store.put(draft))

    assert await count(session_maker, Order) == 2
    assert await count(session_maker, Customer) == 1
    assert await count(session_maker, Restaurant) == 1
    assert await count(session_maker, MenuItem) == 2


async def test_customer_matched_by_phone_without_email(migrator, session_maker, store, draft):
    await migrator(store.put(draft))
    phone_only = draft.model_copy(update={"customer_email": None, "customer_name": "J. Doe"})

    order = await load_order(session_maker, await migrator(store.put(phone_only)))
    assert order.customer.email == "jane@example.com"
    assert await count(session_maker, Customer) == 1


async def test_missing_price_is_a_data_integrity_error(migrator, session_maker, store, draft):
    broken = draft.model_copy(
        update={"items": [LineItem(name="Mystery Soup", unit_price=None, quantity=1)]}
    )

    with pytest.raises(DataIntegrityError, match="Mystery Soup"):
        await migrator(store.put(broken))
    assert await count(session_maker, Order) == 0


async def test_empty_order_is_a_data_integrity_error(migrator, store, draft):
    with pytest.raises(DataIntegrityError):
        await migrator(store.put(draft.model_copy(update={"items": []})))


async def test_store_outage_raises_migration_error(broken_session_maker, price_calculator, staged_order):
    migrator = OrderMigrator(broken_session_maker, price_calculator)

    with pytest.raises(MigrationError) as exc_info:
        await migrator(staged_order)
    assert not isinstance(exc_info.value, DataIntegrityError)


async def test_clashing_order_numbers_both_migrate(migrator, session_maker, store, draft):
    first = store.put(draft)
    second = store.put(draft)
    second = store.update(second.id, {"order_number": first.order_number})
    assert second.order_number == first.order_number

    first_id = await migrator(first)
    second_id = await migrator(second)

    assert first_id != second_id
    assert (await load_order(session_maker, first_id)).order_number == first.order_number
    renumbered = (await load_order(session_maker, second_id)).order_number
    assert renumbered != first.order_number
    assert renumbered.startswith("ORD-")
    assert await count(session_maker, Order) == 2
