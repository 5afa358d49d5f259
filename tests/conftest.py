"""Shared fixtures: isolated stores, a file-backed SQLite permanent store, fake clocks."""

from datetime import datetime, timezone

import pytest

from order_pipeline.database import create_engine, create_session_maker, init_db
from order_pipeline.schemas import LineItem, OrderDraft
from order_pipeline.services.notifications import MockNotifier
from order_pipeline.services.pricing import PriceCalculator
from order_pipeline.services.staging_store import StagingStore
from tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def naive_clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0))


@pytest.fixture
def price_calculator() -> PriceCalculator:
    return PriceCalculator(tax_rate=0.08, fee_percentage=0.029, fee_fixed=0.40)


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
async def broken_session_maker(tmp_path):
    """Session maker whose database file cannot be opened."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'orders.db'}")
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def store(tmp_path, clock) -> StagingStore:
    return StagingStore(directory=tmp_path / "temp-orders", clock=clock)


@pytest.fixture
def notifier() -> MockNotifier:
    return MockNotifier()


@pytest.fixture
def draft() -> OrderDraft:
    """Subtotal 20.46, tax 1.64, total 22.10."""
    return OrderDraft(
        customer_name="Jane Doe",
        customer_email="jane@example.com",
        customer_phone="555-123-4567",
        restaurant_id="pizza-palace",
        restaurant_name="Pizza Palace",
        items=[
            LineItem(name="Pizza Margherita", unit_price=14.99, quantity=1),
            LineItem(name="Garlic Bread", unit_price=5.47, quantity=1, special_instructions="extra garlic"),
        ],
        subtotal=20.46,
        tax=1.64,
        total=22.10,
    )


@pytest.fixture
def staged_order(store, draft):
    return store.put(draft)
