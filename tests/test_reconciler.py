import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from order_pipeline.models import Order, QueueStatus
from order_pipeline.schemas import GatewayEvent, GatewayEventType, PaymentStatus
from order_pipeline.services.migration import OrderMigrator
from order_pipeline.services.notifications import KITCHEN_TICKET, PAYMENT_RECEIPT, MockNotifier
from order_pipeline.services.order_queue import DurableQueue
from order_pipeline.services.payment import MockPaymentGateway
from order_pipeline.services.reconciler import PaymentReconciler
from order_pipeline.services.retry_journal import RetryJournal
from tests.fakes import ScriptedMigrator


@pytest.fixture
def menu_dir(tmp_path):
    directory = tmp_path / "menu_data"
    directory.mkdir()
    (directory / "pizza-palace.json").write_text(
        json.dumps({"name": "Pizza Palace", "printer_email": "printer@pizzapalace.test"})
    )
    return directory


@pytest.fixture
def queue(session_maker, naive_clock):
    return DurableQueue(session_maker, clock=naive_clock)


@pytest.fixture
def journal(tmp_path, clock):
    return RetryJournal(directory=tmp_path / "failed-orders", clock=clock)


@pytest.fixture
def migrator(session_maker, price_calculator):
    return OrderMigrator(session_maker, price_calculator)


@pytest.fixture
def reconciler(store, notifier, migrator, queue, journal, menu_dir, clock):
    return PaymentReconciler(
        store,
        notifier,
        migrator,
        queue=queue,
        journal=journal,
        menu_data_directory=menu_dir,
        default_intake_email="central@orders.test",
        clock=clock,
    )


def paid_event(staging_id, gateway_id="cs_test_1", transaction_id="pi_test_1"):
    return GatewayEvent(
        type=GatewayEventType.PAYMENT_SUCCEEDED,
        gateway_id=gateway_id,
        staging_id=staging_id,
        transaction_id=transaction_id,
    )


async def count_orders(session_maker) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count(Order.id)))


async def test_paid_event_migrates_and_notifies(reconciler, notifier, session_maker, staged_order, clock):
    result = await reconciler.on_gateway_event(paid_event(staged_order.id))

    assert result.metadata.payment_status == PaymentStatus.PAID
    assert result.metadata.paid_at == clock.now
    assert result.metadata.payment_transaction_id == "pi_test_1"
    assert result.metadata.moved_to_permanent is True
    assert result.metadata.permanent_order_id is not None
    assert result.metadata.kitchen_notified
    assert result.metadata.receipt_sent

    destinations = [(dest, template) for dest, template, _ in notifier.sent]
    assert destinations == [
        ("printer@pizzapalace.test", KITCHEN_TICKET),
        ("jane@example.com", PAYMENT_RECEIPT),
    ]
    assert "Pizza Margherita" in notifier.sent[0][2].text
    assert "pi_test_1" in notifier.sent[1][2].text
    assert await count_orders(session_maker) == 1


async def test_duplicate_paid_event_is_absorbed(reconciler, notifier, session_maker, staged_order, clock):
    first = await reconciler.on_gateway_event(paid_event(staged_order.id))
    clock.advance(minutes=5)
    second = await reconciler.on_gateway_event(paid_event(staged_order.id))

    assert second.metadata.payment_status == PaymentStatus.PAID
    assert second.metadata.paid_at == first.metadata.paid_at
    assert second.metadata.permanent_order_id == first.metadata.permanent_order_id
    assert len(notifier.sent) == 2
    assert await count_orders(session_maker) == 1


async def test_concurrent_duplicate_paid_events(
    store, migrator, queue, journal, menu_dir, session_maker, staged_order, clock
):
    notifier = MockNotifier(latency=0.01)
    reconciler = PaymentReconciler(
        store,
        notifier,
        migrator,
        queue=queue,
        journal=journal,
        menu_data_directory=menu_dir,
        clock=clock,
    )

    first, second = await asyncio.gather(
        reconciler.on_gateway_event(paid_event(staged_order.id)),
        reconciler.on_gateway_event(paid_event(staged_order.id)),
    )

    assert first.metadata.payment_status == PaymentStatus.PAID
    assert second.metadata.payment_status == PaymentStatus.PAID
    templates = sorted(template for _, template, _ in notifier.sent)
    assert templates == sorted([KITCHEN_TICKET, PAYMENT_RECEIPT])
    assert await count_orders(session_maker) == 1
    assert (await queue.stats())["pending"] == 0
    assert store.get(staged_order.id).metadata.moved_to_permanent is True


async def test_lookup_by_payment_link_id(reconciler, store, staged_order, clock):
    store.update(
        staged_order.id,
        {
            "metadata": {
                "payment_link": {
                    "id": "plink_abc",
                    "url": "https://buy.stripe.com/abc",
                    "expires_at": clock.now + timedelta(days=1),
                    "created_at": clock.now,
                }
            }
        },
    )
    event = GatewayEvent(type=GatewayEventType.CHECKOUT_COMPLETED, gateway_id="plink_abc")

    result = await reconciler.on_gateway_event(event)
    assert result.id == staged_order.id
    assert result.metadata.payment_status == PaymentStatus.PAID


async def test_gateway_id_used_as_staging_id_fallback(reconciler, staged_order):
    event = GatewayEvent(type=GatewayEventType.CHECKOUT_COMPLETED, gateway_id=staged_order.id)

    result = await reconciler.on_gateway_event(event)
    assert result.metadata.payment_status == PaymentStatus.PAID


async def test_unknown_order_is_ignored(reconciler, notifier):
    result = await reconciler.on_gateway_event(paid_event("TEMP-0000000000000-0000", gateway_id="cs_x"))

    assert result is None
    assert notifier.sent == []


async def test_failed_and_expired_transitions(reconciler, store, draft):
    declined = store.put(draft)
    abandoned = store.put(draft)

    failed = await reconciler.on_gateway_event(
        GatewayEvent(
            type=GatewayEventType.PAYMENT_FAILED,
            gateway_id="pi_1",
            staging_id=declined.id,
            failure_reason="Your card was declined.",
        )
    )
    expired = await reconciler.on_gateway_event(
        GatewayEvent(type=GatewayEventType.CHECKOUT_EXPIRED, gateway_id="cs_2", staging_id=abandoned.id)
    )

    assert failed.metadata.payment_status == PaymentStatus.FAILED
    assert failed.metadata.failure_reason == "Your card was declined."
    assert expired.metadata.payment_status == PaymentStatus.EXPIRED


async def test_paid_is_sticky(reconciler, staged_order):
    await reconciler.on_gateway_event(paid_event(staged_order.id))

    stale = await reconciler.on_gateway_event(
        GatewayEvent(type=GatewayEventType.PAYMENT_FAILED, gateway_id="pi_old", staging_id=staged_order.id)
    )
    assert stale.metadata.payment_status == PaymentStatus.PAID


async def test_paid_after_failed_is_accepted(reconciler, staged_order):
    await reconciler.on_gateway_event(
        GatewayEvent(type=GatewayEventType.PAYMENT_FAILED, gateway_id="pi_1", staging_id=staged_order.id)
    )
    result = await reconciler.on_gateway_event(paid_event(staged_order.id, transaction_id="pi_2"))

    assert result.metadata.payment_status == PaymentStatus.PAID
    assert result.metadata.failure_reason is None


async def test_migration_failure_is_queued_once(store, notifier, queue, journal, menu_dir, staged_order):
    reconciler = PaymentReconciler(
        store, notifier, ScriptedMigrator(failures=10), queue=queue, journal=journal,
        menu_data_directory=menu_dir,
    )

    result = await reconciler.on_gateway_event(paid_event(staged_order.id))
    await reconciler.on_gateway_event(paid_event(staged_order.id))

    assert result.metadata.payment_status == PaymentStatus.PAID
    assert result.metadata.moved_to_permanent is False
    assert result.metadata.queue_item_id is not None
    item = await queue.get(result.metadata.queue_item_id)
    assert item.status == QueueStatus.PENDING.value
    assert item.order_data["id"] == staged_order.id
    assert (await queue.stats())["pending"] == 1
    assert journal.list_entries() == []


async def test_queue_outage_falls_back_to_journal(
    store, notifier, broken_session_maker, journal, menu_dir, staged_order
):
    reconciler = PaymentReconciler(
        store,
        notifier,
        ScriptedMigrator(failures=10),
        queue=DurableQueue(broken_session_maker),
        journal=journal,
        menu_data_directory=menu_dir,
    )

    result = await reconciler.on_gateway_event(paid_event(staged_order.id))

    assert result.metadata.payment_status == PaymentStatus.PAID
    [(_, entry)] = journal.list_entries()
    assert entry.order.id == staged_order.id
    assert "permanent store unreachable" in entry.failure_reason


async def test_notifier_failure_does_not_block_migration(store, migrator, queue, menu_dir, staged_order):
    flaky = MockNotifier(failure_rate=1.0)
    reconciler = PaymentReconciler(store, flaky, migrator, queue=queue, menu_data_directory=menu_dir)

    result = await reconciler.on_gateway_event(paid_event(staged_order.id))

    assert result.metadata.moved_to_permanent is True
    assert result.metadata.kitchen_notification.sent is False
    assert result.metadata.kitchen_notification.error == "Simulated email failure"

    # A redelivered event retries the notification that did not go out
    flaky.failure_rate = 0.0
    retried = await reconciler.on_gateway_event(paid_event(staged_order.id))
    assert retried.metadata.kitchen_notified
    assert retried.metadata.receipt_sent


async def test_receipt_skipped_without_email(reconciler, notifier, store, draft):
    staged = store.put(draft.model_copy(update={"customer_email": None}))

    await reconciler.on_gateway_event(paid_event(staged.id))

    assert [template for _, template, _ in notifier.sent] == [KITCHEN_TICKET]


def test_resolve_intake_address(reconciler, menu_dir):
    (menu_dir / "taco-town.json").write_text(json.dumps({"email": "orders@tacotown.test"}))

    assert reconciler.resolve_intake_address("pizza-palace") == "printer@pizzapalace.test"
    assert reconciler.resolve_intake_address("taco-town") == "orders@tacotown.test"
    assert reconciler.resolve_intake_address("unknown-place") == "central@orders.test"
    assert reconciler.resolve_intake_address("../secrets") == "central@orders.test"


async def test_handle_webhook_with_stripe_shaped_event(reconciler, staged_order):
    gateway = MockPaymentGateway()
    payload = json.dumps(
        {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_9",
                    "payment_intent": "pi_test_9",
                    "metadata": {"staging_id": staged_order.id},
                }
            },
        }
    ).encode()

    assert await reconciler.handle_webhook(gateway, payload, None) is True
    result = reconciler.store.get(staged_order.id)
    assert result.metadata.payment_status == PaymentStatus.PAID
    assert result.metadata.payment_transaction_id == "pi_test_9"


async def test_handle_webhook_rejects_invalid_payload(reconciler):
    assert await reconciler.handle_webhook(MockPaymentGateway(), b"not json", None) is False


async def test_handle_webhook_ignores_unhandled_types(reconciler):
    payload = json.dumps({"type": "customer.created", "data": {"object": {"id": "cus_1"}}}).encode()
    assert await reconciler.handle_webhook(MockPaymentGateway(), payload, None) is True
