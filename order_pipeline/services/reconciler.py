"""
Payment Reconciler

Turns normalized payment gateway events into staged-order transitions:

    pending --(checkout_completed | payment_succeeded)--> paid
    pending --(payment_failed)--> failed
    pending --(checkout_expired)--> expired

``paid`` is sticky. A stale failed/expired event never moves an order out
of ``paid``, and a duplicate paid event re-checks each side effect's own
flag instead of repeating it. A side effect already running for a
concurrent duplicate is skipped, and no lock is held across notifier or
store calls.

On paid:
    1. Notify the kitchen intake address (best-effort)
    2. Email the customer a receipt when an email is known (best-effort)
    3. Migrate to the permanent store unless already moved; on failure the
       order is handed to the durable queue, or to the retry journal when
       the queue itself cannot be written

Nothing after webhook verification raises to the HTTP layer, so the
gateway never redelivers because of a downstream outage.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from order_pipeline.core.clock import Clock, utcnow
from order_pipeline.core.config import get_settings
from order_pipeline.schemas import (
    GatewayEvent,
    GatewayEventType,
    NotificationRecord,
    PaymentStatus,
    StagedOrder,
    StagedOrderMetadata,
)
from order_pipeline.services.notifications import BaseNotifier
from order_pipeline.services.notifications.templates import KITCHEN_TICKET, PAYMENT_RECEIPT
from order_pipeline.services.order_queue import DurableQueue
from order_pipeline.services.payment import BasePaymentGateway
from order_pipeline.services.retry_journal import RetryJournal
from order_pipeline.services.staging_store import StagingStore

logger = logging.getLogger(__name__)

PAID_EVENTS = (GatewayEventType.CHECKOUT_COMPLETED, GatewayEventType.PAYMENT_SUCCEEDED)

_SAFE_RESTAURANT_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class PaymentReconciler:
    """
    Applies gateway events to the staging store and fans out side effects.

    Example:
        >>> reconciler = PaymentReconciler(store, notifier, migrator, queue, journal)
        >>> await reconciler.on_gateway_event(event)
    """

    def __init__(
        self,
        store: StagingStore,
        notifier: BaseNotifier,
        migrate: Callable[[StagedOrder], Awaitable[int]],
        queue: Optional[DurableQueue] = None,
        journal: Optional[RetryJournal] = None,
        menu_data_directory: Optional[Union[str, Path]] = None,
        default_intake_email: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        settings = get_settings()
        self.store = store
        self.notifier = notifier
        self.migrate = migrate
        self.queue = queue
        self.journal = journal
        self.menu_data_directory = Path(menu_data_directory or settings.menu_data_directory)
        self.default_intake_email = (
            default_intake_email
            or settings.default_restaurant_email
            or settings.central_order_email
        )
        self.clock = clock

        # (staging id, side effect) pairs currently running
        self._in_flight: set[tuple[str, str]] = set()

    def _claim(
        self,
        staging_id: str,
        effect: str,
        done: Callable[[StagedOrderMetadata], bool],
    ) -> Optional[StagedOrder]:
        """
        Reserve a side effect for one caller.

        Reads the current snapshot and reserves in one synchronous step, so
        concurrent duplicate events cannot both start the same effect and
        no lock is held while the effect awaits the notifier or the store.
        Returns None when the effect is done or already running.
        """
        key = (staging_id, effect)
        if key in self._in_flight:
            return None
        order = self.store.get(staging_id)
        if order is None or done(order.metadata):
            return None
        self._in_flight.add(key)
        return order

    def _release(self, staging_id: str, effect: str) -> None:
        self._in_flight.discard((staging_id, effect))

    # =========================================================================
    # WEBHOOK ENTRY POINT
    # =========================================================================

    async def handle_webhook(
        self,
        gateway: BasePaymentGateway,
        payload: bytes,
        signature: Optional[str],
    ) -> bool:
        """
        Verify a raw webhook and apply it.

        Returns:
            False if verification failed (respond 400), True otherwise
        """
        event = await gateway.verify_webhook(payload, signature)
        if event is None:
            return False

        try:
            normalized = gateway.normalize_event(event)
            if normalized is not None:
                await self.on_gateway_event(normalized)
        except Exception as e:
            logger.exception(f"Error reconciling payment event {event.get('type')}: {e}")
        return True

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def find_order(self, event: GatewayEvent) -> Optional[StagedOrder]:
        """Payment link id, then metadata staging id, then the event id itself."""
        order = None
        if event.gateway_id:
            order = self.store.find_by_payment_link(event.gateway_id)
        if order is None and event.staging_id:
            order = self.store.get(event.staging_id)
        if order is None and event.gateway_id:
            order = self.store.get(event.gateway_id)
        return order

    async def on_gateway_event(self, event: GatewayEvent) -> Optional[StagedOrder]:
        order = self.find_order(event)
        if order is None:
            logger.warning(
                f"No staged order for payment event {event.raw_type or event.type.value} "
                f"(gateway_id={event.gateway_id}, staging_id={event.staging_id})"
            )
            return None

        if event.type in PAID_EVENTS:
            return await self._apply_paid(order, event)
        if event.type == GatewayEventType.PAYMENT_FAILED:
            return self._apply_terminal(order, PaymentStatus.FAILED, event.failure_reason)
        if event.type == GatewayEventType.CHECKOUT_EXPIRED:
            return self._apply_terminal(order, PaymentStatus.EXPIRED, None)
        return order

    def _apply_terminal(
        self,
        order: StagedOrder,
        status: PaymentStatus,
        reason: Optional[str],
    ) -> Optional[StagedOrder]:
        current = order.metadata.payment_status
        if current == PaymentStatus.PAID:
            logger.warning(f"Ignoring stale {status.value} event for paid order {order.id}")
            return order

        changes: dict[str, Any] = {"payment_status": status}
        if reason:
            changes["failure_reason"] = reason

        logger.info(f"Staged order {order.id}: {current.value} -> {status.value}")
        return self.store.update(order.id, {"metadata": changes})

    async def _apply_paid(self, order: StagedOrder, event: GatewayEvent) -> Optional[StagedOrder]:
        if order.metadata.payment_status == PaymentStatus.PAID:
            logger.info(f"Duplicate paid event for {order.id}; re-checking side effects")
        else:
            order = self.store.update(
                order.id,
                {
                    "metadata": {
                        "payment_status": PaymentStatus.PAID,
                        "paid_at": self.clock(),
                        "payment_transaction_id": event.transaction_id,
                        "failure_reason": None,
                    }
                },
            )
            if order is None:
                return None
            logger.info(f"💳 Staged order {order.id} paid (${order.total:.2f})")

        claimed = self._claim(order.id, "kitchen", lambda m: m.kitchen_notified)
        if claimed is not None:
            try:
                await self._notify_kitchen(claimed)
            finally:
                self._release(order.id, "kitchen")

        if order.customer_email:
            claimed = self._claim(order.id, "receipt", lambda m: m.receipt_sent)
            if claimed is not None:
                try:
                    await self._send_receipt(claimed)
                finally:
                    self._release(order.id, "receipt")

        claimed = self._claim(order.id, "migration", lambda m: m.moved_to_permanent)
        if claimed is not None:
            try:
                await self._migrate(claimed)
            finally:
                self._release(order.id, "migration")

        return self.store.get(order.id)

    # =========================================================================
    # SIDE EFFECTS
    # =========================================================================

    def resolve_intake_address(self, restaurant_id: str) -> Optional[str]:
        """Kitchen intake email from menu_data/{restaurant_id}.json, else the configured default."""
        if restaurant_id and _SAFE_RESTAURANT_ID.match(restaurant_id):
            menu_path = self.menu_data_directory / f"{restaurant_id}.json"
            try:
                menu = json.loads(menu_path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                menu = None
            except (OSError, ValueError) as e:
                logger.warning(f"Could not read menu data for {restaurant_id}: {e}")
                menu = None

            if isinstance(menu, dict):
                address = menu.get("printer_email") or menu.get("email")
                if address:
                    return address

        return self.default_intake_email

    async def _deliver(
        self,
        order: StagedOrder,
        destination: Optional[str],
        template: str,
    ) -> NotificationRecord:
        if not destination:
            return NotificationRecord(sent=False, error="No destination address")

        try:
            result = await self.notifier.send(
                destination,
                template,
                {"order": order, "payment_id": order.metadata.payment_transaction_id},
            )
        except Exception as e:
            logger.error(f"Notifier raised while sending {template} for {order.id}: {e}")
            return NotificationRecord(sent=False, destination=destination, error=str(e))

        if not result.success:
            return NotificationRecord(
                sent=False, destination=destination, error=result.error_message
            )
        return NotificationRecord(
            sent=True,
            sent_at=self.clock(),
            message_id=result.message_id,
            destination=destination,
        )

    async def _notify_kitchen(self, order: StagedOrder) -> None:
        destination = self.resolve_intake_address(order.restaurant_id)
        record = await self._deliver(order, destination, KITCHEN_TICKET)

        if record.sent:
            logger.info(f"📨 Kitchen notified for {order.id} at {destination}")
        else:
            logger.error(f"Kitchen notification failed for {order.id}: {record.error}")
        self.store.update(order.id, {"metadata": {"kitchen_notification": record}})

    async def _send_receipt(self, order: StagedOrder) -> None:
        record = await self._deliver(order, order.customer_email, PAYMENT_RECEIPT)

        if record.sent:
            logger.info(f"📧 Receipt sent for {order.id} to {order.customer_email}")
        else:
            logger.warning(f"Receipt delivery failed for {order.id}: {record.error}")
        self.store.update(order.id, {"metadata": {"receipt_notification": record}})

    async def _migrate(self, order: StagedOrder) -> None:
        try:
            permanent_id = await self.migrate(order)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"Direct migration failed for {order.id}, deferring: {reason}")
            await self._defer_migration(order, reason)
            return

        self.store.mark_migrated(order.id, permanent_id)

    async def _defer_migration(self, order: StagedOrder, reason: str) -> None:
        """Durable queue first; the retry journal covers a queue that cannot be written."""
        if order.metadata.queue_item_id is not None:
            logger.info(
                f"Staged order {order.id} already queued as #{order.metadata.queue_item_id}"
            )
            return

        if self.queue is not None:
            try:
                queue_id = await self.queue.enqueue(order, correlation_id=order.id)
            except Exception as e:
                logger.error(f"Could not enqueue {order.id} for migration: {e}")
            else:
                self.store.update(order.id, {"metadata": {"queue_item_id": queue_id}})
                return

        if self.journal is not None:
            try:
                self.journal.add_failed_order(order, reason, correlation_id=order.id)
                return
            except OSError as e:
                logger.error(f"Could not journal {order.id}: {e}")

        logger.critical(
            f"Paid order {order.id} has no pending migration path; "
            f"it remains only in the staging store"
        )
