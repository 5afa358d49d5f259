"""
Pipeline Wiring

Builds every service of the staging pipeline explicitly (no import-time
singletons) and owns their background lifecycle:

    start(): staging store -> queue worker -> retry sweeper
    stop():  retry sweeper -> queue worker -> staging store (final flush)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_pipeline.database import get_session_maker
from order_pipeline.services.checkout import CheckoutService
from order_pipeline.services.migration import OrderMigrator
from order_pipeline.services.notifications import BaseNotifier, get_notifier
from order_pipeline.services.order_queue import DurableQueue, QueueWorker
from order_pipeline.services.payment import BasePaymentGateway, get_payment_gateway
from order_pipeline.services.pricing import PriceCalculator
from order_pipeline.services.reconciler import PaymentReconciler
from order_pipeline.services.retry_journal import RetryJournal, RetrySweeper
from order_pipeline.services.staging_store import StagingStore

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    session_maker: async_sessionmaker[AsyncSession]
    store: StagingStore
    gateway: BasePaymentGateway
    notifier: BaseNotifier
    migrator: OrderMigrator
    queue: DurableQueue
    journal: RetryJournal
    reconciler: PaymentReconciler
    checkout: CheckoutService
    worker: QueueWorker
    sweeper: RetrySweeper

    async def start(self) -> None:
        await self.store.start()
        await self.worker.start()
        await self.sweeper.start()
        logger.info("✅ Staging pipeline started")

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.worker.stop()
        await self.store.stop()
        logger.info("✅ Staging pipeline stopped")


def build_pipeline(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    store: Optional[StagingStore] = None,
    gateway: Optional[BasePaymentGateway] = None,
    notifier: Optional[BaseNotifier] = None,
    journal: Optional[RetryJournal] = None,
) -> Pipeline:
    """Assemble the pipeline; any component may be supplied (tests, scripts)."""
    session_maker = session_maker or get_session_maker()
    store = store or StagingStore()
    gateway = gateway or get_payment_gateway()
    notifier = notifier or get_notifier()
    journal = journal or RetryJournal()
    price_calculator = PriceCalculator()

    migrator = OrderMigrator(session_maker, price_calculator)
    queue = DurableQueue(session_maker)

    return Pipeline(
        session_maker=session_maker,
        store=store,
        gateway=gateway,
        notifier=notifier,
        migrator=migrator,
        queue=queue,
        journal=journal,
        reconciler=PaymentReconciler(store, notifier, migrator, queue, journal),
        checkout=CheckoutService(store, gateway, price_calculator),
        worker=QueueWorker(queue, migrator, staging_store=store),
        sweeper=RetrySweeper(journal, migrator, staging_store=store),
    )
