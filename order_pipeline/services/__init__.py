"""
                        Services Module

Contains all business logic services with the hybrid architecture pattern.
External integrations have Mock (development) and Real (production)
implementations.

Services:
    - staging_store: Transient staged orders with a disk mirror
    - payment: Stripe payment links and webhook verification
    - notifications: Kitchen tickets and receipts via SendGrid
    - reconciler: Payment events -> staged order transitions
    - migration: Staged order -> permanent store
    - order_queue: Durable migration queue and worker
    - retry_journal: File-based retry journal and sweeper
    - checkout: Caller-facing staging operations
"""

from order_pipeline.services.checkout import CheckoutService
from order_pipeline.services.migration import OrderMigrator
from order_pipeline.services.order_queue import DurableQueue, QueueWorker
from order_pipeline.services.pricing import PriceCalculator
from order_pipeline.services.reconciler import PaymentReconciler
from order_pipeline.services.retry_journal import RetryJournal, RetrySweeper
from order_pipeline.services.staging_store import StagingStore

__all__ = [
    "CheckoutService",
    "OrderMigrator",
    "DurableQueue",
    "QueueWorker",
    "PriceCalculator",
    "PaymentReconciler",
    "RetryJournal",
    "RetrySweeper",
    "StagingStore",
]
