"""
Error taxonomy for the staging / reconciliation / migration pipeline.

    OrderPipelineError
    ├── MigrationError          transient, retried with backoff
    │   └── DataIntegrityError  permanent, dead-lettered immediately
    ├── StagedOrderNotFound     unknown staging id on a caller-facing lookup
    └── PaymentLinkError        gateway refused to create a link
"""


class OrderPipelineError(Exception):
    """Base class for all pipeline errors."""


class MigrationError(OrderPipelineError):
    """A staged order could not be written to permanent storage."""


class DataIntegrityError(MigrationError):
    """
    The staged snapshot itself is unusable (missing price, no items,
    malformed payload). Retrying cannot fix it.
    """


class StagedOrderNotFound(OrderPipelineError):
    def __init__(self, staging_id: str):
        super().__init__(f"Staged order not found: {staging_id}")
        self.staging_id = staging_id


class PaymentLinkError(OrderPipelineError):
    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code
