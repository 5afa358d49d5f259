"""
Core module initialization.
Exports configuration, logging utilities, background supervision and errors.
"""

from order_pipeline.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from order_pipeline.core.background import PeriodicTask
from order_pipeline.core.exceptions import (
    OrderPipelineError,
    MigrationError,
    DataIntegrityError,
    StagedOrderNotFound,
    PaymentLinkError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "PeriodicTask",
    "OrderPipelineError",
    "MigrationError",
    "DataIntegrityError",
    "StagedOrderNotFound",
    "PaymentLinkError",
]
