"""
                Order Staging Pipeline

Stages food orders while customers pay, reconciles payment gateway
events against the staged state and durably migrates paid orders into
the permanent store, with retry and recovery at every step.

Version: 1.0.0
"""

__version__ = "1.0.0"
