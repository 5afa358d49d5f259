"""
Price Calculator

Canonical price function: subtotal -> tax -> processing fee -> total.
Used when staging an order without explicit totals and, again, by the
migration step, which never trusts a staged snapshot's prices.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from order_pipeline.core.config import get_settings
from order_pipeline.schemas import LineItem


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: float
    tax: float
    processing_fee: float
    total: float
    total_with_fees: float


class PriceCalculator:
    """
    Pure price computation.

    Example:
        >>> calc = PriceCalculator(tax_rate=0.08, fee_percentage=0.029, fee_fixed=0.40)
        >>> calc.calculate(20.46).tax
        1.64
    """

    def __init__(
        self,
        tax_rate: Optional[float] = None,
        fee_percentage: Optional[float] = None,
        fee_fixed: Optional[float] = None,
    ):
        settings = get_settings()
        self.tax_rate = settings.tax_rate if tax_rate is None else tax_rate
        self.fee_percentage = (
            settings.processing_fee_percentage if fee_percentage is None else fee_percentage
        )
        self.fee_fixed = settings.processing_fee_fixed if fee_fixed is None else fee_fixed

    def subtotal_of(self, items: Iterable[LineItem]) -> float:
        return round(sum(item.quantity * (item.unit_price or 0.0) for item in items), 2)

    def calculate(self, subtotal: float) -> PriceBreakdown:
        """
        Compute the full breakdown for a subtotal.

        The processing fee is charged on subtotal + tax; ``total`` excludes
        the fee and ``total_with_fees`` includes it.
        """
        subtotal = round(subtotal, 2)
        tax = round(subtotal * self.tax_rate, 2)
        total = round(subtotal + tax, 2)
        processing_fee = round(total * self.fee_percentage + self.fee_fixed, 2)

        return PriceBreakdown(
            subtotal=subtotal,
            tax=tax,
            processing_fee=processing_fee,
            total=total,
            total_with_fees=round(total + processing_fee, 2),
        )

    def calculate_for_items(self, items: Iterable[LineItem]) -> PriceBreakdown:
        return self.calculate(self.subtotal_of(items))
