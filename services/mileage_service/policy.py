from decimal import Decimal, ROUND_FLOOR
from typing import Mapping, Optional, Protocol

from shared.config import settings


class AccrualPolicy(Protocol):
    def __call__(self, order, amount: Decimal) -> int:
        """Points to credit for ``amount`` settled against ``order``."""


class RateAccrualPolicy:
    """
    Credits ``amount × rate`` points, rounded down.

    With per-seller rates the settled amount is split across sellers in
    proportion to their item totals and each share earns at that seller's
    rate (falling back to the platform rate).
    """

    def __init__(
        self,
        rate: Decimal = settings.MILEAGE_ACCRUAL_RATE,
        seller_rates: Optional[Mapping[str, Decimal]] = None,
    ):
        if rate < 0:
            raise ValueError("Accrual rate must not be negative.")
        self.rate = Decimal(rate)
        if seller_rates is None:
            seller_rates = settings.MILEAGE_SELLER_RATES
        self.seller_rates = {k: Decimal(v) for k, v in seller_rates.items()}

    def rate_for(self, seller_id: Optional[str]) -> Decimal:
        if seller_id is None:
            return self.rate
        return self.seller_rates.get(seller_id, self.rate)

    def __call__(self, order, amount: Decimal) -> int:
        if not getattr(order, "mileage_eligible", True) or amount <= 0:
            return 0

        amount = Decimal(amount)
        items = list(getattr(order, "items", None) or [])
        order_total = Decimal(order.total_amount or 0)

        if not self.seller_rates or not items or order_total <= 0:
            points = amount * self.rate
        else:
            points = sum(
                (amount * Decimal(item.total_price) / order_total) * self.rate_for(item.seller_id)
                for item in items
            )
        return int(Decimal(points).to_integral_value(rounding=ROUND_FLOOR))


default_policy = RateAccrualPolicy()
