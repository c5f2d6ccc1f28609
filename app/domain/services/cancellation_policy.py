"""
Cancellation Policy - refund fraction by time left before departure
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from app.core.config import parse_refund_tiers, settings
from app.core.money import quantize_money

FULL_REFUND = Decimal("1")


@dataclass(frozen=True)
class RefundTier:
    """Cancelling strictly less than ``threshold_hours`` before departure refunds ``fraction``"""
    threshold_hours: Decimal
    fraction: Decimal


def _seconds_between(start: datetime, end: datetime) -> Decimal:
    delta = end - start
    return Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds) / Decimal(1_000_000)


class CancellationPolicy:
    """
    Ordered refund tiers; the first tier whose threshold is above the time
    remaining wins. Past every threshold the refund is full.
    """

    def __init__(self, tiers: Optional[Iterable[RefundTier]] = None):
        if tiers is None:
            tiers = [
                RefundTier(hours, fraction)
                for hours, fraction in parse_refund_tiers(settings.CANCELLATION_REFUND_TIERS)
            ]
        self.tiers = sorted(tiers, key=lambda t: t.threshold_hours)
        for tier in self.tiers:
            if not (Decimal("0") <= tier.fraction <= FULL_REFUND):
                raise ValueError(f"Refund fraction out of range: {tier.fraction}")

    def refund_fraction(self, departure_time: datetime, now: datetime) -> Decimal:
        # A departure already in the past counts as less than any threshold
        seconds_left = _seconds_between(now, departure_time)
        for tier in self.tiers:
            if seconds_left < tier.threshold_hours * 3600:
                return tier.fraction
        return FULL_REFUND

    def refund_amount(
        self,
        total_price: Decimal,
        departure_time: datetime,
        now: datetime,
        currency: Optional[str] = None,
    ) -> Decimal:
        fraction = self.refund_fraction(departure_time, now)
        return quantize_money(Decimal(total_price) * fraction, currency)
