"""
Money helpers

Amounts are Decimal throughout; rounding is half away from zero at the
currency's minor unit.
"""
from decimal import Decimal, ROUND_HALF_UP

from app.core.config import CURRENCY_MINOR_UNITS, settings


def minor_units(currency: str | None = None) -> int:
    return CURRENCY_MINOR_UNITS.get((currency or settings.DEFAULT_CURRENCY).upper(), 2)


def quantize_money(amount: Decimal | int | str, currency: str | None = None) -> Decimal:
    """Round ``amount`` to the currency's minor unit (ROUND_HALF_UP)."""
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str | None = None) -> int:
    """Convert a major-unit amount to an integer count of minor units (e.g. øre)."""
    return int(quantize_money(amount, currency).scaleb(minor_units(currency)))
