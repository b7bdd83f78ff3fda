"""
Money and validity-period arithmetic.

Amounts cross the Stripe boundary as integers in the currency's minor unit.
All conversions go through Decimal so the same price gives the same charge
and the same platform fee regardless of currency.
"""

import calendar
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from .errors import PaymentValidationError
from ..database.models import BillingInterval

# Stripe's zero-decimal and three-decimal currencies
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})
THREE_DECIMAL_CURRENCIES = frozenset({"bhd", "jod", "kwd", "omr", "tnd"})

Number = Union[int, float, str, Decimal]


def currency_exponent(currency: str) -> int:
    code = currency.lower()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _to_decimal(value: Number) -> Decimal:
    # str() first so floats like 19.99 are taken at face value
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_minor_units(amount: Number, currency: str) -> int:
    """Convert a major-unit amount (e.g. 19.99 USD) to Stripe's integer amount."""
    value = _to_decimal(amount)
    if value <= 0:
        raise PaymentValidationError("Amount must be positive")

    minor = (value * (Decimal(10) ** currency_exponent(currency))).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return int(minor)


def line_total(unit_price: Number, quantity: int, currency: str) -> int:
    """Total for `quantity` units, computed before rounding to minor units."""
    if quantity < 1:
        raise PaymentValidationError("Quantity must be at least 1")
    return to_minor_units(_to_decimal(unit_price) * quantity, currency)


def platform_fee(amount_minor: int, rate: Number) -> int:
    """Application fee for a destination charge: amount x rate, half-up."""
    fee_rate = _to_decimal(rate)
    if fee_rate < 0 or fee_rate >= 1:
        raise PaymentValidationError("Platform fee rate must be in [0, 1)")
    return int((Decimal(amount_minor) * fee_rate).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def grant_expiry(interval: BillingInterval, start: datetime) -> datetime:
    """When a one-time purchase of a plan with this interval stops granting access."""
    if interval == BillingInterval.ONE_TIME:
        return start + timedelta(hours=24)
    if interval == BillingInterval.DAY:
        return start + timedelta(days=1)
    if interval == BillingInterval.WEEK:
        return start + timedelta(weeks=1)
    if interval == BillingInterval.MONTH:
        return add_months(start, 1)
    if interval == BillingInterval.YEAR:
        return add_months(start, 12)
    raise PaymentValidationError(f"Unsupported billing interval: {interval}")
