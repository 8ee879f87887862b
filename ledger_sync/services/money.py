from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

TWO_PLACES = Decimal("0.01")

# ISO 4217 currencies whose minor unit is the major unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def _normalize_amount(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def minor_units_to_decimal(amount: int, currency: str = "USD") -> Decimal:
    """Convert integer minor units into a two-place ``Decimal`` in major units."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"amount must be an integer number of minor units, got {amount!r}")
    if (currency or "USD").upper() in ZERO_DECIMAL_CURRENCIES:
        return _normalize_amount(Decimal(amount))
    return _normalize_amount(Decimal(amount) / Decimal(100))


def format_amount(value: Decimal) -> str:
    return f"{_normalize_amount(value):.2f}"


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    total = Decimal("0.00")
    for value in values:
        total += value
    return _normalize_amount(total)
