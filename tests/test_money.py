from __future__ import annotations

from decimal import Decimal

import pytest

from ledger_sync.services.cache import LookupCache
from ledger_sync.services.money import format_amount, minor_units_to_decimal, sum_amounts


def test_minor_units_are_converted_to_two_place_decimals() -> None:
    assert minor_units_to_decimal(10000) == Decimal("100.00")
    assert minor_units_to_decimal(1) == Decimal("0.01")
    assert minor_units_to_decimal(-2000) == Decimal("-20.00")
    assert format_amount(minor_units_to_decimal(5)) == "0.05"


def test_zero_decimal_currencies_keep_their_unit() -> None:
    assert minor_units_to_decimal(500, "jpy") == Decimal("500.00")


@pytest.mark.parametrize("value", [10.5, "100", True, Decimal("1")])
def test_minor_units_must_be_integers(value) -> None:
    with pytest.raises(TypeError):
        minor_units_to_decimal(value)


def test_sum_amounts_is_exact() -> None:
    values = [minor_units_to_decimal(cents) for cents in (10, 20, 30)]
    assert sum_amounts(values) == Decimal("0.60")
    assert format_amount(sum_amounts([])) == "0.00"


def test_lookup_cache_without_ttl_never_expires() -> None:
    now = [0.0]
    cache: LookupCache[str] = LookupCache(clock=lambda: now[0])
    cache.set(("class", "Events"), "1")
    now[0] = 10_000_000.0
    assert cache.get(("class", "Events")) == "1"
    assert len(cache) == 1


def test_lookup_cache_ttl_drops_stale_entries() -> None:
    now = [0.0]
    cache: LookupCache[str] = LookupCache(60, clock=lambda: now[0])
    cache.set("key", "value")
    now[0] = 59.0
    assert cache.get("key") == "value"
    now[0] = 60.0
    assert cache.get("key") is None
    assert len(cache) == 0


def test_lookup_cache_clear() -> None:
    cache: LookupCache[str] = LookupCache()
    cache.set("a", "1")
    cache.clear()
    assert cache.get("a") is None
