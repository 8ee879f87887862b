from __future__ import annotations

import httpx
import pytest

from ledger_sync.services.cache import LookupCache
from ledger_sync.services.errors import ConfigurationMissing, ResolutionFailed
from ledger_sync.services.qbo_client import QuickBooksApiError
from ledger_sync.services.resolver import AccountResolver, category_key

from conftest import make_settings
from fakes import FakeAccountingClient


@pytest.mark.parametrize(
    ("entity_type", "property", "expected"),
    [
        ("event", None, "event"),
        ("Donation", None, "donation"),
        ("membership", "tahoe", "membership"),
        ("booking", "tahoe", "booking:tahoe"),
        ("booking", "Clear_Lake", "booking:clear_lake"),
    ],
)
def test_category_key(entity_type, property, expected) -> None:
    assert category_key(entity_type, property) == expected


@pytest.mark.parametrize(
    ("entity_type", "property", "reason"),
    [
        (None, None, "entity_type_missing"),
        ("booking", None, "property_missing"),
        ("booking", "reno", "class_mapping_missing"),
        ("merchandise", None, "class_mapping_missing"),
        ("stripe_fee", None, "class_mapping_missing"),
    ],
)
def test_category_key_without_mapping(entity_type, property, reason) -> None:
    with pytest.raises(ConfigurationMissing) as excinfo:
        category_key(entity_type, property)
    assert excinfo.value.code == "configuration_missing"
    assert excinfo.value.reason == reason


async def test_resolve_line_uses_configured_item_and_class() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(event_item_id="item-event"))

    mapping = await resolver.resolve_line("event", None)

    assert mapping.item_ref.value == "item-event"
    assert mapping.item_ref.name == "Event Tickets"
    assert mapping.class_ref.value == "class-events"
    assert mapping.class_ref.name == "Events"
    assert client.calls["get_or_create_item"] == 0


async def test_booking_property_selects_the_class() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings())

    mapping = await resolver.resolve_line("booking", "clear_lake")

    assert mapping.class_ref.name == "Clear Lake"
    assert mapping.item_ref.name == "Clear Lake Booking"


async def test_default_item_covers_unconfigured_categories() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(default_item_id="item-default"))

    item = await resolver.resolve_item("donation")

    assert item.value == "item-default"
    assert client.calls["get_or_create_item"] == 0


async def test_item_fallback_finds_or_creates_and_caches() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(), LookupCache())

    first = await resolver.resolve_item("membership")
    second = await resolver.resolve_item("membership")

    assert first == second
    assert client.items["Membership"] == first.value
    assert client.calls["get_or_create_item"] == 1


async def test_item_fallback_disabled_is_configuration_missing() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(item_fallback_enabled=False))

    with pytest.raises(ConfigurationMissing) as excinfo:
        await resolver.resolve_item("event")

    assert excinfo.value.reason == "item_not_configured"
    assert client.calls["get_or_create_item"] == 0


async def test_unknown_class_is_resolution_failed_and_not_cached() -> None:
    client = FakeAccountingClient(classes={})
    resolver = AccountResolver(client, make_settings())

    with pytest.raises(ResolutionFailed):
        await resolver.resolve_class("Events")
    client.classes["Events"] = "class-events"
    resolved = await resolver.resolve_class("Events")

    assert resolved.value == "class-events"
    assert client.calls["query_class"] == 2


async def test_accounts_use_configured_names_and_cache_hits() -> None:
    client = FakeAccountingClient(accounts={"Checking": "acct-checking"})
    resolver = AccountResolver(client, make_settings(bank_account="Checking"))

    await resolver.bank_account()
    account = await resolver.bank_account()

    assert account.value == "acct-checking"
    assert client.calls["query_account"] == 1
    with pytest.raises(ResolutionFailed) as excinfo:
        await resolver.undeposited_funds_account()
    assert excinfo.value.reason == "account_not_found"


async def test_fee_line_resolves_item_class_and_account() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(stripe_fee_item_id="item-fee"))

    fee = await resolver.resolve_fee_line()

    assert fee is not None
    assert fee.item_ref.value == "item-fee"
    assert fee.class_ref.name == "Administration"
    assert fee.account_ref.value == "acct-fees"


async def test_fee_item_ignores_the_default_item() -> None:
    client = FakeAccountingClient()
    resolver = AccountResolver(client, make_settings(default_item_id="item-default"))

    fee = await resolver.resolve_fee_line()

    assert fee is not None
    assert fee.item_ref.name == "Stripe Fees"
    assert fee.item_ref.value != "item-default"


@pytest.mark.parametrize(
    "failure",
    [
        QuickBooksApiError("boom", status_code=500, body="{}"),
        httpx.ReadTimeout("timed out"),
    ],
)
async def test_fee_line_failures_are_omitted(failure) -> None:
    client = FakeAccountingClient()
    client.failures["get_or_create_item"] = failure
    resolver = AccountResolver(client, make_settings())

    assert await resolver.resolve_fee_line() is None


async def test_missing_fee_account_omits_the_fee_line() -> None:
    client = FakeAccountingClient(accounts={"Bank Account": "acct-bank"})
    resolver = AccountResolver(client, make_settings(stripe_fee_item_id="item-fee"))

    assert await resolver.resolve_fee_line() is None
