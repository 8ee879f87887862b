from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ledger_sync.core.config import Settings
from ledger_sync.schemas.documents import Ref
from ledger_sync.services.cache import LookupCache
from ledger_sync.services.errors import ConfigurationMissing, ResolutionFailed, SyncError
from ledger_sync.services.qbo_client import AccountingClient, QuickBooksApiError, QuickBooksOAuthError

ADMINISTRATION_CLASS = "Administration"
STRIPE_FEE_KEY = "stripe_fee"

CLASS_NAMES: dict[str, str] = {
    "event": "Events",
    "donation": ADMINISTRATION_CLASS,
    "membership": ADMINISTRATION_CLASS,
    "booking:tahoe": "Tahoe",
    "booking:clear_lake": "Clear Lake",
    STRIPE_FEE_KEY: ADMINISTRATION_CLASS,
}

ITEM_NAMES: dict[str, str] = {
    "event": "Event Tickets",
    "donation": "Donations",
    "membership": "Membership",
    "booking:tahoe": "Tahoe Booking",
    "booking:clear_lake": "Clear Lake Booking",
    STRIPE_FEE_KEY: "Stripe Fees",
}

logger = logging.getLogger("ledger_sync.services.resolver")


@dataclass(frozen=True)
class LineMapping:
    item_ref: Ref
    class_ref: Ref


@dataclass(frozen=True)
class FeeMapping:
    item_ref: Ref
    class_ref: Ref
    account_ref: Ref


def category_key(entity_type: Optional[str], property: Optional[str]) -> str:
    """Map a business classification to the key used by the class and item tables."""
    if not entity_type:
        raise ConfigurationMissing(
            "Record has no entity type to classify",
            reason="entity_type_missing",
        )
    normalized = entity_type.strip().lower()
    if normalized == "booking":
        if not property:
            raise ConfigurationMissing(
                "Booking record has no property",
                reason="property_missing",
                details={"entity_type": entity_type},
            )
        normalized = f"booking:{property.strip().lower()}"
    if normalized not in CLASS_NAMES or normalized == STRIPE_FEE_KEY:
        raise ConfigurationMissing(
            f"No class mapping for entity type {entity_type!r} and property {property!r}",
            reason="class_mapping_missing",
            details={"entity_type": entity_type, "property": property},
        )
    return normalized


class AccountResolver:
    """Turns classifications and configured names into external references.

    Successful lookups are kept in the injected cache for the lifetime of the
    engine; misses are always retried against the external system.
    """

    def __init__(
        self,
        client: AccountingClient,
        settings: Settings,
        cache: Optional[LookupCache[Ref]] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.cache: LookupCache[Ref] = cache if cache is not None else LookupCache(
            settings.lookup_cache_ttl_seconds
        )

    async def resolve_line(self, entity_type: Optional[str], property: Optional[str]) -> LineMapping:
        key = category_key(entity_type, property)
        item_ref = await self.resolve_item(key)
        class_ref = await self.resolve_class(CLASS_NAMES[key])
        return LineMapping(item_ref=item_ref, class_ref=class_ref)

    async def resolve_class(self, name: str) -> Ref:
        cached = self.cache.get(("class", name))
        if cached is not None:
            return cached
        class_id = await self.client.query_class_by_name(name)
        if class_id is None:
            raise ResolutionFailed(
                f"Class '{name}' not found",
                reason="class_not_found",
                details={"class_name": name},
            )
        reference = Ref(value=class_id, name=name)
        self.cache.set(("class", name), reference)
        return reference

    async def resolve_account(self, name: str) -> Ref:
        cached = self.cache.get(("account", name))
        if cached is not None:
            return cached
        account_id = await self.client.query_account_by_name(name)
        if account_id is None:
            raise ResolutionFailed(
                f"Account '{name}' not found",
                reason="account_not_found",
                details={"account_name": name},
            )
        reference = Ref(value=account_id, name=name)
        self.cache.set(("account", name), reference)
        return reference

    async def resolve_item(self, key: str) -> Ref:
        name = ITEM_NAMES[key]
        configured = self.settings.configured_item_id(key)
        if configured is None and key != STRIPE_FEE_KEY:
            configured = self.settings.default_item_id
        if configured:
            return Ref(value=configured, name=name)

        cached = self.cache.get(("item", name))
        if cached is not None:
            return cached
        if not self.settings.item_fallback_enabled:
            raise ConfigurationMissing(
                f"No item configured for {key!r} and item fallback is disabled",
                reason="item_not_configured",
                details={"category": key},
            )
        income_account_ref = None
        if self.settings.item_income_account:
            income_account_ref = (await self.resolve_account(self.settings.item_income_account)).model_dump(
                exclude_none=True
            )
        item_id = await self.client.get_or_create_item(
            name,
            item_type="Service",
            income_account_ref=income_account_ref,
        )
        logger.info("item_fallback_resolved", extra={"category": key, "item_name": name, "item_id": item_id})
        reference = Ref(value=item_id, name=name)
        self.cache.set(("item", name), reference)
        return reference

    async def undeposited_funds_account(self) -> Ref:
        return await self.resolve_account(self.settings.undeposited_funds_account)

    async def bank_account(self) -> Ref:
        return await self.resolve_account(self.settings.bank_account)

    async def administration_class(self) -> Ref:
        return await self.resolve_class(ADMINISTRATION_CLASS)

    async def resolve_fee_line(self) -> Optional[FeeMapping]:
        """Resolve the processor-fee line references, or ``None`` to omit the line."""
        try:
            item_ref = await self.resolve_item(STRIPE_FEE_KEY)
            class_ref = await self.resolve_class(CLASS_NAMES[STRIPE_FEE_KEY])
            account_ref = await self.resolve_account(self.settings.stripe_fees_account)
        except (SyncError, QuickBooksApiError, QuickBooksOAuthError, httpx.HTTPError) as exc:
            logger.warning(
                "fee_line_omitted",
                extra={"error_type": type(exc).__name__, "error_message": str(exc)},
            )
            return None
        return FeeMapping(item_ref=item_ref, class_ref=class_ref, account_ref=account_ref)
