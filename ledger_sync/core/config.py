from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "ledger-sync"
    app_version: str = "0.1.0"
    environment: Literal["sandbox", "prod"] = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    database_url: str = Field(..., alias="DATABASE_URL")

    qbo_client_id: str = Field(..., alias="QBO_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QBO_CLIENT_SECRET")
    qbo_realm_id: str = Field(..., alias="QBO_REALM_ID")
    qbo_refresh_token: Optional[str] = Field(default=None, alias="QBO_REFRESH_TOKEN")
    qbo_api_base_url: Optional[str] = Field(default=None, alias="QBO_API_BASE_URL")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    # Accounts are looked up by name in the company's chart of accounts.
    undeposited_funds_account: str = Field(
        default="Undeposited Funds", alias="QBO_UNDEPOSITED_FUNDS_ACCOUNT"
    )
    bank_account: str = Field(default="Bank Account", alias="QBO_BANK_ACCOUNT")
    stripe_fees_account: str = Field(default="Stripe Fees", alias="QBO_STRIPE_FEES_ACCOUNT")

    event_item_id: Optional[str] = Field(default=None, alias="QBO_EVENT_ITEM_ID")
    donation_item_id: Optional[str] = Field(default=None, alias="QBO_DONATION_ITEM_ID")
    membership_item_id: Optional[str] = Field(default=None, alias="QBO_MEMBERSHIP_ITEM_ID")
    tahoe_booking_item_id: Optional[str] = Field(default=None, alias="QBO_TAHOE_BOOKING_ITEM_ID")
    clear_lake_booking_item_id: Optional[str] = Field(
        default=None, alias="QBO_CLEAR_LAKE_BOOKING_ITEM_ID"
    )
    default_item_id: Optional[str] = Field(default=None, alias="QBO_DEFAULT_ITEM_ID")
    stripe_fee_item_id: Optional[str] = Field(default=None, alias="QBO_STRIPE_FEE_ITEM_ID")
    item_fallback_enabled: bool = Field(default=True, alias="QBO_ITEM_FALLBACK_ENABLED")
    item_income_account: Optional[str] = Field(default=None, alias="QBO_ITEM_INCOME_ACCOUNT")

    lookup_cache_ttl_seconds: Optional[float] = Field(
        default=None, alias="QBO_LOOKUP_CACHE_TTL_SECONDS"
    )
    sweep_batch_size: int = Field(default=1000, alias="SWEEP_BATCH_SIZE")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")

    def configured_item_id(self, key: str) -> Optional[str]:
        mapping = {
            "event": self.event_item_id,
            "donation": self.donation_item_id,
            "membership": self.membership_item_id,
            "booking:tahoe": self.tahoe_booking_item_id,
            "booking:clear_lake": self.clear_lake_booking_item_id,
            "stripe_fee": self.stripe_fee_item_id,
        }
        return mapping.get(key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
