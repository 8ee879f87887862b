from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Any, Callable, Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.core.config import Settings, get_settings
from ledger_sync.core.http import get_async_client, request_with_retry_and_backoff
from ledger_sync.core.security import decrypt_refresh_token, encrypt_refresh_token
from ledger_sync.db import repo
from ledger_sync.db.models import QuickBooksConnections
from ledger_sync.schemas.documents import (
    CustomerParams,
    DepositParams,
    ExternalDocument,
    RefundReceiptParams,
    SalesReceiptParams,
)


class QuickBooksOAuthError(RuntimeError):
    pass


class QuickBooksApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AccountingClient(Protocol):
    """Capabilities the sync engine needs from the external accounting system."""

    async def create_customer(self, params: CustomerParams) -> str: ...

    async def create_sales_receipt(self, params: SalesReceiptParams) -> ExternalDocument: ...

    async def create_refund_receipt(self, params: RefundReceiptParams) -> ExternalDocument: ...

    async def create_deposit(self, params: DepositParams) -> ExternalDocument: ...

    async def query_account_by_name(self, name: str) -> Optional[str]: ...

    async def query_class_by_name(self, name: str) -> Optional[str]: ...

    async def get_or_create_item(
        self,
        name: str,
        *,
        item_type: str = "Service",
        income_account_ref: Optional[dict[str, str]] = None,
    ) -> str: ...


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


HttpClientFactory = Callable[[Settings], httpx.AsyncClient]

DUPLICATE_NAME_ERROR = "6240"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QuickBooksClient:
    """QuickBooks Online implementation of :class:`AccountingClient` for one realm."""

    TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"
    MINOR_VERSION = "65"
    REFRESH_THRESHOLD = timedelta(minutes=5)

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        http_client_factory: HttpClientFactory = get_async_client,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.http_client_factory = http_client_factory
        self.realm_id = self.settings.qbo_realm_id
        self.environment = self.settings.environment
        self.logger = logging.getLogger("ledger_sync.services.qbo")
        self._refresh_lock = asyncio.Lock()

    async def create_customer(self, params: CustomerParams) -> str:
        try:
            data = await self.post(entity="Customer", resource="customer", payload=params.to_payload())
        except QuickBooksApiError as exc:
            existing = await self._recover_from_duplicate_customer(exc, params.display_name)
            if existing is None:
                raise
            return existing
        customer = self._extract_entity(data, "Customer")
        if customer is None or customer.get("Id") is None:
            raise QuickBooksApiError("Customer response is missing an Id", body=json.dumps(data))
        return str(customer["Id"])

    async def create_sales_receipt(self, params: SalesReceiptParams) -> ExternalDocument:
        data = await self.post(entity="SalesReceipt", resource="salesreceipt", payload=params.to_payload())
        return self._to_document("SalesReceipt", data)

    async def create_refund_receipt(self, params: RefundReceiptParams) -> ExternalDocument:
        data = await self.post(entity="RefundReceipt", resource="refundreceipt", payload=params.to_payload())
        return self._to_document("RefundReceipt", data)

    async def create_deposit(self, params: DepositParams) -> ExternalDocument:
        data = await self.post(entity="Deposit", resource="deposit", payload=params.to_payload())
        return self._to_document("Deposit", data)

    async def query_account_by_name(self, name: str) -> Optional[str]:
        normalized = name.strip()
        # Sub-accounts are addressed by their fully qualified "Parent:Child" name.
        name_field = "FullyQualifiedName" if ":" in normalized else "Name"
        record = await self._query_one(
            "Account",
            f"select * from Account where {name_field} = '{self._escape(normalized)}' and Active = true",
        )
        return None if record is None else str(record["Id"])

    async def query_class_by_name(self, name: str) -> Optional[str]:
        # QuickBooks rejects UPPER() for Class, so the match is case-sensitive.
        record = await self._query_one(
            "Class",
            f"select * from Class where FullyQualifiedName = '{self._escape(name.strip())}' and Active = true",
        )
        return None if record is None else str(record["Id"])

    async def get_or_create_item(
        self,
        name: str,
        *,
        item_type: str = "Service",
        income_account_ref: Optional[dict[str, str]] = None,
    ) -> str:
        existing = await self._query_item(name)
        if existing is not None:
            return existing
        payload: dict[str, Any] = {"Name": name.strip(), "Type": item_type, "Active": True}
        if income_account_ref:
            payload["IncomeAccountRef"] = income_account_ref
        self.logger.info(
            "item_create_attempt",
            extra={"item_name": name, "item_type": item_type},
        )
        try:
            data = await self.post(entity="Item", resource="item", payload=payload)
        except QuickBooksApiError as exc:
            # Another writer created the item between our query and our post.
            if self._extract_error_code(exc.body) != DUPLICATE_NAME_ERROR:
                raise
            existing = await self._query_item(name)
            if existing is None:
                raise
            return existing
        item = self._extract_entity(data, "Item")
        if item is None or item.get("Id") is None:
            raise QuickBooksApiError("Item response is missing an Id", body=json.dumps(data))
        return str(item["Id"])

    async def query(
        self,
        *,
        entity: str,
        select_sql: str,
        startposition: int | None = None,
        maxresults: int | None = None,
    ) -> dict[str, Any]:
        statement = select_sql.strip()
        if startposition:
            statement = f"{statement} STARTPOSITION {startposition}"
        if maxresults:
            statement = f"{statement} MAXRESULTS {maxresults}"
        return await self._request(
            "GET",
            self._build_url("query"),
            entity=entity,
            params={"query": statement, "minorversion": self.MINOR_VERSION},
        )

    async def post(
        self,
        *,
        entity: str,
        resource: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._build_url(resource),
            entity=entity,
            params={"minorversion": self.MINOR_VERSION},
            json=payload,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        entity: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        token = await self.ensure_valid_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        if method == "POST":
            headers["Content-Type"] = "application/json"
        async with self.http_client_factory(self.settings) as client:
            start = perf_counter()
            response = await request_with_retry_and_backoff(
                client,
                method,
                url,
                headers=headers.copy(),
                settings=self.settings,
                **kwargs,
            )

            if response.status_code == 401:
                self.logger.warning(
                    "qbo_unauthorized",
                    extra={"entity": entity, "realm_id": self.realm_id, "environment": self.environment},
                )
                token = await self.ensure_valid_access_token(force=True)
                headers["Authorization"] = f"Bearer {token}"
                response = await request_with_retry_and_backoff(
                    client,
                    method,
                    url,
                    headers=headers.copy(),
                    settings=self.settings,
                    **kwargs,
                )
            latency_ms = (perf_counter() - start) * 1000

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                body = exc.response.text
                status_code = exc.response.status_code
                self.logger.error(
                    "qbo_request_failed",
                    extra={
                        "entity": entity,
                        "method": method,
                        "status": status_code,
                        "body": body,
                        "latency_ms": round(latency_ms, 2),
                        "realm_id": self.realm_id,
                    },
                )
                raise QuickBooksApiError(
                    f"QBO {method.lower()} error for {entity}: {status_code}",
                    status_code=status_code,
                    body=body,
                ) from exc

            self.logger.debug(
                "qbo_request_completed",
                extra={"entity": entity, "method": method, "latency_ms": round(latency_ms, 2)},
            )
            try:
                data = response.json()
            except ValueError as exc:
                raise QuickBooksApiError(
                    f"QBO {method.lower()} returned a non-JSON body for {entity}",
                    status_code=response.status_code,
                    body=response.text,
                ) from exc
            if not isinstance(data, dict):
                raise QuickBooksApiError(
                    f"QBO {method.lower()} returned an unexpected body for {entity}",
                    status_code=response.status_code,
                    body=response.text,
                )
            return data

    async def ensure_valid_access_token(self, *, force: bool = False) -> str:
        async with self._refresh_lock:
            async with self.session_factory() as session:
                connection = await self._load_connection(session)
                expires_at = connection.access_expires_at
                needs_refresh = (
                    force
                    or connection.access_token is None
                    or expires_at is None
                    or _as_utc(expires_at) <= _now() + self.REFRESH_THRESHOLD
                )
                if needs_refresh:
                    await self._refresh_connection(session, connection, force=force)
                if not connection.access_token:
                    raise QuickBooksOAuthError("Missing access token after refresh")
                return connection.access_token

    async def _load_connection(self, session: AsyncSession) -> QuickBooksConnections:
        connection = await repo.get_connection(
            session,
            realm_id=self.realm_id,
            environment=self.environment,
        )
        if connection is not None:
            return connection
        if not self.settings.qbo_refresh_token:
            raise QuickBooksOAuthError(
                f"No QuickBooks connection stored for realm {self.realm_id} and QBO_REFRESH_TOKEN is not set"
            )
        connection = QuickBooksConnections(
            realm_id=self.realm_id,
            environment=self.environment,
            refresh_token_enc=encrypt_refresh_token(self.settings.fernet_key, self.settings.qbo_refresh_token),
            refresh_counter=0,
        )
        await repo.save_connection(session, connection)
        self.logger.info(
            "connection_seeded",
            extra={"realm_id": self.realm_id, "environment": self.environment},
        )
        return connection

    async def _refresh_connection(
        self,
        session: AsyncSession,
        connection: QuickBooksConnections,
        *,
        force: bool = False,
    ) -> None:
        try:
            refresh_token = decrypt_refresh_token(self.settings.fernet_key, connection.refresh_token_enc)
        except ValueError as exc:
            raise QuickBooksOAuthError("Stored refresh token cannot be decrypted") from exc
        bundle = await self.refresh_tokens(refresh_token=refresh_token)
        connection.access_token = bundle.access_token
        connection.access_expires_at = bundle.access_expires_at
        connection.refresh_expires_at = bundle.refresh_expires_at
        connection.refresh_token_enc = encrypt_refresh_token(self.settings.fernet_key, bundle.refresh_token)
        connection.refresh_counter = (connection.refresh_counter or 0) + 1
        await repo.save_connection(session, connection)
        self.logger.info(
            "credential_refreshed",
            extra={
                "realm_id": connection.realm_id,
                "environment": connection.environment,
                "force": force,
                "refresh_counter": connection.refresh_counter,
            },
        )

    async def refresh_tokens(self, *, refresh_token: str) -> TokenBundle:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        payload = await self._token_request(data)
        return self._parse_token_response(payload)

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        headers = {
            "Authorization": self._basic_auth_header(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        async with self.http_client_factory(self.settings) as client:
            response = await request_with_retry_and_backoff(
                client,
                "POST",
                self.TOKEN_URL,
                data=data,
                headers=headers,
                settings=self.settings,
            )
        if response.status_code >= 400:
            self.logger.error(
                "oauth_token_error",
                extra={"status": response.status_code, "body": response.text},
            )
            raise QuickBooksOAuthError(
                f"Failed to refresh tokens with Intuit (status {response.status_code})"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise QuickBooksOAuthError("Intuit token endpoint returned a non-JSON body") from exc

    def _parse_token_response(self, payload: dict[str, Any]) -> TokenBundle:
        now = _now()
        try:
            access_expires_in = int(payload["expires_in"])
            refresh_expires_in = int(payload.get("x_refresh_token_expires_in", 0))
            access_token = payload["access_token"]
            refresh_token = payload["refresh_token"]
        except (KeyError, TypeError, ValueError) as exc:
            raise QuickBooksOAuthError("Incomplete token response") from exc
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + timedelta(seconds=access_expires_in),
            refresh_expires_at=now + timedelta(seconds=refresh_expires_in),
        )

    async def _query_one(self, entity: str, select_sql: str) -> Optional[dict[str, Any]]:
        data = await self.query(entity=entity, select_sql=select_sql, startposition=1, maxresults=1)
        record = self._extract_entity(data, entity)
        if record is None or record.get("Id") is None:
            return None
        return record

    async def _query_item(self, name: str) -> Optional[str]:
        record = await self._query_one(
            "Item",
            f"select * from Item where Name = '{self._escape(name.strip())}' and Active = true",
        )
        return None if record is None else str(record["Id"])

    async def _recover_from_duplicate_customer(
        self,
        exc: QuickBooksApiError,
        display_name: str,
    ) -> Optional[str]:
        if exc.status_code != 400 or self._extract_error_code(exc.body) != DUPLICATE_NAME_ERROR:
            return None
        record = await self._query_one(
            "Customer",
            f"select * from Customer where DisplayName = '{self._escape(display_name)}'",
        )
        if record is None:
            return None
        self.logger.info(
            "customer_duplicate_reused",
            extra={"customer_id": record["Id"], "realm_id": self.realm_id},
        )
        return str(record["Id"])

    def _to_document(self, doc_type: str, data: dict[str, Any]) -> ExternalDocument:
        try:
            return ExternalDocument.from_response(doc_type, data)
        except ValueError as exc:
            raise QuickBooksApiError(str(exc), body=json.dumps(data)) from exc

    def _build_url(self, resource: str) -> str:
        base = self.settings.qbo_api_base_url
        if not base:
            base = self.SANDBOX_API_BASE if self.environment == "sandbox" else self.PROD_API_BASE
        return f"{base.rstrip('/')}/v3/company/{self.realm_id}/{resource}"

    def _extract_entity(self, payload: dict[str, Any], entity: str) -> Optional[dict[str, Any]]:
        query_response = payload.get("QueryResponse")
        if query_response is None:
            return payload.get(entity)
        items = query_response.get(entity)
        if not items:
            return None
        if isinstance(items, list):
            return items[0]
        return items

    def _extract_error_code(self, body: Optional[str]) -> Optional[str]:
        if not body:
            return None
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return None
        fault = payload.get("Fault", {}) if isinstance(payload, dict) else {}
        errors = fault.get("Error") or []
        if isinstance(errors, dict):
            errors = [errors]
        for error in errors:
            code = error.get("code")
            if code:
                return str(code)
        return None

    def _basic_auth_header(self) -> str:
        credentials = f"{self.settings.qbo_client_id}:{self.settings.qbo_client_secret}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    def _escape(self, value: str) -> str:
        return value.replace("'", "''")
