from __future__ import annotations

import logging
import uuid
from collections import Counter
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.core.config import Settings
from ledger_sync.db import repo
from ledger_sync.schemas.documents import Ref
from ledger_sync.services.builder import DocumentBuilder
from ledger_sync.services.cache import LookupCache
from ledger_sync.services.cascade import PayoutCascade
from ledger_sync.services.errors import ConfigurationMissing
from ledger_sync.services.payouts import PayoutAggregator
from ledger_sync.services.qbo_client import AccountingClient, QuickBooksClient
from ledger_sync.services.resolver import AccountResolver
from ledger_sync.services.sync import SyncResult, SyncStateMachine

logger = logging.getLogger("ledger_sync.engine")

SWEEP_SKIPPED_CODES = (ConfigurationMissing.code,)


class LedgerSyncEngine:
    """Entry points used by the API, webhooks and the sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SyncStateMachine,
        cascade: PayoutCascade,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.cascade = cascade
        self.settings = settings

    async def sync_payment(self, payment_id: uuid.UUID) -> SyncResult:
        result = await self.state_machine.sync_payment(payment_id)
        result.cascaded = await self.cascade.after_sync(result)
        return result

    async def sync_refund(self, refund_id: uuid.UUID) -> SyncResult:
        result = await self.state_machine.sync_refund(refund_id)
        result.cascaded = await self.cascade.after_sync(result)
        return result

    async def sync_payout(self, payout_id: uuid.UUID) -> SyncResult:
        return await self.state_machine.sync_payout(payout_id)

    async def sync(self, record_type: str, record_id: uuid.UUID) -> SyncResult:
        if record_type == "payment":
            return await self.sync_payment(record_id)
        if record_type == "refund":
            return await self.sync_refund(record_id)
        if record_type == "payout":
            return await self.sync_payout(record_id)
        raise ValueError(f"Unknown record type: {record_type}")

    async def reset_failed(self, record_type: str, record_id: uuid.UUID) -> bool:
        model = repo.RECORD_MODELS[record_type]
        async with self.session_factory() as session:
            reset = await repo.reset_failed(session, model, record_id)
        logger.info(
            "sync_reset",
            extra={"record_type": record_type, "record_id": str(record_id), "reset": reset},
        )
        return reset

    async def get_record(self, record_type: str, record_id: uuid.UUID) -> Optional[repo.LedgerRecord]:
        model = repo.RECORD_MODELS[record_type]
        async with self.session_factory() as session:
            return await repo.get_record(session, model, record_id)

    async def link_payment_to_payout(self, payout_id: uuid.UUID, payment_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            await self._require(session, "payout", payout_id)
            await self._require(session, "payment", payment_id)
            return await repo.link_payment_to_payout(session, payout_id=payout_id, payment_id=payment_id)

    async def link_refund_to_payout(self, payout_id: uuid.UUID, refund_id: uuid.UUID) -> bool:
        async with self.session_factory() as session:
            await self._require(session, "payout", payout_id)
            await self._require(session, "refund", refund_id)
            return await repo.link_refund_to_payout(session, payout_id=payout_id, refund_id=refund_id)

    async def _require(self, session: AsyncSession, record_type: str, record_id: uuid.UUID) -> None:
        if await repo.get_record(session, repo.RECORD_MODELS[record_type], record_id) is None:
            raise LookupError(f"{record_type} {record_id} does not exist")

    async def sweep(self, limit: Optional[int] = None) -> dict[str, dict[str, int]]:
        """Sync every unsynced record, payments and refunds before payouts.

        Failures with a fatal code are left for a manual reset or a direct call.
        """
        limit = limit or self.settings.sweep_batch_size
        report: dict[str, dict[str, int]] = {}
        for record_type in ("payment", "refund", "payout"):
            model = repo.RECORD_MODELS[record_type]
            async with self.session_factory() as session:
                record_ids = await repo.list_unsynced_ids(
                    session,
                    model,
                    limit=limit,
                    skip_failed_codes=SWEEP_SKIPPED_CODES,
                )
            outcomes: Counter[str] = Counter()
            for record_id in record_ids:
                result = await self.sync(record_type, record_id)
                outcomes[result.status] += 1
            report[record_type] = dict(outcomes)
        logger.info("sweep_completed", extra={"limit": limit, "report": report})
        return report


def build_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    client: Optional[AccountingClient] = None,
    cache: Optional[LookupCache[Ref]] = None,
) -> LedgerSyncEngine:
    client = client or QuickBooksClient(session_factory, settings)
    cache = cache if cache is not None else LookupCache(settings.lookup_cache_ttl_seconds)
    resolver = AccountResolver(client, settings, cache)
    state_machine = SyncStateMachine(
        session_factory,
        client,
        DocumentBuilder(resolver),
        PayoutAggregator(resolver),
    )
    cascade = PayoutCascade(session_factory, state_machine)
    return LedgerSyncEngine(session_factory, state_machine, cascade, settings)
