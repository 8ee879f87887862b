from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.db import repo
from ledger_sync.services.errors import DependencyNotReady
from ledger_sync.services.sync import SyncResult, SyncStateMachine

logger = logging.getLogger("ledger_sync.cascade")


class PayoutCascade:
    """Re-checks payouts that settle a transaction once that transaction syncs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SyncStateMachine,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine

    async def payouts_to_recheck(self, record_type: str, record_id: uuid.UUID) -> list[uuid.UUID]:
        async with self.session_factory() as session:
            return await repo.list_unsynced_payout_ids_for(
                session,
                record_type=record_type,
                record_id=record_id,
            )

    async def after_sync(self, result: SyncResult) -> list[SyncResult]:
        # Idempotent reuse means the cascade already ran for the original success.
        if not result.synced or result.reused or result.record_type not in ("payment", "refund"):
            return []
        payout_ids = await self.payouts_to_recheck(result.record_type, result.record_id)
        outcomes: list[SyncResult] = []
        for payout_id in payout_ids:
            outcome = await self.state_machine.sync_payout(payout_id)
            if outcome.error is not None and outcome.error.code == DependencyNotReady.code:
                logger.info(
                    "payout_not_ready",
                    extra={
                        "payout_id": str(payout_id),
                        "trigger_record_type": result.record_type,
                        "trigger_record_id": str(result.record_id),
                        "pending": outcome.error.details.get("pending", []),
                    },
                )
            elif outcome.synced:
                logger.info(
                    "payout_cascade_synced",
                    extra={
                        "payout_id": str(payout_id),
                        "external_id": outcome.external_id,
                        "trigger_record_type": result.record_type,
                        "trigger_record_id": str(result.record_id),
                    },
                )
            outcomes.append(outcome)
        return outcomes
