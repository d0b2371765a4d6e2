"""
Conflict Resolver

Finds (fund, deal) pairs holding more than one allocation and folds them
into a single row. Creation already rejects duplicates; this exists for data
that got corrupted before that check (or the unique index) was in place.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.enum import AllocationStatus
from Shared_Utils.logger import log_context, log_performance
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import CapitalCall, FundAllocation
from reconciliation_engine.exceptions import NotFoundError
from reconciliation_engine.models import DuplicateGroup, MergeResult
from reconciliation_engine.synchronizer import ReconciliationSynchronizer, lock_allocations


def _recency_key(allocation: FundAllocation):
    created = allocation.created_at.timestamp() if allocation.created_at is not None else float('-inf')
    return created, allocation.id


def pick_survivor(allocations: List[FundAllocation]) -> FundAllocation:
    """Most recently created row wins; ties go to the highest id."""
    return max(allocations, key=_recency_key)


class ConflictResolver:
    """
    Merge policy:
    - survivor = latest created_at (ties: highest id)
    - capital calls of the other rows are re-pointed to the survivor
    - survivor.amount = sum of the set's amounts
    - other rows deleted, then survivor and fund recomputed
    - survivor stays written_off only when every row in the set was

    The whole merge is one transaction.
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        synchronizer: ReconciliationSynchronizer,
        precision_utils: PrecisionUtils,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconciliation_logger')
        self.synchronizer = synchronizer
        self.precision = precision_utils

    async def find_duplicates(self, session: Optional[AsyncSession] = None) -> List[DuplicateGroup]:
        """Every (fund, deal) pair with more than one allocation, ids ascending."""
        if session is None:
            async with self.db.async_session() as session:
                return await self._find_duplicates(session)
        return await self._find_duplicates(session)

    @staticmethod
    async def _find_duplicates(session: AsyncSession) -> List[DuplicateGroup]:
        pairs = (
            select(FundAllocation.fund_id, FundAllocation.deal_id)
            .group_by(FundAllocation.fund_id, FundAllocation.deal_id)
            .having(func.count(FundAllocation.id) > 1)
            .subquery()
        )
        stmt = (
            select(FundAllocation.fund_id, FundAllocation.deal_id, FundAllocation.id)
            .join(pairs, (pairs.c.fund_id == FundAllocation.fund_id) & (pairs.c.deal_id == FundAllocation.deal_id))
            .order_by(FundAllocation.fund_id, FundAllocation.deal_id, FundAllocation.id)
        )

        groups = {}
        for row in await session.execute(stmt):
            groups.setdefault((row.fund_id, row.deal_id), []).append(row.id)

        return [
            DuplicateGroup(fund_id=fund_id, deal_id=deal_id, allocation_ids=ids)
            for (fund_id, deal_id), ids in groups.items()
        ]

    @log_performance('reconciliation_logger')
    async def merge(self, fund_id: int, deal_id: int) -> Tuple[FundAllocation, MergeResult]:
        """
        Merge every allocation for (fund_id, deal_id) into one.

        Returns the surviving allocation and a description of the merge. A
        pair with a single allocation is returned untouched.

        The survivor's paid_amount is recomputed from the repointed capital
        calls. Cached paid amounts on the merged rows are not carried over: paid
        with no backing capital call is dropped (and logged as a warning).

        Raises:
            NotFoundError: no allocation exists for the pair
        """
        with log_context(fund_id=fund_id, deal_id=deal_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    ids = (await session.execute(
                        select(FundAllocation.id)
                        .where(FundAllocation.fund_id == fund_id, FundAllocation.deal_id == deal_id)
                    )).scalars().all()

                    allocations = await lock_allocations(session, ids)
                    # rows may vanish between the id read and the lock (a concurrent merge)
                    allocations = [a for a in allocations if a.fund_id == fund_id and a.deal_id == deal_id]
                    if not allocations:
                        raise NotFoundError('Allocation', f"fund={fund_id} deal={deal_id}")

                    survivor = pick_survivor(allocations)
                    if len(allocations) == 1:
                        self.logger.info(f"✅ No duplicates for fund {fund_id} / deal {deal_id}")
                        return survivor, MergeResult(
                            fund_id=fund_id,
                            deal_id=deal_id,
                            survivor_id=survivor.id,
                            amount=self.precision.to_money(survivor.amount),
                            paid_amount=self.precision.to_money(survivor.paid_amount),
                            status=survivor.status,
                        )

                    result = await self._merge_locked(session, survivor, allocations)

            self.logger.info(
                f"🔀 Merged allocations {result.merged_ids} into {result.survivor_id} "
                f"(amount {result.amount}, paid {result.paid_amount}, status {result.status}, "
                f"{result.calls_repointed} call(s) re-pointed)"
            )
            return survivor, result

    async def _merge_locked(
        self,
        session: AsyncSession,
        survivor: FundAllocation,
        allocations: List[FundAllocation],
    ) -> MergeResult:
        others = [a for a in allocations if a.id != survivor.id]
        other_ids = [a.id for a in others]
        now = datetime.now(timezone.utc)

        total_amount = sum((self.precision.to_money(a.amount) for a in allocations), Decimal('0.00'))
        cached_paid = sum((self.precision.to_money(a.paid_amount) for a in allocations), Decimal('0.00'))
        all_written_off = all(a.is_written_off for a in allocations)

        repointed = await session.execute(
            update(CapitalCall)
            .where(CapitalCall.allocation_id.in_(other_ids))
            .values(allocation_id=survivor.id, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        survivor.amount = total_amount
        survivor.updated_at = now
        if all_written_off:
            latest = pick_survivor([a for a in allocations if a.written_off_at is not None] or allocations)
            survivor.status = AllocationStatus.WRITTEN_OFF.value
            survivor.written_off_at = survivor.written_off_at or latest.written_off_at or now
            survivor.write_off_reason = survivor.write_off_reason or latest.write_off_reason
        elif survivor.is_written_off:
            # Live commitments merged in: the calculator owns the status again
            survivor.status = AllocationStatus.COMMITTED.value
            survivor.written_off_at = None
            survivor.write_off_reason = None

        for other in others:
            await session.delete(other)
        await session.flush()

        await self.synchronizer.recompute_allocation(session, survivor)
        await self.synchronizer.recompute_fund(session, survivor.fund_id)

        paid = self.precision.to_money(survivor.paid_amount)
        if paid != cached_paid:
            self.logger.warning(
                f"⚠️ Cached paid amounts of merged rows summed to {cached_paid}; "
                f"capital calls say {paid}. Using the capital calls."
            )

        return MergeResult(
            fund_id=survivor.fund_id,
            deal_id=survivor.deal_id,
            survivor_id=survivor.id,
            merged_ids=other_ids,
            calls_repointed=repointed.rowcount or 0,
            amount=self.precision.to_money(survivor.amount),
            paid_amount=paid,
            status=survivor.status,
        )

    async def merge_all(self) -> List[MergeResult]:
        """Merge every duplicate group, one transaction per group."""
        results = []
        for group in await self.find_duplicates():
            _, result = await self.merge(group.fund_id, group.deal_id)
            results.append(result)
        return results
