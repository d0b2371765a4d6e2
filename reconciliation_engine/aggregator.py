"""
Capital call and fund metric aggregation.

Both aggregators run inside the caller's session so their reads share the
mutation's transaction (and its row locks). Each figure is one aggregate
query; callers never walk capital calls row by row.
"""

from typing import Dict, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from Shared_Utils.enum import AllocationStatus
from Shared_Utils.precision import PrecisionUtils
from TableModels import CapitalCall, FundAllocation
from reconciliation_engine.models import CallTotals, FundMetrics


class CapitalCallAggregator:
    """Total called / total paid over an allocation's non-cancelled capital calls."""

    def __init__(self, precision_utils: PrecisionUtils):
        self.precision = precision_utils

    @staticmethod
    def _active_calls_query():
        return (
            select(
                CapitalCall.allocation_id,
                func.coalesce(func.sum(CapitalCall.call_amount), 0).label('total_called'),
                func.coalesce(func.sum(CapitalCall.paid_amount), 0).label('total_paid'),
                func.count(CapitalCall.id).label('call_count'),
            )
            .where(CapitalCall.cancelled_at.is_(None))
            .group_by(CapitalCall.allocation_id)
        )

    def _to_totals(self, row) -> CallTotals:
        return CallTotals(
            total_called=self.precision.to_money(row.total_called),
            total_paid=self.precision.to_money(row.total_paid),
            call_count=int(row.call_count or 0),
        )

    async def totals(self, session: AsyncSession, allocation_id: int) -> CallTotals:
        """An allocation with no calls (or no such allocation) yields zero totals."""
        stmt = self._active_calls_query().where(CapitalCall.allocation_id == allocation_id)
        row = (await session.execute(stmt)).first()
        if row is None:
            return CallTotals()
        return self._to_totals(row)

    async def totals_many(self, session: AsyncSession, allocation_ids: Iterable[int]) -> Dict[int, CallTotals]:
        """Grouped variant for sweep batches. Every requested id is present in the result."""
        allocation_ids = list(allocation_ids)
        if not allocation_ids:
            return {}

        stmt = self._active_calls_query().where(CapitalCall.allocation_id.in_(allocation_ids))
        result = await session.execute(stmt)
        totals = {row.allocation_id: self._to_totals(row) for row in result}
        for allocation_id in allocation_ids:
            totals.setdefault(allocation_id, CallTotals())
        return totals


class FundMetricsAggregator:
    """
    Fund-level rollup of the allocations' cached fields.

        committed = sum(amount) over allocations not written off
        called    = sum(called_amount)
        uncalled  = max(0, committed - called)
        paid/AUM  = sum(paid_amount)

    Reads the cached allocation fields, so it must run after the
    allocation-level recompute in the same transaction.
    """

    def __init__(self, precision_utils: PrecisionUtils):
        self.precision = precision_utils

    @staticmethod
    def _metrics_query():
        committed = case(
            (FundAllocation.status != AllocationStatus.WRITTEN_OFF.value, FundAllocation.amount),
            else_=0,
        )
        return (
            select(
                FundAllocation.fund_id,
                func.coalesce(func.sum(committed), 0).label('committed'),
                func.coalesce(func.sum(FundAllocation.called_amount), 0).label('called'),
                func.coalesce(func.sum(FundAllocation.paid_amount), 0).label('paid'),
                func.count(FundAllocation.id).label('allocation_count'),
            )
            .group_by(FundAllocation.fund_id)
        )

    def _to_metrics(self, fund_id: int, row) -> FundMetrics:
        if row is None:
            return FundMetrics(fund_id=fund_id)

        committed = self.precision.to_money(row.committed)
        called = self.precision.to_money(row.called)
        uncalled = self.precision.clamp(committed - called, floor=self.precision.to_money(0))
        return FundMetrics(
            fund_id=fund_id,
            committed_capital=committed,
            called_capital=called,
            uncalled_capital=uncalled,
            paid_capital=self.precision.to_money(row.paid),
            allocation_count=int(row.allocation_count or 0),
        )

    async def compute(self, session: AsyncSession, fund_id: int) -> FundMetrics:
        """A fund with no allocations yields all-zero metrics."""
        stmt = self._metrics_query().where(FundAllocation.fund_id == fund_id)
        row = (await session.execute(stmt)).first()
        return self._to_metrics(fund_id, row)

    async def compute_many(self, session: AsyncSession, fund_ids: Iterable[int]) -> Dict[int, FundMetrics]:
        fund_ids = list(fund_ids)
        if not fund_ids:
            return {}

        stmt = self._metrics_query().where(FundAllocation.fund_id.in_(fund_ids))
        rows = {row.fund_id: row for row in await session.execute(stmt)}
        return {fund_id: self._to_metrics(fund_id, rows.get(fund_id)) for fund_id in fund_ids}
