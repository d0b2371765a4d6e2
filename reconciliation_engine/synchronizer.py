"""
Reconciliation Synchronizer

Keeps the cached derived fields (allocation called/paid/status, fund
committed/called/uncalled/AUM) equal to what the capital calls say.

Two entry points:
- recompute(): runs inside the mutating operation's transaction, after the
  allocation row has been locked. Allocation first, fund second.
- repair(): out-of-band sweep in short per-batch transactions. Writes only
  rows whose stored values differ, so a second sweep writes nothing.

Lock order everywhere: allocation rows (ascending id), then capital call
rows, then fund rows.
"""

import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from Config.config_manager import EngineConfig
from Config.constants_core import RECONCILE_ALL
from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.enum import AllocationStatus, AnomalyKind
from Shared_Utils.logger import log_context, log_performance
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import CapitalCall, CapitalCallPayment, Fund, FundAllocation
from reconciliation_engine.aggregator import CapitalCallAggregator, FundMetricsAggregator
from reconciliation_engine.exceptions import NotFoundError, ValidationError
from reconciliation_engine.models import (
    AllocationCorrection,
    CallTotals,
    CanonicalAllocationState,
    FundMetrics,
    RepairAnomaly,
    RepairFailure,
    RepairReport,
)
from reconciliation_engine.status_calculator import calculate_allocation_status

Scope = Union[int, str, Sequence[int]]


# ============================================================================
# Row locks
# ============================================================================

def allocation_lock_stmt(allocation_ids: Union[int, Iterable[int]]):
    """SELECT ... FOR UPDATE on allocations, ascending id. No-op clause on SQLite."""
    if isinstance(allocation_ids, int):
        allocation_ids = [allocation_ids]
    return (
        select(FundAllocation)
        .where(FundAllocation.id.in_(list(allocation_ids)))
        .order_by(FundAllocation.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


async def lock_allocation(session: AsyncSession, allocation_id: int) -> Optional[FundAllocation]:
    result = await session.execute(allocation_lock_stmt(allocation_id))
    return result.scalar_one_or_none()


async def lock_allocations(session: AsyncSession, allocation_ids: Iterable[int]) -> List[FundAllocation]:
    ids = sorted(set(allocation_ids))
    if not ids:
        return []
    result = await session.execute(allocation_lock_stmt(ids))
    return list(result.scalars().all())


async def lock_capital_call(session: AsyncSession, capital_call_id: int) -> Optional[CapitalCall]:
    stmt = (
        select(CapitalCall)
        .where(CapitalCall.id == capital_call_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def lock_funds(session: AsyncSession, fund_ids: Iterable[int]) -> List[Fund]:
    ids = sorted(set(fund_ids))
    if not ids:
        return []
    stmt = (
        select(Fund)
        .where(Fund.id.in_(ids))
        .order_by(Fund.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars().all())


class ReconciliationSynchronizer:
    """
    Usage:
        sync = ReconciliationSynchronizer(db, logger_manager, config, precision_utils)

        # inside a mutation, allocation already locked
        async with db.async_session() as session:
            async with session.begin():
                allocation = await lock_allocation(session, allocation_id)
                ...
                await sync.recompute(session, allocation)

        # out of band
        report = await sync.repair('all')
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        config: EngineConfig,
        precision_utils: PrecisionUtils,
        call_aggregator: Optional[CapitalCallAggregator] = None,
        fund_aggregator: Optional[FundMetricsAggregator] = None,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconciliation_logger')
        self.config = config
        self.precision = precision_utils
        self.call_aggregator = call_aggregator or CapitalCallAggregator(precision_utils)
        self.fund_aggregator = fund_aggregator or FundMetricsAggregator(precision_utils)

    # ------------------------------------------------------------------
    # Canonical values
    # ------------------------------------------------------------------

    def canonical_state(self, allocation: FundAllocation, totals: CallTotals) -> CanonicalAllocationState:
        """
        What the allocation's derived fields should hold.

        Written-off allocations keep their status; the calculator is not
        consulted for them. Their called/paid totals still track the calls.
        """
        called = self.precision.to_money(totals.total_called)
        paid = self.precision.to_money(totals.total_paid)

        if allocation.is_written_off:
            status = AllocationStatus.WRITTEN_OFF
        else:
            status = calculate_allocation_status(allocation.amount, called, paid)

        return CanonicalAllocationState(
            allocation_id=allocation.id,
            called_amount=called,
            paid_amount=paid,
            status=status,
        )

    def _differs(self, allocation: FundAllocation, canonical: CanonicalAllocationState) -> bool:
        return (
            self.precision.to_money(allocation.called_amount) != canonical.called_amount
            or self.precision.to_money(allocation.paid_amount) != canonical.paid_amount
            or allocation.status != canonical.status.value
        )

    def _apply(
        self,
        allocation: FundAllocation,
        canonical: CanonicalAllocationState,
        now: datetime,
    ) -> Optional[AllocationCorrection]:
        """Write canonical values onto the (locked) row if they differ. Returns the change, if any."""
        if not self._differs(allocation, canonical):
            return None

        correction = AllocationCorrection(
            allocation_id=allocation.id,
            fund_id=allocation.fund_id,
            previous_called=self.precision.to_money(allocation.called_amount),
            new_called=canonical.called_amount,
            previous_paid=self.precision.to_money(allocation.paid_amount),
            new_paid=canonical.paid_amount,
            previous_status=allocation.status,
            new_status=canonical.status.value,
        )
        allocation.called_amount = canonical.called_amount
        allocation.paid_amount = canonical.paid_amount
        allocation.status = canonical.status.value
        allocation.updated_at = now
        allocation.last_reconciled_at = now
        return correction

    def _apply_fund_metrics(self, fund: Fund, metrics: FundMetrics, now: datetime) -> bool:
        current = (
            self.precision.to_money(fund.committed_capital),
            self.precision.to_money(fund.called_capital),
            self.precision.to_money(fund.uncalled_capital),
            self.precision.to_money(fund.aum),
        )
        target = (
            metrics.committed_capital,
            metrics.called_capital,
            metrics.uncalled_capital,
            metrics.paid_capital,
        )
        if current == target:
            return False

        fund.committed_capital, fund.called_capital, fund.uncalled_capital, fund.aum = target
        fund.metrics_updated_at = now
        return True

    # ------------------------------------------------------------------
    # Transactional recompute
    # ------------------------------------------------------------------

    async def recompute_allocation(
        self,
        session: AsyncSession,
        allocation: FundAllocation,
    ) -> Optional[AllocationCorrection]:
        """Aggregate -> status -> persist for one allocation the caller has locked."""
        totals = await self.call_aggregator.totals(session, allocation.id)
        canonical = self.canonical_state(allocation, totals)
        correction = self._apply(allocation, canonical, datetime.now(timezone.utc))

        with log_context(allocation_id=allocation.id, fund_id=allocation.fund_id):
            if correction:
                await session.flush()
                self.logger.info(f"🔄 Recomputed {correction}")
            else:
                self.logger.debug(f"Allocation {allocation.id} already consistent")

            if totals.total_called > self.precision.to_money(allocation.amount):
                self.logger.warning(
                    f"⚠️ Allocation {allocation.id} called {totals.total_called} above commitment {allocation.amount}"
                )
        return correction

    async def recompute_fund(self, session: AsyncSession, fund_id: int) -> FundMetrics:
        """Lock the fund row, roll up its allocations and persist the metrics."""
        funds = await lock_funds(session, [fund_id])
        if not funds:
            raise NotFoundError('Fund', fund_id)

        metrics = await self.fund_aggregator.compute(session, fund_id)
        if self._apply_fund_metrics(funds[0], metrics, datetime.now(timezone.utc)):
            await session.flush()
            self.logger.info(f"📊 Updated {metrics}", extra={'fund_id': fund_id})
        return metrics

    async def recompute(self, session: AsyncSession, allocation: FundAllocation) -> Optional[AllocationCorrection]:
        """Full transactional recompute: the allocation, then its owning fund."""
        correction = await self.recompute_allocation(session, allocation)
        await self.recompute_fund(session, allocation.fund_id)
        return correction

    # ------------------------------------------------------------------
    # Repair sweep
    # ------------------------------------------------------------------

    @staticmethod
    def validate_scope(scope: Scope) -> Union[int, str, List[int]]:
        if isinstance(scope, bool) or scope is None:
            raise ValidationError('scope', scope, f"expected an allocation id, a list of ids or '{RECONCILE_ALL}'")
        if isinstance(scope, int):
            if scope <= 0:
                raise ValidationError('scope', scope, "allocation id must be positive")
            return scope
        if isinstance(scope, str):
            if scope.strip().lower() != RECONCILE_ALL:
                raise ValidationError('scope', scope, f"only '{RECONCILE_ALL}' is accepted as a string scope")
            return RECONCILE_ALL
        if isinstance(scope, (list, tuple, set, frozenset)):
            if not scope or any(isinstance(i, bool) or not isinstance(i, int) or i <= 0 for i in scope):
                raise ValidationError('scope', scope, "allocation ids must be positive integers")
            return sorted(set(scope))
        raise ValidationError('scope', scope, f"expected an allocation id, a list of ids or '{RECONCILE_ALL}'")

    async def _resolve_scope(self, scope) -> Tuple[List[Tuple[int, int]], List[int]]:
        """Return [(allocation_id, fund_id)] in id order and the fund ids the fund pass covers."""
        async with self.db.async_session() as session:
            stmt = select(FundAllocation.id, FundAllocation.fund_id).order_by(FundAllocation.id)
            if scope == RECONCILE_ALL:
                rows = [(r.id, r.fund_id) for r in await session.execute(stmt)]
                fund_ids = list((await session.execute(select(Fund.id).order_by(Fund.id))).scalars().all())
                return rows, fund_ids

            ids = [scope] if isinstance(scope, int) else scope
            rows = [(r.id, r.fund_id) for r in await session.execute(stmt.where(FundAllocation.id.in_(ids)))]
            if isinstance(scope, int) and not rows:
                raise NotFoundError('Allocation', scope)
            return rows, sorted({fund_id for _, fund_id in rows})

    @staticmethod
    def _chunks(items: List, size: int):
        for start in range(0, len(items), size):
            yield items[start:start + size]

    @log_performance('reconciliation_logger')
    async def repair(self, scope: Scope = RECONCILE_ALL, batch_size: Optional[int] = None) -> RepairReport:
        """
        Idempotent drift repair over an allocation id, a list of ids, or 'all'.

        Each batch is its own transaction holding row locks only on that batch.
        A row that fails to compute is skipped and reported; a batch that fails
        to write is rolled back, all of its rows are reported, and the sweep
        moves on. Anomalies are reported and never corrected.

        Raises:
            ValidationError: malformed scope
            NotFoundError: a single allocation id that does not exist
        """
        scope = self.validate_scope(scope)
        batch_size = batch_size or self.config.sweep_batch_size
        report = RepairReport(scope=scope)
        started = time.perf_counter()

        rows, fund_ids = await self._resolve_scope(scope)
        allocation_ids = [allocation_id for allocation_id, _ in rows]

        with log_context(repair_batch=str(report.batch_id)):
            self.logger.info(
                f"🚀 Repair sweep started: {len(allocation_ids)} allocation(s), "
                f"{len(fund_ids)} fund(s), batch size {batch_size}"
            )

            for batch in self._chunks(allocation_ids, batch_size):
                await self._repair_allocation_batch(batch, report)

            for batch in self._chunks(fund_ids, batch_size):
                await self._repair_fund_batch(batch, report)

            report.duration_ms = int((time.perf_counter() - started) * 1000)

            if report.has_failures:
                self.logger.error(f"❌ Repair sweep finished with failures\n{report}")
            elif report.has_anomalies:
                self.logger.warning(f"⚠️ Repair sweep finished with anomalies\n{report}")
            else:
                self.logger.info(f"✅ Repair sweep finished\n{report}")

        return report

    async def _repair_allocation_batch(self, batch: List[int], report: RepairReport) -> None:
        pending: List[AllocationCorrection] = []
        anomalies: List[RepairAnomaly] = []
        row_failures: List[RepairFailure] = []
        inspected = 0

        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    allocations = await lock_allocations(session, batch)
                    totals = await self.call_aggregator.totals_many(session, [a.id for a in allocations])
                    now = datetime.now(timezone.utc)

                    for allocation in allocations:
                        inspected += 1
                        try:
                            canonical = self.canonical_state(allocation, totals[allocation.id])
                        except Exception as e:
                            row_failures.append(RepairFailure(entity_id=allocation.id, error=str(e)))
                            self.logger.error(
                                f"❌ Could not compute allocation {allocation.id}: {e}",
                                exc_info=True,
                                extra={'allocation_id': allocation.id},
                            )
                            continue

                        anomalies.extend(self._over_called(allocation, totals[allocation.id]))
                        correction = self._apply(allocation, canonical, now)
                        if correction:
                            pending.append(correction)

                    anomalies.extend(await self._payment_anomalies(session, [a.id for a in allocations]))

        except Exception as e:
            self.logger.error(
                f"❌ Repair batch {batch[0]}..{batch[-1]} rolled back: {e}",
                exc_info=True,
            )
            report.allocations_inspected += len(batch)
            report.failures.extend(RepairFailure(entity_id=allocation_id, error=str(e)) for allocation_id in batch)
            return

        report.allocations_inspected += inspected
        report.allocations_repaired += len(pending)
        report.corrections.extend(pending)
        report.failures.extend(row_failures)
        report.anomalies.extend(anomalies)

        for correction in pending:
            self.logger.info(f"🔧 Repaired {correction}", extra={'allocation_id': correction.allocation_id})
        for anomaly in anomalies:
            self.logger.warning(f"⚠️ Anomaly {anomaly}", extra={'allocation_id': anomaly.allocation_id})

    def _over_called(self, allocation: FundAllocation, totals: CallTotals) -> List[RepairAnomaly]:
        commitment = self.precision.to_money(allocation.amount)
        excess = totals.total_called - commitment
        if excess <= 0:
            return []
        return [RepairAnomaly(
            kind=AnomalyKind.OVER_CALLED,
            allocation_id=allocation.id,
            amount=excess,
            description=f"calls total {totals.total_called} against commitment {commitment}",
        )]

    async def _payment_anomalies(self, session: AsyncSession, allocation_ids: List[int]) -> List[RepairAnomaly]:
        """Calls paid above their amount, and payments whose excess was clamped away."""
        if not allocation_ids:
            return []

        anomalies: List[RepairAnomaly] = []

        overpaid = await session.execute(
            select(CapitalCall.id, CapitalCall.allocation_id, CapitalCall.call_amount, CapitalCall.paid_amount)
            .where(
                CapitalCall.allocation_id.in_(allocation_ids),
                CapitalCall.cancelled_at.is_(None),
                CapitalCall.paid_amount > CapitalCall.call_amount,
            )
            .order_by(CapitalCall.id)
        )
        for row in overpaid:
            excess = self.precision.to_money(row.paid_amount) - self.precision.to_money(row.call_amount)
            anomalies.append(RepairAnomaly(
                kind=AnomalyKind.CALL_OVERPAID,
                allocation_id=row.allocation_id,
                capital_call_id=row.id,
                amount=excess,
                description=f"call {row.id} paid {row.paid_amount} against {row.call_amount}",
            ))

        unapplied = await session.execute(
            select(
                CapitalCallPayment.id,
                CapitalCallPayment.capital_call_id,
                CapitalCallPayment.amount,
                CapitalCallPayment.applied_amount,
                CapitalCall.allocation_id,
            )
            .join(CapitalCall, CapitalCall.id == CapitalCallPayment.capital_call_id)
            .where(
                CapitalCall.allocation_id.in_(allocation_ids),
                CapitalCallPayment.applied_amount < CapitalCallPayment.amount,
            )
            .order_by(CapitalCallPayment.id)
        )
        for row in unapplied:
            excess = self.precision.to_money(row.amount) - self.precision.to_money(row.applied_amount)
            anomalies.append(RepairAnomaly(
                kind=AnomalyKind.UNAPPLIED_PAYMENT,
                allocation_id=row.allocation_id,
                capital_call_id=row.capital_call_id,
                payment_id=row.id,
                amount=excess,
                description=f"payment {row.id} of {row.amount} applied {row.applied_amount}",
            ))

        return anomalies

    async def _repair_fund_batch(self, batch: List[int], report: RepairReport) -> None:
        repaired: Dict[int, FundMetrics] = {}
        inspected = 0

        try:
            async with self.db.async_session() as session:
                async with session.begin():
                    funds = await lock_funds(session, batch)
                    metrics = await self.fund_aggregator.compute_many(session, [f.id for f in funds])
                    now = datetime.now(timezone.utc)

                    for fund in funds:
                        inspected += 1
                        if self._apply_fund_metrics(fund, metrics[fund.id], now):
                            repaired[fund.id] = metrics[fund.id]

        except Exception as e:
            self.logger.error(f"❌ Fund repair batch {batch[0]}..{batch[-1]} rolled back: {e}", exc_info=True)
            report.funds_inspected += len(batch)
            report.failures.extend(RepairFailure(entity_id=fund_id, error=str(e), entity='fund') for fund_id in batch)
            return

        report.funds_inspected += inspected
        report.funds_repaired += len(repaired)
        for fund_id, fund_metrics in repaired.items():
            self.logger.info(f"🔧 Repaired {fund_metrics}", extra={'fund_id': fund_id})
