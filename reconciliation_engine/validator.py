"""
Allocation Validator

Read-only integrity check. Reports the drift the repair sweep would fix and
the anomalies it would flag, without writing anything.
"""

from typing import List, Union

from sqlalchemy import func, select

from Config.constants_core import RECONCILE_ALL
from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import CapitalCall, CapitalCallPayment, Fund, FundAllocation
from reconciliation_engine.conflict_resolver import ConflictResolver
from reconciliation_engine.exceptions import NotFoundError
from reconciliation_engine.models import ValidationResult
from reconciliation_engine.synchronizer import ReconciliationSynchronizer


class AllocationValidator:
    """
    Validates allocations and fund metrics against their capital calls.

    Checks:
    - Stored status matches the calculator (written_off excepted)
    - Stored called/paid match the sums of active capital calls
    - Active calls do not exceed the commitment
    - No call is paid above its amount
    - No payment excess was clamped away unreported
    - One allocation per (fund, deal)
    - Fund metrics match the rollup of their allocations
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        synchronizer: ReconciliationSynchronizer,
        conflict_resolver: ConflictResolver,
        precision_utils: PrecisionUtils,
    ):
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('shared_logger')
        self.synchronizer = synchronizer
        self.conflict_resolver = conflict_resolver
        self.precision = precision_utils

    async def validate(self, scope: Union[int, str] = RECONCILE_ALL, strict: bool = False) -> ValidationResult:
        """
        Args:
            scope: allocation id or 'all'
            strict: if True, anomalies (overpaid calls, unapplied payments) are errors

        Returns:
            ValidationResult with validation details
        """
        scope = self.synchronizer.validate_scope(scope)
        self.logger.info(f"🔍 Validating allocations (scope={scope}, strict={strict})")
        result = ValidationResult(is_valid=True, scope=scope)

        async with self.db.async_session() as session:
            stmt = select(FundAllocation).order_by(FundAllocation.id)
            if scope != RECONCILE_ALL:
                ids = [scope] if isinstance(scope, int) else scope
                stmt = stmt.where(FundAllocation.id.in_(ids))
            allocations = list((await session.execute(stmt)).scalars().all())

            if isinstance(scope, int) and not allocations:
                raise NotFoundError('Allocation', scope)

            allocation_ids = [a.id for a in allocations]
            totals = await self.synchronizer.call_aggregator.totals_many(session, allocation_ids)
            result.total_allocations = len(allocations)
            result.total_capital_calls = sum(t.call_count for t in totals.values())

            for allocation in allocations:
                self._check_allocation(allocation, totals[allocation.id], result)

            await self._check_calls_and_payments(session, allocation_ids, result, strict)

            if scope == RECONCILE_ALL:
                fund_ids = list((await session.execute(select(Fund.id).order_by(Fund.id))).scalars().all())
                for group in await self.conflict_resolver.find_duplicates(session):
                    result.duplicate_pairs += 1
                    result.add_error(
                        f"Fund {group.fund_id} / deal {group.deal_id} has {group.size} allocations {group.allocation_ids}"
                    )
            else:
                fund_ids = sorted({a.fund_id for a in allocations})

            result.total_funds = len(fund_ids)
            await self._check_funds(session, fund_ids, result)

        if result.is_valid:
            self.logger.info(f"✅ Validation passed\n{result}")
        else:
            self.logger.warning(f"⚠️ Validation found problems\n{result}")
        return result

    def _check_allocation(self, allocation: FundAllocation, totals, result: ValidationResult) -> None:
        canonical = self.synchronizer.canonical_state(allocation, totals)

        if (self.precision.to_money(allocation.called_amount) != canonical.called_amount
                or self.precision.to_money(allocation.paid_amount) != canonical.paid_amount):
            result.amount_mismatches += 1
            result.add_error(
                f"Allocation {allocation.id}: stored called/paid {allocation.called_amount}/{allocation.paid_amount}, "
                f"calls say {canonical.called_amount}/{canonical.paid_amount}"
            )

        if allocation.status != canonical.status.value:
            result.status_mismatches += 1
            result.add_error(
                f"Allocation {allocation.id}: status {allocation.status}, expected {canonical.status.value}"
            )

        if canonical.called_amount > self.precision.to_money(allocation.amount):
            result.ceiling_breaches += 1
            result.add_error(
                f"Allocation {allocation.id}: calls {canonical.called_amount} exceed commitment {allocation.amount}"
            )

    async def _check_calls_and_payments(self, session, allocation_ids: List[int], result: ValidationResult, strict: bool):
        if not allocation_ids:
            return

        overpaid = (await session.execute(
            select(func.count(CapitalCall.id)).where(
                CapitalCall.allocation_id.in_(allocation_ids),
                CapitalCall.cancelled_at.is_(None),
                CapitalCall.paid_amount > CapitalCall.call_amount,
            )
        )).scalar_one()

        unapplied = (await session.execute(
            select(func.count(CapitalCallPayment.id))
            .join(CapitalCall, CapitalCall.id == CapitalCallPayment.capital_call_id)
            .where(
                CapitalCall.allocation_id.in_(allocation_ids),
                CapitalCallPayment.applied_amount < CapitalCallPayment.amount,
            )
        )).scalar_one()

        result.overpaid_calls = int(overpaid)
        result.unapplied_payments = int(unapplied)

        report = result.add_error if strict else result.add_warning
        if result.overpaid_calls:
            report(f"{result.overpaid_calls} capital call(s) paid above their call amount")
        if result.unapplied_payments:
            report(f"{result.unapplied_payments} payment(s) with an unapplied excess")

    async def _check_funds(self, session, fund_ids: List[int], result: ValidationResult) -> None:
        if not fund_ids:
            return

        metrics = await self.synchronizer.fund_aggregator.compute_many(session, fund_ids)
        funds = (await session.execute(select(Fund).where(Fund.id.in_(fund_ids)))).scalars().all()
        for fund in funds:
            expected = metrics[fund.id]
            stored = (
                self.precision.to_money(fund.committed_capital),
                self.precision.to_money(fund.called_capital),
                self.precision.to_money(fund.uncalled_capital),
                self.precision.to_money(fund.aum),
            )
            wanted = (
                expected.committed_capital,
                expected.called_capital,
                expected.uncalled_capital,
                expected.paid_capital,
            )
            if stored != wanted:
                result.fund_metric_mismatches += 1
                result.add_error(f"Fund {fund.id}: stored metrics {stored} differ from {expected}")
