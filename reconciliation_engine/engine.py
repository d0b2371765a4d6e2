"""
Allocation Reconciliation Engine

The entry point the API layer and the maintenance scripts call. Every
mutating operation is one transaction: lock, validate, mutate, recompute the
allocation, recompute the fund, commit. Any exception rolls all of it back.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from dateutil import parser as date_parser
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from Config.config_manager import EngineConfig
from Config.constants_core import RECONCILE_ALL
from database_manager.database_session_manager import DatabaseSessionManager
from Shared_Utils.enum import AllocationStatus, CapitalCallStatus
from Shared_Utils.logger import log_context
from Shared_Utils.logging_manager import LoggerManager
from Shared_Utils.precision import PrecisionUtils
from TableModels import CapitalCall, CapitalCallPayment, Deal, Fund, FundAllocation
from reconciliation_engine.aggregator import CapitalCallAggregator, FundMetricsAggregator
from reconciliation_engine.conflict_resolver import ConflictResolver
from reconciliation_engine.exceptions import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from reconciliation_engine.models import (
    AllocationProgress,
    CapitalCallSummary,
    DuplicateGroup,
    FundMetrics,
    RepairReport,
    ValidationResult,
)
from reconciliation_engine.normalizer import CapitalCallNormalizer
from reconciliation_engine.status_calculator import calculate_capital_call_status
from reconciliation_engine.synchronizer import (
    ReconciliationSynchronizer,
    lock_allocation,
    lock_capital_call,
    lock_funds,
)
from reconciliation_engine.validator import AllocationValidator

# A capital call can be re-pointed by a concurrent merge between reading its
# allocation id and locking that allocation.
_CALL_LOCK_ATTEMPTS = 3


class AllocationReconciliationEngine:
    """
    Allocation / capital call status reconciliation.

    Core Principles:
    - Capital calls and payments are the facts
    - Allocation called/paid/status and fund metrics are derived from them
    - Derived fields are written only by the synchronizer, in the same
      transaction as the mutation that changed the facts

    Usage:
        engine = AllocationReconciliationEngine(db, logger_manager, config)
        allocation = await engine.create_allocation(fund_id=1, deal_id=1, amount=100000)
        call = await engine.create_capital_call(allocation.id, 25, 'percentage')
        await engine.record_payment(call.id, 15000)
        report = await engine.reconcile('all')
    """

    def __init__(
        self,
        database_session_manager: DatabaseSessionManager,
        logger_manager: LoggerManager,
        config: Optional[EngineConfig] = None,
        precision_utils: Optional[PrecisionUtils] = None,
    ):
        """
        Args:
            database_session_manager: Database session manager
            logger_manager: Logging manager
            config: Engine configuration (defaults to EngineConfig())
            precision_utils: Money arithmetic (built from config if omitted)
        """
        self.db = database_session_manager
        self.logger = logger_manager.get_logger('reconciliation_logger')
        self.config = config or EngineConfig()
        self.precision = precision_utils or PrecisionUtils(logger_manager, self.config.money_decimal_places)

        self.normalizer = CapitalCallNormalizer(
            self.precision,
            max_call_percentage=self.config.max_call_percentage,
            call_due_months=self.config.call_due_months,
        )
        self.call_aggregator = CapitalCallAggregator(self.precision)
        self.fund_aggregator = FundMetricsAggregator(self.precision)
        self.synchronizer = ReconciliationSynchronizer(
            database_session_manager,
            logger_manager,
            self.config,
            self.precision,
            call_aggregator=self.call_aggregator,
            fund_aggregator=self.fund_aggregator,
        )
        self.conflict_resolver = ConflictResolver(
            database_session_manager, logger_manager, self.synchronizer, self.precision
        )
        self.validator = AllocationValidator(
            database_session_manager, logger_manager, self.synchronizer, self.conflict_resolver, self.precision
        )

        self.logger.info("✅ AllocationReconciliationEngine initialized")

    # ------------------------------------------------------------------
    # Input helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_id(field: str, value) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(field, value, "must be a positive integer id")
        return value

    def _parse_money(self, field: str, value, allow_zero: bool = False) -> Decimal:
        if value is None or isinstance(value, bool):
            raise ValidationError(field, value, "amount is required")
        try:
            amount = self.precision.safe_quantize(
                value if isinstance(value, Decimal) else Decimal(str(value)),
                self.precision.money_quantum,
            )
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(field, value, "not a finite number")

        if amount < 0 or (amount == 0 and not allow_zero):
            raise ValidationError(field, value, "must be positive" if not allow_zero else "must not be negative")
        return amount

    @staticmethod
    def _parse_date(field: str, value) -> Optional[date]:
        """date, datetime (time dropped) or ISO string; None passes through for defaulting."""
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date_parser.isoparse(value.strip()).date()
            except (ValueError, OverflowError):
                raise ValidationError(field, value, "not an ISO date (YYYY-MM-DD)") from None
        raise ValidationError(field, value, "expected a date or an ISO date string")

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def _require_allocation(self, session: AsyncSession, allocation_id: int) -> FundAllocation:
        allocation = await lock_allocation(session, allocation_id)
        if allocation is None:
            raise NotFoundError('Allocation', allocation_id)
        return allocation

    async def _lock_call_and_allocation(
        self,
        session: AsyncSession,
        capital_call_id: int,
    ) -> Tuple[FundAllocation, CapitalCall]:
        """Lock allocation then call, re-checking the call still belongs to that allocation."""
        for _ in range(_CALL_LOCK_ATTEMPTS):
            allocation_id = (await session.execute(
                select(CapitalCall.allocation_id).where(CapitalCall.id == capital_call_id)
            )).scalar_one_or_none()
            if allocation_id is None:
                raise NotFoundError('CapitalCall', capital_call_id)

            allocation = await lock_allocation(session, allocation_id)
            call = await lock_capital_call(session, capital_call_id)
            if call is None:
                raise NotFoundError('CapitalCall', capital_call_id)
            if allocation is not None and call.allocation_id == allocation.id:
                return allocation, call

        raise InvariantViolation(
            'call_moved',
            f"capital call {capital_call_id} kept moving between allocations; retry",
            capital_call_id=capital_call_id,
        )

    async def _active_call_count(self, session: AsyncSession, allocation_id: int) -> int:
        totals = await self.call_aggregator.totals(session, allocation_id)
        return totals.call_count

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------

    async def create_allocation(self, fund_id: int, deal_id: int, amount) -> FundAllocation:
        """
        Create a fund's commitment to a deal.

        Creation serializes on the fund row, so two concurrent creates for the
        same (fund, deal) cannot both pass the existence check.

        Raises:
            ValidationError: bad ids or non-positive amount
            NotFoundError: fund or deal missing
            ConflictError: (fund_id, deal_id) already has an allocation
        """
        fund_id = self._require_id('fund_id', fund_id)
        deal_id = self._require_id('deal_id', deal_id)
        amount = self._parse_money('amount', amount)

        with log_context(fund_id=fund_id, deal_id=deal_id):
            try:
                async with self.db.async_session() as session:
                    async with session.begin():
                        if not await lock_funds(session, [fund_id]):
                            raise NotFoundError('Fund', fund_id)
                        if await session.get(Deal, deal_id) is None:
                            raise NotFoundError('Deal', deal_id)

                        existing = (await session.execute(
                            select(FundAllocation.id)
                            .where(FundAllocation.fund_id == fund_id, FundAllocation.deal_id == deal_id)
                            .order_by(FundAllocation.id)
                            .limit(1)
                        )).scalar_one_or_none()
                        if existing is not None:
                            raise ConflictError(fund_id, deal_id, existing)

                        now = self._now()
                        allocation = FundAllocation(
                            fund_id=fund_id,
                            deal_id=deal_id,
                            amount=amount,
                            called_amount=Decimal('0.00'),
                            paid_amount=Decimal('0.00'),
                            status=AllocationStatus.COMMITTED.value,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(allocation)
                        await session.flush()
                        await self.synchronizer.recompute(session, allocation)
            except IntegrityError as e:
                # Unique index installed and a concurrent writer got there first
                raise ConflictError(fund_id, deal_id) from e

            self.logger.info(f"✅ Created allocation {allocation.id}: fund {fund_id} → deal {deal_id}, ${amount:,.2f}")
            return allocation

    async def update_commitment(self, allocation_id: int, amount) -> FundAllocation:
        """
        Change the commitment amount. Only allowed while no active capital
        calls exist, since the amount is the ceiling those calls were checked
        against.
        """
        allocation_id = self._require_id('allocation_id', allocation_id)
        amount = self._parse_money('amount', amount, allow_zero=True)

        with log_context(allocation_id=allocation_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation = await self._require_allocation(session, allocation_id)
                    if allocation.is_written_off:
                        raise InvariantViolation('written_off', f"allocation {allocation_id} is written off")

                    active = await self._active_call_count(session, allocation_id)
                    if active:
                        raise InvariantViolation(
                            'commitment_locked',
                            f"allocation {allocation_id} has {active} active capital call(s)",
                            allocation_id=allocation_id,
                        )

                    previous = self.precision.to_money(allocation.amount)
                    allocation.amount = amount
                    allocation.updated_at = self._now()
                    await self.synchronizer.recompute(session, allocation)

            self.logger.info(f"✏️ Allocation {allocation_id} commitment {previous} → {amount}")
            return allocation

    async def delete_allocation(self, allocation_id: int) -> None:
        """Delete an allocation that has never had a capital call (cancelled ones included)."""
        allocation_id = self._require_id('allocation_id', allocation_id)

        with log_context(allocation_id=allocation_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation = await self._require_allocation(session, allocation_id)

                    call_count = (await session.execute(
                        select(func.count(CapitalCall.id)).where(CapitalCall.allocation_id == allocation_id)
                    )).scalar_one()
                    if call_count:
                        raise InvariantViolation(
                            'has_capital_calls',
                            f"allocation {allocation_id} has {call_count} capital call(s)",
                            allocation_id=allocation_id,
                        )

                    fund_id = allocation.fund_id
                    await session.delete(allocation)
                    await session.flush()
                    await self.synchronizer.recompute_fund(session, fund_id)

            self.logger.info(f"🗑️ Deleted allocation {allocation_id} (fund {fund_id})")

    async def write_off(self, allocation_id: int, reason: Optional[str] = None) -> FundAllocation:
        """
        Terminal administrative transition. The status calculator is not
        consulted for this allocation again; its commitment leaves the fund's
        committed capital.
        """
        allocation_id = self._require_id('allocation_id', allocation_id)

        with log_context(allocation_id=allocation_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation = await self._require_allocation(session, allocation_id)
                    if allocation.is_written_off:
                        self.logger.info(f"Allocation {allocation_id} already written off")
                        return allocation

                    previous = allocation.status
                    now = self._now()
                    allocation.status = AllocationStatus.WRITTEN_OFF.value
                    allocation.written_off_at = now
                    allocation.write_off_reason = reason
                    allocation.updated_at = now
                    await self.synchronizer.recompute(session, allocation)

            self.logger.warning(f"⚠️ Allocation {allocation_id} written off (was {previous}): {reason or 'no reason given'}")
            return allocation

    # ------------------------------------------------------------------
    # Capital calls
    # ------------------------------------------------------------------

    async def create_capital_call(
        self,
        allocation_id: int,
        raw_amount,
        amount_type='dollar',
        call_date: Optional[date] = None,
        due_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> CapitalCall:
        """
        Issue a capital call. Percentages are converted to dollars against the
        commitment in effect now and never re-evaluated.

        Raises:
            ValidationError: bad amount, amount type or dates
            NotFoundError: allocation missing
            InvariantViolation: calls would exceed the commitment, or allocation written off
        """
        allocation_id = self._require_id('allocation_id', allocation_id)
        call_date = self._parse_date('call_date', call_date) or date.today()
        due_date = self._parse_date('due_date', due_date)

        with log_context(allocation_id=allocation_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation = await self._require_allocation(session, allocation_id)
                    if allocation.is_written_off:
                        raise InvariantViolation(
                            'written_off',
                            f"allocation {allocation_id} is written off; no new calls",
                            allocation_id=allocation_id,
                        )

                    totals = await self.call_aggregator.totals(session, allocation_id)
                    normalized = self.normalizer.normalize(
                        allocation.amount, totals.total_called, raw_amount, amount_type
                    )

                    due = due_date or self.normalizer.due_date_for(call_date)
                    if due < call_date:
                        raise ValidationError('due_date', due, f"before call date {call_date}")

                    now = self._now()
                    # overdue is only ever set by mark_overdue_calls / payments
                    status = (
                        CapitalCallStatus.SCHEDULED if call_date > date.today() else CapitalCallStatus.CALLED
                    )
                    call = CapitalCall(
                        allocation_id=allocation_id,
                        call_amount=normalized.call_amount,
                        amount_type=normalized.amount_type.value,
                        call_pct=normalized.call_pct,
                        paid_amount=Decimal('0.00'),
                        status=status.value,
                        call_date=call_date,
                        due_date=due,
                        notes=notes,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(call)
                    await session.flush()
                    await self.synchronizer.recompute(session, allocation)

            self.logger.info(
                f"📣 Capital call {call.id} on allocation {allocation_id}: ${call.call_amount:,.2f} "
                f"({normalized.amount_type.value}), due {due}"
            )
            return call

    async def record_payment(
        self,
        capital_call_id: int,
        amount,
        payment_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> CapitalCall:
        """
        Apply a payment to a capital call.

        The applied amount is clamped at the call's outstanding balance, so
        paid never exceeds the call amount. The full amount received is kept
        on the payment row; the excess shows up as an unapplied_payment
        anomaly in the repair report.

        Raises:
            ValidationError: non-positive amount
            NotFoundError: capital call missing
            InvariantViolation: call cancelled or defaulted
        """
        capital_call_id = self._require_id('capital_call_id', capital_call_id)
        amount = self._parse_money('amount', amount)
        payment_date = self._parse_date('payment_date', payment_date) or date.today()

        with log_context(capital_call_id=capital_call_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation, call = await self._lock_call_and_allocation(session, capital_call_id)

                    if call.is_cancelled:
                        raise InvariantViolation('call_cancelled', f"capital call {capital_call_id} is cancelled")
                    if call.status == CapitalCallStatus.DEFAULTED.value:
                        raise InvariantViolation('call_defaulted', f"capital call {capital_call_id} is defaulted")

                    outstanding = self.precision.to_money(call.outstanding_amount)
                    applied = min(amount, outstanding)
                    excess = amount - applied

                    session.add(CapitalCallPayment(
                        capital_call_id=call.id,
                        amount=amount,
                        applied_amount=applied,
                        payment_date=payment_date,
                        notes=notes,
                        created_at=self._now(),
                    ))

                    call.paid_amount = self.precision.to_money(call.paid_amount) + applied
                    if applied > 0:
                        call.paid_date = payment_date
                    call.status = calculate_capital_call_status(
                        call.call_amount, call.paid_amount, call.call_date, call.due_date,
                        current_status=call.status, as_of=payment_date,
                    ).value
                    call.updated_at = self._now()
                    await session.flush()
                    await self.synchronizer.recompute(session, allocation)

            with log_context(allocation_id=allocation.id):
                self.logger.info(
                    f"💰 Payment ${amount:,.2f} on call {capital_call_id}: applied ${applied:,.2f}, "
                    f"call {call.paid_amount}/{call.call_amount} ({call.status})"
                )
                if excess > 0:
                    self.logger.warning(
                        f"⚠️ Payment on call {capital_call_id} exceeded outstanding by ${excess:,.2f}; "
                        f"excess left unapplied"
                    )
            return call

    async def cancel_capital_call(self, capital_call_id: int) -> CapitalCall:
        """Cancel an unpaid call. Cancelled calls drop out of every aggregate."""
        capital_call_id = self._require_id('capital_call_id', capital_call_id)

        with log_context(capital_call_id=capital_call_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    allocation, call = await self._lock_call_and_allocation(session, capital_call_id)
                    if call.is_cancelled:
                        return call
                    if self.precision.to_money(call.paid_amount) > 0:
                        raise InvariantViolation(
                            'call_has_payments',
                            f"capital call {capital_call_id} has ${call.paid_amount} paid; cannot cancel",
                            capital_call_id=capital_call_id,
                        )

                    now = self._now()
                    call.cancelled_at = now
                    call.updated_at = now
                    await session.flush()
                    await self.synchronizer.recompute(session, allocation)

            self.logger.info(f"🚫 Cancelled capital call {capital_call_id} on allocation {allocation.id}")
            return call

    async def mark_defaulted(self, capital_call_id: int) -> CapitalCall:
        """Administrative move of an unpaid or partially paid call to defaulted."""
        capital_call_id = self._require_id('capital_call_id', capital_call_id)

        with log_context(capital_call_id=capital_call_id):
            async with self.db.async_session() as session:
                async with session.begin():
                    _, call = await self._lock_call_and_allocation(session, capital_call_id)
                    if call.is_cancelled:
                        raise InvariantViolation('call_cancelled', f"capital call {capital_call_id} is cancelled")
                    if call.status == CapitalCallStatus.PAID.value:
                        raise InvariantViolation('call_paid', f"capital call {capital_call_id} is fully paid")

                    call.status = CapitalCallStatus.DEFAULTED.value
                    call.updated_at = self._now()

            self.logger.warning(f"⚠️ Capital call {capital_call_id} marked defaulted")
            return call

    async def mark_overdue_calls(self, as_of: Optional[date] = None) -> int:
        """Move open, unpaid calls past their due date to overdue. Returns how many moved."""
        as_of = as_of or date.today()
        open_statuses = [
            CapitalCallStatus.SCHEDULED.value,
            CapitalCallStatus.CALLED.value,
            CapitalCallStatus.PARTIALLY_PAID.value,
        ]

        async with self.db.async_session() as session:
            async with session.begin():
                calls = (await session.execute(
                    select(CapitalCall)
                    .where(
                        CapitalCall.cancelled_at.is_(None),
                        CapitalCall.status.in_(open_statuses),
                        CapitalCall.due_date < as_of,
                        CapitalCall.paid_amount < CapitalCall.call_amount,
                    )
                    .order_by(CapitalCall.id)
                    .with_for_update()
                )).scalars().all()

                now = self._now()
                for call in calls:
                    call.status = calculate_capital_call_status(
                        call.call_amount, call.paid_amount, call.call_date, call.due_date,
                        current_status=call.status, as_of=as_of,
                    ).value
                    call.updated_at = now

        if calls:
            self.logger.warning(f"⏰ {len(calls)} capital call(s) overdue as of {as_of}")
        else:
            self.logger.info(f"✅ No capital calls overdue as of {as_of}")
        return len(calls)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        scope: Union[int, str, List[int]] = RECONCILE_ALL,
        batch_size: Optional[int] = None,
    ) -> RepairReport:
        """Repair sweep over one allocation, a list of allocations, or 'all'."""
        return await self.synchronizer.repair(scope, batch_size=batch_size)

    async def merge_duplicates(self, fund_id: int, deal_id: int) -> FundAllocation:
        """Fold every allocation for (fund_id, deal_id) into one and return it."""
        fund_id = self._require_id('fund_id', fund_id)
        deal_id = self._require_id('deal_id', deal_id)
        survivor, _ = await self.conflict_resolver.merge(fund_id, deal_id)
        return survivor

    async def find_duplicate_allocations(self) -> List[DuplicateGroup]:
        return await self.conflict_resolver.find_duplicates()

    async def validate(self, scope: Union[int, str] = RECONCILE_ALL, strict: bool = False) -> ValidationResult:
        return await self.validator.validate(scope, strict=strict)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_fund_metrics(self, fund_id: int) -> FundMetrics:
        """Metrics computed live from the allocations, not the cached fund columns."""
        fund_id = self._require_id('fund_id', fund_id)
        async with self.db.async_session() as session:
            if await session.get(Fund, fund_id) is None:
                raise NotFoundError('Fund', fund_id)
            return await self.fund_aggregator.compute(session, fund_id)

    async def get_allocation_progress(self, allocation_id: int) -> AllocationProgress:
        allocation_id = self._require_id('allocation_id', allocation_id)

        async with self.db.async_session() as session:
            allocation = await session.get(FundAllocation, allocation_id)
            if allocation is None:
                raise NotFoundError('Allocation', allocation_id)

            calls = (await session.execute(
                select(CapitalCall)
                .where(CapitalCall.allocation_id == allocation_id)
                .order_by(CapitalCall.call_date, CapitalCall.id)
            )).scalars().all()

        to_money = self.precision.to_money
        committed = to_money(allocation.amount)
        called = to_money(allocation.called_amount)
        paid = to_money(allocation.paid_amount)
        zero = to_money(0)

        summaries = [
            CapitalCallSummary(
                id=call.id,
                call_amount=to_money(call.call_amount),
                amount_type=call.amount_type,
                call_pct=call.call_pct,
                paid_amount=to_money(call.paid_amount),
                outstanding_amount=zero if call.is_cancelled else to_money(call.outstanding_amount),
                status=call.status,
                call_date=call.call_date,
                due_date=call.due_date,
                cancelled=call.is_cancelled,
            )
            for call in calls
        ]

        return AllocationProgress(
            allocation_id=allocation.id,
            fund_id=allocation.fund_id,
            deal_id=allocation.deal_id,
            committed_amount=committed,
            called_amount=called,
            paid_amount=paid,
            uncalled_amount=self.precision.clamp(committed - called, floor=zero),
            outstanding_amount=self.precision.clamp(called - paid, floor=zero),
            percentage_called=self.precision.ratio_pct(called, committed),
            percentage_paid=self.precision.ratio_pct(paid, committed),
            status=allocation.status,
            capital_calls=summaries,
        )
