"""
Critical Path Tests: Capital Call Workflow

Allocation -> capital call -> payments, through the engine, against a real
(SQLite) database. Every mutation must leave the allocation's cached fields
and the fund's metrics consistent in the same transaction.

Priority: 🔴 CRITICAL (investor capital accounts)
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from Shared_Utils.enum import AllocationStatus, AnomalyKind, CapitalCallStatus
from TableModels import CapitalCall, CapitalCallPayment, Fund, FundAllocation
from reconciliation_engine.exceptions import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)

pytestmark = pytest.mark.asyncio


class TestScenarios:
    """The reference walk-through of a $100,000 commitment"""

    @pytest.mark.critical
    async def test_scenario_a_new_commitment(self, engine, seed, allocation):
        """
        Given: $100,000 commitment, no calls
        Then: committed, nothing called, $100,000 uncalled at fund level
        """
        assert allocation.status == AllocationStatus.COMMITTED.value
        assert allocation.called_amount == Decimal("0")

        metrics = await engine.get_fund_metrics(allocation.fund_id)
        assert metrics.committed_capital == Decimal("100000.00")
        assert metrics.uncalled_capital == Decimal("100000.00")
        assert metrics.called_capital == Decimal("0.00")

        fund = await seed.get(Fund, allocation.fund_id)
        assert Decimal(str(fund.uncalled_capital)) == Decimal("100000.00")
        assert Decimal(str(fund.committed_capital)) == Decimal("100000.00")

    @pytest.mark.critical
    async def test_scenarios_b_c_d(self, engine, seed, allocation):
        # B: call 25%
        call = await engine.create_capital_call(allocation.id, 25, 'percentage')
        assert Decimal(str(call.call_amount)) == Decimal("25000.00")
        assert call.amount_type == 'percentage'

        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.CALLED_UNPAID.value
        assert Decimal(str(stored.called_amount)) == Decimal("25000.00")

        # C: pay $15,000
        call = await engine.record_payment(call.id, 15000)
        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.PARTIALLY_PAID.value
        assert Decimal(str(stored.paid_amount)) == Decimal("15000.00")
        assert call.status in (CapitalCallStatus.PARTIALLY_PAID.value, CapitalCallStatus.OVERDUE.value)

        # D: pay the remaining $10,000
        call = await engine.record_payment(call.id, Decimal("10000"))
        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.FUNDED.value
        assert Decimal(str(stored.paid_amount)) == Decimal("25000.00")
        assert call.status == CapitalCallStatus.PAID.value

        fund = await seed.get(Fund, allocation.fund_id)
        assert Decimal(str(fund.called_capital)) == Decimal("25000.00")
        assert Decimal(str(fund.uncalled_capital)) == Decimal("75000.00")
        assert Decimal(str(fund.aum)) == Decimal("25000.00")

        result = await engine.validate('all')
        assert result.is_valid, str(result)


class TestCommitmentCeiling:

    @pytest.mark.critical
    async def test_call_above_commitment_leaves_no_partial_state(self, engine, seed, called_allocation):
        allocation, _ = called_allocation

        with pytest.raises(InvariantViolation):
            await engine.create_capital_call(allocation.id, "75000.01", 'dollar')

        calls = await seed.all(CapitalCall, CapitalCall.allocation_id == allocation.id)
        assert len(calls) == 1

        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("25000.00")
        fund = await seed.get(Fund, allocation.fund_id)
        assert Decimal(str(fund.called_capital)) == Decimal("25000.00")

    async def test_calls_up_to_commitment_are_accepted(self, engine, seed, called_allocation):
        allocation, _ = called_allocation
        await engine.create_capital_call(allocation.id, 75000, 'dollar')

        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("100000.00")

    async def test_cancelled_calls_free_up_the_ceiling(self, engine, seed, called_allocation):
        allocation, call = called_allocation
        await engine.create_capital_call(allocation.id, 75000, 'dollar')
        await engine.cancel_capital_call(call.id)

        await engine.create_capital_call(allocation.id, 25000, 'dollar')
        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("100000.00")


class TestRecomputeAtomicity:
    """A recompute failure after the row is flushed must take the row down with it"""

    @pytest.fixture
    def failing_fund_recompute(self, engine, called_allocation, monkeypatch):
        async def broken(session, fund_id):
            raise RuntimeError("fund row unavailable")

        monkeypatch.setattr(engine.synchronizer, 'recompute_fund', broken)

    @pytest.mark.critical
    async def test_failed_recompute_drops_new_call(self, engine, seed, called_allocation, failing_fund_recompute):
        allocation, call = called_allocation

        with pytest.raises(RuntimeError):
            await engine.create_capital_call(allocation.id, 10000, 'dollar')

        calls = await seed.all(CapitalCall, CapitalCall.allocation_id == allocation.id)
        assert [c.id for c in calls] == [call.id]

        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("25000.00")
        assert Decimal(str(stored.paid_amount)) == Decimal("0.00")
        assert stored.status == AllocationStatus.CALLED_UNPAID.value

    @pytest.mark.critical
    async def test_failed_recompute_drops_payment(self, engine, seed, called_allocation, failing_fund_recompute):
        allocation, call = called_allocation

        with pytest.raises(RuntimeError):
            await engine.record_payment(call.id, 15000)

        assert await seed.all(CapitalCallPayment) == []

        stored_call = await seed.get(CapitalCall, call.id)
        assert Decimal(str(stored_call.paid_amount)) == Decimal("0.00")
        assert stored_call.status == CapitalCallStatus.CALLED.value

        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("25000.00")
        assert Decimal(str(stored.paid_amount)) == Decimal("0.00")
        assert stored.status == AllocationStatus.CALLED_UNPAID.value


class TestPaymentClamp:

    @pytest.mark.critical
    async def test_overpayment_clamped_and_flagged(self, engine, seed, called_allocation):
        """
        Given: $25,000 call
        When: $30,000 arrives
        Then: the call is paid $25,000, never more
        And: the $5,000 excess is reported by the sweep, not silently absorbed
        """
        allocation, call = called_allocation

        call = await engine.record_payment(call.id, 30000)
        assert Decimal(str(call.paid_amount)) == Decimal("25000.00")

        payments = await seed.all(CapitalCallPayment, CapitalCallPayment.capital_call_id == call.id)
        assert len(payments) == 1
        assert Decimal(str(payments[0].amount)) == Decimal("30000.00")
        assert Decimal(str(payments[0].applied_amount)) == Decimal("25000.00")

        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.FUNDED.value
        assert Decimal(str(stored.paid_amount)) == Decimal("25000.00")

        report = await engine.reconcile('all')
        unapplied = [a for a in report.anomalies if a.kind == AnomalyKind.UNAPPLIED_PAYMENT]
        assert len(unapplied) == 1
        assert unapplied[0].amount == Decimal("5000.00")
        assert report.writes == 0

        engine.logger.warning.assert_called()

    async def test_payment_on_fully_paid_call_applies_nothing(self, engine, seed, called_allocation):
        _, call = called_allocation
        await engine.record_payment(call.id, 25000)
        call = await engine.record_payment(call.id, 100)

        assert Decimal(str(call.paid_amount)) == Decimal("25000.00")
        payments = await seed.all(CapitalCallPayment, CapitalCallPayment.capital_call_id == call.id)
        assert Decimal(str(payments[-1].applied_amount)) == Decimal("0.00")

    @pytest.mark.parametrize("amount", [0, -100, None, "ten"])
    async def test_invalid_payment_amount(self, engine, called_allocation, amount):
        _, call = called_allocation
        with pytest.raises(ValidationError):
            await engine.record_payment(call.id, amount)

    async def test_payment_on_missing_call(self, engine, allocation):
        with pytest.raises(NotFoundError) as exc:
            await engine.record_payment(999, 100)
        assert exc.value.entity == 'CapitalCall'


class TestSnapshotSemantics:

    @pytest.mark.critical
    async def test_percentage_call_keeps_dollar_amount_after_commitment_change(self, engine, seed, called_allocation):
        """
        Given: 25% call on $100,000 ($25,000)
        When: the commitment is later raised to $200,000
        Then: the call stays at $25,000
        """
        allocation, call = called_allocation
        await seed.set(FundAllocation, allocation.id, amount=Decimal("200000"))

        report = await engine.reconcile(allocation.id)

        stored_call = await seed.get(CapitalCall, call.id)
        assert Decimal(str(stored_call.call_amount)) == Decimal("25000.00")
        assert Decimal(str(stored_call.call_pct)) == Decimal("25")
        stored = await seed.get(FundAllocation, allocation.id)
        assert Decimal(str(stored.called_amount)) == Decimal("25000.00")
        assert report.allocations_repaired == 0

    async def test_update_commitment_after_cancel_does_not_touch_old_call(self, engine, seed, called_allocation):
        allocation, call = called_allocation
        await engine.cancel_capital_call(call.id)

        updated = await engine.update_commitment(allocation.id, 200000)
        assert updated.status == AllocationStatus.COMMITTED.value

        stored_call = await seed.get(CapitalCall, call.id)
        assert Decimal(str(stored_call.call_amount)) == Decimal("25000.00")

        new_call = await engine.create_capital_call(allocation.id, 25, 'percentage')
        assert Decimal(str(new_call.call_amount)) == Decimal("50000.00")


class TestAllocationLifecycle:

    async def test_duplicate_allocation_rejected(self, engine, allocation):
        with pytest.raises(ConflictError) as exc:
            await engine.create_allocation(1, 1, 5000)
        assert exc.value.existing_allocation_id == allocation.id

    async def test_missing_fund_or_deal(self, engine, fund_and_deal):
        with pytest.raises(NotFoundError) as exc:
            await engine.create_allocation(2, 1, 5000)
        assert exc.value.entity == 'Fund'

        with pytest.raises(NotFoundError) as exc:
            await engine.create_allocation(1, 2, 5000)
        assert exc.value.entity == 'Deal'

    @pytest.mark.parametrize("fund_id,deal_id,amount", [
        (1, 1, 0),
        (1, 1, -1),
        (0, 1, 100),
        (1, "1", 100),
    ])
    async def test_malformed_allocation_input(self, engine, fund_and_deal, fund_id, deal_id, amount):
        with pytest.raises(ValidationError):
            await engine.create_allocation(fund_id, deal_id, amount)

    async def test_commitment_locked_while_calls_active(self, engine, called_allocation):
        allocation, _ = called_allocation
        with pytest.raises(InvariantViolation) as exc:
            await engine.update_commitment(allocation.id, 50000)
        assert exc.value.invariant == 'commitment_locked'

    async def test_commitment_to_zero_is_unfunded(self, engine, allocation):
        updated = await engine.update_commitment(allocation.id, 0)
        assert updated.status == AllocationStatus.UNFUNDED.value

    async def test_delete_rejected_with_calls_even_cancelled(self, engine, called_allocation):
        allocation, call = called_allocation
        await engine.cancel_capital_call(call.id)

        with pytest.raises(InvariantViolation):
            await engine.delete_allocation(allocation.id)

    async def test_delete_recomputes_fund(self, engine, seed, allocation):
        await engine.delete_allocation(allocation.id)

        assert await seed.get(FundAllocation, allocation.id) is None
        fund = await seed.get(Fund, allocation.fund_id)
        assert Decimal(str(fund.committed_capital)) == Decimal("0.00")
        assert Decimal(str(fund.uncalled_capital)) == Decimal("0.00")

    async def test_missing_allocation(self, engine, fund_and_deal):
        with pytest.raises(NotFoundError):
            await engine.create_capital_call(42, 100, 'dollar')


class TestWriteOff:

    @pytest.mark.critical
    async def test_write_off_is_terminal(self, engine, seed, called_allocation):
        allocation, call = called_allocation

        written_off = await engine.write_off(allocation.id, reason="Deal abandoned")
        assert written_off.status == AllocationStatus.WRITTEN_OFF.value

        # payments on an existing call still move the cached totals, never the status
        await engine.record_payment(call.id, 25000)
        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.WRITTEN_OFF.value
        assert Decimal(str(stored.paid_amount)) == Decimal("25000.00")
        assert stored.write_off_reason == "Deal abandoned"

        report = await engine.reconcile('all')
        assert report.writes == 0
        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.WRITTEN_OFF.value

    async def test_written_off_commitment_leaves_fund_committed(self, engine, seed, allocation):
        await engine.write_off(allocation.id)

        metrics = await engine.get_fund_metrics(allocation.fund_id)
        assert metrics.committed_capital == Decimal("0.00")
        fund = await seed.get(Fund, allocation.fund_id)
        assert Decimal(str(fund.committed_capital)) == Decimal("0.00")

    async def test_no_new_calls_after_write_off(self, engine, allocation):
        await engine.write_off(allocation.id)
        with pytest.raises(InvariantViolation) as exc:
            await engine.create_capital_call(allocation.id, 100, 'dollar')
        assert exc.value.invariant == 'written_off'

    async def test_write_off_twice_is_a_no_op(self, engine, allocation):
        first = await engine.write_off(allocation.id, reason="first")
        second = await engine.write_off(allocation.id, reason="second")
        assert second.write_off_reason == "first"
        assert first.written_off_at is not None


class TestCallSubStatus:

    async def test_cancel_paid_call_rejected(self, engine, called_allocation):
        _, call = called_allocation
        await engine.record_payment(call.id, 1)
        with pytest.raises(InvariantViolation):
            await engine.cancel_capital_call(call.id)

    async def test_cancel_returns_allocation_to_committed(self, engine, seed, called_allocation):
        allocation, call = called_allocation
        await engine.cancel_capital_call(call.id)

        stored = await seed.get(FundAllocation, allocation.id)
        assert stored.status == AllocationStatus.COMMITTED.value
        assert Decimal(str(stored.called_amount)) == Decimal("0.00")

    async def test_future_call_is_scheduled_with_default_due_date(self, engine, allocation):
        call = await engine.create_capital_call(allocation.id, 1000, 'dollar', call_date=date(2099, 1, 31))
        assert call.status == CapitalCallStatus.SCHEDULED.value
        assert call.due_date == date(2099, 2, 28)

    async def test_due_date_before_call_date_rejected(self, engine, allocation):
        with pytest.raises(ValidationError):
            await engine.create_capital_call(
                allocation.id, 1000, 'dollar', call_date=date(2025, 3, 1), due_date=date(2025, 2, 1)
            )

    async def test_mark_overdue_then_default(self, engine, seed, allocation):
        call = await engine.create_capital_call(allocation.id, 1000, 'dollar', call_date=date(2025, 1, 1))
        assert call.due_date == date(2025, 2, 1)

        assert await engine.mark_overdue_calls(as_of=date(2025, 1, 20)) == 0
        assert await engine.mark_overdue_calls(as_of=date(2025, 3, 1)) == 1
        assert (await seed.get(CapitalCall, call.id)).status == CapitalCallStatus.OVERDUE.value

        # already overdue: not counted again
        assert await engine.mark_overdue_calls(as_of=date(2025, 3, 2)) == 0

        await engine.mark_defaulted(call.id)
        with pytest.raises(InvariantViolation) as exc:
            await engine.record_payment(call.id, 100)
        assert exc.value.invariant == 'call_defaulted'

    async def test_payment_on_cancelled_call_rejected(self, engine, called_allocation):
        _, call = called_allocation
        await engine.cancel_capital_call(call.id)
        with pytest.raises(InvariantViolation):
            await engine.record_payment(call.id, 100)


class TestDateInputs:

    async def test_datetime_call_date_keeps_the_day(self, engine, allocation):
        call = await engine.create_capital_call(
            allocation.id, 10, 'percentage', call_date=datetime(2025, 1, 1, 12, 0)
        )
        assert call.call_date == date(2025, 1, 1)
        assert call.due_date == date(2025, 2, 1)
        assert call.status == CapitalCallStatus.CALLED.value

    async def test_iso_string_dates(self, engine, allocation):
        call = await engine.create_capital_call(
            allocation.id, 1000, 'dollar', call_date="2025-01-01", due_date="2025-01-31"
        )
        assert call.call_date == date(2025, 1, 1)
        assert call.due_date == date(2025, 1, 31)

    async def test_datetime_payment_date(self, engine, seed, called_allocation):
        _, call = called_allocation
        call = await engine.record_payment(call.id, 1000, payment_date=datetime(2025, 3, 1, 9, 30))

        assert call.status == CapitalCallStatus.PARTIALLY_PAID.value
        payments = await seed.all(CapitalCallPayment, CapitalCallPayment.capital_call_id == call.id)
        assert payments[0].payment_date == date(2025, 3, 1)

    @pytest.mark.parametrize("field, value", [
        ("call_date", "first of january"),
        ("call_date", 20250101),
        ("due_date", "2025-13-40"),
    ])
    async def test_malformed_call_dates(self, engine, seed, allocation, field, value):
        with pytest.raises(ValidationError) as exc:
            await engine.create_capital_call(allocation.id, 1000, 'dollar', **{field: value})
        assert exc.value.field == field
        assert await seed.all(CapitalCall) == []

    async def test_malformed_payment_date(self, engine, called_allocation):
        _, call = called_allocation
        with pytest.raises(ValidationError) as exc:
            await engine.record_payment(call.id, 1000, payment_date="yesterday")
        assert exc.value.field == 'payment_date'


class TestAllocationProgress:

    async def test_progress_summary(self, engine, called_allocation):
        allocation, call = called_allocation
        await engine.record_payment(call.id, 15000)
        second = await engine.create_capital_call(allocation.id, 5000, 'dollar')
        await engine.cancel_capital_call(second.id)

        progress = await engine.get_allocation_progress(allocation.id)

        assert progress.committed_amount == Decimal("100000.00")
        assert progress.called_amount == Decimal("25000.00")
        assert progress.paid_amount == Decimal("15000.00")
        assert progress.uncalled_amount == Decimal("75000.00")
        assert progress.outstanding_amount == Decimal("10000.00")
        assert progress.percentage_called == Decimal("25.00")
        assert progress.percentage_paid == Decimal("15.00")
        assert progress.status == AllocationStatus.PARTIALLY_PAID.value
        assert [c.cancelled for c in progress.capital_calls] == [False, True]
        assert progress.capital_calls[1].outstanding_amount == Decimal("0.00")

    async def test_progress_for_missing_allocation(self, engine, fund_and_deal):
        with pytest.raises(NotFoundError):
            await engine.get_allocation_progress(7)
