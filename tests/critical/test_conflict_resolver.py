"""
Critical Path Tests: Duplicate Allocation Merge

Two allocations for one (fund, deal) pair (left behind by a race before the
create-time check existed) must fold into one row without losing a dollar of
commitment, calls or payments.

Priority: 🔴 CRITICAL (commitment accuracy)
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from Shared_Utils.enum import AllocationStatus
from TableModels import CapitalCall, Fund, FundAllocation
from reconciliation_engine.exceptions import ConflictError, NotFoundError

pytestmark = pytest.mark.asyncio

EARLY = datetime(2024, 1, 1, tzinfo=timezone.utc)
LATE = datetime(2024, 6, 1, tzinfo=timezone.utc)


async def seed_duplicate_pair(seed):
    """
    Older row: $60,000 committed, $20,000 called, $10,000 paid
    Newer row: $40,000 committed, $10,000 called, $10,000 paid
    """
    older = await seed.allocation(
        amount="60000", called_amount=Decimal("20000"), paid_amount=Decimal("10000"),
        status='partially_paid', created_at=EARLY,
    )
    older_call = await seed.capital_call(older.id, "20000", paid_amount="10000", status='partially_paid')

    newer = await seed.allocation(
        amount="40000", called_amount=Decimal("10000"), paid_amount=Decimal("10000"),
        status='funded', created_at=LATE,
    )
    newer_call = await seed.capital_call(newer.id, "10000", paid_amount="10000", status='paid')
    return older, newer, older_call, newer_call


class TestScenarioE:

    @pytest.mark.critical
    async def test_merge_sums_amounts_and_recomputes_status(self, engine, seed, fund_and_deal):
        older, newer, older_call, newer_call = await seed_duplicate_pair(seed)

        survivor = await engine.merge_duplicates(1, 1)

        assert survivor.id == newer.id
        remaining = await seed.all(FundAllocation, FundAllocation.fund_id == 1, FundAllocation.deal_id == 1)
        assert [a.id for a in remaining] == [newer.id]

        stored = remaining[0]
        assert Decimal(str(stored.amount)) == Decimal("100000.00")
        assert Decimal(str(stored.paid_amount)) == Decimal("20000.00")
        assert Decimal(str(stored.called_amount)) == Decimal("30000.00")
        assert stored.status == AllocationStatus.PARTIALLY_PAID.value

        calls = await seed.all(CapitalCall)
        assert {c.allocation_id for c in calls} == {newer.id}
        # merged commitment changed, the calls did not
        assert Decimal(str((await seed.get(CapitalCall, older_call.id)).call_amount)) == Decimal("20000.00")

        fund = await seed.get(Fund, 1)
        assert Decimal(str(fund.committed_capital)) == Decimal("100000.00")
        assert Decimal(str(fund.called_capital)) == Decimal("30000.00")
        assert Decimal(str(fund.aum)) == Decimal("20000.00")

        result = await engine.validate('all')
        assert result.is_valid, str(result)

    async def test_merge_result_details(self, engine, seed, fund_and_deal):
        older, newer, _, _ = await seed_duplicate_pair(seed)

        survivor, result = await engine.conflict_resolver.merge(1, 1)

        assert result.merged
        assert result.survivor_id == newer.id
        assert result.merged_ids == [older.id]
        assert result.calls_repointed == 1
        assert result.amount == Decimal("100000.00")
        assert result.status == AllocationStatus.PARTIALLY_PAID.value


class TestSurvivorSelection:

    async def test_tie_on_created_at_goes_to_highest_id(self, engine, seed, fund_and_deal):
        first = await seed.allocation(amount="1000", created_at=EARLY)
        second = await seed.allocation(amount="2000", created_at=EARLY)

        survivor = await engine.merge_duplicates(1, 1)
        assert survivor.id == max(first.id, second.id)
        assert Decimal(str(survivor.amount)) == Decimal("3000.00")

    async def test_single_allocation_is_a_no_op(self, engine, seed, fund_and_deal):
        allocation = await engine.create_allocation(1, 1, 5000)

        survivor, result = await engine.conflict_resolver.merge(1, 1)
        assert survivor.id == allocation.id
        assert not result.merged

    async def test_no_allocation(self, engine, fund_and_deal):
        with pytest.raises(NotFoundError):
            await engine.merge_duplicates(1, 1)


class TestWrittenOffMerge:

    async def test_all_written_off_stays_written_off(self, engine, seed, fund_and_deal):
        await seed.allocation(amount="1000", status='written_off', written_off_at=EARLY,
                              write_off_reason="fraud", created_at=EARLY)
        await seed.allocation(amount="2000", status='written_off', written_off_at=LATE, created_at=LATE)

        survivor = await engine.merge_duplicates(1, 1)
        assert survivor.status == AllocationStatus.WRITTEN_OFF.value
        assert survivor.written_off_at is not None

        fund = await seed.get(Fund, 1)
        assert Decimal(str(fund.committed_capital)) == Decimal("0.00")

    async def test_live_row_revives_written_off_survivor(self, engine, seed, fund_and_deal):
        live = await seed.allocation(amount="1000", created_at=EARLY)
        await seed.capital_call(live.id, "500")
        await seed.allocation(amount="2000", status='written_off', written_off_at=LATE, created_at=LATE)

        survivor = await engine.merge_duplicates(1, 1)
        assert survivor.status == AllocationStatus.CALLED_UNPAID.value
        assert survivor.written_off_at is None


class TestMergeSafety:

    @pytest.mark.critical
    async def test_failed_merge_rolls_back_everything(self, engine, seed, fund_and_deal, monkeypatch):
        older, newer, older_call, _ = await seed_duplicate_pair(seed)

        async def broken(session, fund_id):
            raise RuntimeError("fund row locked out")

        monkeypatch.setattr(engine.synchronizer, 'recompute_fund', broken)
        with pytest.raises(RuntimeError):
            await engine.merge_duplicates(1, 1)

        remaining = await seed.all(FundAllocation)
        assert sorted(a.id for a in remaining) == sorted([older.id, newer.id])
        assert (await seed.get(CapitalCall, older_call.id)).allocation_id == older.id
        assert Decimal(str((await seed.get(FundAllocation, newer.id)).amount)) == Decimal("40000.00")

    async def test_cached_paid_drift_is_logged(self, engine, seed, fund_and_deal):
        older, newer, _, _ = await seed_duplicate_pair(seed)
        await seed.set(FundAllocation, older.id, paid_amount=Decimal("0"))

        survivor = await engine.merge_duplicates(1, 1)

        assert Decimal(str(survivor.paid_amount)) == Decimal("20000.00")
        warnings = [str(c.args[0]) for c in engine.conflict_resolver.logger.warning.call_args_list]
        assert any("Cached paid" in w for w in warnings)

    async def test_cached_paid_without_calls_is_dropped(self, engine, seed, fund_and_deal):
        await seed.allocation(
            amount="60000", paid_amount=Decimal("10000"), status='partially_paid', created_at=EARLY,
        )
        await seed.allocation(
            amount="40000", paid_amount=Decimal("5000"), status='partially_paid', created_at=LATE,
        )

        survivor, result = await engine.conflict_resolver.merge(1, 1)

        assert result.paid_amount == Decimal("0.00")
        assert Decimal(str(survivor.paid_amount)) == Decimal("0.00")
        assert Decimal(str(survivor.amount)) == Decimal("100000.00")
        assert survivor.status == AllocationStatus.COMMITTED.value
        warnings = [str(c.args[0]) for c in engine.conflict_resolver.logger.warning.call_args_list]
        assert any("Cached paid" in w and "15000" in w for w in warnings)

    async def test_create_rejects_while_duplicates_exist(self, engine, seed, fund_and_deal):
        await seed_duplicate_pair(seed)
        with pytest.raises(ConflictError):
            await engine.create_allocation(1, 1, 100)


class TestDuplicateDiscovery:

    async def test_find_and_merge_all(self, engine, seed, fund_and_deal):
        await seed.deal(2, name="Deal B")
        await seed_duplicate_pair(seed)
        await seed.allocation(deal_id=2, amount="1000", created_at=EARLY)
        await seed.allocation(deal_id=2, amount="1000", created_at=LATE)
        await seed.allocation(deal_id=2, amount="1000", created_at=LATE)

        groups = await engine.find_duplicate_allocations()
        assert [(g.fund_id, g.deal_id, g.size) for g in groups] == [(1, 1, 2), (1, 2, 3)]

        validation = await engine.validate('all')
        assert validation.duplicate_pairs == 2

        results = await engine.conflict_resolver.merge_all()
        assert len(results) == 2
        assert await engine.find_duplicate_allocations() == []
        assert results[1].amount == Decimal("3000.00")
