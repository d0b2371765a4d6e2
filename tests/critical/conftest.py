"""
Critical Path Test Fixtures

Shared fixtures for money-critical path testing: a $100,000 commitment
created through the engine, and a pure PrecisionUtils for the unit tests.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from Shared_Utils.precision import PrecisionUtils


COMMITMENT = Decimal("100000.00")


@pytest.fixture
def precision():
    """Cent-precision money helpers, no logger"""
    return PrecisionUtils()


@pytest_asyncio.fixture
async def allocation(engine, fund_and_deal):
    """$100,000 commitment of fund 1 to deal 1, no capital calls"""
    fund_id, deal_id = fund_and_deal
    return await engine.create_allocation(fund_id, deal_id, COMMITMENT)


@pytest_asyncio.fixture
async def called_allocation(engine, allocation):
    """The same commitment with a 25% call ($25,000) outstanding"""
    call = await engine.create_capital_call(allocation.id, 25, 'percentage')
    return allocation, call
