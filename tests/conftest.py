"""
Shared test fixtures.

Integration tests run against a throwaway SQLite file per test through
sqlite+aiosqlite, using the same DatabaseSessionManager and schema bootstrap
as production.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from Config.config_manager import EngineConfig
from database_manager.database_session_manager import DatabaseSessionManager
from reconciliation_engine import AllocationReconciliationEngine
from TableModels import CapitalCall, CapitalCallPayment, Deal, Fund, FundAllocation


class MockLoggerManager:
    """Hands out one MagicMock per logger name so tests can assert on log calls."""

    def __init__(self):
        self.loggers = {}

    def get_logger(self, name):
        return self.loggers.setdefault(name, MagicMock(name=name))


class Seeder:
    """
    Writes rows straight to the database, bypassing the engine.

    Used to build fixtures the engine would refuse to create: duplicates,
    drifted cached fields, legacy overpayments.
    """

    def __init__(self, db: DatabaseSessionManager):
        self.db = db

    async def _add(self, obj):
        async with self.db.async_session() as session:
            async with session.begin():
                session.add(obj)
        return obj

    async def fund(self, fund_id: int = 1, name: str = "Fund I", **fields):
        return await self._add(Fund(id=fund_id, name=name, **fields))

    async def deal(self, deal_id: int = 1, name: str = "Deal A", sector: str = "Software"):
        return await self._add(Deal(id=deal_id, name=name, sector=sector))

    async def allocation(self, fund_id: int = 1, deal_id: int = 1, amount="100000", **fields):
        fields.setdefault('called_amount', Decimal('0'))
        fields.setdefault('paid_amount', Decimal('0'))
        fields.setdefault('status', 'committed')
        fields.setdefault('created_at', datetime.now(timezone.utc))
        return await self._add(FundAllocation(fund_id=fund_id, deal_id=deal_id, amount=Decimal(str(amount)), **fields))

    async def capital_call(self, allocation_id: int, call_amount, paid_amount="0", **fields):
        fields.setdefault('call_date', date(2025, 1, 15))
        fields.setdefault('due_date', date(2025, 2, 15))
        fields.setdefault('status', 'called')
        fields.setdefault('amount_type', 'dollar')
        return await self._add(CapitalCall(
            allocation_id=allocation_id,
            call_amount=Decimal(str(call_amount)),
            paid_amount=Decimal(str(paid_amount)),
            **fields,
        ))

    async def payment(self, capital_call_id: int, amount, applied_amount, payment_date=date(2025, 2, 1)):
        return await self._add(CapitalCallPayment(
            capital_call_id=capital_call_id,
            amount=Decimal(str(amount)),
            applied_amount=Decimal(str(applied_amount)),
            payment_date=payment_date,
        ))

    async def get(self, model, row_id):
        async with self.db.async_session() as session:
            return await session.get(model, row_id)

    async def all(self, model, *where):
        async with self.db.async_session() as session:
            stmt = select(model).where(*where).order_by(model.id)
            return list((await session.execute(stmt)).scalars().all())

    async def set(self, model, row_id, **values):
        """Overwrite columns in place, e.g. to simulate drift."""
        async with self.db.async_session() as session:
            async with session.begin():
                await session.execute(update(model).where(model.id == row_id).values(**values))


@pytest.fixture
def logger_manager():
    return MockLoggerManager()


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'recon.db'}",
        sweep_batch_size=2,
    )


@pytest_asyncio.fixture
async def db(engine_config, logger_manager):
    manager = DatabaseSessionManager.from_engine_config(
        engine_config, logger=logger_manager.get_logger('shared_logger')
    )
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def engine(db, logger_manager, engine_config):
    return AllocationReconciliationEngine(db, logger_manager, engine_config)


@pytest_asyncio.fixture
async def seed(db):
    return Seeder(db)


@pytest_asyncio.fixture
async def fund_and_deal(seed):
    """Fund 1 and deal 1, the pair most scenarios use."""
    await seed.fund(1)
    await seed.deal(1)
    return 1, 1
