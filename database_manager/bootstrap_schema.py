from sqlalchemy import Column, Index, Integer, MetaData, Table, func, select

from TableModels import Base, FundAllocation

# Kept off Base.metadata so create_all never builds it: legacy duplicates must
# remain loadable until merged
_allocation_pairs = Table(
    'fund_allocations', MetaData(),
    Column('fund_id', Integer),
    Column('deal_id', Integer),
)

UNIQUE_ALLOCATION_INDEX = Index(
    'ux_fund_allocations_fund_deal',
    _allocation_pairs.c.fund_id,
    _allocation_pairs.c.deal_id,
    unique=True,
)


async def count_duplicate_allocation_pairs(conn) -> int:
    """Number of (fund_id, deal_id) pairs that hold more than one allocation."""
    dup_pairs = (
        select(FundAllocation.fund_id, FundAllocation.deal_id)
        .group_by(FundAllocation.fund_id, FundAllocation.deal_id)
        .having(func.count(FundAllocation.id) > 1)
        .subquery()
    )
    result = await conn.execute(select(func.count()).select_from(dup_pairs))
    return int(result.scalar_one())


async def ensure_reconciliation_schema(async_engine, enforce_unique_allocations: bool = False, logger=None) -> None:
    """
    Idempotent: safe to run on every startup.
    Creates missing tables and indexes. With enforce_unique_allocations, adds the
    (fund_id, deal_id) unique index once no duplicate pairs remain; until then the
    engine's locked existence check on create is the only guard.
    """
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if not enforce_unique_allocations:
            return

        duplicates = await count_duplicate_allocation_pairs(conn)
        if duplicates:
            if logger:
                logger.warning(
                    f"⚠️ {duplicates} duplicate (fund, deal) allocation pair(s) present; "
                    f"unique index deferred until merge_duplicates has run"
                )
            return

        await conn.run_sync(lambda sync_conn: UNIQUE_ALLOCATION_INDEX.create(sync_conn, checkfirst=True))
