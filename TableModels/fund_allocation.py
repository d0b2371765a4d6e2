from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index, CheckConstraint, func
from sqlalchemy.types import DECIMAL
from TableModels.base import Base
from Shared_Utils.enum import AllocationStatus

_STATUS_VALUES = ", ".join(f"'{s}'" for s in AllocationStatus.values())


class FundAllocation(Base):
    """A fund's commitment to a deal.

    `amount` is the ceiling for capital calls. `called_amount`, `paid_amount`
    and `status` are cached derivations of the allocation's capital calls and
    are written only by the reconciliation synchronizer.

    (fund_id, deal_id) is not declared unique here: legacy data may hold
    duplicates that ConflictResolver must still be able to load and merge.
    The bootstrap installs the unique index once duplicates are gone.
    """
    __tablename__ = 'fund_allocations'

    id = Column(Integer, primary_key=True)
    fund_id = Column(Integer, ForeignKey('funds.id'), nullable=False)
    deal_id = Column(Integer, ForeignKey('deals.id'), nullable=False)

    amount = Column(DECIMAL(20, 2), nullable=False)

    # Derived
    called_amount = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')
    paid_amount = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')
    status = Column(String(20), nullable=False, default=AllocationStatus.COMMITTED.value)

    written_off_at = Column(DateTime(timezone=True), nullable=True)
    write_off_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount >= 0', name='valid_amount'),
        CheckConstraint('called_amount >= 0', name='valid_called_amount'),
        CheckConstraint('paid_amount >= 0', name='valid_paid_amount'),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name='valid_status'),
        Index('idx_fund_allocations_fund_deal', 'fund_id', 'deal_id'),
        Index('idx_fund_allocations_status', 'status'),
    )

    @property
    def is_written_off(self) -> bool:
        return self.status == AllocationStatus.WRITTEN_OFF.value

    def __repr__(self) -> str:
        return (
            f"FundAllocation(id={self.id}, fund={self.fund_id}, deal={self.deal_id}, "
            f"amount={self.amount}, called={self.called_amount}, paid={self.paid_amount}, "
            f"status={self.status})"
        )
