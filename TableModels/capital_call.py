from decimal import Decimal
from sqlalchemy import Column, Integer, String, Date, DateTime, Text, ForeignKey, Index, CheckConstraint, func
from sqlalchemy.types import DECIMAL
from TableModels.base import Base
from Shared_Utils.enum import AmountType, CapitalCallStatus

_STATUS_VALUES = ", ".join(f"'{s}'" for s in CapitalCallStatus.values())
_AMOUNT_TYPES = ", ".join(f"'{t}'" for t in AmountType.values())


class CapitalCall(Base):
    """A request for part of a commitment to be paid in.

    `call_amount` is fixed in dollars at creation. For percentage calls the
    original percentage is kept in `call_pct` for audit only; it is never
    re-applied to a later commitment amount.

    paid_amount <= call_amount is enforced by record_payment, not by a CHECK,
    so legacy overpayments stay loadable and can be reported by the sweep.
    """
    __tablename__ = 'capital_calls'

    id = Column(Integer, primary_key=True)
    allocation_id = Column(Integer, ForeignKey('fund_allocations.id'), nullable=False)

    call_amount = Column(DECIMAL(20, 2), nullable=False)
    amount_type = Column(String(10), nullable=False, default=AmountType.DOLLAR.value)
    call_pct = Column(DECIMAL(9, 4), nullable=True)
    paid_amount = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')

    status = Column(String(20), nullable=False, default=CapitalCallStatus.CALLED.value)
    call_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    paid_date = Column(Date, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)  # excluded from every aggregate
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('call_amount > 0', name='valid_call_amount'),
        CheckConstraint('paid_amount >= 0', name='valid_paid_amount'),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name='valid_status'),
        CheckConstraint(f"amount_type IN ({_AMOUNT_TYPES})", name='valid_amount_type'),
        Index('idx_capital_calls_allocation', 'allocation_id'),
        Index('idx_capital_calls_due', 'status', 'due_date'),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def outstanding_amount(self):
        outstanding = Decimal(str(self.call_amount or 0)) - Decimal(str(self.paid_amount or 0))
        return max(outstanding, Decimal("0"))

    def __repr__(self) -> str:
        return (
            f"CapitalCall(id={self.id}, allocation={self.allocation_id}, "
            f"call={self.call_amount}, paid={self.paid_amount}, status={self.status})"
        )
