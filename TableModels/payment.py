from sqlalchemy import Column, Integer, Date, DateTime, Text, ForeignKey, Index, CheckConstraint, func
from sqlalchemy.types import DECIMAL
from TableModels.base import Base


class CapitalCallPayment(Base):
    """One payment received against a capital call.

    `amount` is what the investor sent; `applied_amount` is what was credited
    after clamping at the call's outstanding balance. The difference is an
    unapplied excess that the repair sweep reports for a business decision
    (refund vs. credit to a later call).
    """
    __tablename__ = 'capital_call_payments'

    id = Column(Integer, primary_key=True)
    capital_call_id = Column(Integer, ForeignKey('capital_calls.id'), nullable=False)
    amount = Column(DECIMAL(20, 2), nullable=False)
    applied_amount = Column(DECIMAL(20, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint('amount > 0', name='valid_amount'),
        CheckConstraint('applied_amount >= 0 AND applied_amount <= amount', name='valid_applied_amount'),
        Index('idx_capital_call_payments_call', 'capital_call_id'),
    )

    @property
    def unapplied_amount(self):
        return self.amount - self.applied_amount
