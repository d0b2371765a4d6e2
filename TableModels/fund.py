from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint, func
from sqlalchemy.types import DECIMAL
from TableModels.base import Base


class Fund(Base):
    """A fund and its cached capital metrics.

    committed/called/uncalled capital and AUM are written only by the
    reconciliation synchronizer; they are never authoritative inputs.
    """
    __tablename__ = 'funds'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    target_size = Column(DECIMAL(20, 2), nullable=True)
    vintage = Column(Integer, nullable=True)

    # Derived (see FundMetricsAggregator)
    committed_capital = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')
    called_capital = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')
    uncalled_capital = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')
    aum = Column(DECIMAL(20, 2), nullable=False, default=0, server_default='0')  # paid-in capital
    metrics_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint('target_size IS NULL OR target_size >= 0', name='valid_target_size'),
    )

    def __repr__(self) -> str:
        return f"Fund(id={self.id}, name={self.name!r})"
