from sqlalchemy import Column, Integer, String, DateTime, func
from TableModels.base import Base


class Deal(Base):
    """An investment opportunity. Referenced by allocations; never modified by the engine."""
    __tablename__ = 'deals'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    sector = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"Deal(id={self.id}, name={self.name!r})"
