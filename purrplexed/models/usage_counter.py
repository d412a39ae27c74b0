"""UsageCounter model persisting the free daily analysis quota."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func

from purrplexed.database import Base


class UsageCounter(Base):
    """One row per usage meter holding its consumed/reserved counters."""

    __tablename__ = "usage_counters"

    id = Column(Integer, primary_key=True, index=True)
    meter_key = Column(String(64), nullable=False, unique=True, index=True)

    consumed = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    last_reset_at = Column(DateTime, nullable=False, default=datetime.now)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return (
            f"<UsageCounter(key={self.meter_key}, consumed={self.consumed}, "
            f"reserved={self.reserved})>"
        )
