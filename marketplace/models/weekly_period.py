from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from marketplace.core.database import Base


class PeriodStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    SETTLED = "settled"


class WeeklyPeriod(Base):
    __tablename__ = "weekly_periods"

    id = Column(Integer, primary_key=True)
    year = Column(Integer, nullable=False)
    week_number = Column(Integer, nullable=False)
    start_date = Column(DateTime(timezone=True), unique=True, nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), default=PeriodStatus.ACTIVE.value, index=True, nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    closed_by = Column(String(64), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    orders = relationship("Order", back_populates="weekly_period")
    shop_settlements = relationship("ShopSettlement", back_populates="period", cascade="all, delete-orphan")
    rider_settlements = relationship("RiderSettlement", back_populates="period", cascade="all, delete-orphan")

    @property
    def status_enum(self) -> PeriodStatus:
        return PeriodStatus(self.status)

    @property
    def label(self) -> str:
        return f"{self.year}-W{self.week_number:02d}"
