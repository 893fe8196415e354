from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from marketplace.core.database import Base


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class ShopSettlement(Base):
    __tablename__ = "shop_settlements"
    __table_args__ = (UniqueConstraint("shop_id", "period_id", name="uq_shop_settlement_period"),)

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, index=True, nullable=False)
    period_id = Column(Integer, ForeignKey("weekly_periods.id"), index=True, nullable=False)

    total_orders = Column(Integer, default=0, nullable=False)
    completed_orders = Column(Integer, default=0, nullable=False)
    cancelled_orders = Column(Integer, default=0, nullable=False)
    gross_sales = Column(Numeric(12, 2), default=0, nullable=False)
    total_commission = Column(Numeric(12, 2), default=0, nullable=False)
    points_discounts = Column(Numeric(12, 2), default=0, nullable=False)
    free_delivery_cost = Column(Numeric(12, 2), default=0, nullable=False)
    ads_cost = Column(Numeric(12, 2), default=0, nullable=False)
    net_amount = Column(Numeric(12, 2), default=0, nullable=False)
    admin_net_commission = Column(Numeric(12, 2), default=0, nullable=False)

    status = Column(String(20), default=SettlementStatus.PENDING.value, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    period = relationship("WeeklyPeriod", back_populates="shop_settlements")


class RiderSettlement(Base):
    __tablename__ = "rider_settlements"
    __table_args__ = (UniqueConstraint("rider_id", "period_id", name="uq_rider_settlement_period"),)

    id = Column(Integer, primary_key=True)
    rider_id = Column(Integer, index=True, nullable=False)
    period_id = Column(Integer, ForeignKey("weekly_periods.id"), index=True, nullable=False)

    delivery_count = Column(Integer, default=0, nullable=False)
    total_delivery_fees = Column(Numeric(12, 2), default=0, nullable=False)
    total_cash_handled = Column(Numeric(12, 2), default=0, nullable=False)
    commission_deducted = Column(Numeric(12, 2), default=0, nullable=False)
    net_payout = Column(Numeric(12, 2), default=0, nullable=False)

    status = Column(String(20), default=SettlementStatus.PENDING.value, nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    period = relationship("WeeklyPeriod", back_populates="rider_settlements")
