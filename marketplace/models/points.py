from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from marketplace.core.database import Base


class PointsTransactionType(str, Enum):
    EARNED = "earned"
    REDEEMED = "redeemed"
    REFERRAL = "referral"
    ADJUSTMENT = "adjustment"


class PointsTransaction(Base):
    """Append-only ledger entry; rows are never updated or deleted."""

    __tablename__ = "points_transactions"
    __table_args__ = (UniqueConstraint("customer_id", "sequence", name="uq_points_customer_sequence"),)

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=True)
    type = Column(String(20), nullable=False)
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True)
    referrer_id = Column(Integer, index=True, nullable=False)
    referred_customer_id = Column(Integer, unique=True, nullable=False)
    bonus_order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    bonus_awarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
