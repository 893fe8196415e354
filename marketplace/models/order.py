from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from marketplace.core.database import Base
from marketplace.fsm.order_status import OrderStatus


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(40), unique=True, nullable=True)

    # Partes
    customer_id = Column(Integer, index=True, nullable=False)
    shop_id = Column(Integer, index=True, nullable=False)
    rider_id = Column(Integer, index=True, nullable=True)

    # Valores (moeda com 2 casas)
    subtotal = Column(Numeric(12, 2), nullable=False)
    delivery_fee = Column(Numeric(12, 2), default=0, nullable=False)
    is_free_delivery = Column(Boolean, default=False, nullable=False)
    points_used = Column(Integer, default=0, nullable=False)
    points_discount = Column(Numeric(12, 2), default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False)
    shop_commission = Column(Numeric(12, 2), default=0, nullable=False)
    admin_commission = Column(Numeric(12, 2), default=0, nullable=False)
    points_earned = Column(Integer, default=0, nullable=False)

    # Dinheiro em espécie (pagamento na entrega)
    cash_collected = Column(Boolean, default=False, nullable=False)
    cash_to_shop = Column(Boolean, default=False, nullable=False)
    shop_confirmed_cash = Column(Boolean, default=False, nullable=False)

    status = Column(String(20), default=OrderStatus.PENDING.value, index=True, nullable=False)
    delivery_address = Column(Text, default="", nullable=False)
    customer_notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    weekly_period_id = Column(Integer, ForeignKey("weekly_periods.id"), index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    shop_paid_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), index=True, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), index=True, nullable=True)

    version = Column(Integer, nullable=False)

    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    weekly_period = relationship("WeeklyPeriod", back_populates="orders")

    __mapper_args__ = {"version_id_col": version}

    @property
    def status_enum(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def shop_earnings(self):
        return self.subtotal - self.shop_commission

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, number={self.order_number!r}, status={self.status!r})>"
