from sqlalchemy import Boolean, Column, Date, DateTime, Integer, Numeric, String, func

from marketplace.core.database import Base


class Ad(Base):
    __tablename__ = "ads"

    id = Column(Integer, primary_key=True)
    shop_id = Column(Integer, index=True, nullable=False)
    title = Column(String(200), default="", nullable=False)
    daily_cost = Column(Numeric(12, 2), default=10, nullable=False)
    # datas de calendário inclusivas, no fuso fixo do marketplace
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
