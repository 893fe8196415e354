from marketplace.models.weekly_period import WeeklyPeriod, PeriodStatus
from marketplace.models.order import Order
from marketplace.models.order_item import OrderItem
from marketplace.models.settlement import ShopSettlement, RiderSettlement, SettlementStatus
from marketplace.models.points import PointsTransaction, PointsTransactionType, Referral
from marketplace.models.ad import Ad
