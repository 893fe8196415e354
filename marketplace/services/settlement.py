"""Weekly settlement aggregation and the settlement record store.

The aggregation functions are pure: they take the orders and ads already
attributed to a period and return totals. ``SettlementStore`` persists those
totals as one pending record per shop and per rider, and later flips them to
settled when the payment is confirmed.

Shop net amount is ``gross_sales - total_commission``. Points discounts and
free delivery are borne by the platform and never by the shop. Ads cost is
reported on the record but not subtracted from the payable amount; the
platform recovers it through ``admin_net_commission``.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, system_clock
from marketplace.core.errors import BusinessRuleError, NotFoundError, ValidationError
from marketplace.core.locks import PERIOD_CLOSE_KEY, KeyedLocks, entity_locks
from marketplace.core.result import Result
from marketplace.fsm.order_status import OrderStatus
from marketplace.models.order import Order
from marketplace.models.settlement import RiderSettlement, SettlementStatus, ShopSettlement
from marketplace.models.weekly_period import PeriodStatus, WeeklyPeriod
from marketplace.services.commission import ZERO, money, to_decimal
from marketplace.services.operations import run_operation

logger = logging.getLogger(__name__)

SETTLEMENT_KINDS = ("shop", "rider")


# =========================
# Regras
# =========================
def shop_net_amount(gross_sales, total_commission) -> Decimal:
    return money(to_decimal(gross_sales) - to_decimal(total_commission))


def admin_net_commission(total_commission, points_discounts, free_delivery_cost, ads_revenue) -> Decimal:
    net = (
        to_decimal(total_commission)
        - to_decimal(points_discounts)
        - to_decimal(free_delivery_cost)
        + to_decimal(ads_revenue)
    )
    return money(net) if net > 0 else ZERO


def rider_net_payout(total_delivery_fees, commission_deducted=ZERO) -> Decimal:
    return money(to_decimal(total_delivery_fees) - to_decimal(commission_deducted))


def overlap_days(ad_start: date, ad_end: date, window_start: date, window_end: date) -> int:
    """Inclusive count of calendar days shared by an ad and a window."""
    first = max(ad_start, window_start)
    last = min(ad_end, window_end)
    if last < first:
        return 0
    return (last - first).days + 1


# =========================
# Agregação
# =========================
@dataclass(frozen=True)
class ShopTotals:
    shop_id: int
    total_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    gross_sales: Decimal = ZERO
    total_commission: Decimal = ZERO
    points_discounts: Decimal = ZERO
    free_delivery_cost: Decimal = ZERO
    ads_cost: Decimal = ZERO

    @property
    def net_amount(self) -> Decimal:
        return shop_net_amount(self.gross_sales, self.total_commission)

    @property
    def admin_net_commission(self) -> Decimal:
        return admin_net_commission(self.total_commission, self.points_discounts, self.free_delivery_cost, self.ads_cost)


@dataclass(frozen=True)
class RiderTotals:
    rider_id: int
    delivery_count: int = 0
    total_delivery_fees: Decimal = ZERO
    total_cash_handled: Decimal = ZERO
    commission_deducted: Decimal = ZERO

    @property
    def net_payout(self) -> Decimal:
        return rider_net_payout(self.total_delivery_fees, self.commission_deducted)


@dataclass(frozen=True)
class PeriodAggregation:
    shops: list[ShopTotals] = field(default_factory=list)
    riders: list[RiderTotals] = field(default_factory=list)
    points_redeemed: int = 0


def ads_cost_by_shop(ads: Iterable, window_start: date, window_end: date) -> dict[int, Decimal]:
    costs: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for ad in ads:
        if not getattr(ad, "is_active", True):
            continue
        days = overlap_days(ad.start_date, ad.end_date, window_start, window_end)
        if days:
            costs[ad.shop_id] = money(costs[ad.shop_id] + to_decimal(ad.daily_cost) * days)
    return dict(costs)


def aggregate_shops(orders: Iterable[Order], ads: Iterable, window_start: date, window_end: date) -> list[ShopTotals]:
    buckets: dict[int, dict] = {}

    def bucket(shop_id: int) -> dict:
        if shop_id not in buckets:
            buckets[shop_id] = {
                "total_orders": 0,
                "completed_orders": 0,
                "cancelled_orders": 0,
                "gross_sales": ZERO,
                "total_commission": ZERO,
                "points_discounts": ZERO,
                "free_delivery_cost": ZERO,
            }
        return buckets[shop_id]

    for order in orders:
        if order.status not in (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value):
            continue
        totals = bucket(order.shop_id)
        totals["total_orders"] += 1
        if order.status == OrderStatus.CANCELLED.value:
            totals["cancelled_orders"] += 1
            continue
        totals["completed_orders"] += 1
        totals["gross_sales"] += to_decimal(order.subtotal)
        totals["total_commission"] += to_decimal(order.shop_commission)
        totals["points_discounts"] += to_decimal(order.points_discount)
        if order.is_free_delivery:
            totals["free_delivery_cost"] += to_decimal(order.delivery_fee)

    ads_costs = ads_cost_by_shop(ads, window_start, window_end)
    # lojas só com anúncios também recebem registro
    for shop_id in ads_costs:
        bucket(shop_id)

    return [
        ShopTotals(
            shop_id=shop_id,
            total_orders=totals["total_orders"],
            completed_orders=totals["completed_orders"],
            cancelled_orders=totals["cancelled_orders"],
            gross_sales=money(totals["gross_sales"]),
            total_commission=money(totals["total_commission"]),
            points_discounts=money(totals["points_discounts"]),
            free_delivery_cost=money(totals["free_delivery_cost"]),
            ads_cost=ads_costs.get(shop_id, ZERO),
        )
        for shop_id, totals in sorted(buckets.items())
    ]


def aggregate_riders(orders: Iterable[Order]) -> list[RiderTotals]:
    """Riders are paid for completed orders they carried; cancelled orders
    never left the shop."""
    buckets: dict[int, list[Order]] = defaultdict(list)
    for order in orders:
        if order.rider_id is None or order.status != OrderStatus.COMPLETED.value:
            continue
        buckets[order.rider_id].append(order)

    riders = []
    for rider_id, carried in sorted(buckets.items()):
        riders.append(
            RiderTotals(
                rider_id=rider_id,
                delivery_count=len(carried),
                total_delivery_fees=money(sum((to_decimal(o.delivery_fee) for o in carried), ZERO)),
                total_cash_handled=money(
                    sum((to_decimal(o.total_amount) for o in carried if o.cash_collected), ZERO)
                ),
            )
        )
    return riders


def aggregate_period(orders: Iterable[Order], ads: Iterable, window_start: date, window_end: date) -> PeriodAggregation:
    orders = list(orders)
    return PeriodAggregation(
        shops=aggregate_shops(orders, ads, window_start, window_end),
        riders=aggregate_riders(orders),
        points_redeemed=sum(
            int(o.points_used or 0) for o in orders if o.status == OrderStatus.COMPLETED.value
        ),
    )


# =========================
# Resumo do período (admin)
# =========================
@dataclass(frozen=True)
class PeriodSummary:
    period_id: int
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    gross_sales: Decimal
    total_delivery_fees: Decimal
    total_shop_commissions: Decimal
    points_discount_value: Decimal
    total_points_redeemed: int
    free_delivery_cost: Decimal
    total_ads_revenue: Decimal
    admin_net_revenue: Decimal
    shop_payouts: Decimal
    rider_payouts: Decimal
    pending_settlements: int
    settled_settlements: int

    def to_dict(self) -> dict:
        data = {}
        for name, value in self.__dict__.items():
            data[name] = str(value) if isinstance(value, Decimal) else value
        return data


def summarize_period(
    period_id: int,
    shops: list[ShopSettlement],
    riders: list[RiderSettlement],
    points_redeemed: int,
) -> PeriodSummary:
    def total(records, name) -> Decimal:
        return money(sum((to_decimal(getattr(r, name)) for r in records), ZERO))

    commissions = total(shops, "total_commission")
    points_value = total(shops, "points_discounts")
    free_delivery = total(shops, "free_delivery_cost")
    ads_revenue = total(shops, "ads_cost")
    statuses = [r.status for r in shops] + [r.status for r in riders]
    return PeriodSummary(
        period_id=period_id,
        total_orders=sum(r.total_orders for r in shops),
        completed_orders=sum(r.completed_orders for r in shops),
        cancelled_orders=sum(r.cancelled_orders for r in shops),
        gross_sales=total(shops, "gross_sales"),
        total_delivery_fees=total(riders, "total_delivery_fees"),
        total_shop_commissions=commissions,
        points_discount_value=points_value,
        total_points_redeemed=points_redeemed,
        free_delivery_cost=free_delivery,
        total_ads_revenue=ads_revenue,
        admin_net_revenue=admin_net_commission(commissions, points_value, free_delivery, ads_revenue),
        shop_payouts=total(shops, "net_amount"),
        rider_payouts=total(riders, "net_payout"),
        pending_settlements=statuses.count(SettlementStatus.PENDING.value),
        settled_settlements=statuses.count(SettlementStatus.SETTLED.value),
    )


# =========================
# Store
# =========================
@dataclass(frozen=True)
class SettlementListing:
    period_id: int
    shops: list[ShopSettlement]
    riders: list[RiderSettlement]


class SettlementStore:
    def __init__(self, db: Session, *, clock: Clock = system_clock, locks: KeyedLocks = entity_locks) -> None:
        self.db = db
        self.clock = clock
        self.locks = locks

    def _period(self, period_id: int) -> WeeklyPeriod:
        period = self.db.query(WeeklyPeriod).filter(WeeklyPeriod.id == period_id).first()
        if period is None:
            raise NotFoundError(f"Period {period_id} not found", details={"period_id": period_id})
        return period

    def write_records(
        self, period: WeeklyPeriod, aggregation: PeriodAggregation
    ) -> tuple[list[ShopSettlement], list[RiderSettlement]]:
        """Persist one pending record per shop and rider inside the caller's transaction."""
        existing = self.db.query(ShopSettlement.id).filter(ShopSettlement.period_id == period.id).first()
        if existing is None:
            existing = self.db.query(RiderSettlement.id).filter(RiderSettlement.period_id == period.id).first()
        if existing is not None:
            raise BusinessRuleError(
                f"Settlements for period {period.id} were already generated",
                details={"period_id": period.id},
            )

        now = self.clock.now_utc()
        shops = [
            ShopSettlement(
                shop_id=totals.shop_id,
                period_id=period.id,
                total_orders=totals.total_orders,
                completed_orders=totals.completed_orders,
                cancelled_orders=totals.cancelled_orders,
                gross_sales=totals.gross_sales,
                total_commission=totals.total_commission,
                points_discounts=totals.points_discounts,
                free_delivery_cost=totals.free_delivery_cost,
                ads_cost=totals.ads_cost,
                net_amount=totals.net_amount,
                admin_net_commission=totals.admin_net_commission,
                status=SettlementStatus.PENDING.value,
                created_at=now,
            )
            for totals in aggregation.shops
        ]
        riders = [
            RiderSettlement(
                rider_id=totals.rider_id,
                period_id=period.id,
                delivery_count=totals.delivery_count,
                total_delivery_fees=totals.total_delivery_fees,
                total_cash_handled=totals.total_cash_handled,
                commission_deducted=totals.commission_deducted,
                net_payout=totals.net_payout,
                status=SettlementStatus.PENDING.value,
                created_at=now,
            )
            for totals in aggregation.riders
        ]
        self.db.add_all(shops + riders)
        self.db.flush()
        return shops, riders

    def _shops(self, period_id: int) -> list[ShopSettlement]:
        return (
            self.db.query(ShopSettlement)
            .filter(ShopSettlement.period_id == period_id)
            .order_by(ShopSettlement.shop_id.asc())
            .all()
        )

    def _riders(self, period_id: int) -> list[RiderSettlement]:
        return (
            self.db.query(RiderSettlement)
            .filter(RiderSettlement.period_id == period_id)
            .order_by(RiderSettlement.rider_id.asc())
            .all()
        )

    def pending_count(self, period_id: int) -> int:
        shops = (
            self.db.query(func.count(ShopSettlement.id))
            .filter(ShopSettlement.period_id == period_id, ShopSettlement.status == SettlementStatus.PENDING.value)
            .scalar()
        )
        riders = (
            self.db.query(func.count(RiderSettlement.id))
            .filter(RiderSettlement.period_id == period_id, RiderSettlement.status == SettlementStatus.PENDING.value)
            .scalar()
        )
        return int(shops or 0) + int(riders or 0)

    # =========================
    # Operações
    # =========================
    def list_settlements(self, period_id: int) -> Result[SettlementListing]:
        def _list() -> SettlementListing:
            self._period(period_id)
            return SettlementListing(period_id=period_id, shops=self._shops(period_id), riders=self._riders(period_id))

        return run_operation(self.db, "settlements.list", _list)

    def get_shop_settlement(self, settlement_id: int) -> Result[ShopSettlement]:
        def _get() -> ShopSettlement:
            record = self.db.query(ShopSettlement).filter(ShopSettlement.id == settlement_id).first()
            if record is None:
                raise NotFoundError(f"Shop settlement {settlement_id} not found", details={"settlement_id": settlement_id})
            return record

        return run_operation(self.db, "settlements.get_shop", _get)

    def get_rider_settlement(self, settlement_id: int) -> Result[RiderSettlement]:
        def _get() -> RiderSettlement:
            record = self.db.query(RiderSettlement).filter(RiderSettlement.id == settlement_id).first()
            if record is None:
                raise NotFoundError(f"Rider settlement {settlement_id} not found", details={"settlement_id": settlement_id})
            return record

        return run_operation(self.db, "settlements.get_rider", _get)

    def mark_settled(self, settlement_id: int, kind: str = "shop", notes: str | None = None):
        """Record that a settlement was paid out; pending -> settled, once."""

        def _mark():
            normalized = (kind or "").strip().lower()
            if normalized not in SETTLEMENT_KINDS:
                raise ValidationError(f"Unknown settlement kind: {kind!r}", details={"allowed": list(SETTLEMENT_KINDS)})
            model = ShopSettlement if normalized == "shop" else RiderSettlement
            record = self.db.query(model).filter(model.id == settlement_id).with_for_update().first()
            if record is None:
                raise NotFoundError(
                    f"{normalized.capitalize()} settlement {settlement_id} not found",
                    details={"settlement_id": settlement_id, "kind": normalized},
                )
            if record.status == SettlementStatus.SETTLED.value:
                raise BusinessRuleError(
                    f"Settlement {settlement_id} is already settled",
                    details={"settlement_id": settlement_id, "kind": normalized},
                )
            period = self._period(record.period_id)
            if period.status == PeriodStatus.ACTIVE.value:
                raise BusinessRuleError("Cannot settle a record of an active period", details={"period_id": period.id})
            record.status = SettlementStatus.SETTLED.value
            record.settled_at = self.clock.now_utc()
            if notes is not None:
                record.notes = notes.strip() or None
            self.db.flush()
            logger.info(
                "[SETTLEMENT] %s settlement %s settled",
                normalized,
                settlement_id,
                extra={"period_id": period.id},
            )
            return record

        # o fechamento e a liquidação do período leem o status dos registros
        with self.locks.hold(PERIOD_CLOSE_KEY):
            return run_operation(self.db, "settlements.mark_settled", _mark)

    def period_summary(self, period_id: int) -> Result[PeriodSummary]:
        def _summary() -> PeriodSummary:
            period = self._period(period_id)
            redeemed = (
                self.db.query(func.coalesce(func.sum(Order.points_used), 0))
                .filter(Order.weekly_period_id == period.id, Order.status == OrderStatus.COMPLETED.value)
                .scalar()
            )
            return summarize_period(period.id, self._shops(period.id), self._riders(period.id), int(redeemed or 0))

        return run_operation(self.db, "settlements.period_summary", _summary)
