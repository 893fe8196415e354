from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from marketplace.core.clock import as_utc
from marketplace.deps import get_actor_id, get_period_manager, get_settlement_store, raise_for_failure
from marketplace.models.settlement import RiderSettlement, ShopSettlement
from marketplace.models.weekly_period import WeeklyPeriod
from marketplace.services.settlement import SettlementStore
from marketplace.services.weekly_period import WeeklyPeriodManager

router = APIRouter(prefix="/api/settlements", tags=["settlements"])


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _period_to_dict(p: WeeklyPeriod) -> Dict[str, Any]:
    return {
        "id": p.id,
        "label": p.label,
        "year": p.year,
        "week_number": p.week_number,
        "start_date": _iso(p.start_date),
        "end_date": _iso(p.end_date),
        "status": p.status,
        "closed_at": _iso(p.closed_at),
        "closed_by": p.closed_by,
        "settled_at": _iso(p.settled_at),
    }


def _shop_settlement_to_dict(s: ShopSettlement) -> Dict[str, Any]:
    return {
        "id": s.id,
        "shop_id": s.shop_id,
        "period_id": s.period_id,
        "total_orders": s.total_orders,
        "completed_orders": s.completed_orders,
        "cancelled_orders": s.cancelled_orders,
        "gross_sales": _money(s.gross_sales),
        "total_commission": _money(s.total_commission),
        "points_discounts": _money(s.points_discounts),
        "free_delivery_cost": _money(s.free_delivery_cost),
        "ads_cost": _money(s.ads_cost),
        "net_amount": _money(s.net_amount),
        "admin_net_commission": _money(s.admin_net_commission),
        "status": s.status,
        "settled_at": _iso(s.settled_at),
        "notes": s.notes,
    }


def _rider_settlement_to_dict(s: RiderSettlement) -> Dict[str, Any]:
    return {
        "id": s.id,
        "rider_id": s.rider_id,
        "period_id": s.period_id,
        "delivery_count": s.delivery_count,
        "total_delivery_fees": _money(s.total_delivery_fees),
        "total_cash_handled": _money(s.total_cash_handled),
        "commission_deducted": _money(s.commission_deducted),
        "net_payout": _money(s.net_payout),
        "status": s.status,
        "settled_at": _iso(s.settled_at),
        "notes": s.notes,
    }


@router.get("/periods")
def list_periods(status: Optional[str] = None, manager: WeeklyPeriodManager = Depends(get_period_manager)):
    periods = raise_for_failure(manager.list_periods(status))
    return [_period_to_dict(p) for p in periods]


@router.get("/periods/current")
def current_period(manager: WeeklyPeriodManager = Depends(get_period_manager)):
    return _period_to_dict(raise_for_failure(manager.current_period()))


@router.post("/periods/close")
def close_current_period(
    actor_id: Optional[str] = Depends(get_actor_id),
    manager: WeeklyPeriodManager = Depends(get_period_manager),
):
    report = raise_for_failure(manager.close_current_period(closed_by=actor_id))
    return {
        "period": _period_to_dict(report.period),
        "next_period": _period_to_dict(report.next_period),
        "orders_aggregated": report.orders_aggregated,
        "shop_settlements": [_shop_settlement_to_dict(s) for s in report.shop_settlements],
        "rider_settlements": [_rider_settlement_to_dict(s) for s in report.rider_settlements],
        "summary": report.summary.to_dict(),
    }


@router.get("/periods/{period_id}")
def get_period(
    period_id: int,
    manager: WeeklyPeriodManager = Depends(get_period_manager),
    store: SettlementStore = Depends(get_settlement_store),
):
    period = raise_for_failure(manager.get_period(period_id))
    listing = raise_for_failure(store.list_settlements(period_id))
    return {
        "period": _period_to_dict(period),
        "shop_settlements": [_shop_settlement_to_dict(s) for s in listing.shops],
        "rider_settlements": [_rider_settlement_to_dict(s) for s in listing.riders],
    }


@router.get("/periods/{period_id}/summary")
def period_summary(period_id: int, store: SettlementStore = Depends(get_settlement_store)):
    return raise_for_failure(store.period_summary(period_id)).to_dict()


@router.post("/periods/{period_id}/settle")
def settle_period(period_id: int, manager: WeeklyPeriodManager = Depends(get_period_manager)):
    return _period_to_dict(raise_for_failure(manager.settle_period(period_id)))


class SettleBody(BaseModel):
    notes: Optional[str] = None


@router.patch("/{kind}/{settlement_id}/settle")
def mark_settled(
    kind: str,
    settlement_id: int,
    body: Optional[SettleBody] = None,
    store: SettlementStore = Depends(get_settlement_store),
):
    record = raise_for_failure(store.mark_settled(settlement_id, kind, notes=body.notes if body else None))
    if isinstance(record, ShopSettlement):
        return _shop_settlement_to_dict(record)
    return _rider_settlement_to_dict(record)
