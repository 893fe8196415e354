from __future__ import annotations

from marketplace.core.clock import as_utc
from marketplace.fsm.order_status import OrderStatus
from marketplace.models.order import Order
from marketplace.models.weekly_period import WeeklyPeriod
from marketplace.services.event_bus import event_bus


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def build_order_payload(order: Order, previous_status: str | None = None) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "shop_id": order.shop_id,
        "rider_id": order.rider_id,
        "status": order.status,
        "previous_status": previous_status,
        "total_amount": str(order.total_amount) if order.total_amount is not None else None,
        "points_earned": int(order.points_earned or 0),
        "completed_at": _iso(order.completed_at),
        "cancelled_at": _iso(order.cancelled_at),
    }


def emit_order_created(order: Order) -> None:
    event_bus.emit("order.created", build_order_payload(order))


def emit_order_status_changed(order: Order, previous_status: str | None) -> None:
    if previous_status == order.status:
        return
    payload = build_order_payload(order, previous_status=previous_status)
    event_bus.emit("order.status.changed", payload)
    if payload["status"] == OrderStatus.COMPLETED.value:
        event_bus.emit("order.completed", payload)


def emit_period_closed(period: WeeklyPeriod, next_period: WeeklyPeriod, *, shop_count: int, rider_count: int) -> None:
    event_bus.emit(
        "period.closed",
        {
            "period_id": period.id,
            "label": period.label,
            "start_date": _iso(period.start_date),
            "end_date": _iso(period.end_date),
            "next_period_id": next_period.id,
            "shop_settlements": shop_count,
            "rider_settlements": rider_count,
        },
    )
