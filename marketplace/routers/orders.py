from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.core.clock import as_utc
from marketplace.deps import get_order_lifecycle, get_order_placement, get_order_repository, raise_for_failure
from marketplace.models.order import Order
from marketplace.models.order_item import OrderItem
from marketplace.services.order_lifecycle import OrderLifecycleService
from marketplace.services.order_placement import OrderLineInput, OrderPlacementService, PlaceOrderInput
from marketplace.services.order_repository import SqlOrderRepository

router = APIRouter(prefix="/api", tags=["orders"])


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _order_item_to_dict(item: OrderItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit_price": _money(item.unit_price),
        "subtotal": _money(item.subtotal),
    }


def _order_to_dict(o: Order, include_items: bool = False) -> Dict[str, Any]:
    data = {
        "id": o.id,
        "order_number": o.order_number,
        "customer_id": o.customer_id,
        "shop_id": o.shop_id,
        "rider_id": o.rider_id,
        "status": o.status,
        "subtotal": _money(o.subtotal),
        "delivery_fee": _money(o.delivery_fee),
        "is_free_delivery": bool(o.is_free_delivery),
        "points_used": o.points_used,
        "points_discount": _money(o.points_discount),
        "total_amount": _money(o.total_amount),
        "commission_rate": _money(o.commission_rate),
        "shop_commission": _money(o.shop_commission),
        "admin_commission": _money(o.admin_commission),
        "shop_earnings": _money(o.shop_earnings),
        "points_earned": o.points_earned,
        "cash_collected": bool(o.cash_collected),
        "cash_to_shop": bool(o.cash_to_shop),
        "shop_confirmed_cash": bool(o.shop_confirmed_cash),
        "delivery_address": o.delivery_address,
        "customer_notes": o.customer_notes,
        "cancellation_reason": o.cancellation_reason,
        "weekly_period_id": o.weekly_period_id,
        "created_at": _iso(o.created_at),
        "accepted_at": _iso(o.accepted_at),
        "preparing_at": _iso(o.preparing_at),
        "picked_up_at": _iso(o.picked_up_at),
        "shop_paid_at": _iso(o.shop_paid_at),
        "completed_at": _iso(o.completed_at),
        "cancelled_at": _iso(o.cancelled_at),
    }
    if include_items:
        data["items"] = [_order_item_to_dict(item) for item in sorted(o.order_items, key=lambda i: i.id)]
    return data


class OrderLine(BaseModel):
    product_id: Optional[int] = None
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)


class OrderCreate(BaseModel):
    customer_id: int
    shop_id: int
    items: List[OrderLine]
    delivery_address: str
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    is_free_delivery: bool = False
    points_to_use: int = Field(default=0, ge=0)
    commission_rate: Optional[Decimal] = None
    customer_notes: Optional[str] = None


@router.post("/orders")
def create_order(
    payload: OrderCreate,
    service: OrderPlacementService = Depends(get_order_placement),
):
    data = PlaceOrderInput(
        customer_id=payload.customer_id,
        shop_id=payload.shop_id,
        items=[
            OrderLineInput(name=line.name, quantity=line.quantity, unit_price=line.unit_price, product_id=line.product_id)
            for line in payload.items
        ],
        delivery_address=payload.delivery_address,
        delivery_fee=payload.delivery_fee,
        is_free_delivery=payload.is_free_delivery,
        points_to_use=payload.points_to_use,
        commission_rate=payload.commission_rate,
        customer_notes=payload.customer_notes,
    )
    order = raise_for_failure(service.place_order(data))
    return _order_to_dict(order, include_items=True)


@router.get("/orders/{order_id}")
def get_order(order_id: int, repository: SqlOrderRepository = Depends(get_order_repository)):
    order = raise_for_failure(repository.get(order_id))
    return _order_to_dict(order, include_items=True)


class StatusUpdate(BaseModel):
    status: str
    rider_id: Optional[int] = None
    reason: Optional[str] = None


@router.patch("/orders/{order_id}/status")
def update_status(
    order_id: int,
    body: StatusUpdate,
    service: OrderLifecycleService = Depends(get_order_lifecycle),
):
    order = raise_for_failure(
        service.transition(order_id, body.status, rider_id=body.rider_id, reason=body.reason)
    )
    return {"ok": True, "status": order.status, "order": _order_to_dict(order)}


class RiderAssignment(BaseModel):
    rider_id: int = Field(..., ge=1)


@router.post("/orders/{order_id}/rider")
def assign_rider(
    order_id: int,
    body: RiderAssignment,
    service: OrderLifecycleService = Depends(get_order_lifecycle),
):
    order = raise_for_failure(service.assign_rider(order_id, body.rider_id))
    return _order_to_dict(order)
