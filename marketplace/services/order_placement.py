from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, system_clock
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import BusinessRuleError, ValidationError
from marketplace.core.locks import KeyedLocks, customer_key, entity_locks
from marketplace.core.result import Result
from marketplace.fsm.order_status import OrderStatus
from marketplace.models.order import Order
from marketplace.models.order_item import OrderItem
from marketplace.services.commission import (
    ZERO,
    can_apply_discount,
    money,
    platform_commission,
    shop_commission,
    to_decimal,
    validate_commission_rate,
)
from marketplace.services.operations import run_operation
from marketplace.services.order_events import emit_order_created
from marketplace.services.order_repository import SqlOrderRepository
from marketplace.services.points_ledger import PointsLedger
from marketplace.services.points_rules import discount_value, points_earned_for

logger = logging.getLogger(__name__)

MIN_ITEMS_PER_ORDER = 1
MAX_ITEMS_PER_ORDER = 50
MIN_DELIVERY_FEE = Decimal("0")
MAX_DELIVERY_FEE = Decimal("100")
MIN_ADDRESS_LENGTH = 10
MAX_NOTES_LENGTH = 500


@dataclass(frozen=True)
class OrderLineInput:
    name: str
    quantity: int
    unit_price: Decimal
    product_id: int | None = None


@dataclass(frozen=True)
class PlaceOrderInput:
    customer_id: int
    shop_id: int
    items: list[OrderLineInput]
    delivery_address: str
    delivery_fee: Decimal = Decimal("0")
    is_free_delivery: bool = False
    points_to_use: int = 0
    commission_rate: Decimal | None = None
    customer_notes: str | None = None
    minimum_order: Decimal | None = None


def validate_order_input(data: PlaceOrderInput) -> Decimal:
    """Field-level checks on a new order; returns the subtotal."""
    errors: dict[str, str] = {}

    if len(data.items) < MIN_ITEMS_PER_ORDER:
        errors["items"] = "Order must have at least one item"
    elif len(data.items) > MAX_ITEMS_PER_ORDER:
        errors["items"] = f"Order cannot have more than {MAX_ITEMS_PER_ORDER} items"

    subtotal = ZERO
    for index, line in enumerate(data.items):
        if not (line.name or "").strip():
            errors[f"item_{index}_name"] = "Item name is required"
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity < 1:
            errors[f"item_{index}_quantity"] = "Quantity must be at least 1"
            continue
        price = to_decimal(line.unit_price)
        if price < 0:
            errors[f"item_{index}_price"] = "Price cannot be negative"
            continue
        subtotal += money(price * line.quantity)

    if data.items and "items" not in errors and subtotal <= 0:
        errors["subtotal"] = "Subtotal must be greater than zero"
    if data.minimum_order is not None and to_decimal(data.minimum_order) > 0 and subtotal < to_decimal(data.minimum_order):
        errors["subtotal"] = f"Minimum order amount is {money(data.minimum_order)}"

    address = (data.delivery_address or "").strip()
    if not address:
        errors["delivery_address"] = "Delivery address is required"
    elif len(address) < MIN_ADDRESS_LENGTH:
        errors["delivery_address"] = "Please provide a more detailed address"

    fee = to_decimal(data.delivery_fee)
    if fee < MIN_DELIVERY_FEE or fee > MAX_DELIVERY_FEE:
        errors["delivery_fee"] = f"Delivery fee must be between {MIN_DELIVERY_FEE} and {MAX_DELIVERY_FEE}"

    if data.customer_notes and len(data.customer_notes) > MAX_NOTES_LENGTH:
        errors["customer_notes"] = f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"

    if isinstance(data.points_to_use, bool) or not isinstance(data.points_to_use, int) or data.points_to_use < 0:
        errors["points_to_use"] = "Points to use must be a non-negative whole number"

    if errors:
        raise ValidationError("Invalid order", details=errors)
    return money(subtotal)


class OrderPlacementService:
    def __init__(
        self,
        db: Session,
        *,
        settings: Settings | None = None,
        clock: Clock = system_clock,
        locks: KeyedLocks = entity_locks,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.locks = locks
        self.orders = SqlOrderRepository(db, clock=clock, locks=locks)
        self.ledger = PointsLedger(db, settings=self.settings, clock=clock, locks=locks)

    def _build_order(self, data: PlaceOrderInput, subtotal: Decimal) -> tuple[Order, list[OrderItem]]:
        rate = validate_commission_rate(
            data.commission_rate if data.commission_rate is not None else self.settings.default_commission_rate
        )
        fee = money(data.delivery_fee)
        commission = shop_commission(subtotal, rate)
        free_delivery_cost = fee if data.is_free_delivery else ZERO
        points_discount = discount_value(data.points_to_use)

        if not can_apply_discount(commission, points_discount + free_delivery_cost):
            raise BusinessRuleError(
                "Discounts exceed the commission on this order",
                details={
                    "shop_commission": str(commission),
                    "points_discount": str(points_discount),
                    "free_delivery_cost": str(free_delivery_cost),
                },
            )

        charged_fee = ZERO if data.is_free_delivery else fee
        total = subtotal + charged_fee - points_discount
        order = Order(
            customer_id=data.customer_id,
            shop_id=data.shop_id,
            subtotal=subtotal,
            delivery_fee=fee,
            is_free_delivery=bool(data.is_free_delivery),
            points_used=data.points_to_use,
            points_discount=points_discount,
            total_amount=money(total if total > 0 else ZERO),
            commission_rate=rate,
            shop_commission=commission,
            admin_commission=platform_commission(commission, points_discount, free_delivery_cost),
            points_earned=points_earned_for(subtotal),
            cash_collected=False,
            cash_to_shop=False,
            shop_confirmed_cash=False,
            status=OrderStatus.PENDING.value,
            delivery_address=data.delivery_address.strip(),
            customer_notes=(data.customer_notes or "").strip() or None,
            created_at=self.clock.now_utc(),
        )
        items = [
            OrderItem(
                product_id=line.product_id,
                name=line.name.strip(),
                quantity=line.quantity,
                unit_price=money(line.unit_price),
                subtotal=money(to_decimal(line.unit_price) * line.quantity),
            )
            for line in data.items
        ]
        return order, items

    def place_order(self, data: PlaceOrderInput) -> Result[Order]:
        def _place() -> Order:
            subtotal = validate_order_input(data)
            order, items = self._build_order(data, subtotal)
            order = self.orders.create_order(order, items).unwrap()
            if data.points_to_use:
                # o resgate é limitado pela comissão já descontada a entrega grátis
                available_commission = platform_commission(
                    order.shop_commission, 0, order.delivery_fee if order.is_free_delivery else 0
                )
                self.ledger.apply_redemption(order.customer_id, order.id, data.points_to_use, available_commission)
            logger.info(
                "[ORDER] placed %s subtotal=%s total=%s",
                order.order_number,
                order.subtotal,
                order.total_amount,
                extra={"order_id": order.id, "customer_id": order.customer_id},
            )
            return order

        with self.locks.hold(customer_key(data.customer_id)):
            result = run_operation(self.db, "orders.place", _place)

        if result.ok:
            emit_order_created(result.value)
        return result
