"""Side-effecting order status transitions.

Every transition runs under the order's and the customer's lock, inside one
database transaction: status, lifecycle stamp, cash flags and the matching
ledger entry are committed together or not at all. Events go out only after
the commit.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, as_utc, system_clock
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import BusinessRuleError, NotFoundError, ValidationError
from marketplace.core.locks import KeyedLocks, customer_key, entity_locks, order_key
from marketplace.core.result import Result
from marketplace.fsm.order_status import (
    TERMINAL_STATUSES,
    OrderStatus,
    parse_status,
    requires_rider,
    timeout_for,
    timestamp_field,
)
from marketplace.models.order import Order
from marketplace.services.operations import run_operation
from marketplace.services.order_events import emit_order_status_changed
from marketplace.services.order_repository import SqlOrderRepository
from marketplace.services.points_ledger import PointsLedger

logger = logging.getLogger(__name__)

_RIDER_ASSIGNABLE = frozenset({OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.PREPARING})


class OrderLifecycleService:
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

    def _customer_of(self, order_id: int) -> int | None:
        row = self.db.query(Order.customer_id).filter(Order.id == order_id).first()
        return row[0] if row else None

    def _apply_effects(self, order: Order, target: OrderStatus, reason: str | None) -> None:
        if target == OrderStatus.SHOP_PAID:
            order.cash_collected = True
            order.cash_to_shop = True
        elif target == OrderStatus.COMPLETED:
            order.shop_confirmed_cash = True
            self.ledger.credit_earned(order.customer_id, order.id, int(order.points_earned or 0))
        elif target == OrderStatus.CANCELLED:
            order.cancellation_reason = (reason or "").strip() or None
            self.ledger.refund_redemption(order.customer_id, order.id, int(order.points_used or 0))

    def transition(
        self,
        order_id: int,
        target: str | OrderStatus,
        *,
        rider_id: int | None = None,
        reason: str | None = None,
    ) -> Result[Order]:
        customer_id = self._customer_of(order_id)
        if customer_id is None:
            return Result.failure(NotFoundError(f"Order {order_id} not found", details={"order_id": order_id}))

        previous: dict[str, str] = {}

        def _transition() -> Order:
            target_status = parse_status(target)
            order = self.orders.fetch(order_id, for_update=True)
            previous["status"] = order.status
            if rider_id is not None and requires_rider(target_status) and rider_id != order.rider_id:
                current = OrderStatus(order.status)
                if current not in _RIDER_ASSIGNABLE:
                    raise BusinessRuleError(
                        f"Cannot change the rider of an order in status {current.value}",
                        details={"order_id": order_id, "status": current.value, "rider_id": rider_id},
                    )
                order.rider_id = rider_id
            self.orders.update_status(order_id, target_status).unwrap()
            if target_status == OrderStatus.PICKED_UP and order.rider_id is None:
                raise BusinessRuleError(
                    "A rider must be assigned before pickup",
                    details={"order_id": order_id},
                )
            self._apply_effects(order, target_status, reason)
            return order

        with self.locks.hold(order_key(order_id), customer_key(customer_id)):
            result = run_operation(self.db, "orders.transition", _transition)

        if result.ok:
            emit_order_status_changed(result.value, previous.get("status"))
        return result

    # =========================
    # Atalhos por ator
    # =========================
    def accept(self, order_id: int) -> Result[Order]:
        return self.transition(order_id, OrderStatus.ACCEPTED)

    def mark_preparing(self, order_id: int) -> Result[Order]:
        return self.transition(order_id, OrderStatus.PREPARING)

    def mark_picked_up(self, order_id: int, rider_id: int | None = None) -> Result[Order]:
        return self.transition(order_id, OrderStatus.PICKED_UP, rider_id=rider_id)

    def mark_delivered(self, order_id: int) -> Result[Order]:
        """Rider handed the goods over and collected the cash."""
        return self.transition(order_id, OrderStatus.SHOP_PAID)

    def confirm_cash_received(self, order_id: int) -> Result[Order]:
        return self.transition(order_id, OrderStatus.COMPLETED)

    def cancel(self, order_id: int, reason: str | None = None) -> Result[Order]:
        return self.transition(order_id, OrderStatus.CANCELLED, reason=reason)

    def assign_rider(self, order_id: int, rider_id: int) -> Result[Order]:
        def _assign() -> Order:
            if rider_id is None or rider_id <= 0:
                raise ValidationError("Invalid rider id", details={"rider_id": rider_id})
            order = self.orders.fetch(order_id, for_update=True)
            status = OrderStatus(order.status)
            if status not in _RIDER_ASSIGNABLE:
                raise BusinessRuleError(
                    f"Cannot assign a rider to an order in status {status.value}",
                    details={"order_id": order_id, "status": status.value},
                )
            order.rider_id = rider_id
            self.db.flush()
            logger.info("[ORDER] rider %s assigned", rider_id, extra={"order_id": order_id})
            return order

        with self.locks.hold(order_key(order_id)):
            return run_operation(self.db, "orders.assign_rider", _assign)

    def overdue_orders(self, now: datetime | None = None) -> Result[list[Order]]:
        """Open orders that sat in their current status longer than its timeout."""
        moment = as_utc(now) or self.clock.now_utc()

        def _overdue() -> list[Order]:
            open_orders = (
                self.db.query(Order)
                .filter(Order.status.notin_([s.value for s in TERMINAL_STATUSES]))
                .order_by(Order.id.asc())
                .all()
            )
            overdue = []
            for order in open_orders:
                status = OrderStatus(order.status)
                limit = timeout_for(status)
                entered = as_utc(getattr(order, timestamp_field(status)))
                if limit is not None and entered is not None and moment - entered > limit:
                    overdue.append(order)
            return overdue

        return run_operation(self.db, "orders.overdue", _overdue)
