from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, as_utc, system_clock
from marketplace.core.errors import BusinessRuleError, NotFoundError
from marketplace.core.locks import KeyedLocks, entity_locks, order_key
from marketplace.core.result import Result
from marketplace.fsm.order_status import (
    TIMESTAMP_FIELDS,
    OrderStatus,
    allowed_transitions,
    can_transition_to,
    parse_status,
    timestamp_field,
)
from marketplace.models.order import Order
from marketplace.models.order_item import OrderItem
from marketplace.models.weekly_period import WeeklyPeriod
from marketplace.services.operations import run_operation

logger = logging.getLogger(__name__)


def build_order_number(created_at: datetime, order_id: int) -> str:
    return f"ORD-{created_at:%Y%m%d}-{order_id}"


def latest_stamp(order: Order) -> datetime | None:
    stamps = [as_utc(getattr(order, name)) for name in TIMESTAMP_FIELDS.values() if getattr(order, name) is not None]
    return max(stamps) if stamps else None


class SqlOrderRepository:
    """Order persistence.

    ``update_status`` only validates the move against the transition table
    and stamps the lifecycle timestamp; ``OrderLifecycleService`` layers the
    cash and points side effects on top of it.
    """

    def __init__(self, db: Session, *, clock: Clock = system_clock, locks: KeyedLocks = entity_locks) -> None:
        self.db = db
        self.clock = clock
        self.locks = locks

    def fetch(self, order_id: int, *, for_update: bool = False) -> Order:
        query = self.db.query(Order).filter(Order.id == order_id)
        if for_update:
            query = query.with_for_update()
        order = query.first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        return order

    def stamp_status(self, order: Order, target: OrderStatus) -> Order:
        current = OrderStatus(order.status)
        if not can_transition_to(current, target):
            raise BusinessRuleError(
                f"Cannot move order from {current.value} to {target.value}",
                details={
                    "order_id": order.id,
                    "current": current.value,
                    "target": target.value,
                    "allowed": sorted(s.value for s in allowed_transitions(current)),
                },
            )
        field = timestamp_field(target)
        if getattr(order, field) is not None:
            raise BusinessRuleError(f"Order {order.id} was already stamped {field}")

        now = self.clock.now_utc()
        previous = latest_stamp(order)
        # nunca retroagir: relógio atrasado usa o último carimbo
        if previous is not None and now < previous:
            now = previous
        setattr(order, field, now)
        order.status = target.value
        self.db.flush()
        logger.info(
            "[ORDER] %s -> %s",
            current.value,
            target.value,
            extra={"order_id": order.id, "customer_id": order.customer_id},
        )
        return order

    def attributable_orders(self, start: datetime, end: datetime) -> list[Order]:
        """Terminal orders whose terminal stamp falls inside the window and
        that no closed period has claimed yet.

        The window runs up to the next period's start, so fractions of the
        last second still belong to it.
        """
        start = as_utc(start)
        end = as_utc(end) + timedelta(seconds=1)
        return (
            self.db.query(Order)
            .filter(
                Order.weekly_period_id.is_(None),
                or_(
                    and_(
                        Order.status == OrderStatus.COMPLETED.value,
                        Order.completed_at >= start,
                        Order.completed_at < end,
                    ),
                    and_(
                        Order.status == OrderStatus.CANCELLED.value,
                        Order.cancelled_at >= start,
                        Order.cancelled_at < end,
                    ),
                ),
            )
            .order_by(Order.id.asc())
            .all()
        )

    # =========================
    # Operações
    # =========================
    def create_order(self, order: Order, items: Iterable[OrderItem] = ()) -> Result[Order]:
        def _create() -> Order:
            if order.created_at is None:
                order.created_at = self.clock.now_utc()
            if order.status is None:
                order.status = OrderStatus.PENDING.value
            self.db.add(order)
            for item in items:
                order.order_items.append(item)
            self.db.flush()
            order.order_number = build_order_number(as_utc(order.created_at), order.id)
            self.db.flush()
            return order

        return run_operation(self.db, "orders.create", _create)

    def get(self, order_id: int) -> Result[Order]:
        return run_operation(self.db, "orders.get", lambda: self.fetch(order_id))

    def update_status(self, order_id: int, new_status: str | OrderStatus) -> Result[Order]:
        def _update() -> Order:
            target = parse_status(new_status)
            order = self.fetch(order_id, for_update=True)
            return self.stamp_status(order, target)

        with self.locks.hold(order_key(order_id)):
            return run_operation(self.db, "orders.update_status", _update)

    def list_orders_for_period(self, period_id: int) -> Result[list[Order]]:
        def _list() -> list[Order]:
            period = self.db.query(WeeklyPeriod).filter(WeeklyPeriod.id == period_id).first()
            if period is None:
                raise NotFoundError(f"Period {period_id} not found", details={"period_id": period_id})
            claimed = (
                self.db.query(Order)
                .filter(Order.weekly_period_id == period.id)
                .order_by(Order.id.asc())
                .all()
            )
            if claimed:
                return claimed
            return self.attributable_orders(period.start_date, period.end_date)

        return run_operation(self.db, "orders.list_for_period", _list)
