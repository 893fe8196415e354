"""Order status values and the transition table that governs them.

The enum carries data only; every rule about which status may follow which
lives in the module-level table so it can be inspected and tested on its own.
"""
from __future__ import annotations

from datetime import timedelta
from enum import Enum

from marketplace.core.errors import ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    PICKED_UP = "picked_up"
    SHOP_PAID = "shop_paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


INITIAL_STATUS = OrderStatus.PENDING
TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.PICKED_UP, OrderStatus.CANCELLED}),
    # goods are out for delivery from here on: no cancellation
    OrderStatus.PICKED_UP: frozenset({OrderStatus.SHOP_PAID}),
    OrderStatus.SHOP_PAID: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Order column stamped when the status is entered.
TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "created_at",
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.SHOP_PAID: "shop_paid_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

_RIDER_STATUSES = frozenset(
    {
        OrderStatus.ACCEPTED,
        OrderStatus.PREPARING,
        OrderStatus.PICKED_UP,
        OrderStatus.SHOP_PAID,
    }
)

_TIMEOUTS: dict[OrderStatus, timedelta | None] = {
    OrderStatus.PENDING: timedelta(minutes=10),
    OrderStatus.ACCEPTED: timedelta(minutes=30),
    OrderStatus.PREPARING: timedelta(hours=1),
    OrderStatus.PICKED_UP: timedelta(hours=2),
    OrderStatus.SHOP_PAID: timedelta(minutes=30),
    OrderStatus.COMPLETED: None,
    OrderStatus.CANCELLED: None,
}

_ALIASES = {
    "pickedup": OrderStatus.PICKED_UP,
    "picked_up": OrderStatus.PICKED_UP,
    "shoppaid": OrderStatus.SHOP_PAID,
    "shop_paid": OrderStatus.SHOP_PAID,
}


def allowed_transitions(current: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS[current]


def can_transition_to(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_be_cancelled(status: OrderStatus) -> bool:
    return OrderStatus.CANCELLED in TRANSITIONS[status]


def requires_rider(status: OrderStatus) -> bool:
    return status in _RIDER_STATUSES


def timeout_for(status: OrderStatus) -> timedelta | None:
    """How long an order may sit in ``status`` before it is considered stuck."""
    return _TIMEOUTS[status]


def timestamp_field(status: OrderStatus) -> str:
    return TIMESTAMP_FIELDS[status]


def reached_statuses(status: OrderStatus) -> list[OrderStatus]:
    """Statuses an order must have passed through to be in ``status``.

    For ``cancelled`` the path is unknown from the status alone, so only the
    initial status is returned.
    """
    if status == OrderStatus.CANCELLED:
        return [OrderStatus.PENDING]
    path = [OrderStatus.PENDING]
    while path[-1] != status:
        forward = [s for s in TRANSITIONS[path[-1]] if s != OrderStatus.CANCELLED]
        if not forward:
            break
        path.append(forward[0])
    return path


def parse_status(value: str | OrderStatus | None) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    normalized = (value or "").strip()
    try:
        return OrderStatus(normalized.lower())
    except ValueError:
        alias = _ALIASES.get(normalized.replace("-", "_").lower())
        if alias is not None:
            return alias
    raise ValidationError(
        f"Unknown order status: {value!r}",
        details={"status": value, "allowed": [s.value for s in OrderStatus]},
    )
