"""Commission arithmetic for a single order.

Pure functions: no session, no clock. Money is ``Decimal`` quantized to cents.
The shop's earnings depend only on subtotal and commission; points and
free-delivery subsidies are taken out of the platform's share.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from marketplace.core.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

DEFAULT_COMMISSION_RATE = Decimal("0.10")
MIN_COMMISSION_RATE = Decimal("0.05")
MAX_COMMISSION_RATE = Decimal("0.30")


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Not a monetary amount: {value!r}") from exc


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def shop_commission(subtotal, rate) -> Decimal:
    subtotal = to_decimal(subtotal)
    rate = to_decimal(rate)
    if subtotal <= 0 or rate <= 0:
        return ZERO
    return money(subtotal * rate)


def platform_commission(shop_commission, points_discount=0, free_delivery_cost=0) -> Decimal:
    net = to_decimal(shop_commission) - to_decimal(points_discount) - to_decimal(free_delivery_cost)
    if net <= 0:
        return ZERO
    return money(net)


def shop_earnings(subtotal, shop_commission) -> Decimal:
    return money(to_decimal(subtotal) - to_decimal(shop_commission))


def can_apply_discount(shop_commission, total_discount) -> bool:
    """Guard run before attaching a points redemption or free delivery to an order."""
    return to_decimal(total_discount) <= to_decimal(shop_commission)


def validate_commission_rate(rate) -> Decimal:
    value = to_decimal(rate)
    if value < MIN_COMMISSION_RATE or value > MAX_COMMISSION_RATE:
        raise ValidationError(
            f"Commission rate must be between {MIN_COMMISSION_RATE} and {MAX_COMMISSION_RATE}",
            details={"commission_rate": str(value)},
        )
    return value


@dataclass(frozen=True)
class CommissionBreakdown:
    subtotal: Decimal
    commission_rate: Decimal
    shop_commission: Decimal
    points_discount: Decimal
    free_delivery_cost: Decimal
    platform_commission: Decimal
    shop_earnings: Decimal

    @property
    def total_deductions(self) -> Decimal:
        return money(self.points_discount + self.free_delivery_cost)

    def to_dict(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "commission_rate": str(self.commission_rate),
            "shop_commission": str(self.shop_commission),
            "points_discount": str(self.points_discount),
            "free_delivery_cost": str(self.free_delivery_cost),
            "platform_commission": str(self.platform_commission),
            "shop_earnings": str(self.shop_earnings),
        }


def calculate_breakdown(subtotal, rate, points_discount=0, free_delivery_cost=0) -> CommissionBreakdown:
    commission = shop_commission(subtotal, rate)
    return CommissionBreakdown(
        subtotal=money(subtotal),
        commission_rate=to_decimal(rate),
        shop_commission=commission,
        points_discount=money(points_discount),
        free_delivery_cost=money(free_delivery_cost),
        platform_commission=platform_commission(commission, points_discount, free_delivery_cost),
        shop_earnings=shop_earnings(subtotal, commission),
    )
