from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from marketplace.core.errors import BusinessRuleError, EngineError, ValidationError
from marketplace.core.result import Result
from marketplace.models.points import PointsTransactionType
from marketplace.services.commission import ZERO, money, to_decimal

# 100 unidades de moeda -> 1 ponto; 1 ponto -> 1 unidade de desconto
CURRENCY_PER_POINT_EARNED = Decimal("100")
POINT_VALUE = Decimal("1.0")
REFERRAL_BONUS_POINTS = 2


def points_earned_for(subtotal) -> int:
    value = to_decimal(subtotal)
    if value <= 0:
        return 0
    return int((value / CURRENCY_PER_POINT_EARNED).to_integral_value(rounding=ROUND_FLOOR))


def discount_value(points: int) -> Decimal:
    if points <= 0:
        return ZERO
    return money(Decimal(points) * POINT_VALUE)


def max_redeemable_points(available: int, platform_commission) -> int:
    """Largest redemption that cannot push the platform commission below zero."""
    by_commission = int((to_decimal(platform_commission) / POINT_VALUE).to_integral_value(rounding=ROUND_FLOOR))
    return max(0, min(available, by_commission))


def check_redemption(points_to_use: int, available: int, platform_commission) -> Decimal:
    if isinstance(points_to_use, bool) or not isinstance(points_to_use, int):
        raise ValidationError("Points to redeem must be a whole number", details={"points": points_to_use})
    if points_to_use <= 0:
        raise ValidationError("Points to redeem must be positive", details={"points": points_to_use})
    if points_to_use > available:
        raise BusinessRuleError(
            "Not enough points",
            details={"points": points_to_use, "available": available},
        )
    value = discount_value(points_to_use)
    if value > to_decimal(platform_commission):
        raise BusinessRuleError(
            "Points discount exceeds the platform commission",
            details={
                "points": points_to_use,
                "discount": str(value),
                "platform_commission": str(money(platform_commission)),
                "max_redeemable": max_redeemable_points(available, platform_commission),
            },
        )
    return value


def validate_redemption(points_to_use: int, available: int, platform_commission) -> Result[Decimal]:
    try:
        return Result.success(check_redemption(points_to_use, available, platform_commission))
    except EngineError as exc:
        return Result.failure(exc)


@dataclass(frozen=True)
class LedgerEntry:
    """A ledger line before it is sequenced and persisted."""

    customer_id: int
    type: PointsTransactionType
    points: int
    order_id: int | None = None
    description: str | None = None


def earned_entry(customer_id: int, order_id: int, points: int) -> LedgerEntry:
    return LedgerEntry(customer_id, PointsTransactionType.EARNED, points, order_id, f"Order {order_id} completed")


def redeemed_entry(customer_id: int, order_id: int | None, points: int) -> LedgerEntry:
    return LedgerEntry(customer_id, PointsTransactionType.REDEEMED, -points, order_id, "Points redeemed")


def referral_entry(referrer_id: int, referred_customer_id: int, order_id: int, points: int = REFERRAL_BONUS_POINTS) -> LedgerEntry:
    return LedgerEntry(
        referrer_id,
        PointsTransactionType.REFERRAL,
        points,
        order_id,
        f"Referral bonus for customer {referred_customer_id}",
    )


def adjustment_entry(customer_id: int, points: int, reason: str, order_id: int | None = None) -> LedgerEntry:
    return LedgerEntry(customer_id, PointsTransactionType.ADJUSTMENT, points, order_id, reason)
