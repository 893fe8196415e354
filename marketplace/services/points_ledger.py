"""Customer loyalty-points ledger.

The ledger is append-only. A customer's balance is always the sum of their
entries; there is no cached counter to drift from it. Methods that return a
``Result`` are complete operations (lock, transaction, commit). The plain
methods (``record``, ``apply_redemption``, ``credit_earned``,
``refund_redemption``) write inside the caller's unit of work and expect the
caller to hold the customer's lock.
"""
from __future__ import annotations

import logging

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, system_clock
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import BusinessRuleError, NotFoundError, ValidationError
from marketplace.core.locks import KeyedLocks, customer_key, entity_locks
from marketplace.core.result import Result
from marketplace.fsm.order_status import OrderStatus
from marketplace.models.order import Order
from marketplace.models.points import PointsTransaction, Referral
from marketplace.services.operations import run_operation
from marketplace.services.points_rules import (
    LedgerEntry,
    adjustment_entry,
    check_redemption,
    earned_entry,
    redeemed_entry,
    referral_entry,
)

logger = logging.getLogger(__name__)


class PointsLedger:
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

    # =========================
    # Leitura
    # =========================
    def balance_for(self, customer_id: int) -> int:
        total = (
            self.db.query(func.coalesce(func.sum(PointsTransaction.points), 0))
            .filter(PointsTransaction.customer_id == customer_id)
            .scalar()
        )
        return int(total or 0)

    def history_for(self, customer_id: int) -> list[PointsTransaction]:
        return (
            self.db.query(PointsTransaction)
            .filter(PointsTransaction.customer_id == customer_id)
            .order_by(PointsTransaction.sequence.asc())
            .all()
        )

    def statement(self, customer_id: int) -> Result[tuple[int, list[PointsTransaction]]]:
        """Balance and history read together."""

        def _statement() -> tuple[int, list[PointsTransaction]]:
            return self.balance_for(customer_id), self.history_for(customer_id)

        return run_operation(self.db, "points.statement", _statement)

    def _has_earlier_completed_order(self, order: Order) -> bool:
        # empate no completed_at desempata pelo id
        earlier = (
            self.db.query(Order.id)
            .filter(
                Order.customer_id == order.customer_id,
                Order.status == OrderStatus.COMPLETED.value,
                Order.id != order.id,
                or_(
                    Order.completed_at < order.completed_at,
                    and_(Order.completed_at == order.completed_at, Order.id < order.id),
                ),
            )
            .first()
        )
        return earlier is not None

    def _next_sequence(self, customer_id: int) -> int:
        last = (
            self.db.query(func.max(PointsTransaction.sequence))
            .filter(PointsTransaction.customer_id == customer_id)
            .scalar()
        )
        return int(last or 0) + 1

    # =========================
    # Escrita (unidade de trabalho do chamador)
    # =========================
    def record(self, entry: LedgerEntry) -> PointsTransaction:
        if entry.points == 0:
            raise ValidationError("A ledger entry must move at least one point")
        balance = self.balance_for(entry.customer_id)
        balance_after = balance + entry.points
        if balance_after < 0:
            raise BusinessRuleError(
                "Points balance cannot go negative",
                details={"customer_id": entry.customer_id, "balance": balance, "points": entry.points},
            )
        transaction = PointsTransaction(
            customer_id=entry.customer_id,
            order_id=entry.order_id,
            type=entry.type.value,
            points=entry.points,
            balance_after=balance_after,
            sequence=self._next_sequence(entry.customer_id),
            description=entry.description,
            created_at=self.clock.now_utc(),
        )
        self.db.add(transaction)
        self.db.flush()
        logger.info(
            "[POINTS] %s %+d -> balance %d",
            entry.type.value,
            entry.points,
            balance_after,
            extra={"customer_id": entry.customer_id, "order_id": entry.order_id},
        )
        return transaction

    def apply_redemption(self, customer_id: int, order_id: int | None, points: int, platform_commission) -> PointsTransaction:
        available = self.balance_for(customer_id)
        check_redemption(points, available, platform_commission)
        return self.record(redeemed_entry(customer_id, order_id, points))

    def credit_earned(self, customer_id: int, order_id: int, points: int) -> PointsTransaction | None:
        if points <= 0:
            return None
        return self.record(earned_entry(customer_id, order_id, points))

    def refund_redemption(self, customer_id: int, order_id: int, points: int) -> PointsTransaction | None:
        if points <= 0:
            return None
        return self.record(
            adjustment_entry(customer_id, points, f"Refund of points used on cancelled order {order_id}", order_id)
        )

    # =========================
    # Operações completas
    # =========================
    def append_transaction(self, entry: LedgerEntry) -> Result[PointsTransaction]:
        with self.locks.hold(customer_key(entry.customer_id)):
            return run_operation(self.db, "points.append_transaction", lambda: self.record(entry))

    def redeem(self, customer_id: int, order_id: int | None, points: int, platform_commission) -> Result[PointsTransaction]:
        with self.locks.hold(customer_key(customer_id)):
            return run_operation(
                self.db,
                "points.redeem",
                lambda: self.apply_redemption(customer_id, order_id, points, platform_commission),
            )

    def adjust(self, customer_id: int, points: int, reason: str | None) -> Result[PointsTransaction]:
        def _adjust() -> PointsTransaction:
            cleaned = (reason or "").strip()
            if not cleaned:
                raise ValidationError("A reason is required for a points adjustment")
            if isinstance(points, bool) or not isinstance(points, int) or points == 0:
                raise ValidationError("Adjustment must be a non-zero whole number of points", details={"points": points})
            return self.record(adjustment_entry(customer_id, points, cleaned))

        with self.locks.hold(customer_key(customer_id)):
            return run_operation(self.db, "points.adjust", _adjust)

    def register_referral(self, referrer_id: int, referred_customer_id: int) -> Result[Referral]:
        def _register() -> Referral:
            if referrer_id == referred_customer_id:
                raise ValidationError("A customer cannot refer themselves")
            existing = self.db.query(Referral).filter(Referral.referred_customer_id == referred_customer_id).first()
            if existing:
                raise BusinessRuleError(
                    "Customer was already referred",
                    details={"referred_customer_id": referred_customer_id, "referrer_id": existing.referrer_id},
                )
            referral = Referral(
                referrer_id=referrer_id,
                referred_customer_id=referred_customer_id,
                created_at=self.clock.now_utc(),
            )
            self.db.add(referral)
            self.db.flush()
            logger.info("[POINTS] referral registered by %s", referrer_id, extra={"customer_id": referred_customer_id})
            return referral

        with self.locks.hold(customer_key(referred_customer_id)):
            return run_operation(self.db, "points.register_referral", _register)

    def award_referral_bonus(self, referred_customer_id: int, order_id: int) -> Result[PointsTransaction | None]:
        """Credit the referrer once, on the referred customer's first completed order.

        Returns ``None`` inside the result when there is nothing to award.
        """
        referral = self.db.query(Referral).filter(Referral.referred_customer_id == referred_customer_id).first()
        if referral is None:
            return Result.success(None)
        referrer_id = referral.referrer_id

        def _award() -> PointsTransaction | None:
            locked = (
                self.db.query(Referral)
                .filter(Referral.referred_customer_id == referred_customer_id)
                .with_for_update()
                .one()
            )
            if locked.bonus_awarded_at is not None:
                return None
            order = self.db.query(Order).filter(Order.id == order_id).first()
            if order is None:
                raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
            if order.customer_id != referred_customer_id or order.status != OrderStatus.COMPLETED.value:
                raise BusinessRuleError(
                    "Referral bonus needs a completed order of the referred customer",
                    details={"order_id": order_id, "status": order.status},
                )
            if self._has_earlier_completed_order(order):
                logger.info(
                    "[POINTS] referral bonus skipped, order %s is not the first completed order",
                    order_id,
                    extra={"customer_id": referred_customer_id},
                )
                return None
            transaction = self.record(
                referral_entry(referrer_id, referred_customer_id, order_id, self.settings.referral_bonus_points)
            )
            locked.bonus_order_id = order_id
            locked.bonus_awarded_at = self.clock.now_utc()
            return transaction

        with self.locks.hold(customer_key(referrer_id), customer_key(referred_customer_id)):
            return run_operation(self.db, "points.award_referral_bonus", _award)
