from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from marketplace.core import database
from marketplace.services.event_bus import event_bus
from marketplace.services.points_ledger import PointsLedger

logger = logging.getLogger(__name__)


def _with_session(handler):
    def wrapper(payload: dict) -> None:
        db: Session = database.SessionLocal()
        try:
            handler(db, payload)
        finally:
            db.close()

    wrapper.__name__ = handler.__name__
    return wrapper


@_with_session
def handle_order_completed(db: Session, payload: dict) -> None:
    result = PointsLedger(db).award_referral_bonus(payload["customer_id"], payload["order_id"])
    if not result.ok:
        logger.warning(
            "[POINTS] referral bonus not awarded: %s",
            result.error.message,
            extra={"order_id": payload["order_id"], "customer_id": payload["customer_id"], "error_code": result.error.code},
        )


def handle_period_closed(payload: dict) -> None:
    logger.info(
        "[SETTLEMENT] period %s closed with %s shop and %s rider settlements; next period %s",
        payload.get("label"),
        payload.get("shop_settlements"),
        payload.get("rider_settlements"),
        payload.get("next_period_id"),
        extra={"period_id": payload.get("period_id")},
    )


def register_handlers() -> None:
    event_bus.subscribe("order.completed", handle_order_completed)
    event_bus.subscribe("period.closed", handle_period_closed)


register_handlers()
