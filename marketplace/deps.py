# marketplace/deps.py
from __future__ import annotations

from typing import Optional, TypeVar

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, system_clock
from marketplace.core.config import Settings, get_settings
from marketplace.core.database import get_db
from marketplace.core.result import Result
from marketplace.services.order_lifecycle import OrderLifecycleService
from marketplace.services.order_placement import OrderPlacementService
from marketplace.services.order_repository import SqlOrderRepository
from marketplace.services.points_ledger import PointsLedger
from marketplace.services.settlement import SettlementStore
from marketplace.services.weekly_period import WeeklyPeriodManager

T = TypeVar("T")


def get_clock() -> Clock:
    return system_clock


def raise_for_failure(result: Result[T]) -> T:
    """Return the value of a successful result or raise the mapped HTTP error."""
    if result.ok:
        return result.value
    error = result.error
    raise HTTPException(status_code=error.status_code, detail=error.to_dict())


def get_actor_id(request: Request) -> Optional[str]:
    actor = request.headers.get("X-Actor-ID")
    return actor.strip() if actor and actor.strip() else None


def get_order_repository(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> SqlOrderRepository:
    return SqlOrderRepository(db, clock=clock)


def get_order_placement(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> OrderPlacementService:
    return OrderPlacementService(db, settings=settings, clock=clock)


def get_order_lifecycle(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> OrderLifecycleService:
    return OrderLifecycleService(db, settings=settings, clock=clock)


def get_points_ledger(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> PointsLedger:
    return PointsLedger(db, settings=settings, clock=clock)


def get_period_manager(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> WeeklyPeriodManager:
    return WeeklyPeriodManager(db, settings=settings, clock=clock)


def get_settlement_store(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> SettlementStore:
    return SettlementStore(db, clock=clock)
