"""Weekly settlement periods: boundaries and the active -> closed -> settled lifecycle.

A period runs Saturday 00:00 to Friday 23:59:59 at a fixed UTC offset (no
daylight saving). Boundaries are stored as UTC instants. Every caller, the
manager and reporting alike, derives boundaries from ``week_period_for_date``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.orm import Session

from marketplace.core.clock import Clock, as_utc, system_clock
from marketplace.core.config import Settings, get_settings
from marketplace.core.errors import BusinessRuleError, NotFoundError, ValidationError
from marketplace.core.locks import PERIOD_CLOSE_KEY, KeyedLocks, entity_locks
from marketplace.core.result import Result
from marketplace.models.settlement import RiderSettlement, ShopSettlement
from marketplace.models.weekly_period import PeriodStatus, WeeklyPeriod
from marketplace.services.ads_source import AdsSource, SqlAdsSource
from marketplace.services.operations import run_operation
from marketplace.services.order_events import emit_period_closed
from marketplace.services.order_repository import SqlOrderRepository
from marketplace.services.settlement import PeriodSummary, SettlementStore, aggregate_period, summarize_period

logger = logging.getLogger(__name__)

DEFAULT_UTC_OFFSET_HOURS = 2
_LAST_SECOND = timedelta(days=6, hours=23, minutes=59, seconds=59)


def settlement_timezone(offset_hours: int = DEFAULT_UTC_OFFSET_HOURS) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def week_period_for_date(moment: datetime | date, offset_hours: int = DEFAULT_UTC_OFFSET_HOURS) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the settlement week containing ``moment``.

    Naive datetimes are read as UTC; a bare ``date`` is read as that local
    calendar day. Both bounds are returned in the settlement offset.
    """
    tz = settlement_timezone(offset_hours)
    if isinstance(moment, datetime):
        local_day = (as_utc(moment)).astimezone(tz).date()
    else:
        local_day = moment
    # weekday(): segunda=0 ... sábado=5, então sábado vira deslocamento 0
    days_back = (local_day.weekday() + 2) % 7
    start = datetime.combine(local_day - timedelta(days=days_back), time.min, tzinfo=tz)
    return start, start + _LAST_SECOND


def week_number_for(start: datetime) -> tuple[int, int]:
    """ISO ``(year, week)`` of the period's Friday, used as its display label."""
    friday = (start + timedelta(days=6)).date()
    iso = friday.isocalendar()
    return iso[0], iso[1]


def local_date_range(period: WeeklyPeriod, offset_hours: int = DEFAULT_UTC_OFFSET_HOURS) -> tuple[date, date]:
    tz = settlement_timezone(offset_hours)
    return as_utc(period.start_date).astimezone(tz).date(), as_utc(period.end_date).astimezone(tz).date()


@dataclass(frozen=True)
class CloseReport:
    period: WeeklyPeriod
    next_period: WeeklyPeriod
    shop_settlements: list[ShopSettlement]
    rider_settlements: list[RiderSettlement]
    orders_aggregated: int
    summary: PeriodSummary


class WeeklyPeriodManager:
    def __init__(
        self,
        db: Session,
        *,
        settings: Settings | None = None,
        clock: Clock = system_clock,
        locks: KeyedLocks = entity_locks,
        ads: AdsSource | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.locks = locks
        self.ads = ads or SqlAdsSource(db)
        self.orders = SqlOrderRepository(db, clock=clock, locks=locks)
        self.settlements = SettlementStore(db, clock=clock, locks=locks)

    @property
    def offset_hours(self) -> int:
        return self.settings.settlement_utc_offset_hours

    def bounds_for(self, moment: datetime | date) -> tuple[datetime, datetime]:
        return week_period_for_date(moment, self.offset_hours)

    def _new_period(self, start: datetime) -> WeeklyPeriod:
        tz = settlement_timezone(self.offset_hours)
        local_start = start.astimezone(tz)
        year, week = week_number_for(local_start)
        period = WeeklyPeriod(
            year=year,
            week_number=week,
            start_date=local_start.astimezone(timezone.utc),
            end_date=(local_start + _LAST_SECOND).astimezone(timezone.utc),
            status=PeriodStatus.ACTIVE.value,
            created_at=self.clock.now_utc(),
        )
        self.db.add(period)
        self.db.flush()
        logger.info("[PERIOD] opened %s", period.label, extra={"period_id": period.id})
        return period

    def _active_periods(self, *, for_update: bool = False) -> list[WeeklyPeriod]:
        query = self.db.query(WeeklyPeriod).filter(WeeklyPeriod.status == PeriodStatus.ACTIVE.value)
        if for_update:
            query = query.with_for_update()
        return query.order_by(WeeklyPeriod.start_date.asc()).all()

    def _fetch(self, period_id: int, *, for_update: bool = False) -> WeeklyPeriod:
        query = self.db.query(WeeklyPeriod).filter(WeeklyPeriod.id == period_id)
        if for_update:
            query = query.with_for_update()
        period = query.first()
        if period is None:
            raise NotFoundError(f"Period {period_id} not found", details={"period_id": period_id})
        return period

    # =========================
    # Consultas
    # =========================
    def ensure_active_period(self) -> Result[WeeklyPeriod]:
        def _ensure() -> WeeklyPeriod:
            active = self._active_periods(for_update=True)
            if active:
                return active[0]
            if self.db.query(WeeklyPeriod.id).first() is not None:
                raise BusinessRuleError("No active period; close and reopen the periods in order")
            start, _ = self.bounds_for(self.clock.now_utc())
            return self._new_period(start)

        with self.locks.hold(PERIOD_CLOSE_KEY):
            return run_operation(self.db, "periods.ensure_active", _ensure)

    def current_period(self) -> Result[WeeklyPeriod]:
        def _current() -> WeeklyPeriod:
            active = self._active_periods()
            if not active:
                raise NotFoundError("There is no active period")
            return active[0]

        return run_operation(self.db, "periods.current", _current)

    def get_period(self, period_id: int) -> Result[WeeklyPeriod]:
        return run_operation(self.db, "periods.get", lambda: self._fetch(period_id))

    def list_periods(self, status: str | None = None) -> Result[list[WeeklyPeriod]]:
        def _list() -> list[WeeklyPeriod]:
            query = self.db.query(WeeklyPeriod)
            if status:
                try:
                    wanted = PeriodStatus(status.strip().lower())
                except ValueError as exc:
                    raise ValidationError(f"Unknown period status: {status!r}") from exc
                query = query.filter(WeeklyPeriod.status == wanted.value)
            return query.order_by(WeeklyPeriod.start_date.desc()).all()

        return run_operation(self.db, "periods.list", _list)

    # =========================
    # Fechamento
    # =========================
    def _close(self, period: WeeklyPeriod, closed_by: str | None) -> CloseReport:
        if period.status != PeriodStatus.ACTIVE.value:
            raise BusinessRuleError(
                f"Period {period.id} is already {period.status}",
                details={"period_id": period.id, "status": period.status},
            )
        now = self.clock.now_utc()
        period_end = as_utc(period.end_date)
        if now <= period_end:
            raise BusinessRuleError(
                "Period has not ended yet",
                details={"period_id": period.id, "end_date": period_end.isoformat()},
            )

        orders = self.orders.attributable_orders(period.start_date, period.end_date)
        first_day, last_day = local_date_range(period, self.offset_hours)
        ads = self.ads.active_ads_between(first_day, last_day)
        aggregation = aggregate_period(orders, ads, first_day, last_day)
        shops, riders = self.settlements.write_records(period, aggregation)

        for order in orders:
            order.weekly_period_id = period.id
        period.status = PeriodStatus.CLOSED.value
        period.closed_at = now
        period.closed_by = closed_by
        self.db.flush()

        next_period = self._new_period(period_end + timedelta(seconds=1))
        summary = summarize_period(period.id, shops, riders, aggregation.points_redeemed)
        logger.info(
            "[SETTLEMENT] closed %s: %d orders, %d shops, %d riders",
            period.label,
            len(orders),
            len(shops),
            len(riders),
            extra={"period_id": period.id},
        )
        return CloseReport(
            period=period,
            next_period=next_period,
            shop_settlements=shops,
            rider_settlements=riders,
            orders_aggregated=len(orders),
            summary=summary,
        )

    def _announce(self, result: Result[CloseReport]) -> Result[CloseReport]:
        if result.ok:
            report = result.value
            emit_period_closed(
                report.period,
                report.next_period,
                shop_count=len(report.shop_settlements),
                rider_count=len(report.rider_settlements),
            )
        return result

    def close_current_period(self, closed_by: str | None = None) -> Result[CloseReport]:
        def _close_current() -> CloseReport:
            active = self._active_periods(for_update=True)
            if len(active) != 1:
                raise BusinessRuleError(
                    "Closing requires exactly one active period",
                    details={"active_periods": [p.id for p in active]},
                )
            return self._close(active[0], closed_by)

        with self.locks.hold(PERIOD_CLOSE_KEY):
            result = run_operation(self.db, "periods.close", _close_current)
        return self._announce(result)

    def close_period(self, period_id: int, closed_by: str | None = None) -> Result[CloseReport]:
        """Close a specific period; an already closed or settled one is refused."""

        def _close_one() -> CloseReport:
            period = self._fetch(period_id, for_update=True)
            return self._close(period, closed_by)

        with self.locks.hold(PERIOD_CLOSE_KEY):
            result = run_operation(self.db, "periods.close", _close_one)
        return self._announce(result)

    def settle_period(self, period_id: int) -> Result[WeeklyPeriod]:
        def _settle() -> WeeklyPeriod:
            period = self._fetch(period_id, for_update=True)
            if period.status != PeriodStatus.CLOSED.value:
                raise BusinessRuleError(
                    f"Only a closed period can be settled (period is {period.status})",
                    details={"period_id": period.id, "status": period.status},
                )
            pending = self.settlements.pending_count(period.id)
            if pending:
                raise BusinessRuleError(
                    f"{pending} settlement(s) of this period are still pending",
                    details={"period_id": period.id, "pending": pending},
                )
            period.status = PeriodStatus.SETTLED.value
            period.settled_at = self.clock.now_utc()
            self.db.flush()
            logger.info("[SETTLEMENT] period %s settled", period.label, extra={"period_id": period.id})
            return period

        with self.locks.hold(PERIOD_CLOSE_KEY):
            return run_operation(self.db, "periods.settle", _settle)
