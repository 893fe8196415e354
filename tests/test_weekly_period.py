from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from marketplace.core.clock import as_utc
from marketplace.core.errors import BusinessRuleError, NotFoundError, StorageError, ValidationError
from marketplace.models.ad import Ad
from marketplace.models.order import Order
from marketplace.models.settlement import RiderSettlement, ShopSettlement
from marketplace.models.weekly_period import WeeklyPeriod
from marketplace.services.event_bus import event_bus
from marketplace.services.order_lifecycle import OrderLifecycleService
from marketplace.services.order_placement import OrderPlacementService
from marketplace.services.settlement import SettlementStore
from marketplace.services.weekly_period import (
    WeeklyPeriodManager,
    local_date_range,
    settlement_timezone,
    week_number_for,
    week_period_for_date,
)
from tests.fixtures_data import (
    AFTER_WEEK_END_UTC,
    RIDER_ID,
    SHOP_A,
    SHOP_B,
    TEST_SETTINGS,
    WEEK_END_UTC,
    WEEK_START_UTC,
    build_clock,
    build_locks,
    build_session,
    complete_order,
    order_input,
)

LOCAL = settlement_timezone(2)
SIX_DAYS_TO_LAST_SECOND = timedelta(days=6, hours=23, minutes=59, seconds=59)


# =========================
# Limites da semana
# =========================
@pytest.mark.parametrize("wednesday", [date(2026, 3, 4), date(2025, 12, 31), date(2024, 2, 28), date(2027, 6, 16)])
def test_any_wednesday_maps_to_the_previous_saturday(wednesday):
    assert wednesday.weekday() == 2

    start, end = week_period_for_date(wednesday)

    assert start.weekday() == 5
    assert start.time() == time.min
    assert start.date() <= wednesday
    assert (wednesday - start.date()).days == 4
    assert end - start == SIX_DAYS_TO_LAST_SECOND
    assert end.time() == time(23, 59, 59)


def test_saturday_midnight_and_friday_last_second_share_a_week():
    saturday = datetime(2026, 2, 28, 0, 0, tzinfo=LOCAL)
    friday = datetime(2026, 3, 6, 23, 59, 59, tzinfo=LOCAL)

    assert week_period_for_date(saturday) == week_period_for_date(friday)
    assert week_period_for_date(saturday)[0] == saturday


def test_instants_are_read_in_the_settlement_offset():
    # 22:30 UTC de sexta já é sábado 00:30 no fuso do marketplace
    start, _ = week_period_for_date(datetime(2026, 3, 6, 22, 30, tzinfo=timezone.utc))
    assert start == datetime(2026, 3, 7, 0, 0, tzinfo=LOCAL)

    naive_start, _ = week_period_for_date(datetime(2026, 3, 6, 21, 30))
    assert naive_start == datetime(2026, 2, 28, 0, 0, tzinfo=LOCAL)


def test_other_offsets_shift_the_boundaries():
    start, _ = week_period_for_date(datetime(2026, 3, 6, 22, 30, tzinfo=timezone.utc), offset_hours=0)
    assert start == datetime(2026, 2, 28, 0, 0, tzinfo=timezone.utc)


def test_week_number_uses_the_iso_week_of_the_friday():
    assert week_number_for(datetime(2026, 2, 28, tzinfo=LOCAL)) == (2026, 10)
    assert week_number_for(datetime(2025, 12, 27, tzinfo=LOCAL)) == (2026, 1)


# =========================
# Ciclo de vida do período
# =========================
def _services(at=None):
    db = build_session()
    clock = build_clock(at) if at else build_clock()
    locks = build_locks()
    manager = WeeklyPeriodManager(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    placement = OrderPlacementService(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    lifecycle = OrderLifecycleService(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    return db, clock, manager, placement, lifecycle


def test_ensure_active_period_opens_the_current_week_once():
    db, _, manager, _, _ = _services()

    period = manager.ensure_active_period().unwrap()
    again = manager.ensure_active_period().unwrap()

    assert again.id == period.id
    assert db.query(WeeklyPeriod).count() == 1
    assert period.status == "active"
    assert period.label == "2026-W10"
    assert as_utc(period.start_date) == WEEK_START_UTC
    assert as_utc(period.end_date) == WEEK_END_UTC
    assert local_date_range(period) == (date(2026, 2, 28), date(2026, 3, 6))


def test_ensure_active_period_refuses_when_history_has_no_active_period():
    db, _, manager, _, _ = _services()
    period = manager.ensure_active_period().unwrap()
    period.status = "closed"
    db.commit()

    result = manager.ensure_active_period()

    assert isinstance(result.error, BusinessRuleError)
    assert db.query(WeeklyPeriod).count() == 1


def test_current_period_and_lookups():
    _, _, manager, _, _ = _services()
    assert isinstance(manager.current_period().error, NotFoundError)

    period = manager.ensure_active_period().unwrap()

    assert manager.current_period().unwrap().id == period.id
    assert manager.get_period(period.id).unwrap().id == period.id
    assert isinstance(manager.get_period(999).error, NotFoundError)
    assert [p.id for p in manager.list_periods("active").unwrap()] == [period.id]
    assert manager.list_periods("settled").unwrap() == []
    assert isinstance(manager.list_periods("archived").error, ValidationError)


def test_close_before_the_week_ends_is_refused():
    db, _, manager, placement, lifecycle = _services()
    manager.ensure_active_period().unwrap()
    order = placement.place_order(order_input("100.00")).unwrap()
    complete_order(lifecycle, order.id)

    result = manager.close_current_period("admin-1")

    assert isinstance(result.error, BusinessRuleError)
    assert result.error.message == "Period has not ended yet"
    assert db.query(ShopSettlement).count() == 0
    assert db.query(WeeklyPeriod).count() == 1


def test_close_aggregates_the_week_and_opens_the_next_one():
    db, clock, manager, placement, lifecycle = _services()
    period = manager.ensure_active_period().unwrap()
    first = placement.place_order(order_input("100.00", shop_id=SHOP_A)).unwrap()
    second = placement.place_order(order_input("200.00", shop_id=SHOP_A)).unwrap()
    dropped = placement.place_order(order_input("80.00", shop_id=SHOP_A)).unwrap()
    open_order = placement.place_order(order_input("90.00", shop_id=SHOP_A)).unwrap()
    complete_order(lifecycle, first.id)
    complete_order(lifecycle, second.id)
    lifecycle.cancel(dropped.id, "Sem estoque").unwrap()
    db.add(Ad(shop_id=SHOP_B, title="Banner", daily_cost=10, start_date=date(2026, 3, 5), end_date=date(2026, 3, 20)))
    db.commit()

    clock.set(AFTER_WEEK_END_UTC)
    report = manager.close_current_period("admin-1").unwrap()

    assert report.period.id == period.id
    assert report.period.status == "closed"
    assert report.period.closed_by == "admin-1"
    assert report.orders_aggregated == 3

    shop_a, shop_b = report.shop_settlements
    assert shop_a.shop_id == SHOP_A
    assert shop_a.total_orders == 3
    assert shop_a.completed_orders == 2
    assert shop_a.cancelled_orders == 1
    assert shop_a.gross_sales == 300
    assert shop_a.total_commission == 30
    assert shop_a.net_amount == 270
    assert shop_a.status == "pending"
    assert shop_b.shop_id == SHOP_B
    assert shop_b.total_orders == 0
    assert shop_b.ads_cost == 20
    assert shop_b.admin_net_commission == 20

    (rider,) = report.rider_settlements
    assert rider.rider_id == RIDER_ID
    assert rider.delivery_count == 2
    assert rider.total_delivery_fees == 30
    assert rider.total_cash_handled == 330
    assert rider.net_payout == 30

    assert report.summary.gross_sales == 300
    assert report.summary.pending_settlements == 3

    claimed = {o.id: o.weekly_period_id for o in db.query(Order).all()}
    assert claimed == {first.id: period.id, second.id: period.id, dropped.id: period.id, open_order.id: None}

    next_period = report.next_period
    assert next_period.status == "active"
    assert next_period.label == "2026-W11"
    assert as_utc(next_period.start_date) == WEEK_END_UTC + timedelta(seconds=1)


def test_closing_twice_fails_and_does_not_reaggregate():
    db, clock, manager, placement, lifecycle = _services()
    period = manager.ensure_active_period().unwrap()
    order = placement.place_order(order_input("100.00")).unwrap()
    complete_order(lifecycle, order.id)
    clock.set(AFTER_WEEK_END_UTC)
    manager.close_current_period().unwrap()

    again = manager.close_period(period.id)
    current = manager.close_current_period()

    assert isinstance(again.error, BusinessRuleError)
    assert isinstance(current.error, BusinessRuleError)
    assert db.query(ShopSettlement).count() == 1
    assert db.query(RiderSettlement).count() == 1
    assert db.query(WeeklyPeriod).count() == 2


def test_failed_close_leaves_no_partial_state(monkeypatch):
    db, clock, manager, placement, lifecycle = _services()
    period = manager.ensure_active_period().unwrap()
    order = placement.place_order(order_input("100.00")).unwrap()
    complete_order(lifecycle, order.id)
    clock.set(AFTER_WEEK_END_UTC)

    def _disk_full(start):
        raise OperationalError("INSERT INTO weekly_periods", {}, Exception("database or disk is full"))

    monkeypatch.setattr(manager, "_new_period", _disk_full)
    result = manager.close_current_period("admin-1")

    assert isinstance(result.error, StorageError)
    db.expire_all()
    assert db.query(ShopSettlement).count() == 0
    assert db.query(RiderSettlement).count() == 0
    stored = db.query(WeeklyPeriod).one()
    assert stored.id == period.id
    assert stored.status == "active"
    assert stored.closed_at is None
    assert db.query(Order).filter(Order.id == order.id).one().weekly_period_id is None


def test_order_finished_after_the_boundary_belongs_to_the_next_week():
    db, clock, manager, placement, lifecycle = _services()
    manager.ensure_active_period().unwrap()
    order = placement.place_order(order_input("100.00")).unwrap()
    lifecycle.accept(order.id).unwrap()
    lifecycle.mark_preparing(order.id).unwrap()
    lifecycle.mark_picked_up(order.id, rider_id=RIDER_ID).unwrap()
    lifecycle.mark_delivered(order.id).unwrap()
    clock.set(AFTER_WEEK_END_UTC)
    lifecycle.confirm_cash_received(order.id).unwrap()

    report = manager.close_current_period().unwrap()

    assert report.orders_aggregated == 0
    assert report.shop_settlements == []
    clock.advance(days=7)
    following = manager.close_current_period().unwrap()
    assert following.orders_aggregated == 1
    assert following.shop_settlements[0].gross_sales == 100


def test_close_announces_the_period():
    _, clock, manager, _, _ = _services()
    manager.ensure_active_period().unwrap()
    clock.set(AFTER_WEEK_END_UTC)
    received = []
    event_bus.subscribe("period.closed", received.append)
    try:
        report = manager.close_current_period("admin-1").unwrap()
    finally:
        event_bus.unsubscribe("period.closed", received.append)

    assert received == [
        {
            "period_id": report.period.id,
            "label": "2026-W10",
            "start_date": WEEK_START_UTC.isoformat(),
            "end_date": WEEK_END_UTC.isoformat(),
            "next_period_id": report.next_period.id,
            "shop_settlements": 0,
            "rider_settlements": 0,
        }
    ]


def test_settle_period_requires_every_record_settled():
    db, clock, manager, placement, lifecycle = _services()
    period = manager.ensure_active_period().unwrap()
    assert isinstance(manager.settle_period(period.id).error, BusinessRuleError)

    order = placement.place_order(order_input("100.00")).unwrap()
    complete_order(lifecycle, order.id)
    clock.set(AFTER_WEEK_END_UTC)
    report = manager.close_current_period().unwrap()
    store = SettlementStore(db, clock=clock, locks=manager.locks)

    pending = manager.settle_period(period.id)
    assert isinstance(pending.error, BusinessRuleError)
    assert pending.error.details["pending"] == 2

    store.mark_settled(report.shop_settlements[0].id, "shop").unwrap()
    store.mark_settled(report.rider_settlements[0].id, "rider").unwrap()
    settled = manager.settle_period(period.id).unwrap()

    assert settled.status == "settled"
    assert as_utc(settled.settled_at) == AFTER_WEEK_END_UTC
    assert isinstance(manager.settle_period(period.id).error, BusinessRuleError)
