import logging
from unittest.mock import patch

import pytest
from sqlalchemy.orm import sessionmaker

from marketplace.services import event_handlers
from marketplace.services.event_bus import EventBus, event_bus
from marketplace.services.order_lifecycle import OrderLifecycleService
from marketplace.services.order_placement import OrderPlacementService
from marketplace.services.points_ledger import PointsLedger
from tests.fixtures_data import (
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    TEST_SETTINGS,
    build_clock,
    build_locks,
    build_session,
    complete_order,
    order_input,
)


@pytest.fixture(autouse=True)
def _registered_handlers():
    event_handlers.register_handlers()
    yield
    event_bus.unsubscribe("order.completed", event_handlers.handle_order_completed)
    event_bus.unsubscribe("period.closed", event_handlers.handle_period_closed)


def _services():
    db = build_session()
    clock = build_clock()
    locks = build_locks()
    placement = OrderPlacementService(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    lifecycle = OrderLifecycleService(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    handler_sessions = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    return db, placement, lifecycle, handler_sessions


def test_handlers_are_registered():
    assert event_handlers.handle_order_completed in event_bus.handlers_for("order.completed")
    assert event_handlers.handle_period_closed in event_bus.handlers_for("period.closed")


def test_completed_order_awards_the_referral_bonus_once():
    db, placement, lifecycle, handler_sessions = _services()
    lifecycle.ledger.register_referral(OTHER_CUSTOMER_ID, CUSTOMER_ID).unwrap()

    with patch("marketplace.core.database.SessionLocal", handler_sessions):
        first = placement.place_order(order_input("100.00")).unwrap()
        complete_order(lifecycle, first.id)
        second = placement.place_order(order_input("100.00")).unwrap()
        complete_order(lifecycle, second.id)

    db.expire_all()
    history = lifecycle.ledger.history_for(OTHER_CUSTOMER_ID)
    assert [(tx.type, tx.points, tx.order_id) for tx in history] == [("referral", 2, first.id)]


def test_failed_bonus_is_logged_not_raised(caplog):
    db, _, _, handler_sessions = _services()

    with patch("marketplace.core.database.SessionLocal", handler_sessions):
        PointsLedger(db, settings=TEST_SETTINGS, clock=build_clock()).register_referral(
            OTHER_CUSTOMER_ID, CUSTOMER_ID
        ).unwrap()
        with caplog.at_level(logging.WARNING):
            event_handlers.handle_order_completed({"order_id": 404, "customer_id": CUSTOMER_ID})

    assert "referral bonus not awarded" in caplog.text


def test_event_bus_isolates_failing_handlers(caplog):
    bus = EventBus()
    received = []

    def _broken(_payload):
        raise RuntimeError("falhou")

    bus.subscribe("order.created", _broken)
    bus.subscribe("order.created", received.append)
    bus.subscribe("order.created", received.append)

    with caplog.at_level(logging.ERROR):
        bus.emit("order.created", {"order_id": 1})

    assert received == [{"order_id": 1}]
    assert "EventBus handler failed" in caplog.text
    bus.unsubscribe("order.created", _broken)
    assert bus.handlers_for("order.created") == [received.append]
