from decimal import Decimal

import pytest

from marketplace.core.errors import BusinessRuleError, ValidationError
from marketplace.models.order import Order
from marketplace.models.points import PointsTransaction
from marketplace.services.event_bus import event_bus
from marketplace.services.order_placement import (
    OrderLineInput,
    OrderPlacementService,
    PlaceOrderInput,
    validate_order_input,
)
from marketplace.services.points_ledger import PointsLedger
from tests.fixtures_data import (
    CUSTOMER_ID,
    DELIVERY_ADDRESS,
    SHOP_A,
    TEST_SETTINGS,
    WEDNESDAY_NOON_UTC,
    build_clock,
    build_locks,
    build_session,
    order_input,
)


def _services():
    db = build_session()
    clock = build_clock()
    locks = build_locks()
    placement = OrderPlacementService(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    ledger = PointsLedger(db, settings=TEST_SETTINGS, clock=clock, locks=locks)
    return db, placement, ledger


def test_place_order_computes_commission_and_totals():
    db, placement, _ = _services()

    order = placement.place_order(order_input("200.00", delivery_fee="15.00")).unwrap()

    assert order.order_number == f"ORD-20260304-{order.id}"
    assert order.status == "pending"
    assert order.subtotal == Decimal("200.00")
    assert order.commission_rate == Decimal("0.1000")
    assert order.shop_commission == Decimal("20.00")
    assert order.admin_commission == Decimal("20.00")
    assert order.shop_earnings == Decimal("180.00")
    assert order.total_amount == Decimal("215.00")
    assert order.points_earned == 2
    assert order.created_at.replace(tzinfo=None) == WEDNESDAY_NOON_UTC.replace(tzinfo=None)
    assert [item.name for item in order.order_items] == ["Pizza Grande"]


def test_free_delivery_is_paid_from_the_platform_commission():
    _, placement, _ = _services()

    order = placement.place_order(order_input("200.00", delivery_fee="12.00", is_free_delivery=True)).unwrap()

    assert order.total_amount == Decimal("200.00")
    assert order.shop_commission == Decimal("20.00")
    assert order.admin_commission == Decimal("8.00")
    assert order.shop_earnings == Decimal("180.00")


def test_free_delivery_above_commission_is_refused():
    db, placement, _ = _services()

    result = placement.place_order(order_input("100.00", delivery_fee="15.00", is_free_delivery=True))

    assert isinstance(result.error, BusinessRuleError)
    assert db.query(Order).count() == 0


def test_redeeming_points_debits_the_ledger_and_discounts_the_order():
    db, placement, ledger = _services()
    ledger.adjust(CUSTOMER_ID, 15, "Saldo inicial").unwrap()

    order = placement.place_order(order_input("200.00", points_to_use=10)).unwrap()

    assert order.points_used == 10
    assert order.points_discount == Decimal("10.00")
    assert order.admin_commission == Decimal("10.00")
    assert order.shop_earnings == Decimal("180.00")
    assert order.total_amount == Decimal("205.00")
    assert ledger.balance_for(CUSTOMER_ID) == 5
    redeemed = ledger.history_for(CUSTOMER_ID)[-1]
    assert redeemed.type == "redeemed"
    assert redeemed.points == -10
    assert redeemed.balance_after == 5
    assert redeemed.order_id == order.id


def test_redeeming_more_than_the_balance_rolls_back_the_order():
    db, placement, ledger = _services()
    ledger.adjust(CUSTOMER_ID, 3, "Saldo inicial").unwrap()

    result = placement.place_order(order_input("200.00", points_to_use=5))

    assert isinstance(result.error, BusinessRuleError)
    assert db.query(Order).count() == 0
    assert db.query(PointsTransaction).count() == 1
    assert ledger.balance_for(CUSTOMER_ID) == 3


def test_points_and_free_delivery_share_the_commission():
    db, placement, ledger = _services()
    ledger.adjust(CUSTOMER_ID, 20, "Saldo inicial").unwrap()

    result = placement.place_order(order_input("200.00", delivery_fee="12.00", is_free_delivery=True, points_to_use=10))

    assert isinstance(result.error, BusinessRuleError)
    assert ledger.balance_for(CUSTOMER_ID) == 20


def test_commission_rate_outside_bounds_is_rejected():
    _, placement, _ = _services()
    result = placement.place_order(order_input("200.00", commission_rate=Decimal("0.50")))
    assert isinstance(result.error, ValidationError)


def test_validate_order_input_collects_field_errors():
    data = PlaceOrderInput(
        customer_id=CUSTOMER_ID,
        shop_id=SHOP_A,
        items=[OrderLineInput(name="", quantity=0, unit_price=Decimal("10"))],
        delivery_address="curto",
        delivery_fee=Decimal("150"),
        points_to_use=-1,
        customer_notes="x" * 501,
    )

    with pytest.raises(ValidationError) as exc:
        validate_order_input(data)

    details = exc.value.details
    assert {"item_0_name", "item_0_quantity", "delivery_address", "delivery_fee", "points_to_use", "customer_notes"} <= set(details)


def test_validate_order_input_requires_items_and_minimum():
    empty = PlaceOrderInput(customer_id=CUSTOMER_ID, shop_id=SHOP_A, items=[], delivery_address=DELIVERY_ADDRESS)
    with pytest.raises(ValidationError) as exc:
        validate_order_input(empty)
    assert "items" in exc.value.details

    below_minimum = PlaceOrderInput(
        customer_id=CUSTOMER_ID,
        shop_id=SHOP_A,
        items=[OrderLineInput(name="Refrigerante", quantity=2, unit_price=Decimal("6.50"))],
        delivery_address=DELIVERY_ADDRESS,
        minimum_order=Decimal("20"),
    )
    with pytest.raises(ValidationError) as exc:
        validate_order_input(below_minimum)
    assert "subtotal" in exc.value.details


def test_validate_order_input_returns_subtotal():
    data = PlaceOrderInput(
        customer_id=CUSTOMER_ID,
        shop_id=SHOP_A,
        items=[
            OrderLineInput(name="Burger", quantity=2, unit_price=Decimal("18.50")),
            OrderLineInput(name="Suco", quantity=1, unit_price=Decimal("7.25")),
        ],
        delivery_address=DELIVERY_ADDRESS,
    )
    assert validate_order_input(data) == Decimal("44.25")


def test_order_created_event_is_emitted_after_commit():
    _, placement, _ = _services()
    received = []
    handler = received.append
    event_bus.subscribe("order.created", handler)
    try:
        order = placement.place_order(order_input("120.00")).unwrap()
        placement.place_order(order_input("0"))
    finally:
        event_bus.unsubscribe("order.created", handler)

    assert len(received) == 1
    assert received[0]["order_id"] == order.id
    assert received[0]["status"] == "pending"
    assert received[0]["total_amount"] == "135.00"
