from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from marketplace.core.errors import BusinessRuleError, ConflictError, StorageError
from marketplace.core.locks import KeyedLocks, customer_key, order_key
from marketplace.core.metrics import operation_metrics
from marketplace.core.request_context import get_operation
from marketplace.models.points import Referral
from marketplace.services.operations import run_operation
from tests.fixtures_data import build_session

CREATED_AT = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


def _referral(referrer_id=1, referred_customer_id=2):
    return Referral(referrer_id=referrer_id, referred_customer_id=referred_customer_id, created_at=CREATED_AT)


def test_successful_operation_commits():
    db = build_session()

    def _work():
        db.add(_referral())
        db.flush()
        return "ok"

    result = run_operation(db, "tests.commit", _work)

    assert result.ok
    assert result.value == "ok"
    db.rollback()
    assert db.query(Referral).count() == 1


def test_engine_error_rolls_back_and_is_returned():
    db = build_session()

    def _work():
        db.add(_referral())
        db.flush()
        raise BusinessRuleError("no")

    result = run_operation(db, "tests.business_rule", _work)

    assert isinstance(result.error, BusinessRuleError)
    assert db.query(Referral).count() == 0


def test_duplicate_row_is_a_conflict():
    db = build_session()
    run_operation(db, "tests.seed", lambda: db.add(_referral(1, 2))).unwrap()

    def _work():
        db.add(_referral(3, 2))
        db.flush()

    result = run_operation(db, "tests.duplicate", _work)

    assert isinstance(result.error, ConflictError)
    assert result.error.retryable
    assert db.query(Referral).count() == 1


def test_stale_row_is_a_conflict():
    db = build_session()

    def _work():
        raise StaleDataError("version mismatch")

    assert isinstance(run_operation(db, "tests.stale", _work).error, ConflictError)


def test_other_storage_failures_are_storage_errors():
    db = build_session()

    def _work():
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    result = run_operation(db, "tests.storage", _work)

    assert isinstance(result.error, StorageError)
    assert result.error.status_code == 503


def test_unexpected_exception_rolls_back_and_propagates():
    db = build_session()

    def _work():
        db.add(_referral())
        db.flush()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        run_operation(db, "tests.crash", _work)

    assert db.query(Referral).count() == 0
    assert operation_metrics.snapshot()["tests.crash"]["failures"]["unexpected"] >= 1


def test_nested_operation_joins_the_outer_unit_of_work():
    db = build_session()
    seen = {}

    def _inner():
        seen["operation"] = get_operation()
        db.add(_referral(1, 2))
        db.flush()
        return "inner"

    def _outer():
        inner = run_operation(db, "tests.inner", _inner).unwrap()
        db.add(_referral(1, 3))
        db.flush()
        raise BusinessRuleError(f"after {inner}")

    result = run_operation(db, "tests.outer", _outer)

    assert isinstance(result.error, BusinessRuleError)
    assert seen["operation"] == "tests.outer"
    assert db.query(Referral).count() == 0
    assert "tests.inner" not in operation_metrics.snapshot()


def test_failures_are_counted_by_code():
    db = build_session()

    def _refuse():
        raise BusinessRuleError("x")

    run_operation(db, "tests.metrics_count", lambda: 1)
    run_operation(db, "tests.metrics_count", _refuse)

    metric = operation_metrics.snapshot()["tests.metrics_count"]

    assert metric["total_calls"] >= 2
    assert metric["failures"]["business_rule"] >= 1


def test_keyed_locks_are_reentrant_and_ordered():
    locks = KeyedLocks()

    with locks.hold(order_key(2), customer_key(1)):
        with locks.hold(order_key(2)):
            pass

    assert locks.known_keys() == ["customer:1", "order:2"]
