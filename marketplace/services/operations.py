"""Transaction boundary for every public engine operation.

``run_operation`` executes a unit of work against a session, commits it and
wraps the outcome in a ``Result``. Domain failures and storage failures roll
the session back before they are returned, so a caller never observes a
partial write. Operations started from inside another operation on the same
session join the outer unit of work: they neither commit nor roll back, and
their failures propagate to the outer boundary.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from marketplace.core.errors import ConflictError, EngineError, StorageError
from marketplace.core.metrics import operation_metrics
from marketplace.core.request_context import get_operation, set_request_context
from marketplace.core.result import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEPTH_KEY = "marketplace.operation_depth"


def _translate(exc: SQLAlchemyError) -> EngineError:
    if isinstance(exc, StaleDataError):
        return ConflictError("The record was modified concurrently; retry the operation.")
    if isinstance(exc, IntegrityError):
        return ConflictError(
            "A concurrent write produced a duplicate record; retry the operation.",
            details={"reason": str(exc.orig) if exc.orig is not None else None},
        )
    return StorageError("Storage failure; the operation was rolled back.")


def run_operation(db: Session, name: str, work: Callable[[], T]) -> Result[T]:
    depth = db.info.get(_DEPTH_KEY, 0)
    if depth:
        db.info[_DEPTH_KEY] = depth + 1
        try:
            return Result.success(work())
        finally:
            db.info[_DEPTH_KEY] = depth

    previous_operation = get_operation()
    set_request_context(operation=name)
    db.info[_DEPTH_KEY] = 1
    started = time.perf_counter()
    error: EngineError | None = None
    try:
        value = work()
        db.commit()
    except EngineError as exc:
        db.rollback()
        error = exc
    except SQLAlchemyError as exc:
        db.rollback()
        error = _translate(exc)
        logger.warning("[OPERATION] %s storage failure: %s", name, exc.__class__.__name__)
    except Exception:
        db.rollback()
        duration_ms = (time.perf_counter() - started) * 1000
        operation_metrics.observe(name, duration_ms, error_code="unexpected")
        logger.exception("[OPERATION] %s crashed", name, extra={"duration_ms": round(duration_ms, 2)})
        raise
    finally:
        db.info[_DEPTH_KEY] = 0
        set_request_context(operation=previous_operation or "")

    duration_ms = (time.perf_counter() - started) * 1000
    if error is not None:
        operation_metrics.observe(name, duration_ms, error_code=error.code)
        logger.info(
            "[OPERATION] %s failed: %s",
            name,
            error.message,
            extra={"error_code": error.code, "duration_ms": round(duration_ms, 2)},
        )
        return Result.failure(error)

    operation_metrics.observe(name, duration_ms)
    logger.debug("[OPERATION] %s ok", name, extra={"duration_ms": round(duration_ms, 2)})
    return Result.success(value)
