from __future__ import annotations

from fastapi import APIRouter

from marketplace.core.metrics import operation_metrics

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("/operations")
def operations_metrics():
    return {"operations": operation_metrics.snapshot()}
