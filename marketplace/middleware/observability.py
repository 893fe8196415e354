from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.metrics import operation_metrics
from marketplace.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        actor_id = _extract_actor_id(request)
        request.state.request_id = request_id
        set_request_context(request_id=request_id, actor_id=actor_id)

        status_code = 500
        endpoint = request.url.path
        method = request.method

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            route = request.scope.get("route")
            route_path = getattr(route, "path", endpoint)
            operation_metrics.observe(
                f"http {method} {route_path}",
                duration_ms,
                error_code=str(status_code) if status_code >= 400 else None,
            )

            logger.info(
                "request completed",
                extra={
                    "request_id": request_id,
                    "actor_id": actor_id,
                    "endpoint": endpoint,
                    "method": method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )

            if "response" in locals():
                response.headers["X-Request-ID"] = request_id

            clear_request_context()


def _extract_actor_id(request: Request) -> str | None:
    actor = request.headers.get("X-Actor-ID")
    if actor:
        return actor.strip() or None
    return None
