from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock


@dataclass
class OperationMetric:
    total_calls: int = 0
    total_duration_ms: float = 0.0
    failures: dict[str, int] = field(default_factory=dict)

    @property
    def failure_count(self) -> int:
        return sum(self.failures.values())


class InMemoryOperationMetrics:
    """Counts engine operations (and HTTP requests) by name and outcome."""

    def __init__(self) -> None:
        self._metrics: dict[str, OperationMetric] = {}
        self._lock = Lock()

    def observe(self, name: str, duration_ms: float, error_code: str | None = None) -> None:
        with self._lock:
            metric = self._metrics.setdefault(name, OperationMetric())
            metric.total_calls += 1
            metric.total_duration_ms += duration_ms
            if error_code:
                metric.failures[error_code] = metric.failures.get(error_code, 0) + 1

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            result: dict[str, dict[str, object]] = {}
            for name, metric in self._metrics.items():
                avg = metric.total_duration_ms / metric.total_calls if metric.total_calls else 0.0
                result[name] = {
                    "total_calls": metric.total_calls,
                    "avg_duration_ms": round(avg, 2),
                    "failure_count": metric.failure_count,
                    "failures": dict(metric.failures),
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


operation_metrics = InMemoryOperationMetrics()
