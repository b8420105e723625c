from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
import time
from typing import Dict, Iterator

MetricsSnapshot = Dict[str, Dict[str, float]]


class StorageMetrics:
    def __init__(self) -> None:
        self._counters: Dict[str, float] = defaultdict(float)
        self._op_counts: Dict[str, int] = defaultdict(int)
        self._op_latency_sum: Dict[str, float] = defaultdict(float)

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        self._counters[name] += amount

    def record_operation(self, operation: str, duration_ms: float) -> None:
        self._op_counts[operation] += 1
        self._op_latency_sum[operation] += duration_ms

    def snapshot(self) -> MetricsSnapshot:
        operations: Dict[str, float] = {}
        for operation, count in self._op_counts.items():
            operations[f"{operation}::count"] = float(count)
            operations[f"{operation}::avg_latency_ms"] = self._op_latency_sum[operation] / count
        return {
            "counters": dict(self._counters),
            "operations": operations,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._op_counts.clear()
        self._op_latency_sum.clear()


@contextmanager
def time_operation(metrics: StorageMetrics, operation: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_operation(operation, (time.perf_counter() - start) * 1000)


_METRICS = StorageMetrics()


def get_metrics() -> StorageMetrics:
    return _METRICS
