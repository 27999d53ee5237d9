"""In-process job metrics."""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional


@dataclass
class _BaseMetric:
    name: str
    _value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self) -> float:
        with self._lock:
            return float(self._value)


class Counter(_BaseMetric):
    """Monotonically increasing counter."""

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._value += amount


class Gauge(_BaseMetric):
    """Gauge supporting set/inc/dec."""

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value = max(0.0, self._value - amount)

    @contextmanager
    def track(self) -> Iterator[None]:
        """Count the enclosed block as in progress."""

        self.inc()
        try:
            yield
        finally:
            self.dec()


class MetricsRegistry:
    """Thread-safe registry storing metrics by name."""

    def __init__(self) -> None:
        self._metrics: Dict[str, _BaseMetric] = {}
        self._lock = threading.Lock()

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)  # type: ignore[return-value]

    def gauge(self, name: str) -> Gauge:
        return self._get_or_create(name, Gauge)  # type: ignore[return-value]

    def _get_or_create(self, name: str, kind: type) -> _BaseMetric:
        with self._lock:
            metric = self._metrics.get(name)
            if isinstance(metric, kind):
                return metric
            if metric is not None:
                raise TypeError(f"Metric {name} already registered as {type(metric).__name__}")
            created = kind(name=name)
            self._metrics[name] = created
            return created

    def get(self, name: str) -> Optional[_BaseMetric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            metrics = list(self._metrics.values())
        return {metric.name: metric.snapshot() for metric in metrics}


@contextmanager
def record_duration_ms(gauge: Gauge) -> Iterator[None]:
    started_at = time.perf_counter()
    try:
        yield
    finally:
        gauge.set(round((time.perf_counter() - started_at) * 1000, 3))


_DEFAULT_REGISTRY = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    return _DEFAULT_REGISTRY


__all__ = [
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "get_registry",
    "record_duration_ms",
]
