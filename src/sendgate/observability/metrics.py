"""Lightweight metrics registry for SendGate.

Counters are bumped by the task, export, tracking and reconcile layers and
exposed through ``GET /v1/metrics``.
"""

from dataclasses import dataclass, field
from threading import Lock
from typing import Any


@dataclass
class Counter:
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def snapshot(self) -> dict[str, Any]:
        average = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "total": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": average,
        }


class MetricsRegistry:
    """Thread-safe registry for counters, gauges, and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.counters: dict[str, Counter] = {}
        self.gauges: dict[str, Gauge] = {}
        self.histograms: dict[str, Histogram] = {}

    def inc_counter(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            counter = self.counters.setdefault(name, Counter())
            counter.inc(amount)

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            gauge = self.gauges.setdefault(name, Gauge())
            gauge.set(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            histogram = self.histograms.setdefault(name, Histogram())
            histogram.observe(value)

    def counter_value(self, name: str) -> float:
        with self._lock:
            counter = self.counters.get(name)
            return counter.value if counter else 0.0

    def snapshot(self, prefix: str | None = None) -> dict[str, Any]:
        """Current values, optionally only those whose name starts with ``prefix``."""

        def keep(name: str) -> bool:
            return prefix is None or name.startswith(prefix)

        with self._lock:
            return {
                "counters": {n: c.value for n, c in self.counters.items() if keep(n)},
                "gauges": {n: g.value for n, g in self.gauges.items() if keep(n)},
                "histograms": {n: h.snapshot() for n, h in self.histograms.items() if keep(n)},
            }

    def reset(self) -> None:
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()


metrics = MetricsRegistry()
