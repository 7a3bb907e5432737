"""Prometheus text-format metrics for the proxy."""

from __future__ import annotations

import threading
from typing import Callable, Dict


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def bind(self, supplier: Callable[[], float] | None) -> None:
        self._supplier = supplier

    @property
    def value(self) -> float:
        return float(self._supplier()) if self._supplier else self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {self.value}\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {bucket: 0 for bucket in self._buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for bucket in self._buckets:
                if value <= bucket:
                    self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        # +Inf always equals the observation count
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        self._metrics[getattr(metric, "name")] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
