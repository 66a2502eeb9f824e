"""
In-process metrics for the knowledge pipeline.

Counters and latency histograms keyed by name plus labels. Histograms keep
running totals and a bounded window of recent observations for p50/p95, so
memory stays flat under sustained traffic. Exported as JSON at /metrics.
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, Optional, Tuple

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]

RECENT_WINDOW = 512


def _percentile(ordered: list, fraction: float) -> float:
    if not ordered:
        return 0.0
    index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
    return ordered[index]


@dataclass
class Histogram:
    count: int = 0
    total: float = 0.0
    minimum: float = float('inf')
    maximum: float = float('-inf')
    recent: Deque[float] = field(default_factory=lambda: deque(maxlen=RECENT_WINDOW))

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)
        self.recent.append(value)

    def summary(self) -> Dict[str, float]:
        ordered = sorted(self.recent)
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum if self.count else 0.0,
            "max": self.maximum if self.count else 0.0,
            "avg": self.total / self.count if self.count else 0.0,
            "p50": _percentile(ordered, 0.5),
            "p95": _percentile(ordered, 0.95),
        }


class MetricsRegistry:
    _instance = None

    def __init__(self):
        self._counters: Dict[MetricKey, float] = {}
        self._histograms: Dict[MetricKey, Histogram] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def instance(cls) -> "MetricsRegistry":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @staticmethod
    def _key(name: str, labels: Optional[Dict[str, Any]]) -> MetricKey:
        return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))

    async def inc(self, name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
        key = self._key(name, labels)
        async with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    async def observe(self, name: str, observation: float, labels: Optional[Dict[str, Any]] = None) -> None:
        key = self._key(name, labels)
        async with self._lock:
            self._histograms.setdefault(key, Histogram()).add(observation)

    async def counter_value(self, name: str, labels: Optional[Dict[str, Any]] = None) -> float:
        async with self._lock:
            return self._counters.get(self._key(name, labels), 0.0)

    async def histogram_summary(self, name: str, labels: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, float]]:
        async with self._lock:
            hist = self._histograms.get(self._key(name, labels))
            return hist.summary() if hist else None

    async def export(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "counters": [
                    {"name": name, "labels": dict(labels), "value": value}
                    for (name, labels), value in sorted(self._counters.items())
                ],
                "histograms": [
                    {"name": name, "labels": dict(labels), **hist.summary()}
                    for (name, labels), hist in sorted(self._histograms.items(), key=lambda item: item[0])
                ],
            }

    async def reset(self) -> None:
        async with self._lock:
            self._counters.clear()
            self._histograms.clear()


async def inc(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    await MetricsRegistry.instance().inc(name, value, labels)


async def observe(name: str, observation: float, labels: Optional[Dict[str, Any]] = None) -> None:
    await MetricsRegistry.instance().observe(name, observation, labels)


@asynccontextmanager
async def timed(name: str, labels: Optional[Dict[str, Any]] = None) -> AsyncIterator[None]:
    """Observe the wall time of the block in milliseconds; failed blocks are not recorded"""
    start = time.perf_counter()
    yield
    await observe(name, (time.perf_counter() - start) * 1000, labels)


async def get_metrics() -> Dict[str, Any]:
    return await MetricsRegistry.instance().export()


async def reset_metrics() -> None:
    await MetricsRegistry.instance().reset()
