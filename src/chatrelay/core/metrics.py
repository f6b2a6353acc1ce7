"""
chatrelay Metrics — process-local counters, gauges and latency histograms.

Nothing is pushed anywhere; GET /metrics serves snapshot() as JSON.

Metric names are dotted ("relay.outbound.sent"). Labels become part of the
key: relay.backend.requests{outcome=error}.

Usage:
    from chatrelay.core.metrics import metrics

    metrics.inc("relay.inbound.filtered", labels={"reason": "group"})
    metrics.gauge_set("relay.outbound.pending", 3)

    with metrics.timer("relay.backend.latency_ms") as t:
        await client.post(...)
    t.elapsed_ms
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Iterable, Iterator


def _summarize(samples: Iterable[float]) -> dict | None:
    ordered = sorted(samples)
    if not ordered:
        return None
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "p50": _rank(ordered, 50),
        "p95": _rank(ordered, 95),
        "p99": _rank(ordered, 99),
    }


def _rank(ordered: list[float], p: float) -> float:
    return ordered[min(int(len(ordered) * p / 100), len(ordered) - 1)]


class Stopwatch:
    """Elapsed time of a timer() block, readable after it exits."""

    def __init__(self) -> None:
        self._started = time.monotonic()
        self._stopped: float | None = None

    def stop(self) -> None:
        if self._stopped is None:
            self._stopped = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        end = self._stopped if self._stopped is not None else time.monotonic()
        return round((end - self._started) * 1000)


class MetricsCollector:
    """Counters, gauges and bounded-window histograms keyed by name + labels."""

    # Samples kept per histogram; older ones fall off
    HISTOGRAM_MAX_SAMPLES = 1000

    _instance: "MetricsCollector | None" = None

    @classmethod
    def get(cls) -> "MetricsCollector":
        """Return the process-wide singleton."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self) -> None:
        self._started_at = time.time()
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        )

    # ── Writes ────────────────────────────────────────────────────

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        self._counters[self._key(name, labels)] += value

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[self._key(name, labels)] = value

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        self._histograms[self._key(name, labels)].append(value)

    @contextmanager
    def timer(self, name: str, labels: dict | None = None) -> Iterator[Stopwatch]:
        """Observe the block's duration in milliseconds, even if it raises."""
        watch = Stopwatch()
        try:
            yield watch
        finally:
            watch.stop()
            self.observe(name, watch.elapsed_ms, labels)

    # ── Reads ─────────────────────────────────────────────────────

    def counter(self, name: str, labels: dict | None = None) -> int:
        return self._counters.get(self._key(name, labels), 0)

    def percentile(
        self, name: str, p: float, labels: dict | None = None
    ) -> float | None:
        """p-th percentile (0-100) of a histogram, None while it is empty."""
        samples = self._histograms.get(self._key(name, labels))
        if not samples:
            return None
        return _rank(sorted(samples), p)

    def snapshot(self) -> dict:
        histograms = {}
        for key, samples in self._histograms.items():
            summary = _summarize(samples)
            if summary is not None:
                histograms[key] = summary
        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Forget every value (tests start from a clean slate)."""
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()

    @staticmethod
    def _key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        rendered = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{rendered}}}"


metrics = MetricsCollector.get()
