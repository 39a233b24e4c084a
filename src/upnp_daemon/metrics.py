"""
In-process metrics for reconciliation cycles.

Nothing here is persisted; the numbers live for the lifetime of the process and
are reported in logs and in the oneshot summary.
"""
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Dict, Optional

import structlog


@dataclass
class MetricSummary:
    """Summary statistics for a histogram."""
    count: int
    sum: float
    min: float
    max: float
    mean: float

    def to_dict(self) -> dict:
        return asdict(self)


class Counter:
    """Monotonically increasing count of events (cycles run, rules applied)."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.value = 0

    def increment(self, amount: float = 1.0):
        self.value += amount

    def reset(self):
        self.value = 0

    def get(self) -> float:
        return self.value


class Gauge:
    """Current value that can go up and down (rules configured)."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self.value = 0.0

    def set(self, value: float):
        self.value = value

    def get(self) -> float:
        return self.value


class Histogram:
    """
    Bounded sample window for distributions such as cycle durations.

    Only the most recent ``max_size`` samples are kept.
    """

    def __init__(self, name: str, description: str = "", max_size: int = 1000):
        self.name = name
        self.description = description
        self.samples: deque = deque(maxlen=max_size)

    def observe(self, value: float):
        self.samples.append(value)

    def get_summary(self) -> Optional[MetricSummary]:
        """
        Get summary statistics.

        Returns:
            MetricSummary or None if no samples
        """
        if not self.samples:
            return None

        ordered = sorted(self.samples)
        total = sum(ordered)
        return MetricSummary(
            count=len(ordered),
            sum=total,
            min=ordered[0],
            max=ordered[-1],
            mean=total / len(ordered),
        )

    def get_percentile(self, percentile: float) -> Optional[float]:
        """
        Get a percentile value.

        Args:
            percentile: Percentile to calculate (0.0 to 1.0)
        """
        if not self.samples:
            return None

        ordered = sorted(self.samples)
        index = min(int(len(ordered) * percentile), len(ordered) - 1)
        return ordered[index]

    def clear(self):
        self.samples.clear()


class Timer:
    """Context manager recording the duration of a block into a histogram."""

    def __init__(self, histogram: Histogram):
        self.histogram = histogram
        self.start_time: Optional[float] = None
        self.elapsed: Optional[float] = None

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.elapsed = time.monotonic() - self.start_time
            self.histogram.observe(self.elapsed)
        return False


class MetricsCollector:
    """
    Registry of the daemon's metrics.

    Metrics are created on first use; the defaults below cover cycles, rules
    and candidate attempts.
    """

    def __init__(self):
        self.logger = structlog.get_logger()

        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}

        self.created_at = time.time()
        self._init_default_metrics()

    def _init_default_metrics(self):
        # Cycles
        self.counter("cycles.total", "Reconciliation cycles run")
        self.counter("cycles.load_failures", "Cycles skipped because the rule file could not be loaded")
        self.histogram("cycle.duration.seconds", "Cycle duration distribution")

        # Rules
        self.gauge("rules.configured", "Rules loaded in the latest cycle")
        self.counter("rules.applied.total", "Rule applications that succeeded")
        self.counter("rules.failed.total", "Rule applications that failed")
        self.counter("rules.rejected_rows.total", "Rows rejected while loading the rule file")

        # Candidates
        self.counter("candidates.attempted.total", "Candidate interfaces tried")
        self.counter("candidates.failed.total", "Candidate interfaces that failed")

    def counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        if name not in self.counters:
            self.counters[name] = Counter(name, description)
        return self.counters[name]

    def gauge(self, name: str, description: str = "") -> Gauge:
        """Get or create a gauge."""
        if name not in self.gauges:
            self.gauges[name] = Gauge(name, description)
        return self.gauges[name]

    def histogram(self, name: str, description: str = "", max_size: int = 1000) -> Histogram:
        """Get or create a histogram."""
        if name not in self.histograms:
            self.histograms[name] = Histogram(name, description, max_size)
        return self.histograms[name]

    def timer(self, name: str, description: str = "") -> Timer:
        """Get a timer recording into the named histogram."""
        return Timer(self.histogram(name, description))

    def increment_counter(self, name: str, amount: float = 1.0):
        """Increment a counter by name."""
        self.counter(name).increment(amount)

    def set_gauge(self, name: str, value: float):
        """Set a gauge value by name."""
        self.gauge(name).set(value)

    def get_summary(self) -> dict:
        """
        Get a summary of key metrics.

        Returns:
            Dictionary with cycle and rule statistics
        """
        durations = self.histograms["cycle.duration.seconds"].get_summary()
        return {
            "uptime_seconds": time.time() - self.created_at,
            "cycles": {
                "total": self.counters["cycles.total"].get(),
                "load_failures": self.counters["cycles.load_failures"].get(),
                "mean_duration_seconds": durations.mean if durations else None,
            },
            "rules": {
                "configured": self.gauges["rules.configured"].get(),
                "applied": self.counters["rules.applied.total"].get(),
                "failed": self.counters["rules.failed.total"].get(),
                "rejected_rows": self.counters["rules.rejected_rows.total"].get(),
            },
            "candidates": {
                "attempted": self.counters["candidates.attempted.total"].get(),
                "failed": self.counters["candidates.failed.total"].get(),
            },
        }

    def reset_all(self):
        """Reset all metrics to their initial state."""
        for counter in self.counters.values():
            counter.reset()
        for gauge in self.gauges.values():
            gauge.set(0)
        for histogram in self.histograms.values():
            histogram.clear()


# Global metrics collector instance
_global_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset the global metrics collector."""
    global _global_metrics
    _global_metrics = None
