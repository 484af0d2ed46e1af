"""
Metrics collection and process resource sampling for the Subagent Orchestrator.
"""

import os
import threading
import time
from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field
from collections import defaultdict, deque

import psutil

from .logging import get_logger

logger = get_logger(__name__)


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"


@dataclass
class Metric:
    """A recorded metric value."""
    name: str
    type: MetricType
    value: float
    timestamp: datetime = field(default_factory=datetime.now)
    tags: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """Metrics collection and aggregation."""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self.metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_history))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = {}
        self.timers: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment_counter(self, name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        with self._lock:
            self.counters[name] += value
            self._record_metric(name, MetricType.COUNTER, self.counters[name], tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        with self._lock:
            self.gauges[name] = value
            self._record_metric(name, MetricType.GAUGE, value, tags)

    def record_timer(self, name: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record a timer value."""
        with self._lock:
            self.timers[name].append(duration_ms)
            # Keep only recent values
            if len(self.timers[name]) > self.max_history:
                self.timers[name] = self.timers[name][-self.max_history:]
            self._record_metric(name, MetricType.TIMER, duration_ms, tags)

    def _record_metric(self, name: str, metric_type: MetricType, value: float, tags: Optional[Dict[str, str]]):
        """Record a metric in the history."""
        self.metrics[name].append(Metric(name=name, type=metric_type, value=value, tags=tags or {}))

    def get_counter(self, name: str) -> float:
        """Get current counter value."""
        return self.counters.get(name, 0.0)

    def get_gauge(self, name: str) -> Optional[float]:
        """Get current gauge value."""
        return self.gauges.get(name)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """Get timer statistics."""
        values = list(self.timers.get(name, []))
        if not values:
            return {"count": 0}

        sorted_values = sorted(values)
        count = len(sorted_values)

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "mean": sum(sorted_values) / count,
            "p50": sorted_values[int(count * 0.5)],
            "p95": sorted_values[min(count - 1, int(count * 0.95))],
            "p99": sorted_values[min(count - 1, int(count * 0.99))]
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        with self._lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            timer_names = list(self.timers)
        return {
            "counters": counters,
            "gauges": gauges,
            "timers": {name: self.get_timer_stats(name) for name in timer_names}
        }

    def reset_metrics(self):
        """Reset all metrics."""
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.timers.clear()
            self.metrics.clear()


_process_started_at = time.time()


def sample_process_resources() -> Dict[str, float]:
    """
    Sample CPU and memory usage of the orchestrator process.

    Returns:
        Dict with cpu_percent, memory_mb, threads and uptime_seconds. Empty if
        the process cannot be inspected.
    """
    try:
        process = psutil.Process(os.getpid())
        with process.oneshot():
            memory_mb = process.memory_info().rss / 1024 / 1024
            cpu_percent = process.cpu_percent(interval=None)
            threads = process.num_threads()
        return {
            "cpu_percent": cpu_percent,
            "memory_mb": round(memory_mb, 2),
            "threads": float(threads),
            "uptime_seconds": round(time.time() - _process_started_at, 3)
        }
    except psutil.Error as e:
        logger.warning("Failed to sample process resources", error=str(e))
        return {}
