"""Prometheus-style metrics for the relay."""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Keep only the most recent observations per histogram
HISTOGRAM_WINDOW = 1000


class MetricsCollector:
    """In-process counters and histograms rendered as Prometheus text."""

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict] = None):
        """Increment a counter metric."""
        async with self._lock:
            self._counters[self._make_key(name, labels)] += value

    async def observe_histogram(self, name: str, value: float, labels: Optional[Dict] = None):
        """Observe a value for histogram metric."""
        async with self._lock:
            observations = self._histograms[self._make_key(name, labels)]
            observations.append(value)
            if len(observations) > HISTOGRAM_WINDOW:
                del observations[:-HISTOGRAM_WINDOW]

    def counter_value(self, name: str, labels: Optional[Dict] = None) -> int:
        return self._counters.get(self._make_key(name, labels), 0)

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict] = None) -> str:
        """Create metric key with labels."""
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    async def get_metrics(self) -> str:
        """Get all metrics in Prometheus text format."""
        async with self._lock:
            lines = []
            typed = set()

            for key, value in sorted(self._counters.items()):
                base_name = key.split("{")[0]
                if base_name not in typed:
                    lines.append(f"# TYPE {base_name} counter")
                    typed.add(base_name)
                lines.append(f"{key} {value}")

            # Summary-style histograms: count and sum only
            for key, values in sorted(self._histograms.items()):
                base_name = key.split("{")[0]
                if base_name not in typed:
                    lines.append(f"# TYPE {base_name} summary")
                    typed.add(base_name)
                lines.append(f"{base_name}_count{key[len(base_name):]} {len(values)}")
                lines.append(f"{base_name}_sum{key[len(base_name):]} {sum(values)}")

            return "\n".join(lines) + "\n"

    async def reset(self):
        """Reset all metrics."""
        async with self._lock:
            self._counters.clear()
            self._histograms.clear()


# Global metrics collector
metrics = MetricsCollector()


async def track_gate_decision(kind: str, duration: float):
    """Track one abuse gate decision and how long it took."""
    await metrics.increment_counter("relay_gate_decisions_total", labels={"decision": kind})
    await metrics.observe_histogram("relay_gate_evaluation_seconds", duration)


async def track_store_error(operation: str):
    """Track a keyed store failure seen by the gate."""
    await metrics.increment_counter("relay_store_errors_total", labels={"operation": operation})


async def track_message_relayed():
    await metrics.increment_counter("relay_messages_relayed_total")
