"""
Metrics collection and Prometheus-compatible exposition.

Tracks authorization and tenant-context counters for monitoring.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "tenantgate_"


class MetricsCollector:
    """
    Simple metrics collector with Prometheus text format export.

    Counters may carry a small fixed label set, e.g. ``resource``.
    """

    def __init__(self) -> None:
        self._counters: dict[tuple[str, tuple], int] = defaultdict(int)
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        """Increment a counter."""
        self._counters[(f"{PREFIX}{name}", tuple(sorted(labels.items())))] += value

    def get(self, name: str, **labels: str) -> int:
        """Get a counter value; without labels, the sum over all label sets."""
        full = f"{PREFIX}{name}"
        if labels:
            return self._counters.get((full, tuple(sorted(labels.items()))), 0)
        return sum(v for (n, _), v in self._counters.items() if n == full)

    def reset(self) -> None:
        self._counters.clear()

    def to_prometheus(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = []
        seen: set[str] = set()
        for (name, labels), value in sorted(self._counters.items()):
            if name not in seen:
                lines.append(f"# TYPE {name} counter")
                seen.add(name)
            if labels:
                rendered = ",".join(f'{k}="{v}"' for k, v in labels)
                lines.append(f"{name}{{{rendered}}} {value}")
            else:
                lines.append(f"{name} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Export metrics as a dictionary."""
        return {
            "counters": {
                name + (str(dict(labels)) if labels else ""): value
                for (name, labels), value in self._counters.items()
            },
            "uptime_seconds": time.time() - self._start_time,
        }


metrics = MetricsCollector()
