"""
In-process counters and duration histograms for the replay engine.

Series recorded by the engine:
- run_started_total / run_completed_total{status}
- run_duration_seconds{status}
- step_execution_total{step_type,status}
- retry_attempts_total{flow_id,step_id}
- step_timeout_total{step_id}

Labels are passed as keyword arguments and folded into the series key,
e.g. ``step_execution_total{status=failed,step_type=click}``.
"""
from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any

logger = logging.getLogger("flowreplay.metrics")


def series_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={labels[k]}" for k in sorted(labels)) + "}"


class MetricsCollector:
    """Counters and raw histogram samples keyed by series."""

    def __init__(self) -> None:
        self._counters: Counter[str] = Counter()
        self._samples: defaultdict[str, list[float]] = defaultdict(list)

    def inc(self, name: str, amount: int = 1, **labels: Any) -> None:
        self._counters[series_key(name, **labels)] += amount

    def observe(self, name: str, value: float, **labels: Any) -> None:
        self._samples[series_key(name, **labels)].append(float(value))

    def counter(self, name: str, **labels: Any) -> int:
        return self._counters.get(series_key(name, **labels), 0)

    def histogram(self, name: str, **labels: Any) -> dict[str, float]:
        """count/sum/min/max/avg for one series; zeros when nothing was observed."""
        return self._stats(self._samples.get(series_key(name, **labels), []))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "histograms": {key: self._stats(vals) for key, vals in self._samples.items()},
        }

    def reset(self) -> None:
        self._counters.clear()
        self._samples.clear()

    @staticmethod
    def _stats(values: list[float]) -> dict[str, float]:
        if not values:
            return {"count": 0, "sum": 0.0, "min": 0.0, "max": 0.0, "avg": 0.0}
        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "min": min(values),
            "max": max(values),
            "avg": total / len(values),
        }


metrics = MetricsCollector()


def record_run_started() -> None:
    metrics.inc("run_started_total")


def record_run_completed(duration_seconds: float, status: str) -> None:
    """Count a finished run and its wall time; status is completed, failed or stopped."""
    metrics.inc("run_completed_total", status=status)
    metrics.observe("run_duration_seconds", duration_seconds, status=status)


def record_retry_attempt(flow_id: str, step_id: str) -> None:
    metrics.inc("retry_attempts_total", flow_id=flow_id, step_id=step_id)


def record_step_execution(step_type: str, status: str) -> None:
    metrics.inc("step_execution_total", step_type=step_type, status=status)


def record_step_timeout(step_id: str, timeout_ms: int) -> None:
    metrics.inc("step_timeout_total", step_id=step_id)
    logger.warning("Step timeout: step=%s timeout_ms=%d", step_id, timeout_ms)


def get_metrics_summary() -> dict[str, Any]:
    return metrics.snapshot()
