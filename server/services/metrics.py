"""In-process metrics: labelled counters and bounded histograms.

Values live for the process lifetime and are reset on restart. The admin
metrics endpoint reads them alongside database counts.
"""

from typing import Any, Dict, List, Optional

from models.database import utc_now
from models.papers import BatchResult

HISTOGRAM_WINDOW = 1000

Labels = Optional[Dict[str, str]]


def _key(name: str, labels: Labels = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def _percentile(ordered: List[float], p: int) -> float:
    index = -(-p * len(ordered) // 100) - 1
    return ordered[max(0, index)]


class MetricsStore:
    def __init__(self):
        self._counters: Dict[str, float] = {}
        self._histograms: Dict[str, List[float]] = {}
        self.last_batch: Optional[Dict[str, Any]] = None

    def increment(self, name: str, amount: float = 1, labels: Labels = None) -> None:
        key = _key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + amount

    def observe(self, name: str, value: float, labels: Labels = None) -> None:
        values = self._histograms.setdefault(_key(name, labels), [])
        values.append(value)
        if len(values) > HISTOGRAM_WINDOW:
            del values[0]

    def counter(self, name: str, labels: Labels = None) -> float:
        return self._counters.get(_key(name, labels), 0)

    def histogram_stats(self, name: str, labels: Labels = None) -> Optional[Dict[str, float]]:
        """Summary over the most recent observations, None when nothing was recorded."""
        values = self._histograms.get(_key(name, labels))
        if not values:
            return None
        ordered = sorted(values)
        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "avg": total / len(values),
            "min": ordered[0],
            "max": ordered[-1],
            "p50": _percentile(ordered, 50),
            "p95": _percentile(ordered, 95),
            "p99": _percentile(ordered, 99),
        }

    def record_batch(self, result: BatchResult) -> None:
        mode = "dry_run" if result.dry_run else "live"
        self.increment("worker_runs", labels={"mode": mode})
        summary = result.to_dict()
        summary.pop("subscriptions")
        summary["finishedAt"] = utc_now().isoformat()
        self.last_batch = summary
        if result.dry_run:
            return
        self.increment("subscriptions_processed", result.processed)
        self.increment("subscriptions_successful", result.successful)
        self.increment("subscriptions_failed", result.failed)
        self.increment("subscriptions_deferred", result.deferred)
        self.increment("papers_delivered", result.papers_delivered)
        if result.deadline_reached:
            self.increment("worker_deadline_reached")
        self.observe("worker_duration_ms", result.duration_ms)

    def batch_totals(self) -> Dict[str, Any]:
        """Cumulative live-run counters in the trigger payload's casing."""
        return {
            "runs": self.counter("worker_runs", {"mode": "live"}),
            "dryRuns": self.counter("worker_runs", {"mode": "dry_run"}),
            "processed": self.counter("subscriptions_processed"),
            "successful": self.counter("subscriptions_successful"),
            "failed": self.counter("subscriptions_failed"),
            "deferred": self.counter("subscriptions_deferred"),
            "papersDelivered": self.counter("papers_delivered"),
            "deadlineReached": self.counter("worker_deadline_reached"),
            "durationMs": self.histogram_stats("worker_duration_ms"),
        }
