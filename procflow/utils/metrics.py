"""
In-memory metrics for the execution engine.

Series recorded by the executor:
- execution_started_total / execution_finished_total{status}
- execution_duration_seconds{status}: wall time from creation to terminal state
- node_execution_total{kind,status}
- retry_attempts_total{node_id}
- escalations_total
- transition_conflicts_total

Series are keyed by ``(name, sorted label pairs)``; the JSON summary flattens
them to ``name{k=v,...}`` strings and the Prometheus export renders them with
quoted label values under a ``procflow_`` prefix.
"""
from collections import defaultdict
from typing import Any

PROMETHEUS_PREFIX = "procflow_"
_P95_LABEL = 'quantile="0.95"'

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _series(name: str, labels: dict[str, str] | None) -> SeriesKey:
    return name, tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _flat(key: SeriesKey) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def _quantile(sorted_vals: list[float], q: float) -> float:
    return sorted_vals[max(0, int(len(sorted_vals) * q) - 1)]


class MetricsCollector:
    """Counters and raw-sample histograms held in process memory."""

    def __init__(self):
        self.counters: dict[SeriesKey, int] = defaultdict(int)
        self.histograms: dict[SeriesKey, list[float]] = defaultdict(list)

    def increment_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None):
        self.counters[_series(name, labels)] += value

    def observe_histogram(self, name: str, value: float, labels: dict[str, str] | None = None):
        self.histograms[_series(name, labels)].append(value)

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self.counters.get(_series(name, labels), 0)

    def get_histogram_stats(self, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
        return self._stats(self.histograms.get(_series(name, labels), []))

    def get_all_metrics(self) -> dict[str, Any]:
        return {
            "counters": {_flat(k): v for k, v in self.counters.items()},
            "histograms": {_flat(k): self._stats(v) for k, v in self.histograms.items()},
        }

    def reset(self):
        self.counters.clear()
        self.histograms.clear()

    @staticmethod
    def _stats(values: list[float]) -> dict[str, Any]:
        if not values:
            return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}
        ordered = sorted(values)
        total = sum(ordered)
        return {
            "count": len(ordered),
            "sum": total,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": total / len(ordered),
            "p95": _quantile(ordered, 0.95),
        }


# Global metrics collector instance
metrics = MetricsCollector()


def record_execution_started():
    metrics.increment_counter("execution_started_total")


def record_execution_finished(duration_seconds: float, status: str):
    """Record an execution reaching a terminal status (completed, failed, cancelled)."""
    metrics.increment_counter("execution_finished_total", labels={"status": status})
    metrics.observe_histogram("execution_duration_seconds", duration_seconds, labels={"status": status})


def record_node_execution(kind: str, status: str):
    metrics.increment_counter("node_execution_total", labels={"kind": kind, "status": status})


def record_retry_attempt(node_id: str):
    metrics.increment_counter("retry_attempts_total", labels={"node_id": node_id})


def record_escalation():
    metrics.increment_counter("escalations_total")


def record_transition_conflict():
    metrics.increment_counter("transition_conflicts_total")


def get_metrics_summary() -> dict:
    return metrics.get_all_metrics()


def _label_text(labels: tuple[tuple[str, str], ...], extra: str = "") -> str:
    parts = []
    for k, v in labels:
        escaped = v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        parts.append(f'{k}="{escaped}"')
    if extra:
        parts.append(extra)
    return "{" + ",".join(parts) + "}" if parts else ""


def to_prometheus_text(collector: MetricsCollector | None = None) -> str:
    """Render the collector in Prometheus text exposition format.

    Histograms are rendered as summaries (``_count``, ``_sum`` and a 0.95
    quantile); each family gets exactly one ``# TYPE`` line.
    """
    mc = collector or metrics
    lines: list[str] = []

    counter_families: dict[str, list[tuple[str, int]]] = defaultdict(list)
    for (name, labels), val in mc.counters.items():
        counter_families[PROMETHEUS_PREFIX + name].append((_label_text(labels), val))
    for family, entries in counter_families.items():
        lines.append(f"# TYPE {family} counter")
        lines.extend(f"{family}{label_text} {val}" for label_text, val in entries)

    summary_families: dict[str, list[tuple[tuple, dict]]] = defaultdict(list)
    for (name, labels), values in mc.histograms.items():
        summary_families[PROMETHEUS_PREFIX + name].append((labels, MetricsCollector._stats(values)))
    for family, entries in summary_families.items():
        lines.append(f"# TYPE {family} summary")
        for labels, stats in entries:
            label_text = _label_text(labels)
            lines.append(f"{family}_count{label_text} {stats['count']}")
            lines.append(f"{family}_sum{label_text} {stats['sum']:.6f}")
            lines.append(f"{family}{_label_text(labels, _P95_LABEL)} {stats['p95']:.6f}")
    return "\n".join(lines) + "\n"
