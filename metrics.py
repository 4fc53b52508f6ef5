from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Iterator, Optional, Sequence

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, Metric, SummaryMetricFamily

from loadgen import CheckResult, percentile
from scenario import COUNTER_AGGREGATIONS, FAILED_REQUESTS_METRIC, Threshold

logger = logging.getLogger(__name__)

ITERATIONS = "iterations"
HTTP_REQS = "http_reqs"
FAILED_REQUESTS = FAILED_REQUESTS_METRIC
HTTP_REQ_FAILED = "http_req_failed"
HTTP_REQ_DURATION = "http_req_duration"
TIMEOUTS = "timeouts"
CHECKS = "checks"

# Aggregations cheap enough to re-evaluate on every write.
_RUNNING_AGGREGATIONS = {"count", "sum", "avg", "min", "max", "rate"}


@dataclass(frozen=True)
class AbortReason:
    threshold: str
    metric: str
    observed_value: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AbortSignal:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[AbortReason] = None

    def trigger(self, reason: AbortReason) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
        logger.warning(
            "Threshold '%s' breached (observed %s); aborting run",
            reason.threshold,
            _format_value(reason.observed_value),
        )
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def reason(self) -> Optional[AbortReason]:
        return self._reason


class _Counter:
    __slots__ = ("lock", "value")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.value = 0.0


class _Series:
    __slots__ = ("lock", "values", "total", "minimum", "maximum", "non_zero")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.values: list[float] = []
        self.total = 0.0
        self.minimum: Optional[float] = None
        self.maximum: Optional[float] = None
        self.non_zero = 0


@dataclass
class MetricsSnapshot:
    elapsed_s: float
    counters: dict[str, float] = field(default_factory=dict)
    series: dict[str, dict[str, Optional[float]]] = field(default_factory=dict)
    checks: dict[str, dict[str, int]] = field(default_factory=dict)

    def counter(self, name: str) -> float:
        return self.counters.get(name, 0.0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4g}"


class MetricsAggregator:
    def __init__(
        self,
        thresholds: Sequence[Threshold] = (),
        abort_signal: Optional[AbortSignal] = None,
    ) -> None:
        self.thresholds = tuple(thresholds)
        self.abort_signal = abort_signal or AbortSignal()
        self._started = time.monotonic()
        self._registry_lock = threading.Lock()
        self._counters: dict[str, _Counter] = {}
        self._series: dict[str, _Series] = {}
        self._checks_lock = threading.Lock()
        self._checks: dict[str, list[int]] = {}
        self._breached_lock = threading.Lock()
        self._breached: dict[str, float] = {}
        self._thresholds_by_metric: dict[str, list[Threshold]] = {}
        for threshold in self.thresholds:
            self._thresholds_by_metric.setdefault(threshold.metric, []).append(threshold)

    def elapsed_s(self) -> float:
        return time.monotonic() - self._started

    def _counter(self, name: str) -> _Counter:
        counter = self._counters.get(name)
        if counter is None:
            with self._registry_lock:
                counter = self._counters.setdefault(name, _Counter())
        return counter

    def _get_series(self, name: str) -> _Series:
        series = self._series.get(name)
        if series is None:
            with self._registry_lock:
                series = self._series.setdefault(name, _Series())
        return series

    def increment(self, name: str, amount: float = 1) -> None:
        if amount < 0:
            raise ValueError(f"Counter '{name}' can only increase, got {amount}")
        counter = self._counter(name)
        with counter.lock:
            counter.value += amount
        self._evaluate_metric(name, running_only=True)

    def observe(self, name: str, value: float) -> None:
        value = float(value)
        series = self._get_series(name)
        with series.lock:
            series.values.append(value)
            series.total += value
            if series.minimum is None or value < series.minimum:
                series.minimum = value
            if series.maximum is None or value > series.maximum:
                series.maximum = value
            if value != 0:
                series.non_zero += 1
        self._evaluate_metric(name, running_only=True)

    def record_checks(self, results: Iterable[CheckResult]) -> None:
        results = list(results)
        with self._checks_lock:
            for result in results:
                counts = self._checks.setdefault(result.name, [0, 0])
                counts[0 if result.passed else 1] += 1
        for result in results:
            self.observe(CHECKS, 1.0 if result.passed else 0.0)

    def counter_value(self, name: str) -> float:
        counter = self._counters.get(name)
        if counter is None:
            return 0.0
        with counter.lock:
            return counter.value

    def aggregate(
        self,
        name: str,
        aggregation: str,
        pct: Optional[float] = None,
    ) -> Optional[float]:
        counter = self._counters.get(name)
        if counter is not None:
            with counter.lock:
                value = counter.value
            if aggregation not in COUNTER_AGGREGATIONS:
                return None
            if aggregation == "rate":
                elapsed = self.elapsed_s()
                return value / elapsed if elapsed > 0 else 0.0
            return value

        series = self._series.get(name)
        if series is None:
            return 0.0 if aggregation in {"count", "sum", "rate"} else None

        with series.lock:
            count = len(series.values)
            if aggregation == "count":
                return float(count)
            if aggregation == "sum":
                return series.total
            if aggregation == "rate":
                return series.non_zero / count if count else 0.0
            if aggregation == "min":
                return series.minimum
            if aggregation == "max":
                return series.maximum
            if aggregation == "avg":
                return series.total / count if count else None
            values = list(series.values)
        if aggregation == "med":
            return percentile(values, 50.0)
        if aggregation == "p" and pct is not None:
            return percentile(values, pct)
        return None

    def threshold_value(self, threshold: Threshold) -> Optional[float]:
        return self.aggregate(threshold.metric, threshold.aggregation, threshold.percentile)

    def _evaluate_metric(self, name: str, running_only: bool) -> None:
        for threshold in self._thresholds_by_metric.get(name, ()):
            if running_only and threshold.aggregation not in _RUNNING_AGGREGATIONS:
                continue
            self._evaluate_threshold(threshold)

    def _evaluate_threshold(self, threshold: Threshold) -> bool:
        observed = self.threshold_value(threshold)
        if not threshold.is_breached(observed):
            return False
        assert observed is not None
        if threshold.abort_on_breach:
            self.abort_signal.trigger(
                AbortReason(
                    threshold=threshold.name,
                    metric=threshold.metric,
                    observed_value=observed,
                )
            )
        with self._breached_lock:
            if threshold.name not in self._breached:
                logger.info("Threshold '%s' breached (observed %s)", threshold.name, _format_value(observed))
            self._breached[threshold.name] = observed
        return True

    def evaluate_thresholds(self) -> dict[str, float]:
        for threshold in self.thresholds:
            self._evaluate_threshold(threshold)
        return self.breached_thresholds()

    def breached_thresholds(self) -> dict[str, float]:
        with self._breached_lock:
            return dict(self._breached)

    def snapshot(self) -> MetricsSnapshot:
        with self._registry_lock:
            counter_names = list(self._counters)
            series_names = list(self._series)
        snapshot = MetricsSnapshot(elapsed_s=self.elapsed_s())
        for name in counter_names:
            snapshot.counters[name] = self.counter_value(name)
        for name in series_names:
            series = self._series[name]
            with series.lock:
                values = list(series.values)
                total = series.total
                minimum = series.minimum
                maximum = series.maximum
                non_zero = series.non_zero
            count = len(values)
            snapshot.series[name] = {
                "count": float(count),
                "sum": total,
                "avg": total / count if count else None,
                "min": minimum,
                "max": maximum,
                "rate": non_zero / count if count else None,
                "p50": percentile(values, 50.0),
                "p90": percentile(values, 90.0),
                "p95": percentile(values, 95.0),
                "p99": percentile(values, 99.0),
            }
        with self._checks_lock:
            for name, (passes, fails) in self._checks.items():
                snapshot.checks[name] = {"passes": passes, "fails": fails}
        return snapshot

    def collector(self, namespace: str = "loadtest") -> "AggregatorCollector":
        return AggregatorCollector(self, namespace=namespace)

    def render_prometheus(self, namespace: str = "loadtest") -> str:
        registry = CollectorRegistry()
        registry.register(self.collector(namespace=namespace))
        return generate_latest(registry).decode("utf-8")


def _metric_name(namespace: str, name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", name.strip()).strip("_")
    return f"{namespace}_{sanitized}" if namespace else sanitized


class AggregatorCollector:
    def __init__(self, aggregator: MetricsAggregator, namespace: str = "loadtest") -> None:
        self.aggregator = aggregator
        self.namespace = namespace

    def collect(self) -> Iterator[Metric]:
        snapshot = self.aggregator.snapshot()
        for name, value in sorted(snapshot.counters.items()):
            yield CounterMetricFamily(
                _metric_name(self.namespace, name),
                f"Load test counter '{name}'",
                value=value,
            )
        for name, stats in sorted(snapshot.series.items()):
            yield SummaryMetricFamily(
                _metric_name(self.namespace, name),
                f"Load test observations of '{name}'",
                count_value=stats["count"] or 0.0,
                sum_value=stats["sum"] or 0.0,
            )
        if snapshot.checks:
            family = CounterMetricFamily(
                _metric_name(self.namespace, "check_results"),
                "Check outcomes by check name",
                labels=["check", "result"],
            )
            for name, counts in sorted(snapshot.checks.items()):
                family.add_metric([name, "pass"], counts["passes"])
                family.add_metric([name, "fail"], counts["fails"])
            yield family
