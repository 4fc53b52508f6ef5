"""Tests for the metrics aggregator, threshold evaluation and abort signal."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from prometheus_client.parser import text_string_to_metric_families

from loadgen import CheckResult
from metrics import (
    CHECKS,
    FAILED_REQUESTS,
    HTTP_REQ_DURATION,
    HTTP_REQS,
    ITERATIONS,
    TIMEOUTS,
    AbortReason,
    AbortSignal,
    MetricsAggregator,
)
from scenario import COUNTER_METRICS, Threshold


class TestAbortSignal:
    def test_triggers_once(self):
        signal = AbortSignal()
        first = AbortReason(threshold="a: count>=1", metric="a", observed_value=1.0)
        second = AbortReason(threshold="b: count>=1", metric="b", observed_value=2.0)

        assert not signal.is_set()
        assert signal.trigger(first) is True
        assert signal.trigger(second) is False
        assert signal.is_set()
        assert signal.reason == first

    def test_wait(self):
        signal = AbortSignal()
        assert signal.wait(timeout=0.01) is False
        signal.trigger(AbortReason(threshold="t", metric="m", observed_value=1.0))
        assert signal.wait(timeout=0.01) is True


class TestCounters:
    def test_no_lost_updates_across_threads(self):
        aggregator = MetricsAggregator()
        clients, increments = 16, 2000

        def worker():
            for _ in range(increments):
                aggregator.increment(FAILED_REQUESTS)

        with ThreadPoolExecutor(max_workers=clients) as executor:
            for future in [executor.submit(worker) for _ in range(clients)]:
                future.result()

        assert aggregator.counter_value(FAILED_REQUESTS) == clients * increments
        assert aggregator.snapshot().counter(FAILED_REQUESTS) == clients * increments

    def test_counters_only_increase(self):
        aggregator = MetricsAggregator()
        aggregator.increment("iterations", 3)
        with pytest.raises(ValueError):
            aggregator.increment("iterations", -1)
        assert aggregator.counter_value("iterations") == 3

    def test_unknown_counter_reads_zero(self):
        assert MetricsAggregator().counter_value("nothing") == 0.0


class TestSeries:
    def test_aggregates(self):
        aggregator = MetricsAggregator()
        for value in [10.0, 20.0, 30.0, 40.0]:
            aggregator.observe(HTTP_REQ_DURATION, value)

        assert aggregator.aggregate(HTTP_REQ_DURATION, "count") == 4.0
        assert aggregator.aggregate(HTTP_REQ_DURATION, "avg") == 25.0
        assert aggregator.aggregate(HTTP_REQ_DURATION, "min") == 10.0
        assert aggregator.aggregate(HTTP_REQ_DURATION, "max") == 40.0
        assert aggregator.aggregate(HTTP_REQ_DURATION, "med") == 25.0
        assert aggregator.aggregate(HTTP_REQ_DURATION, "p", 100.0) == 40.0

        stats = aggregator.snapshot().series[HTTP_REQ_DURATION]
        assert stats["count"] == 4.0
        assert stats["sum"] == 100.0
        assert stats["p50"] == 25.0

    def test_rate_is_fraction_of_non_zero(self):
        aggregator = MetricsAggregator()
        for value in [1, 0, 1, 1]:
            aggregator.observe(CHECKS, value)
        assert aggregator.aggregate(CHECKS, "rate") == 0.75

    def test_record_checks(self):
        aggregator = MetricsAggregator()
        aggregator.record_checks(
            [
                CheckResult("status==200", False),
                CheckResult("status!=504", True),
                CheckResult("status!=500", False),
            ]
        )
        aggregator.record_checks([CheckResult("status==200", True)])

        checks = aggregator.snapshot().checks
        assert checks["status==200"] == {"passes": 1, "fails": 1}
        assert checks["status!=504"] == {"passes": 1, "fails": 0}
        assert checks["status!=500"] == {"passes": 0, "fails": 1}
        assert aggregator.aggregate(CHECKS, "count") == 4.0


class TestThresholds:
    def test_first_failure_flips_abort(self):
        signal = AbortSignal()
        threshold = Threshold(metric=FAILED_REQUESTS, condition="count>=1", abort_on_breach=True)
        aggregator = MetricsAggregator([threshold], signal)

        aggregator.increment("iterations")
        assert not signal.is_set()

        aggregator.increment(FAILED_REQUESTS)
        assert signal.is_set()
        assert signal.reason == AbortReason(
            threshold="failed requests: count>=1",
            metric=FAILED_REQUESTS,
            observed_value=1.0,
        )

    def test_non_aborting_breach_is_only_reported(self):
        signal = AbortSignal()
        threshold = Threshold(metric=FAILED_REQUESTS, condition="count>2", abort_on_breach=False)
        aggregator = MetricsAggregator([threshold], signal)

        for _ in range(5):
            aggregator.increment(FAILED_REQUESTS)

        assert not signal.is_set()
        assert aggregator.breached_thresholds() == {"failed requests: count>2": 5.0}

    def test_percentile_thresholds_wait_for_full_evaluation(self):
        signal = AbortSignal()
        threshold = Threshold(metric=HTTP_REQ_DURATION, condition="p(95)>100")
        aggregator = MetricsAggregator([threshold], signal)

        for value in [500.0, 600.0, 700.0]:
            aggregator.observe(HTTP_REQ_DURATION, value)
        assert not signal.is_set()

        breached = aggregator.evaluate_thresholds()
        assert signal.is_set()
        assert breached["http_req_duration: p(95)>100"] == pytest.approx(690.0)

    def test_concurrent_writers_trigger_abort_once(self):
        signal = AbortSignal()
        threshold = Threshold(metric=FAILED_REQUESTS, condition="count>=10")
        aggregator = MetricsAggregator([threshold], signal)
        triggers = []
        original_trigger = signal.trigger
        lock = threading.Lock()

        def recording_trigger(reason):
            fired = original_trigger(reason)
            if fired:
                with lock:
                    triggers.append(reason)
            return fired

        signal.trigger = recording_trigger

        with ThreadPoolExecutor(max_workers=8) as executor:
            for future in [executor.submit(aggregator.increment, FAILED_REQUESTS) for _ in range(200)]:
                future.result()

        assert len(triggers) == 1
        assert triggers[0].observed_value >= 10


def test_render_prometheus():
    aggregator = MetricsAggregator()
    aggregator.increment(FAILED_REQUESTS, 2)
    aggregator.observe(HTTP_REQ_DURATION, 12.5)
    aggregator.record_checks([CheckResult("status==200", True)])

    families = {
        family.name: family
        for family in text_string_to_metric_families(aggregator.render_prometheus())
    }

    failed = families["loadtest_failed_requests"]
    assert failed.type == "counter"
    assert failed.samples[0].value == 2.0

    duration = families["loadtest_http_req_duration"]
    samples = {sample.name: sample.value for sample in duration.samples}
    assert samples["loadtest_http_req_duration_count"] == 1.0
    assert samples["loadtest_http_req_duration_sum"] == 12.5

    check_samples = families["loadtest_check_results"].samples
    assert {
        (sample.labels["check"], sample.labels["result"]): sample.value
        for sample in check_samples
    } == {("status==200", "pass"): 1.0, ("status==200", "fail"): 0.0}


def test_builtin_counters_are_validated_as_counters():
    assert {ITERATIONS, HTTP_REQS, FAILED_REQUESTS, TIMEOUTS} == set(COUNTER_METRICS)
    aggregator = MetricsAggregator()
    aggregator.increment(FAILED_REQUESTS, 3)
    assert aggregator.aggregate(FAILED_REQUESTS, "count") == 3.0
    assert aggregator.aggregate(FAILED_REQUESTS, "sum") == 3.0
    assert aggregator.aggregate(FAILED_REQUESTS, "avg") is None
