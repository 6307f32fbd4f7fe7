"""Tests for counters, rates, trends and the t-digest."""

import random
import threading

import pytest

from loadgate.metrics import (
    CounterSnapshot,
    MetricsRegistry,
    RateSnapshot,
    TDigest,
    TrendSnapshot,
    parse_percentile,
)


class TestCounter:
    def test_sums_adds(self, metrics):
        counter = metrics.counter("requests")
        counter.add()
        counter.add(4)
        snap = counter.snapshot()
        assert snap.value == 5
        assert snap.samples == 2

    def test_rejects_negative(self, metrics):
        with pytest.raises(ValueError):
            metrics.counter("requests").add(-1)

    def test_concurrent_adds_are_not_lost(self, metrics):
        counter = metrics.counter("requests")

        def work():
            for _ in range(5000):
                counter.add()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter.value == 40000


class TestRate:
    def test_empty_rate_reports_no_data(self, metrics):
        snap = metrics.rate("fail_rate").snapshot()
        assert snap.rate is None
        assert not snap.has_data
        assert snap.to_dict()["rate"] == "no data"

    def test_rate_is_fraction_of_true_samples(self, metrics):
        rate = metrics.rate("fail_rate")
        for sample in (True, False, False, False):
            rate.add(sample)
        snap = rate.snapshot()
        assert snap.rate == pytest.approx(0.25)
        assert snap.passes == 1
        assert snap.fails == 3
        assert snap.statistic("count") == 4


class TestTrend:
    def test_exact_count_avg_min_max_under_concurrency(self, metrics):
        trend = metrics.trend("request_duration")
        values = [float(i) for i in range(1, 1001)]

        def work(chunk):
            for v in chunk:
                trend.add(v)

        threads = [threading.Thread(target=work, args=(values[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snap = trend.snapshot()
        assert snap.count == 1000
        assert snap.min == 1.0
        assert snap.max == 1000.0
        assert snap.avg == pytest.approx(500.5)

    def test_percentiles_are_monotonic(self, metrics):
        rng = random.Random(7)
        trend = metrics.trend("latency")
        for _ in range(20000):
            trend.add(rng.lognormvariate(4, 0.8))
        snap = trend.snapshot()
        quantiles = [snap.percentile(p) for p in range(0, 101)]
        assert quantiles == sorted(quantiles)
        assert snap.p50 <= snap.p90 <= snap.p95 <= snap.p99 <= snap.max

    def test_single_sample(self, metrics):
        trend = metrics.trend("one")
        trend.add(12.5)
        snap = trend.snapshot()
        assert snap.p50 == 12.5
        assert snap.p99 == 12.5
        assert snap.std_dev == 0.0

    def test_rejects_nan(self, metrics):
        with pytest.raises(ValueError):
            metrics.trend("latency").add(float("nan"))

    def test_statistics_lookup(self, metrics):
        trend = metrics.trend("latency")
        for v in (10, 20, 30):
            trend.add(v)
        snap = trend.snapshot()
        assert snap.statistic("avg") == pytest.approx(20)
        assert snap.statistic("count") == 3
        assert snap.statistic("med") == pytest.approx(20, abs=1)
        with pytest.raises(KeyError):
            snap.statistic("rate")


class TestTDigest:
    def test_accuracy_on_uniform_data(self):
        digest = TDigest(compression=100)
        values = list(range(1, 100001))
        random.Random(3).shuffle(values)
        for v in values:
            digest.add(v)
        assert digest.percentile(50) == pytest.approx(50000, rel=0.01)
        assert digest.percentile(95) == pytest.approx(95000, rel=0.01)
        assert digest.percentile(99) == pytest.approx(99000, rel=0.005)

    def test_memory_stays_bounded(self):
        digest = TDigest(compression=100)
        for i in range(50000):
            digest.add(i % 977)
        assert len(digest.centroids()) < 1000

    def test_empty_digest(self):
        assert TDigest().percentile(95) is None


class TestRegistry:
    def test_series_created_lazily(self):
        registry = MetricsRegistry()
        assert "requests" not in registry
        registry.counter("requests").add()
        assert "requests" in registry
        assert registry.counter("requests") is registry.counter("requests")

    def test_kind_mismatch_raises(self):
        registry = MetricsRegistry()
        registry.counter("requests")
        with pytest.raises(TypeError):
            registry.trend("requests")

    def test_snapshot_is_read_only(self):
        registry = MetricsRegistry()
        registry.counter("a").add()
        registry.rate("b").add(True)
        registry.trend("c").add(1)
        snap = registry.snapshot()
        assert isinstance(snap["a"], CounterSnapshot)
        assert isinstance(snap["b"], RateSnapshot)
        assert isinstance(snap["c"], TrendSnapshot)
        with pytest.raises(TypeError):
            snap["d"] = None


@pytest.mark.parametrize("text,expected", [("p(95)", 95.0), ("p(99.9)", 99.9), ("avg", None)])
def test_parse_percentile(text, expected):
    assert parse_percentile(text) == expected


def test_parse_percentile_out_of_range():
    with pytest.raises(ValueError):
        parse_percentile("p(101)")
