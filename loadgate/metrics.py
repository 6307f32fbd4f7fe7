"""
Streaming metrics engine
========================
Memory-bounded, concurrency-safe metric series for load runs.

Series kinds:
- Counter: monotonic sum of adds
- Rate: fraction of boolean samples that were true
- Trend: numeric distribution with exact count/min/max/avg and t-digest
  percentiles

Every series owns a lock; an add is a single critical section, so adds from
any number of tasks or threads are linearizable per series. Nothing is
ordered across series.
"""

import math
import re
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, Union


class SeriesKind(Enum):
    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"


# =============================================================================
# BUILT-IN SERIES NAMES
# =============================================================================

REQUESTS = "requests"
REQUEST_DURATION = "request_duration"
FAIL_RATE = "fail_rate"
TRANSPORT_ERRORS = "transport_errors"
APPLICATION_ERRORS = "application_errors"
CONTENTION_RESPONSES = "contention_responses"
STEPS_SKIPPED = "steps_skipped"
ITERATIONS = "iterations"
SUCCESSFUL_FLOWS = "successful_flows"
FAILED_FLOWS = "failed_flows"
FLOW_ERRORS = "flow_errors"
FLOW_DURATION = "flow_duration"
SATURATION_REJECTIONS = "saturation_rejections"
ITERATIONS_INTERRUPTED = "iterations_interrupted"
ISSUANCE_DURATION = "issuance_duration"
ISSUANCE_FAILURES = "issuance_failures"

BUILTIN_SERIES = frozenset({
    REQUESTS, REQUEST_DURATION, FAIL_RATE, TRANSPORT_ERRORS,
    APPLICATION_ERRORS, CONTENTION_RESPONSES, STEPS_SKIPPED,
    ITERATIONS, SUCCESSFUL_FLOWS, FAILED_FLOWS, FLOW_ERRORS,
    FLOW_DURATION, SATURATION_REJECTIONS, ITERATIONS_INTERRUPTED,
    ISSUANCE_DURATION, ISSUANCE_FAILURES,
})


def flow_series(flow: str) -> str:
    """Name of the per-flow duration trend recorded next to ``flow_duration``."""
    return f"{flow}_flow_duration"


_PERCENTILE_RE = re.compile(r"^p\((\d+(?:\.\d+)?)\)$")


def parse_percentile(statistic: str) -> Optional[float]:
    """Return N for a ``p(N)`` statistic name, None for anything else."""
    match = _PERCENTILE_RE.match(statistic.strip())
    if not match:
        return None
    value = float(match.group(1))
    if not 0 <= value <= 100:
        raise ValueError(f"percentile out of range: {statistic}")
    return value


# =============================================================================
# T-DIGEST
# =============================================================================

Centroid = Tuple[float, float]  # (mean, weight)


def digest_percentile(
    centroids: List[Centroid],
    count: int,
    min_val: float,
    max_val: float,
    p: float,
) -> Optional[float]:
    """
    Estimate the p-th percentile (0-100) from sorted centroids.

    Each centroid sits at the midpoint of the rank range it covers; min and
    max anchor ranks 0 and count. Values between anchors are linearly
    interpolated, which keeps the estimate monotonic in p and exact for
    single-sample centroids.
    """
    if count == 0 or not centroids:
        return None
    if min_val == max_val:
        return min_val
    index = count * min(max(p, 0.0), 100.0) / 100.0

    prev_rank, prev_value = 0.0, min_val
    cumulative = 0.0
    for mean, weight in centroids:
        rank = cumulative + weight / 2.0
        if index <= rank:
            return _lerp(prev_rank, prev_value, rank, mean, index)
        prev_rank, prev_value = rank, mean
        cumulative += weight
    return _lerp(prev_rank, prev_value, float(count), max_val, index)


def _lerp(x0: float, y0: float, x1: float, y1: float, x: float) -> float:
    if x1 <= x0:
        return y1
    return y0 + (y1 - y0) * (x - x0) / (x1 - x0)


class TDigest:
    """
    Merging t-digest for streaming percentiles.

    Incoming values land in a small buffer that is folded into the centroid
    list once it fills up. Centroid size is capped by 4*n*q*(1-q)/compression,
    so the tails stay close to single samples and p99/p99.9 remain accurate
    while memory stays O(compression).
    """

    def __init__(self, compression: int = 100, buffer_size: int = 512):
        if compression < 10:
            raise ValueError("compression must be >= 10")
        self.compression = compression
        self.buffer_size = buffer_size
        self._centroids: List[Centroid] = []
        self._buffer: List[float] = []
        self.count = 0
        self.min_val = math.inf
        self.max_val = -math.inf

    def add(self, value: float):
        self.count += 1
        if value < self.min_val:
            self.min_val = value
        if value > self.max_val:
            self.max_val = value
        self._buffer.append(value)
        if len(self._buffer) >= self.buffer_size:
            self._compress()

    def _compress(self):
        if not self._buffer:
            return
        items = sorted(self._centroids + [(v, 1.0) for v in self._buffer])
        self._buffer = []
        total = float(self.count)

        merged: List[Centroid] = []
        cumulative = 0.0
        cur_mean, cur_weight = items[0]
        for mean, weight in items[1:]:
            q = (cumulative + (cur_weight + weight) / 2.0) / total
            limit = 4.0 * total * q * (1.0 - q) / self.compression
            if cur_weight + weight <= max(1.0, limit):
                new_weight = cur_weight + weight
                cur_mean += (mean - cur_mean) * weight / new_weight
                cur_weight = new_weight
            else:
                merged.append((cur_mean, cur_weight))
                cumulative += cur_weight
                cur_mean, cur_weight = mean, weight
        merged.append((cur_mean, cur_weight))
        self._centroids = merged

    def centroids(self) -> List[Centroid]:
        self._compress()
        return list(self._centroids)

    def percentile(self, p: float) -> Optional[float]:
        return digest_percentile(self.centroids(), self.count, self.min_val, self.max_val, p)


# =============================================================================
# SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class CounterSnapshot:
    name: str
    value: float
    samples: int

    kind: ClassVar[SeriesKind] = SeriesKind.COUNTER

    @property
    def has_data(self) -> bool:
        return self.samples > 0

    def statistic(self, statistic: str) -> Optional[float]:
        if statistic in ("count", "value"):
            return self.value
        raise KeyError(statistic)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value, "samples": self.samples}


@dataclass(frozen=True)
class RateSnapshot:
    name: str
    passes: int
    total: int

    kind: ClassVar[SeriesKind] = SeriesKind.RATE

    @property
    def has_data(self) -> bool:
        return self.total > 0

    @property
    def fails(self) -> int:
        return self.total - self.passes

    @property
    def rate(self) -> Optional[float]:
        """Fraction of true samples, or None when nothing was recorded."""
        if self.total == 0:
            return None
        return self.passes / self.total

    def statistic(self, statistic: str) -> Optional[float]:
        if statistic == "rate":
            return self.rate
        if statistic == "passes":
            return float(self.passes)
        if statistic == "fails":
            return float(self.fails)
        if statistic == "count":
            return float(self.total)
        raise KeyError(statistic)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "rate": self.rate if self.rate is not None else "no data",
            "passes": self.passes,
            "fails": self.fails,
        }


@dataclass(frozen=True)
class TrendSnapshot:
    name: str
    count: int
    min: Optional[float]
    max: Optional[float]
    avg: Optional[float]
    std_dev: Optional[float]
    centroids: Tuple[Centroid, ...]

    kind: ClassVar[SeriesKind] = SeriesKind.TREND

    @property
    def has_data(self) -> bool:
        return self.count > 0

    def percentile(self, p: float) -> Optional[float]:
        if not self.count:
            return None
        return digest_percentile(list(self.centroids), self.count, self.min, self.max, p)

    @property
    def p50(self) -> Optional[float]:
        return self.percentile(50)

    @property
    def p90(self) -> Optional[float]:
        return self.percentile(90)

    @property
    def p95(self) -> Optional[float]:
        return self.percentile(95)

    @property
    def p99(self) -> Optional[float]:
        return self.percentile(99)

    def statistic(self, statistic: str) -> Optional[float]:
        if statistic == "count":
            return float(self.count)
        if statistic == "avg":
            return self.avg
        if statistic == "min":
            return self.min
        if statistic == "max":
            return self.max
        if statistic == "med":
            return self.p50
        if statistic == "std":
            return self.std_dev
        p = parse_percentile(statistic)
        if p is None:
            raise KeyError(statistic)
        return self.percentile(p)

    def to_dict(self) -> Dict[str, Any]:
        def r(value):
            return round(value, 3) if value is not None else None

        return {
            "kind": self.kind.value,
            "count": self.count,
            "avg": r(self.avg),
            "min": r(self.min),
            "max": r(self.max),
            "std_dev": r(self.std_dev),
            "p50": r(self.p50),
            "p90": r(self.p90),
            "p95": r(self.p95),
            "p99": r(self.p99),
        }


SeriesSnapshot = Union[CounterSnapshot, RateSnapshot, TrendSnapshot]


# =============================================================================
# SERIES
# =============================================================================

class Counter:
    """Monotonic sum."""

    kind = SeriesKind.COUNTER

    def __init__(self, name: str):
        self.name = name
        self._value = 0.0
        self._samples = 0
        self._lock = threading.Lock()

    def add(self, n: float = 1):
        if n < 0:
            raise ValueError(f"counter {self.name!r} cannot decrease (got {n})")
        with self._lock:
            self._value += n
            self._samples += 1

    @property
    def value(self) -> float:
        return self._value

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self.name, self._value, self._samples)


class Rate:
    """Fraction of true samples."""

    kind = SeriesKind.RATE

    def __init__(self, name: str):
        self.name = name
        self._passes = 0
        self._total = 0
        self._lock = threading.Lock()

    def add(self, sample: bool):
        with self._lock:
            self._total += 1
            if sample:
                self._passes += 1

    def snapshot(self) -> RateSnapshot:
        with self._lock:
            return RateSnapshot(self.name, self._passes, self._total)


class Trend:
    """
    Numeric sample distribution.
    count/min/max/avg are exact; the standard deviation uses Welford's online
    algorithm; percentiles come from a t-digest.
    """

    kind = SeriesKind.TREND

    def __init__(self, name: str, compression: int = 100):
        self.name = name
        self._digest = TDigest(compression=compression)
        self._sum = 0.0
        self._mean = 0.0
        self._m2 = 0.0
        self._lock = threading.Lock()

    def add(self, value: float):
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"trend {self.name!r} received NaN")
        with self._lock:
            self._digest.add(value)
            self._sum += value
            delta = value - self._mean
            self._mean += delta / self._digest.count
            self._m2 += delta * (value - self._mean)

    @property
    def count(self) -> int:
        return self._digest.count

    def percentile(self, p: float) -> Optional[float]:
        with self._lock:
            return self._digest.percentile(p)

    def snapshot(self) -> TrendSnapshot:
        with self._lock:
            d = self._digest
            if d.count == 0:
                return TrendSnapshot(self.name, 0, None, None, None, None, ())
            std_dev = math.sqrt(self._m2 / (d.count - 1)) if d.count > 1 else 0.0
            return TrendSnapshot(
                name=self.name,
                count=d.count,
                min=d.min_val,
                max=d.max_val,
                avg=self._sum / d.count,
                std_dev=std_dev,
                centroids=tuple(d.centroids()),
            )


Series = Union[Counter, Rate, Trend]


class MetricsRegistry:
    """
    Named series, created lazily on first use.

    Asking for an existing name with a different kind is a programming error
    and raises TypeError.
    """

    def __init__(self, trend_compression: int = 100):
        self.trend_compression = trend_compression
        self._series: Dict[str, Series] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, cls: Type[Series]) -> Series:
        series = self._series.get(name)
        if series is None:
            with self._lock:
                series = self._series.get(name)
                if series is None:
                    if cls is Trend:
                        series = Trend(name, compression=self.trend_compression)
                    else:
                        series = cls(name)
                    self._series[name] = series
        if not isinstance(series, cls):
            raise TypeError(f"series {name!r} is a {series.kind.value}, not a {cls.kind.value}")
        return series

    def counter(self, name: str) -> Counter:
        return self._get_or_create(name, Counter)

    def rate(self, name: str) -> Rate:
        return self._get_or_create(name, Rate)

    def trend(self, name: str) -> Trend:
        return self._get_or_create(name, Trend)

    def get(self, name: str) -> Optional[Series]:
        return self._series.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def __contains__(self, name: str) -> bool:
        return name in self._series

    def snapshot(self) -> Mapping[str, SeriesSnapshot]:
        with self._lock:
            series = list(self._series.values())
        return MappingProxyType({s.name: s.snapshot() for s in sorted(series, key=lambda s: s.name)})
