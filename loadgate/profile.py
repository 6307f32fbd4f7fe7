"""
Load profiles and rate control
==============================
A LoadProfile is an ordered list of stages. Each stage linearly moves the
target from where the previous stage ended (or from ``start``) to its own
target over its duration, like k6 ``ramping-vus`` / ``ramping-arrival-rate``.

The RateController turns a profile into the two signals the scheduler needs:
- closed loop: how many executions should be live at elapsed time t
- open loop: the instants at which new executions should arrive
"""

import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Sequence, Tuple

from .errors import ConfigurationError


class LoadMode(Enum):
    CLOSED = "closed"  # hold N concurrent executions (VUs)
    OPEN = "open"      # start N executions per second (arrival rate)


class Phase(Enum):
    RAMPING = "ramping"
    STEADY = "steady"
    DONE = "done"


class ArrivalProcess(Enum):
    UNIFORM = "uniform"
    POISSON = "poisson"


@dataclass(frozen=True)
class Stage:
    """One segment of a load profile; target is VUs or arrivals/second."""
    duration: float
    target: float
    mode: LoadMode = LoadMode.CLOSED

    def __post_init__(self):
        if not self.duration > 0:
            raise ConfigurationError(f"stage duration must be > 0, got {self.duration}")
        if not self.target >= 0:
            raise ConfigurationError(f"stage target must be >= 0, got {self.target}")


# (start value, end value, duration)
Segment = Tuple[float, float, float]


class LoadProfile:
    """Immutable, validated sequence of stages sharing one mode."""

    def __init__(self, stages: Sequence[Stage], start: float = 0.0):
        if not stages:
            raise ConfigurationError("a load profile needs at least one stage")
        modes = {s.mode for s in stages}
        if len(modes) != 1:
            raise ConfigurationError("all stages of a profile must use the same mode")
        if not start >= 0:
            raise ConfigurationError(f"profile start value must be >= 0, got {start}")
        self._stages = tuple(stages)
        self._start = float(start)
        self._mode = modes.pop()

        segments: List[Segment] = []
        previous = self._start
        for stage in self._stages:
            segments.append((previous, float(stage.target), float(stage.duration)))
            previous = float(stage.target)
        self._segments = tuple(segments)
        self._total = sum(s.duration for s in self._stages)

    @classmethod
    def constant(cls, duration: float, target: float, mode: LoadMode = LoadMode.CLOSED) -> "LoadProfile":
        return cls([Stage(duration, target, mode)], start=target)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def start(self) -> float:
        return self._start

    @property
    def mode(self) -> LoadMode:
        return self._mode

    @property
    def total_duration(self) -> float:
        return self._total

    @property
    def peak(self) -> float:
        return max([self._start] + [s.target for s in self._stages])

    def _locate(self, t: float) -> Optional[Tuple[int, float]]:
        """Return (segment index, offset into segment) for elapsed time t."""
        if t < 0 or t > self._total:
            return None
        elapsed = 0.0
        for index, (_, _, duration) in enumerate(self._segments):
            if t <= elapsed + duration:
                return index, t - elapsed
            elapsed += duration
        return len(self._segments) - 1, self._segments[-1][2]

    def value_at(self, t: float) -> Optional[float]:
        """Interpolated target at t, or None once the profile is over."""
        located = self._locate(t)
        if located is None:
            return None
        index, offset = located
        v0, v1, duration = self._segments[index]
        return v0 + (v1 - v0) * offset / duration

    def phase_at(self, t: float) -> Phase:
        located = self._locate(t)
        if located is None:
            return Phase.DONE
        v0, v1, _ = self._segments[located[0]]
        return Phase.STEADY if v0 == v1 else Phase.RAMPING

    def cumulative(self, t: float) -> float:
        """Integral of the target over [0, t]; expected arrivals in open mode."""
        t = min(max(t, 0.0), self._total)
        total = 0.0
        elapsed = 0.0
        for v0, v1, duration in self._segments:
            if t <= elapsed:
                break
            u = min(t - elapsed, duration)
            total += v0 * u + (v1 - v0) * u * u / (2 * duration)
            elapsed += duration
        return total

    def time_for_cumulative(self, c: float) -> Optional[float]:
        """Inverse of cumulative(); None when the profile never reaches c."""
        if c < 0:
            raise ValueError("cumulative count must be >= 0")
        acc = 0.0
        elapsed = 0.0
        for v0, v1, duration in self._segments:
            area = (v0 + v1) * duration / 2
            if area > 0 and c <= acc + area:
                need = c - acc
                a = (v1 - v0) / (2 * duration)
                denominator = v0 + math.sqrt(max(v0 * v0 + 4 * a * need, 0.0))
                u = 2 * need / denominator if denominator > 0 else 0.0
                return elapsed + min(u, duration)
            acc += area
            elapsed += duration
        return None

    def __repr__(self) -> str:
        stages = ", ".join(f"{s.duration:g}s->{s.target:g}" for s in self._stages)
        return f"LoadProfile({self._mode.value}, start={self._start:g}, [{stages}])"


class RateController:
    """
    Converts a LoadProfile into scheduling signals over elapsed run time.
    """

    def __init__(
        self,
        profile: LoadProfile,
        arrivals: ArrivalProcess = ArrivalProcess.UNIFORM,
        rng: Optional[random.Random] = None,
    ):
        self.profile = profile
        self.arrivals = arrivals
        self._rng = rng or random.Random()

    @property
    def mode(self) -> LoadMode:
        return self.profile.mode

    @property
    def duration(self) -> float:
        return self.profile.total_duration

    def finished(self, t: float) -> bool:
        return t > self.profile.total_duration

    def phase(self, t: float) -> Phase:
        return self.profile.phase_at(t)

    def target_at(self, t: float) -> int:
        """
        Live pool size for closed-loop mode: the interpolated target rounded
        down, but at least one while the target is above zero. The pool never
        exceeds the target except in that first sub-unit stretch of a ramp.
        Zero once the profile is over.
        """
        value = self.profile.value_at(t)
        if value is None or value <= 1e-9:
            return 0
        return max(1, math.floor(value + 1e-9))

    def rate_at(self, t: float) -> float:
        value = self.profile.value_at(t)
        return value if value is not None else 0.0

    def arrival_times(self) -> Iterator[float]:
        """
        Yield arrival offsets (seconds from scenario start), ascending.

        Both processes walk the cumulative-rate curve: uniform arrivals sit at
        the midpoint of every unit step, poisson arrivals take Exp(1) steps.
        Either way the mean over any window converges to the declared rate.
        """
        if self.arrivals is ArrivalProcess.UNIFORM:
            position = 0.5
        else:
            position = self._rng.expovariate(1.0)
        while True:
            t = self.profile.time_for_cumulative(position)
            if t is None:
                return
            yield t
            if self.arrivals is ArrivalProcess.UNIFORM:
                position += 1.0
            else:
                position += self._rng.expovariate(1.0)
