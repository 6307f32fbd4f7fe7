"""
Run result
==========
The immutable outcome of one run: final statistics of every series plus the
verdict of every threshold. Built exactly once, when the scheduler completes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .metrics import MetricsRegistry, SeriesSnapshot
from .thresholds import ThresholdConstraint, ThresholdVerdict, evaluate


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class RunResult:
    started_at: float
    finished_at: float
    series: Mapping[str, SeriesSnapshot]
    verdicts: Tuple[ThresholdVerdict, ...] = ()
    scenarios: Tuple[str, ...] = ()
    peak_active: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        metrics: MetricsRegistry,
        constraints: Iterable[ThresholdConstraint],
        started_at: float,
        finished_at: float,
        scenarios: Iterable[str] = (),
        peak_active: int = 0,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "RunResult":
        snapshot = metrics.snapshot()
        return cls(
            started_at=started_at,
            finished_at=finished_at,
            series=snapshot,
            verdicts=tuple(evaluate(snapshot, constraints)),
            scenarios=tuple(scenarios),
            peak_active=peak_active,
            metadata=MappingProxyType(dict(metadata or {})),
        )

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @property
    def passed(self) -> bool:
        """True when every threshold passed (vacuously true with none declared)."""
        return all(v.passed for v in self.verdicts)

    @property
    def failed_verdicts(self) -> Tuple[ThresholdVerdict, ...]:
        return tuple(v for v in self.verdicts if not v.passed)

    def get(self, name: str) -> Optional[SeriesSnapshot]:
        return self.series.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_seconds": round(self.duration, 3),
            "scenarios": list(self.scenarios),
            "peak_active": self.peak_active,
            "metadata": dict(self.metadata),
            "passed": self.passed,
            "series": {name: snap.to_dict() for name, snap in sorted(self.series.items())},
            "thresholds": [v.to_dict() for v in self.verdicts],
        }
