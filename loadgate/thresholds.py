"""
Threshold evaluation
====================
Pass/fail gates over final series statistics, written the k6 way::

    {"fail_rate": ["rate<0.05"], "create_duration": ["p(95)<1000", "p(99)<2000"]}

Each constraint is judged on its own. A series with no samples never passes:
the verdict carries the NO_DATA reason so "we could not measure it" is not
confused with "it was too slow".
"""

import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import ConfigurationError
from .metrics import SeriesSnapshot, parse_percentile


class Comparator(Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "=="
    NE = "!="

    def holds(self, observed: float, bound: float) -> bool:
        return _OPERATORS[self](observed, bound)


_OPERATORS: Dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.LT: operator.lt,
    Comparator.LE: operator.le,
    Comparator.GT: operator.gt,
    Comparator.GE: operator.ge,
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
}

KNOWN_STATISTICS = frozenset({
    "count", "value", "rate", "passes", "fails",
    "avg", "min", "max", "med", "std",
})

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<stat>[a-z]+(?:\(\s*\d+(?:\.\d+)?\s*\))?)\s*"
    r"(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<bound>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)


@dataclass(frozen=True)
class ThresholdConstraint:
    series: str
    statistic: str
    comparator: Comparator
    bound: float

    @classmethod
    def parse(cls, series: str, expression: str) -> "ThresholdConstraint":
        """Parse ``p(95)<1000`` style expressions for *series*."""
        match = _EXPRESSION_RE.match(expression)
        if not match:
            raise ConfigurationError(f"invalid threshold for {series!r}: {expression!r}")
        statistic = match.group("stat").replace(" ", "")
        try:
            is_percentile = parse_percentile(statistic) is not None
        except ValueError as exc:
            raise ConfigurationError(f"invalid threshold for {series!r}: {exc}") from exc
        if not is_percentile and statistic not in KNOWN_STATISTICS:
            raise ConfigurationError(f"unknown statistic {statistic!r} in threshold for {series!r}")
        return cls(
            series=series,
            statistic=statistic,
            comparator=Comparator(match.group("op")),
            bound=float(match.group("bound")),
        )

    @property
    def expression(self) -> str:
        return f"{self.statistic}{self.comparator.value}{self.bound:g}"

    def __str__(self) -> str:
        return f"{self.series}: {self.expression}"


class VerdictReason(Enum):
    PASSED = "passed"
    BREACHED = "breached"
    NO_DATA = "no-data"
    UNSUPPORTED = "unsupported-statistic"


@dataclass(frozen=True)
class ThresholdVerdict:
    constraint: ThresholdConstraint
    observed: Optional[float]
    passed: bool
    reason: VerdictReason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "series": self.constraint.series,
            "expression": self.constraint.expression,
            "observed": self.observed,
            "passed": self.passed,
            "reason": self.reason.value,
        }


def parse_thresholds(declared: Mapping[str, Iterable[str]]) -> List[ThresholdConstraint]:
    """Expand a ``{series: [expression, ...]}`` mapping into constraints."""
    if not isinstance(declared, Mapping):
        raise ConfigurationError("thresholds must map series names to expressions")
    constraints = []
    for series, expressions in declared.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, (list, tuple)) or not all(isinstance(e, str) for e in expressions):
            raise ConfigurationError(f"thresholds for {series!r} must be an expression or a list of them")
        for expression in expressions:
            constraints.append(ThresholdConstraint.parse(series, expression))
    return constraints


def evaluate_one(
    snapshot: Mapping[str, SeriesSnapshot],
    constraint: ThresholdConstraint,
) -> ThresholdVerdict:
    series = snapshot.get(constraint.series)
    if series is None or not series.has_data:
        return ThresholdVerdict(constraint, None, False, VerdictReason.NO_DATA)
    try:
        observed = series.statistic(constraint.statistic)
    except KeyError:
        return ThresholdVerdict(constraint, None, False, VerdictReason.UNSUPPORTED)
    if observed is None:
        return ThresholdVerdict(constraint, None, False, VerdictReason.NO_DATA)
    if constraint.comparator.holds(observed, constraint.bound):
        return ThresholdVerdict(constraint, observed, True, VerdictReason.PASSED)
    return ThresholdVerdict(constraint, observed, False, VerdictReason.BREACHED)


def evaluate(
    snapshot: Mapping[str, SeriesSnapshot],
    constraints: Iterable[ThresholdConstraint],
) -> List[ThresholdVerdict]:
    """Judge every constraint against the final series snapshot."""
    return [evaluate_one(snapshot, c) for c in constraints]
