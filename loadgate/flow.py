"""
Flow execution
==============
A flow is one simulated user journey: an ordered list of steps where later
steps consume values extracted from earlier responses (a created group id,
a vote id, ...).

FlowExecutor.run() executes one iteration of a flow for one actor:

- steps run strictly in order, one request in flight at a time
- a step whose inputs are missing is SKIPPED (not attempted, not failed)
- a non-matching status is an application failure, an exception on the wire
  is a transport failure; both feed ``fail_rate``
- statuses listed as contention (409 on a duplicate vote) are tallied apart
  and count as success for the failure rate
- under the ABORT policy the steps after a failure are skipped
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Hashable, Iterable, List, Mapping, Optional, Tuple

from . import metrics as m
from .actors import VirtualActor
from .errors import ConfigurationError, IssuanceError, MissingContextValue, RequestTimeout, TransportError
from .metrics import MetricsRegistry
from .session import Credential, SessionCache
from .transport import Request, Response, Target

logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"


class StepStatus(Enum):
    SUCCEEDED = "succeeded"
    CONTENDED = "contended"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(Enum):
    TRANSPORT = "transport"
    APPLICATION = "application"
    ISSUANCE = "issuance"


class FlowContext:
    """
    Key-value store private to one flow iteration.

    Seeded with the actor's context; steps add values through extractors.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})

    def __contains__(self, key: str) -> bool:
        return self._values.get(key) is not None

    def __getitem__(self, key: str) -> Any:
        return self.require(key)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._values.get(key)
        return default if value is None else value

    def require(self, key: str) -> Any:
        value = self._values.get(key)
        if value is None:
            raise MissingContextValue(key)
        return value

    def set(self, key: str, value: Any):
        self._values[key] = value

    def keys(self) -> List[str]:
        return [k for k, v in self._values.items() if v is not None]

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self._values.items() if v is not None}

    def __repr__(self) -> str:
        return f"FlowContext({self.as_dict()!r})"


RequestBuilder = Callable[[FlowContext], Request]
Extractor = Callable[[Response], Any]
SuccessPredicate = Callable[[Response], bool]


def status_2xx(response: Response) -> bool:
    return 200 <= response.status < 300


def expect_statuses(statuses: Iterable[int]) -> SuccessPredicate:
    allowed = frozenset(statuses)

    def predicate(response: Response) -> bool:
        return response.status in allowed

    predicate.statuses = allowed
    return predicate


@dataclass
class Step:
    name: str
    build: RequestBuilder
    expect: SuccessPredicate = status_2xx
    contention: FrozenSet[int] = frozenset()
    extract: Dict[str, Extractor] = field(default_factory=dict)
    requires: FrozenSet[str] = frozenset()
    auth: bool = False
    pause: float = 0.0
    timeout: Optional[float] = None
    metric: Optional[str] = None
    max_duration: Optional[float] = None

    @property
    def series_name(self) -> str:
        return self.metric or f"{self.name}_duration"


@dataclass
class FlowDefinition:
    name: str
    steps: List[Step]
    failure_policy: FailurePolicy = FailurePolicy.ABORT
    think_time: Tuple[float, float] = (0.0, 0.0)

    @property
    def series_name(self) -> str:
        return m.flow_series(self.name)

    @property
    def needs_auth(self) -> bool:
        return any(step.auth for step in self.steps)

    def validate(self, available: Iterable[str] = ()):
        """
        Check that every step's required keys are produced by the actor context
        or by an earlier step's extractors, and that no step records into a
        reserved series.
        """
        if not self.steps:
            raise ConfigurationError(f"flow {self.name!r} has no steps")
        low, high = self.think_time
        if low < 0 or high < low:
            raise ConfigurationError(f"flow {self.name!r} has an invalid think time {self.think_time}")
        known = set(available) | {"actor_id"}
        names = set()
        for step in self.steps:
            if step.name in names:
                raise ConfigurationError(f"flow {self.name!r} has duplicate step {step.name!r}")
            names.add(step.name)
            missing = set(step.requires) - known
            if missing:
                raise ConfigurationError(
                    f"step {step.name!r} of flow {self.name!r} needs {sorted(missing)} "
                    f"which no earlier step or actor attribute provides"
                )
            if step.pause < 0:
                raise ConfigurationError(f"step {step.name!r} has a negative pause")
            if step.max_duration is not None and step.max_duration <= 0:
                raise ConfigurationError(f"step {step.name!r} needs a positive max_duration")
            if step.series_name in m.BUILTIN_SERIES or step.series_name == self.series_name:
                raise ConfigurationError(
                    f"step {step.name!r} of flow {self.name!r} would record into the reserved "
                    f"series {step.series_name!r}; rename the step or set its metric"
                )
            known.update(step.extract)


@dataclass
class StepResult:
    name: str
    status: StepStatus
    duration_ms: Optional[float] = None
    status_code: Optional[int] = None
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def attempted(self) -> bool:
        return self.status is not StepStatus.SKIPPED


@dataclass
class FlowOutcome:
    flow: str
    actor: Hashable
    success: bool
    steps: List[StepResult]
    first_failure_step: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def per_step_durations(self) -> Dict[str, Optional[float]]:
        return {s.name: s.duration_ms for s in self.steps}

    @property
    def skipped(self) -> List[str]:
        return [s.name for s in self.steps if s.status is StepStatus.SKIPPED]


class FlowExecutor:
    """
    Runs flow iterations against a target, recording into a MetricsRegistry.

    Holds no per-iteration state, so one executor is shared by every
    concurrent execution of a run.
    """

    def __init__(
        self,
        target: Target,
        metrics: MetricsRegistry,
        sessions: Optional[SessionCache] = None,
        default_timeout: float = 30.0,
    ):
        self.target = target
        self.metrics = metrics
        self.sessions = sessions
        self.default_timeout = default_timeout

    async def run(self, actor: Any, flow: FlowDefinition) -> FlowOutcome:
        if not isinstance(actor, VirtualActor):
            actor = VirtualActor(actor)
        context = FlowContext(actor.context())
        credential: Optional[Credential] = None
        results: List[StepResult] = []
        first_failure: Optional[str] = None
        abort = False

        start = time.perf_counter()
        for index, step in enumerate(flow.steps):
            if abort:
                results.append(self._skip(step, "flow aborted"))
                continue

            if step.auth and credential is None:
                credential, result = await self._acquire(actor, step)
                if result is not None:
                    results.append(result)
                    first_failure = first_failure or step.name
                    abort = True
                    continue

            result = await self._run_step(step, context, credential)
            results.append(result)
            if result.status is StepStatus.FAILED:
                first_failure = first_failure or step.name
                if flow.failure_policy is FailurePolicy.ABORT:
                    abort = True
                    continue

            if step.pause and index < len(flow.steps) - 1:
                await asyncio.sleep(step.pause)

        duration = (time.perf_counter() - start) * 1000
        success = first_failure is None
        self.metrics.counter(m.ITERATIONS).add()
        self.metrics.trend(m.FLOW_DURATION).add(duration)
        self.metrics.trend(flow.series_name).add(duration)
        self.metrics.counter(m.SUCCESSFUL_FLOWS if success else m.FAILED_FLOWS).add()
        return FlowOutcome(
            flow=flow.name,
            actor=actor.id,
            success=success,
            steps=results,
            first_failure_step=first_failure,
            duration_ms=duration,
        )

    async def _acquire(self, actor: VirtualActor, step: Step) -> Tuple[Optional[Credential], Optional[StepResult]]:
        if self.sessions is None:
            raise ConfigurationError(f"step {step.name!r} needs auth but no session cache is configured")
        try:
            return await self.sessions.get(actor), None
        except IssuanceError as exc:
            logger.debug("Step %s not attempted: %s", step.name, exc)
            self.metrics.rate(m.FAIL_RATE).add(True)
            return None, StepResult(step.name, StepStatus.FAILED, failure_kind=FailureKind.ISSUANCE, error=str(exc))

    def _skip(self, step: Step, reason: str) -> StepResult:
        self.metrics.counter(m.STEPS_SKIPPED).add()
        return StepResult(step.name, StepStatus.SKIPPED, error=reason)

    async def _run_step(self, step: Step, context: FlowContext, credential: Optional[Credential]) -> StepResult:
        missing = [key for key in step.requires if key not in context]
        if missing:
            return self._skip(step, f"missing {', '.join(sorted(missing))}")
        try:
            request = step.build(context)
        except MissingContextValue as exc:
            return self._skip(step, str(exc))
        if step.auth and credential is not None:
            request.headers = {**request.headers, **credential.headers()}

        timeout = step.timeout or self.default_timeout
        self.metrics.counter(m.REQUESTS).add()
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(self.target.send(request, timeout), timeout)
        except asyncio.TimeoutError as exc:
            return self._transport_failure(step, RequestTimeout(f"{request.method} {request.url} timed out after {timeout:g}s", exc))
        except TransportError as exc:
            return self._transport_failure(step, exc)
        duration = (time.perf_counter() - start) * 1000

        self.metrics.trend(m.REQUEST_DURATION).add(duration)
        self.metrics.trend(step.series_name).add(duration)

        if step.max_duration is not None and duration >= step.max_duration * 1000:
            self.metrics.counter(m.APPLICATION_ERRORS).add()
            self.metrics.rate(m.FAIL_RATE).add(True)
            logger.debug("Step %s: response took %.0fms", step.name, duration)
            return StepResult(
                step.name, StepStatus.FAILED, duration, response.status,
                failure_kind=FailureKind.APPLICATION,
                error=f"response took {duration:.0f}ms, limit {step.max_duration * 1000:.0f}ms",
            )

        if response.status in step.contention:
            self.metrics.counter(m.CONTENTION_RESPONSES).add()
            self.metrics.rate(m.FAIL_RATE).add(False)
            return StepResult(step.name, StepStatus.CONTENDED, duration, response.status)

        if not step.expect(response):
            self.metrics.counter(m.APPLICATION_ERRORS).add()
            self.metrics.rate(m.FAIL_RATE).add(True)
            logger.debug("Step %s: unexpected status %s", step.name, response.status)
            return StepResult(
                step.name, StepStatus.FAILED, duration, response.status,
                failure_kind=FailureKind.APPLICATION,
                error=f"unexpected status {response.status}",
            )

        self.metrics.rate(m.FAIL_RATE).add(False)
        for key, extractor in step.extract.items():
            try:
                value = extractor(response)
            except (ValueError, LookupError, TypeError) as exc:
                logger.debug("Step %s: could not extract %s: %s", step.name, key, exc)
                continue
            if value is not None:
                context.set(key, value)
        return StepResult(step.name, StepStatus.SUCCEEDED, duration, response.status)

    def _transport_failure(self, step: Step, exc: TransportError) -> StepResult:
        self.metrics.counter(m.TRANSPORT_ERRORS).add()
        self.metrics.rate(m.FAIL_RATE).add(True)
        logger.debug("Step %s: %s", step.name, exc)
        return StepResult(step.name, StepStatus.FAILED, failure_kind=FailureKind.TRANSPORT, error=str(exc))
