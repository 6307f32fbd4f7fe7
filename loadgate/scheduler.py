"""
Scheduler
=========
Drives flow executions according to each scenario's load profile.

Closed loop (VUs): a pool of worker tasks sized to ``floor(target(t))``
(at least one while the target is positive). Each worker repeats flow
iterations for one actor. When the target drops, the newest workers are
marked retiring and leave after their current iteration; nothing is
cancelled mid-request.

Open loop (arrival rate): one fresh execution per scheduled arrival. When
``max_in_flight`` executions are already running the arrival is dropped and
counted in ``saturation_rejections``.

At a scenario's deadline no new executions start; in-flight ones get
``graceful_stop`` seconds to finish before they are cancelled and counted in
``iterations_interrupted``.

    Idle -> Ramping <-> Steady -> Draining -> Completed
"""

import asyncio
import bisect
import itertools
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Iterator, List, Optional, Sequence, Set, Tuple, TypeVar

from . import metrics as m
from .actors import ActorPool, Eligibility, VirtualActor
from .errors import ConfigurationError
from .flow import FlowDefinition, FlowExecutor
from .profile import ArrivalProcess, LoadMode, LoadProfile, Phase, RateController
from .result import RunResult
from .thresholds import ThresholdConstraint

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RunState(Enum):
    IDLE = "idle"
    RAMPING = "ramping"
    STEADY = "steady"
    DRAINING = "draining"
    COMPLETED = "completed"


_PHASE_STATES = {Phase.RAMPING: RunState.RAMPING, Phase.STEADY: RunState.STEADY, Phase.DONE: RunState.DRAINING}


class WeightedTable(Generic[T]):
    """
    Weighted random choice, one draw per iteration.

    Replaces "30% of the time also do X" branching with an explicit table
    whose distribution can be inspected.
    """

    def __init__(self, entries: Sequence[Tuple[T, float]]):
        if not entries:
            raise ConfigurationError("weighted table needs at least one entry")
        self._items: List[T] = []
        self._cumulative: List[float] = []
        total = 0.0
        for item, weight in entries:
            if weight < 0:
                raise ConfigurationError(f"negative weight {weight} for {item!r}")
            if weight == 0:
                continue
            total += weight
            self._items.append(item)
            self._cumulative.append(total)
        if total <= 0:
            raise ConfigurationError("weighted table needs a positive total weight")
        self._total = total

    @classmethod
    def single(cls, item: T) -> "WeightedTable[T]":
        return cls([(item, 1.0)])

    @property
    def items(self) -> List[T]:
        return list(self._items)

    def choose(self, rng: random.Random) -> T:
        if len(self._items) == 1:
            return self._items[0]
        index = bisect.bisect_right(self._cumulative, rng.random() * self._total)
        return self._items[min(index, len(self._items) - 1)]

    def probabilities(self) -> List[Tuple[T, float]]:
        previous = 0.0
        result = []
        for item, edge in zip(self._items, self._cumulative):
            result.append((item, (edge - previous) / self._total))
            previous = edge
        return result


@dataclass
class Scenario:
    name: str
    profile: LoadProfile
    flows: WeightedTable
    start_time: float = 0.0
    graceful_stop: float = 30.0
    max_in_flight: Optional[int] = None
    eligible: Optional[Eligibility] = None
    arrivals: ArrivalProcess = ArrivalProcess.UNIFORM
    seed: Optional[int] = None

    @property
    def mode(self) -> LoadMode:
        return self.profile.mode

    @property
    def end_time(self) -> float:
        return self.start_time + self.profile.total_duration

    def validate(self):
        if self.start_time < 0:
            raise ConfigurationError(f"scenario {self.name!r}: start_time must be >= 0")
        if self.graceful_stop < 0:
            raise ConfigurationError(f"scenario {self.name!r}: graceful_stop must be >= 0")
        if self.mode is LoadMode.OPEN:
            if self.max_in_flight is None or self.max_in_flight < 1:
                raise ConfigurationError(f"scenario {self.name!r}: arrival-rate scenarios need max_in_flight >= 1")


class _Worker:
    """A closed-loop execution slot."""

    def __init__(self, slot: int, actor: VirtualActor):
        self.slot = slot
        self.actor = actor
        self.retiring = False
        self.wake = asyncio.Event()
        self.task: Optional[asyncio.Task] = None

    def retire(self):
        self.retiring = True
        self.wake.set()

    def reinstate(self):
        self.retiring = False
        self.wake.clear()


class ScenarioRunner:
    """Runs one scenario; owned by the Scheduler."""

    def __init__(self, scenario: Scenario, executor: FlowExecutor, actors: Optional[ActorPool], tick: float):
        self.scenario = scenario
        self.executor = executor
        self.metrics = executor.metrics
        self.tick = tick
        self.rng = random.Random(scenario.seed)
        self.controller = RateController(scenario.profile, scenario.arrivals, random.Random(self.rng.random()))
        self.state = RunState.IDLE
        self.in_flight = 0
        self.peak_in_flight = 0
        self.target = 0
        self._tasks: Set[asyncio.Task] = set()
        self._workers: List[_Worker] = []
        self._stopping = False
        self._origin = 0.0

        if actors is None:
            if scenario.eligible is not None:
                raise ConfigurationError(f"scenario {scenario.name!r} filters actors but no actor pool is configured")
            self._actors: Optional[Iterator[VirtualActor]] = None
        else:
            pool = actors.filter(scenario.eligible)
            if not len(pool):
                raise ConfigurationError(f"scenario {scenario.name!r}: no actor matches its eligibility filter")
            self._actors = pool.round_robin()
        self._arrival_ids = itertools.count()
        self._slots = itertools.count()

    def elapsed(self) -> float:
        return asyncio.get_running_loop().time() - self._origin

    def _next_actor(self, slot: Optional[int] = None) -> VirtualActor:
        if self._actors is not None:
            return next(self._actors)
        return VirtualActor(next(self._arrival_ids) if slot is None else slot)

    async def run(self, origin: float):
        loop = asyncio.get_running_loop()
        self._origin = origin + self.scenario.start_time
        delay = self._origin - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        logger.info("Scenario %s started (%s)", self.scenario.name, self.scenario.profile)
        try:
            if self.scenario.mode is LoadMode.CLOSED:
                await self._closed_loop()
            else:
                await self._open_loop()
            self.state = RunState.DRAINING
            await self._drain()
        finally:
            self.state = RunState.COMPLETED
        logger.info("Scenario %s completed", self.scenario.name)

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _begin(self):
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    def _release(self, actor: VirtualActor):
        """Forget the credential of an actor that only lives for one slot or arrival."""
        if self._actors is None and self.executor.sessions is not None:
            self.executor.sessions.evict(actor)

    async def _execute(self, actor: VirtualActor, flow: FlowDefinition, release: bool = False):
        """Run one iteration; the caller has already counted it in flight."""
        try:
            await self.executor.run(actor, flow)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Flow %s raised for actor %s", flow.name, actor)
            self.metrics.counter(m.ITERATIONS).add()
            self.metrics.counter(m.FAILED_FLOWS).add()
            self.metrics.counter(m.FLOW_ERRORS).add()
        finally:
            self.in_flight -= 1
            if release:
                self._release(actor)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # CLOSED LOOP
    # =========================================================================

    async def _closed_loop(self):
        while True:
            t = self.elapsed()
            if self.controller.finished(t):
                break
            self.state = _PHASE_STATES[self.controller.phase(t)]
            self._resize(self.controller.target_at(t))
            await asyncio.sleep(self.tick)
        self._stopping = True
        for worker in self._workers:
            worker.wake.set()

    def _resize(self, target: int):
        self.target = target
        self._workers = [w for w in self._workers if w.task is None or not w.task.done()]
        live = [w for w in self._workers if not w.retiring]
        if len(live) > target:
            for worker in live[target:]:
                worker.retire()
            return
        missing = target - len(live)
        for worker in self._workers:
            if missing == 0:
                break
            if worker.retiring:
                worker.reinstate()
                missing -= 1
        for _ in range(missing):
            slot = next(self._slots)
            worker = _Worker(slot, self._next_actor(slot))
            worker.task = self._spawn(self._worker_loop(worker))
            self._workers.append(worker)

    async def _worker_loop(self, worker: _Worker):
        try:
            await self._iterate(worker)
        finally:
            self._release(worker.actor)

    async def _iterate(self, worker: _Worker):
        while not worker.retiring and not self._stopping:
            flow = self.scenario.flows.choose(self.rng)
            low, high = flow.think_time
            self._begin()
            await self._execute(worker.actor, flow)
            if worker.retiring or self._stopping:
                break
            pause = self.rng.uniform(low, high) if high > 0 else 0.0
            if pause > 0:
                try:
                    await asyncio.wait_for(worker.wake.wait(), pause)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(0)

    # =========================================================================
    # OPEN LOOP
    # =========================================================================

    async def _open_loop(self):
        limit = self.scenario.max_in_flight
        for offset in self.controller.arrival_times():
            delay = offset - self.elapsed()
            if delay > 0:
                await asyncio.sleep(delay)
            self.state = _PHASE_STATES[self.controller.phase(offset)]
            self.target = limit
            if self.in_flight >= limit:
                self.metrics.counter(m.SATURATION_REJECTIONS).add()
                continue
            flow = self.scenario.flows.choose(self.rng)
            self._begin()
            self._spawn(self._execute(self._next_actor(), flow, release=True))
        remaining = self.controller.duration - self.elapsed()
        if remaining > 0:
            await asyncio.sleep(remaining)
        self._stopping = True

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def _drain(self):
        pending = {t for t in self._tasks if not t.done()}
        if not pending:
            return
        logger.info("Scenario %s draining %d executions", self.scenario.name, self.in_flight)
        _, pending = await asyncio.wait(pending, timeout=self.scenario.graceful_stop)
        if pending:
            interrupted = self.in_flight
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if interrupted:
                self.metrics.counter(m.ITERATIONS_INTERRUPTED).add(interrupted)
                logger.warning(
                    "Scenario %s: %d iterations interrupted after %gs graceful stop",
                    self.scenario.name, interrupted, self.scenario.graceful_stop,
                )

    async def cancel(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


class Scheduler:
    """
    Top-level run loop over one or more scenarios sharing an executor.

    ``run()`` may be called once; it returns the RunResult.
    """

    def __init__(
        self,
        scenarios: Sequence[Scenario],
        executor: FlowExecutor,
        actors: Optional[ActorPool] = None,
        thresholds: Sequence[ThresholdConstraint] = (),
        tick: float = 0.05,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        if not scenarios:
            raise ConfigurationError("a run needs at least one scenario")
        names = [s.name for s in scenarios]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"duplicate scenario names in {names}")
        for scenario in scenarios:
            scenario.validate()
        self.scenarios = list(scenarios)
        self.executor = executor
        self.metrics = executor.metrics
        self.thresholds = list(thresholds)
        self.metadata = dict(metadata or {})
        self.runners = [ScenarioRunner(s, executor, actors, tick) for s in self.scenarios]
        self._started = False
        self._completed = False
        self._origin: Optional[float] = None

    @property
    def state(self) -> RunState:
        if self._completed:
            return RunState.COMPLETED
        if not self._started:
            return RunState.IDLE
        states = [r.state for r in self.runners]
        if any(s is RunState.RAMPING for s in states):
            return RunState.RAMPING
        if any(s is RunState.STEADY for s in states):
            return RunState.STEADY
        if all(s in (RunState.DRAINING, RunState.COMPLETED) for s in states):
            return RunState.DRAINING
        return RunState.IDLE

    @property
    def active(self) -> int:
        return sum(r.in_flight for r in self.runners)

    @property
    def target(self) -> int:
        return sum(r.target for r in self.runners)

    @property
    def duration(self) -> float:
        """Scheduled length of the run, excluding graceful stops."""
        return max(s.end_time for s in self.scenarios)

    def elapsed(self) -> float:
        if self._origin is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._origin

    async def run(self) -> RunResult:
        if self._started:
            raise RuntimeError("a Scheduler can only run once")
        self._started = True
        started_at = time.time()
        self._origin = asyncio.get_running_loop().time()
        logger.info("Run started with %d scenario(s)", len(self.runners))

        tasks = [asyncio.ensure_future(r.run(self._origin)) for r in self.runners]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            for runner in self.runners:
                await runner.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._completed = True

        result = RunResult.build(
            self.metrics,
            self.thresholds,
            started_at=started_at,
            finished_at=time.time(),
            scenarios=[s.name for s in self.scenarios],
            peak_active=sum(r.peak_in_flight for r in self.runners),
            metadata=self.metadata,
        )
        logger.info("Run completed in %.1fs: %s", result.duration, "PASSED" if result.passed else "FAILED")
        return result
