"""Scheduler tests: closed and open loop runs against an in-memory target."""

import asyncio
import random
from collections import Counter

import pytest

from loadgate import metrics as m
from loadgate.actors import ActorPool, attribute_filter
from loadgate.errors import ConfigurationError
from loadgate.flow import FlowDefinition, FlowExecutor, Step
from loadgate.metrics import MetricsRegistry
from loadgate.profile import ArrivalProcess, LoadMode, LoadProfile, Stage
from loadgate.scheduler import RunState, Scenario, ScenarioRunner, Scheduler, WeightedTable
from loadgate.session import Credential, SessionCache
from loadgate.transport import Request


def simple_flow(name="ping", path="/ping", think_time=(0.0, 0.0), timeout=None):
    return FlowDefinition(
        name,
        [Step("ping", lambda ctx: Request("GET", path), timeout=timeout)],
        think_time=think_time,
    )


def delayed(respond, delay, status=200):
    async def handler(request):
        await asyncio.sleep(delay)
        return respond(status)
    return handler


class TestWeightedTable:
    def test_distribution_matches_weights(self):
        table = WeightedTable([("vote", 7), ("retry", 3)])
        rng = random.Random(1)
        counts = Counter(table.choose(rng) for _ in range(10000))
        assert counts["vote"] / 10000 == pytest.approx(0.7, abs=0.02)
        assert table.probabilities() == [("vote", pytest.approx(0.7)), ("retry", pytest.approx(0.3))]

    def test_zero_weight_entries_never_chosen(self):
        table = WeightedTable([("a", 0), ("b", 1)])
        assert table.items == ["b"]

    @pytest.mark.parametrize("entries", [[], [("a", -1)], [("a", 0)]])
    def test_invalid_tables(self, entries):
        with pytest.raises(ConfigurationError):
            WeightedTable(entries)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_single_vu_create_then_read(self, make_target, respond):
        def handler(request):
            if request.method == "POST":
                return respond(201, {"data": 42})
            return respond(200, {"ok": True})

        target = make_target(handler)
        metrics = MetricsRegistry()
        sessions = SessionCache(lambda actor: Credential(actor.id, "token"), metrics)
        flow = FlowDefinition(
            "create_read",
            [
                Step(
                    "create",
                    lambda ctx: Request("POST", "/groups", json={"name": "g"}),
                    extract={"group_id": lambda r: r.json()["data"]},
                    auth=True,
                ),
                Step(
                    "read",
                    lambda ctx: Request("GET", f"/groups/{ctx['group_id']}"),
                    requires=frozenset({"group_id"}),
                    auth=True,
                ),
            ],
            think_time=(30.0, 30.0),
        )
        scenario = Scenario("e2e", LoadProfile([Stage(1.0, 1)]), WeightedTable.single(flow))
        scheduler = Scheduler([scenario], FlowExecutor(target, metrics, sessions))

        result = await scheduler.run()

        assert result.get(m.REQUESTS).value == 2
        assert result.get(m.FAIL_RATE).rate == 0
        assert result.get("create_duration").count == 1
        assert result.get("read_duration").count == 1
        assert "42" in target.requests[1].url
        assert scheduler.state is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_arrivals_over_in_flight_ceiling_are_saturation(self, make_target, respond):
        target = make_target(delayed(respond, 10))
        metrics = MetricsRegistry()
        scenario = Scenario(
            "arrivals",
            LoadProfile.constant(1.0, 20, LoadMode.OPEN),
            WeightedTable.single(simple_flow(timeout=1.5)),
            max_in_flight=5,
        )

        result = await Scheduler([scenario], FlowExecutor(target, metrics)).run()

        assert result.get(m.SATURATION_REJECTIONS).value >= 15
        assert result.get(m.APPLICATION_ERRORS) is None
        assert result.get(m.TRANSPORT_ERRORS).value == 5
        assert target.peak_in_flight == 5


class TestClosedLoop:
    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_target(self, make_target, respond):
        target = make_target(delayed(respond, 0.02))
        metrics = MetricsRegistry()
        profile = LoadProfile([Stage(0.6, 4), Stage(0.4, 4), Stage(0.4, 1)])
        scenario = Scenario("ramp", profile, WeightedTable.single(simple_flow()))
        scheduler = Scheduler([scenario], FlowExecutor(target, metrics), tick=0.01)

        samples = []

        async def sample():
            while scheduler.state is not RunState.COMPLETED:
                samples.append((scheduler.active, scheduler.target))
                await asyncio.sleep(0.01)

        sampler = asyncio.ensure_future(sample())
        result = await scheduler.run()
        await sampler

        assert target.peak_in_flight <= 4
        assert max(active for active, _ in samples) == 4
        assert result.get(m.ITERATIONS_INTERRUPTED) is None
        assert result.get(m.REQUESTS).value > 20
        assert scheduler.active == 0

    @pytest.mark.asyncio
    async def test_failing_execution_does_not_stop_others(self, make_target, respond):
        def build(ctx):
            if ctx["actor_id"] == 0:
                raise RuntimeError("bug in request builder")
            return Request("GET", "/ok")

        flow = FlowDefinition("mixed", [Step("call", build)], think_time=(0.05, 0.05))
        metrics = MetricsRegistry()
        scenario = Scenario("isolation", LoadProfile.constant(0.5, 2), WeightedTable.single(flow))

        result = await Scheduler([scenario], FlowExecutor(make_target(lambda r: respond(200)), metrics)).run()

        assert result.get(m.FLOW_ERRORS).value >= 1
        assert result.get(m.SUCCESSFUL_FLOWS).value >= 1
        assert result.get(m.FAILED_FLOWS).value == result.get(m.FLOW_ERRORS).value

    @pytest.mark.asyncio
    async def test_graceful_stop_interrupts_leftovers(self, make_target, respond):
        metrics = MetricsRegistry()
        scenario = Scenario(
            "stuck",
            LoadProfile.constant(0.2, 1),
            WeightedTable.single(simple_flow(timeout=30)),
            graceful_stop=0.1,
        )

        result = await Scheduler([scenario], FlowExecutor(make_target(delayed(respond, 5)), metrics)).run()

        assert result.get(m.ITERATIONS_INTERRUPTED).value == 1
        assert result.get(m.FAILED_FLOWS) is None
        assert result.get(m.TRANSPORT_ERRORS) is None

    @pytest.mark.asyncio
    async def test_actors_round_robin_over_eligible_pool(self, make_target, respond):
        target = make_target(lambda r: respond(200))
        pool = ActorPool.from_records([
            {"id": 1, "role": "HOST"},
            {"id": 2, "role": "GUEST"},
            {"id": 3, "role": "HOST"},
        ])
        flow = FlowDefinition(
            "host_only",
            [Step("call", lambda ctx: Request("GET", f"/as/{ctx['actor_id']}"))],
            think_time=(10.0, 10.0),
        )
        scenario = Scenario(
            "hosts",
            LoadProfile.constant(0.3, 2),
            WeightedTable.single(flow),
            eligible=attribute_filter({"role": "HOST"}),
        )

        await Scheduler([scenario], FlowExecutor(target, MetricsRegistry()), actors=pool).run()

        assert sorted(r.url for r in target.requests) == ["/as/1", "/as/3"]

    @pytest.mark.asyncio
    async def test_start_time_offsets_scenario(self, make_target, respond):
        seen = []
        loop = asyncio.get_running_loop()

        def handler(request):
            seen.append((request.url, loop.time()))
            return respond(200)

        flows = {name: simple_flow(name, f"/{name}", think_time=(10.0, 10.0)) for name in ("early", "late")}
        scenarios = [
            Scenario("early", LoadProfile.constant(0.6, 1), WeightedTable.single(flows["early"])),
            Scenario("late", LoadProfile.constant(0.2, 1), WeightedTable.single(flows["late"]), start_time=0.3),
        ]
        scheduler = Scheduler(scenarios, FlowExecutor(make_target(handler), MetricsRegistry()))
        started = loop.time()
        await scheduler.run()

        times = dict(seen)
        assert times["/late"] - started >= 0.3
        assert times["/early"] - started < 0.3
        assert scheduler.duration == pytest.approx(0.6)


class TestConfigurationErrors:
    def test_empty_eligible_pool_fails_before_traffic(self, make_target, respond):
        target = make_target(lambda r: respond(200))
        pool = ActorPool.from_records([{"id": 1, "role": "GUEST"}])
        scenario = Scenario(
            "hosts",
            LoadProfile.constant(1, 1),
            WeightedTable.single(simple_flow()),
            eligible=attribute_filter({"role": "HOST"}),
        )
        with pytest.raises(ConfigurationError):
            Scheduler([scenario], FlowExecutor(target, MetricsRegistry()), actors=pool)
        assert target.requests == []

    def test_arrival_rate_needs_max_in_flight(self, make_target, respond):
        scenario = Scenario(
            "open",
            LoadProfile.constant(1, 5, LoadMode.OPEN),
            WeightedTable.single(simple_flow()),
        )
        with pytest.raises(ConfigurationError):
            Scheduler([scenario], FlowExecutor(make_target(lambda r: respond(200)), MetricsRegistry()))

    def test_duplicate_scenario_names(self, make_target, respond):
        scenario = Scenario("same", LoadProfile.constant(1, 1), WeightedTable.single(simple_flow()))
        with pytest.raises(ConfigurationError):
            Scheduler([scenario, scenario], FlowExecutor(make_target(lambda r: respond(200)), MetricsRegistry()))

    @pytest.mark.asyncio
    async def test_run_only_once(self, make_target, respond):
        scenario = Scenario("once", LoadProfile.constant(0.1, 1), WeightedTable.single(simple_flow(think_time=(1, 1))))
        scheduler = Scheduler([scenario], FlowExecutor(make_target(lambda r: respond(200)), MetricsRegistry()))
        await scheduler.run()
        with pytest.raises(RuntimeError):
            await scheduler.run()


class TestEphemeralActors:
    @staticmethod
    def authed_flow(think_time=(0.0, 0.0)):
        return FlowDefinition("authed", [Step("me", lambda ctx: Request("GET", "/me"), auth=True)], think_time=think_time)

    @pytest.mark.asyncio
    async def test_per_arrival_credentials_are_released(self, make_target, respond):
        issued = []

        def issue(actor):
            issued.append(actor.id)
            return f"token-{actor.id}"

        metrics = MetricsRegistry()
        sessions = SessionCache(issue, metrics)
        scenario = Scenario(
            "arrivals",
            LoadProfile.constant(0.5, 40, LoadMode.OPEN),
            WeightedTable.single(self.authed_flow()),
            max_in_flight=50,
        )

        result = await Scheduler([scenario], FlowExecutor(make_target(lambda r: respond(200)), metrics, sessions)).run()

        assert len(issued) == result.get(m.ITERATIONS).value == 20
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_slot_credentials_released_when_workers_leave(self, make_target, respond):
        sessions = SessionCache(lambda actor: f"token-{actor.id}")
        scenario = Scenario("vus", LoadProfile.constant(0.2, 3), WeightedTable.single(self.authed_flow((0.05, 0.05))))
        metrics = MetricsRegistry()

        await Scheduler([scenario], FlowExecutor(make_target(lambda r: respond(200)), metrics, sessions)).run()

        assert metrics.counter(m.REQUESTS).value >= 3
        assert len(sessions) == 0

    @pytest.mark.asyncio
    async def test_pool_actor_credentials_are_kept(self, make_target, respond):
        sessions = SessionCache(lambda actor: f"token-{actor.id}")
        pool = ActorPool.range(2)
        scenario = Scenario(
            "arrivals",
            LoadProfile.constant(0.3, 20, LoadMode.OPEN),
            WeightedTable.single(self.authed_flow()),
            max_in_flight=10,
        )

        await Scheduler(
            [scenario], FlowExecutor(make_target(lambda r: respond(200)), MetricsRegistry(), sessions), actors=pool,
        ).run()

        assert len(sessions) == 2
        assert sessions.issuance_calls == 2


class TestSeeding:
    def test_seeded_runs_repeat_but_streams_differ(self, make_target, respond):
        profile = LoadProfile.constant(5.0, 4, LoadMode.OPEN)
        flows = WeightedTable([(simple_flow("a"), 1), (simple_flow("b"), 1)])

        def runner():
            scenario = Scenario("seeded", profile, flows, max_in_flight=5, arrivals=ArrivalProcess.POISSON, seed=5)
            return ScenarioRunner(scenario, FlowExecutor(make_target(lambda r: respond(200)), MetricsRegistry()), None, 0.05)

        first, second = runner(), runner()
        arrivals = list(first.controller.arrival_times())
        assert arrivals == list(second.controller.arrival_times())
        assert [first.scenario.flows.choose(first.rng).name for _ in range(20)] == [
            second.scenario.flows.choose(second.rng).name for _ in range(20)
        ]
        unshared = profile.time_for_cumulative(random.Random(5).expovariate(1.0))
        assert arrivals[0] != pytest.approx(unshared)
