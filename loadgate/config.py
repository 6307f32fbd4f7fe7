"""
Run configuration
=================
Loads a JSON run description into fully resolved objects: scenarios with
load profiles, flows with request builders, the actor pool, thresholds and
the credential issuer.

Example::

    {
      "base_url": "http://localhost:8080",
      "defaults": {"timeout": "10s"},
      "auth": {"path": "/auth/test", "json": {"userId": "${actor_id}"},
               "token_cookie": "access_token"},
      "actors_file": "users.json",
      "flows": {
        "vote": {
          "think_time": [1, 2],
          "steps": [
            {"name": "create", "method": "POST", "path": "/groups/${groupId}/votes",
             "json": {"title": "${fake:catch_phrase}"}, "auth": true,
             "expect": [201], "extract": {"vote_id": "data.id"}, "pause": 0.3},
            {"name": "cast", "method": "POST", "path": "/votes/${vote_id}/ballots",
             "auth": true, "contention": [409]}
          ]
        }
      },
      "scenarios": {
        "spike": {"executor": "ramping-vus", "flow": "vote",
                  "eligible": {"role": "HOST"},
                  "stages": [{"duration": "10s", "target": 50},
                             {"duration": "20s", "target": 0}]}
      },
      "thresholds": {"fail_rate": ["rate<0.05"], "create_duration": ["p(95)<1000"]}
    }

Everything is checked here, before a single request is sent.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

from . import metrics as m
from .actors import ActorPool, Eligibility, attribute_filter, load_actors
from .errors import ConfigurationError
from .flow import (
    Extractor,
    FailurePolicy,
    FlowContext,
    FlowDefinition,
    FlowExecutor,
    RequestBuilder,
    Step,
    expect_statuses,
    status_2xx,
)
from .metrics import MetricsRegistry
from .profile import ArrivalProcess, LoadMode, LoadProfile, Stage
from .scheduler import Scenario, Scheduler, WeightedTable
from .session import DEFAULT_TOKEN_PATHS, HttpTokenIssuer, SessionCache, lookup_path
from .templates import Template, seed_faker
from .thresholds import ThresholdConstraint, parse_thresholds
from .transport import Request, Response, Target, HttpTarget

logger = logging.getLogger(__name__)

EXECUTORS = ("ramping-vus", "constant-vus", "ramping-arrival-rate", "constant-arrival-rate")

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[str, int, float], what: str = "duration") -> float:
    """
    Parse k6 style durations into seconds.

    >>> parse_duration("1m30s")
    90.0
    >>> parse_duration("250ms")
    0.25
    >>> parse_duration(5)
    5.0
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid {what}: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            raise ConfigurationError(f"invalid {what}: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"invalid {what}: {value!r}")
    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigurationError(f"invalid {what}: {value!r}")
        return seconds
    parts = _DURATION_PART_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ConfigurationError(f"invalid {what}: {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def _number(value: Any, what: str, integer: bool = False) -> float:
    """A non-negative number from the config, or a ConfigurationError naming *what*."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{what} must be a number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"{what} must be a finite number >= 0, got {value!r}")
    if integer and value != int(value):
        raise ConfigurationError(f"{what} must be a whole number, got {value!r}")
    return value


# =============================================================================
# STEPS AND FLOWS
# =============================================================================

def make_extractor(source: str) -> Extractor:
    """
    ``data.id`` reads a dotted path from the JSON body, ``@header:Location`` a
    response header, ``@cookie:access_token`` a response cookie.
    """
    if not isinstance(source, str):
        raise ConfigurationError(f"extract source must be a string, got {source!r}")
    if source.startswith("@header:"):
        name = source[len("@header:"):].lower()

        def from_header(response: Response) -> Any:
            for key, value in response.headers.items():
                if key.lower() == name:
                    return value
            return None
        return from_header

    if source.startswith("@cookie:"):
        name = source[len("@cookie:"):]

        def from_cookie(response: Response) -> Any:
            return response.cookies.get(name)
        return from_cookie

    if not source or source.startswith("@"):
        raise ConfigurationError(f"invalid extract source {source!r}")

    def from_body(response: Response) -> Any:
        return lookup_path(response.json(), source)
    return from_body


def make_request_builder(
    method: str,
    path: Template,
    body: Optional[Template] = None,
    params: Optional[Template] = None,
    headers: Optional[Template] = None,
) -> RequestBuilder:
    def build(context: FlowContext) -> Request:
        values = context.as_dict()
        return Request(
            method=method,
            url=str(path.render(values)),
            json=body.render(values) if body is not None else None,
            params=params.render(values) if params is not None else None,
            headers=headers.render(values) if headers is not None else {},
        )
    return build


def _status_list(value: Any, what: str) -> FrozenSet[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, int) and 100 <= v <= 599 for v in value):
        raise ConfigurationError(f"{what} must be a list of HTTP status codes, got {value!r}")
    return frozenset(value)


def parse_step(data: Mapping[str, Any], flow: str, default_timeout: Optional[float] = None) -> Step:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"steps of flow {flow!r} must be objects")
    name = data.get("name")
    path = data.get("path")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"a step of flow {flow!r} has no name")
    if not path or not isinstance(path, str):
        raise ConfigurationError(f"step {name!r} of flow {flow!r} has no path")
    method = str(data.get("method", "GET")).upper()

    path_t = Template(path)
    body_t = Template(data["json"]) if data.get("json") is not None else None
    params_t = Template(data["params"]) if data.get("params") is not None else None
    headers_t = Template(data["headers"]) if data.get("headers") is not None else None
    requires: Set[str] = set(path_t.references)
    for template in (body_t, params_t, headers_t):
        if template is not None:
            requires |= template.references

    extract = data.get("extract", {})
    if not isinstance(extract, Mapping):
        raise ConfigurationError(f"step {name!r}: extract must map context keys to sources")

    expect = status_2xx
    if "expect" in data:
        expect = expect_statuses(_status_list(data["expect"], f"step {name!r} expect"))
    contention = _status_list(data.get("contention", []), f"step {name!r} contention")

    metric = data.get("metric")
    if metric is not None and (not isinstance(metric, str) or not metric):
        raise ConfigurationError(f"step {name!r}: metric must be a series name")
    timeout = parse_duration(data["timeout"], "timeout") if "timeout" in data else default_timeout
    return Step(
        name=name,
        build=make_request_builder(method, path_t, body_t, params_t, headers_t),
        expect=expect,
        contention=contention,
        extract={key: make_extractor(source) for key, source in extract.items()},
        requires=frozenset(requires),
        auth=bool(data.get("auth", False)),
        pause=parse_duration(data.get("pause", 0), "pause"),
        timeout=timeout,
        metric=metric,
        max_duration=parse_duration(data["max_duration"], "max_duration") if "max_duration" in data else None,
    )


def _think_time(value: Any, flow: str) -> Tuple[float, float]:
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ConfigurationError(f"flow {flow!r}: think_time must be a number or [min, max]")
        return parse_duration(value[0], "think_time"), parse_duration(value[1], "think_time")
    seconds = parse_duration(value, "think_time")
    return seconds, seconds


def parse_flow(name: str, data: Mapping[str, Any], default_timeout: Optional[float] = None) -> FlowDefinition:
    if not isinstance(data, Mapping) or not isinstance(data.get("steps"), list):
        raise ConfigurationError(f"flow {name!r} needs a 'steps' list")
    try:
        policy = FailurePolicy(data.get("failure_policy", "abort"))
    except ValueError as exc:
        raise ConfigurationError(f"flow {name!r}: unknown failure_policy {data.get('failure_policy')!r}") from exc
    return FlowDefinition(
        name=name,
        steps=[parse_step(step, name, default_timeout) for step in data["steps"]],
        failure_policy=policy,
        think_time=_think_time(data.get("think_time", 0), name),
    )


# =============================================================================
# SCENARIOS
# =============================================================================

def _stages(data: Mapping[str, Any], key: str, mode: LoadMode, scale: float, name: str) -> List[Stage]:
    stages = data.get("stages")
    if not isinstance(stages, list) or not stages:
        raise ConfigurationError(f"scenario {name!r} needs a non-empty 'stages' list")
    result = []
    for stage in stages:
        if not isinstance(stage, Mapping) or "duration" not in stage or key not in stage:
            raise ConfigurationError(f"scenario {name!r}: every stage needs 'duration' and '{key}'")
        result.append(Stage(
            parse_duration(stage["duration"]),
            _number(stage[key], f"scenario {name!r} stage {key}") * scale,
            mode,
        ))
    return result


def parse_profile(name: str, data: Mapping[str, Any]) -> LoadProfile:
    executor = data.get("executor", "ramping-vus")
    if executor not in EXECUTORS:
        raise ConfigurationError(f"scenario {name!r}: unknown executor {executor!r} (expected one of {EXECUTORS})")
    scale = 1.0
    if "arrival-rate" in executor:
        # rates are per time_unit, like k6
        time_unit = parse_duration(data.get("time_unit", 1), "time_unit")
        if time_unit <= 0:
            raise ConfigurationError(f"scenario {name!r}: time_unit must be > 0")
        scale = 1.0 / time_unit
    try:
        if executor == "ramping-vus":
            return LoadProfile(_stages(data, "target", LoadMode.CLOSED, 1.0, name), start=_number(data.get("start_vus", 0), f"scenario {name!r} start_vus"))
        if executor == "constant-vus":
            return LoadProfile.constant(parse_duration(data["duration"]), _number(data["vus"], f"scenario {name!r} vus"), LoadMode.CLOSED)
        if executor == "ramping-arrival-rate":
            stages = _stages(data, "target", LoadMode.OPEN, scale, name)
            return LoadProfile(stages, start=_number(data.get("start_rate", 0), f"scenario {name!r} start_rate") * scale)
        return LoadProfile.constant(parse_duration(data["duration"]), _number(data["rate"], f"scenario {name!r} rate") * scale, LoadMode.OPEN)
    except KeyError as exc:
        raise ConfigurationError(f"scenario {name!r}: {executor} needs {exc.args[0]!r}") from exc


def _flow_table(name: str, data: Mapping[str, Any], flows: Mapping[str, FlowDefinition]) -> WeightedTable:
    if "flows" in data:
        weights = data["flows"]
        if not isinstance(weights, Mapping):
            raise ConfigurationError(f"scenario {name!r}: 'flows' must map flow names to weights")
    elif "flow" in data:
        if not isinstance(data["flow"], str):
            raise ConfigurationError(f"scenario {name!r}: 'flow' must be a flow name")
        weights = {data["flow"]: 1}
    elif len(flows) == 1:
        weights = {next(iter(flows)): 1}
    else:
        raise ConfigurationError(f"scenario {name!r} must name its 'flow' or 'flows'")
    entries = []
    for flow_name, weight in weights.items():
        if flow_name not in flows:
            raise ConfigurationError(f"scenario {name!r} references unknown flow {flow_name!r}")
        entries.append((flows[flow_name], _number(weight, f"scenario {name!r} weight of {flow_name!r}")))
    return WeightedTable(entries)


def parse_scenario(
    name: str,
    data: Mapping[str, Any],
    flows: Mapping[str, FlowDefinition],
    default_seed: Optional[int] = None,
) -> Scenario:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"scenario {name!r} must be an object")
    profile = parse_profile(name, data)
    eligible: Optional[Eligibility] = None
    if data.get("eligible"):
        if not isinstance(data["eligible"], Mapping):
            raise ConfigurationError(f"scenario {name!r}: 'eligible' must map attributes to values")
        eligible = attribute_filter(data["eligible"])
    try:
        arrivals = ArrivalProcess(data.get("arrivals", "uniform"))
    except ValueError as exc:
        raise ConfigurationError(f"scenario {name!r}: unknown arrival process {data.get('arrivals')!r}") from exc

    max_in_flight = data.get("max_in_flight", data.get("max_vus"))
    seed = data.get("seed", default_seed)
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, (int, str))):
        raise ConfigurationError(f"scenario {name!r}: seed must be an integer or a string, got {seed!r}")
    return Scenario(
        name=name,
        profile=profile,
        flows=_flow_table(name, data, flows),
        start_time=parse_duration(data.get("start_time", 0), "start_time"),
        graceful_stop=parse_duration(data.get("graceful_stop", 30), "graceful_stop"),
        max_in_flight=int(_number(max_in_flight, f"scenario {name!r} max_in_flight", integer=True))
        if max_in_flight is not None else None,
        eligible=eligible,
        arrivals=arrivals,
        seed=seed,
    )


# =============================================================================
# RUN CONFIG
# =============================================================================

@dataclass
class RunConfig:
    base_url: str
    scenarios: List[Scenario]
    flows: Dict[str, FlowDefinition]
    thresholds: List[ThresholdConstraint] = field(default_factory=list)
    actors: Optional[ActorPool] = None
    auth: Optional[Dict[str, Any]] = None
    timeout: float = 30.0
    headers: Optional[Dict[str, str]] = None
    verify_ssl: bool = True
    seed: Optional[int] = None
    name: str = "loadgate"

    @property
    def duration(self) -> float:
        return max(s.end_time for s in self.scenarios)

    @property
    def pool_size(self) -> int:
        """Connection pool large enough for every scenario at its peak."""
        total = 0
        for scenario in self.scenarios:
            if scenario.mode is LoadMode.OPEN:
                total += scenario.max_in_flight or 0
            else:
                total += int(scenario.profile.peak + 0.999)
        return max(10, total)

    def create_target(self) -> HttpTarget:
        return HttpTarget(
            self.base_url,
            default_headers=self.headers,
            verify_ssl=self.verify_ssl,
            pool_size=self.pool_size,
        )

    def create_sessions(self, target: Target, metrics: Optional[MetricsRegistry] = None) -> Optional[SessionCache]:
        if not self.auth:
            return None
        auth = dict(self.auth)
        token_paths = auth.pop("token_path", DEFAULT_TOKEN_PATHS)
        if isinstance(token_paths, str):
            token_paths = [token_paths]
        issuer = HttpTokenIssuer(
            target,
            path=auth["path"],
            method=str(auth.get("method", "POST")).upper(),
            json=auth.get("json"),
            headers=auth.get("headers"),
            cookies=auth.get("cookies"),
            token_cookie=auth.get("token_cookie"),
            token_paths=token_paths,
            timeout=parse_duration(auth.get("timeout", self.timeout), "auth timeout"),
        )
        return SessionCache(issuer, metrics)

    def create_scheduler(
        self,
        target: Target,
        metrics: Optional[MetricsRegistry] = None,
        tick: float = 0.05,
    ) -> Scheduler:
        metrics = metrics or MetricsRegistry()
        executor = FlowExecutor(target, metrics, self.create_sessions(target, metrics), self.timeout)
        return Scheduler(
            self.scenarios,
            executor,
            actors=self.actors,
            thresholds=self.thresholds,
            tick=tick,
            metadata={"name": self.name, "base_url": self.base_url},
        )


def _common_attributes(pool: Optional[ActorPool], eligible: Optional[Eligibility]) -> Set[str]:
    if pool is None:
        return set()
    actors = list(pool.filter(eligible))
    if not actors:
        return set()
    keys = set(actors[0].attributes)
    for actor in actors[1:]:
        keys &= set(actor.attributes)
    return keys


def _validate(config: RunConfig):
    for scenario in config.scenarios:
        scenario.validate()
        if config.actors is not None:
            if not len(config.actors.filter(scenario.eligible)):
                raise ConfigurationError(f"scenario {scenario.name!r}: no actor matches its eligibility filter")
        elif scenario.eligible is not None:
            raise ConfigurationError(f"scenario {scenario.name!r} filters actors but no actors are configured")
        available = _common_attributes(config.actors, scenario.eligible)
        for flow in scenario.flows.items:
            flow.validate(available)

    flow_series = {flow.series_name: flow.name for flow in config.flows.values()}
    for flow in config.flows.values():
        for step in flow.steps:
            if step.series_name in m.BUILTIN_SERIES or step.series_name in flow_series:
                raise ConfigurationError(
                    f"step {step.name!r} of flow {flow.name!r} would record into the reserved "
                    f"series {step.series_name!r}; rename the step or set its metric"
                )
        if flow.needs_auth and not config.auth:
            raise ConfigurationError(f"flow {flow.name!r} uses auth but no 'auth' block is configured")
    if config.auth and not config.auth.get("path"):
        raise ConfigurationError("'auth' needs a 'path'")
    if config.auth and config.auth.get("path"):
        # fail on unknown faker providers now rather than on first issuance
        Template([config.auth.get("path"), config.auth.get("json"), config.auth.get("headers"), config.auth.get("cookies")])

    known = set(m.BUILTIN_SERIES) | set(flow_series)
    for flow in config.flows.values():
        known.update(step.series_name for step in flow.steps)
    for constraint in config.thresholds:
        if constraint.series not in known:
            logger.warning("Threshold on %r: no flow produces that series", constraint.series)


def _section(data: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    value = data.get(key)
    if value is not None and not isinstance(value, Mapping):
        raise ConfigurationError(f"'{key}' must be an object, got {value!r}")
    return value


def load_config(
    source: Union[str, Path, Mapping[str, Any]],
    base_url: Optional[str] = None,
) -> RunConfig:
    """
    Build a RunConfig from a JSON file or an already parsed dict.

    ``base_url`` overrides the document's own; it is resolved by the caller
    (CLI flag or environment).
    """
    root = Path.cwd()
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            data = json.loads(path.read_text())
        except OSError as exc:
            raise ConfigurationError(f"cannot read config {path}: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"config {path} is not valid JSON: {exc}") from exc
        root = path.parent
    else:
        data = source
    if not isinstance(data, Mapping):
        raise ConfigurationError("config must be a JSON object")

    base_url = base_url or data.get("base_url")
    if not base_url:
        raise ConfigurationError("no base_url: set it in the config, with --base-url or LOADGATE_BASE_URL")
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"base_url must be an http(s) URL, got {base_url!r}")

    defaults = _section(data, "defaults") or {}
    if defaults.get("headers") is not None and not isinstance(defaults["headers"], Mapping):
        raise ConfigurationError("'defaults.headers' must be an object")
    timeout = parse_duration(defaults.get("timeout", 30), "timeout")
    seed = data.get("seed")
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, (int, str))):
        raise ConfigurationError(f"seed must be an integer or a string, got {seed!r}")
    if seed is not None:
        seed_faker(seed)

    if not isinstance(data.get("flows"), Mapping) or not data["flows"]:
        raise ConfigurationError("config needs at least one flow under 'flows'")
    flows = {name: parse_flow(name, entry, timeout) for name, entry in data["flows"].items()}

    if not isinstance(data.get("scenarios"), Mapping) or not data["scenarios"]:
        raise ConfigurationError("config needs at least one scenario under 'scenarios'")
    scenarios = [parse_scenario(name, entry, flows, seed) for name, entry in data["scenarios"].items()]

    actors = None
    if "actors" in data and "actors_file" in data:
        raise ConfigurationError("use either 'actors' or 'actors_file', not both")
    if "actors" in data:
        actors = load_actors(data["actors"])
    elif "actors_file" in data:
        if not isinstance(data["actors_file"], str):
            raise ConfigurationError("'actors_file' must be a path")
        actors_path = Path(data["actors_file"])
        actors = load_actors(actors_path if actors_path.is_absolute() else root / actors_path)

    config = RunConfig(
        base_url=base_url,
        scenarios=scenarios,
        flows=flows,
        thresholds=parse_thresholds(_section(data, "thresholds") or {}),
        actors=actors,
        auth=_section(data, "auth"),
        timeout=timeout,
        headers=defaults.get("headers"),
        verify_ssl=bool(defaults.get("verify_ssl", True)),
        seed=seed,
        name=data.get("name", "loadgate"),
    )
    _validate(config)
    logger.debug(
        "Loaded config %s: %d scenario(s), %d flow(s), %s actors",
        config.name, len(scenarios), len(flows), len(actors) if actors is not None else "no",
    )
    return config
