"""
loadgate
========
Load generation and SLO verification for HTTP services: staged VU and
arrival-rate profiles, multi-step stateful flows, single-flight session
credentials, streaming percentiles and k6 style thresholds.
"""

from .actors import ActorPool, VirtualActor, attribute_filter, load_actors
from .config import RunConfig, load_config, parse_duration
from .errors import (
    ConfigurationError,
    ConnectionFailed,
    IssuanceError,
    LoadgateError,
    MissingContextValue,
    RequestTimeout,
    TransportError,
)
from .flow import (
    FailurePolicy,
    FlowContext,
    FlowDefinition,
    FlowExecutor,
    FlowOutcome,
    Step,
    StepResult,
    StepStatus,
)
from .metrics import Counter, MetricsRegistry, Rate, TDigest, Trend
from .profile import ArrivalProcess, LoadMode, LoadProfile, RateController, Stage
from .result import RunResult
from .scheduler import RunState, Scenario, Scheduler, WeightedTable
from .session import Credential, HttpTokenIssuer, SessionCache
from .thresholds import ThresholdConstraint, ThresholdVerdict, VerdictReason, evaluate, parse_thresholds
from .transport import HttpTarget, Request, Response, Target

__version__ = "1.0.0"

__all__ = [
    "ActorPool", "VirtualActor", "attribute_filter", "load_actors",
    "RunConfig", "load_config", "parse_duration",
    "ConfigurationError", "ConnectionFailed", "IssuanceError", "LoadgateError",
    "MissingContextValue", "RequestTimeout", "TransportError",
    "FailurePolicy", "FlowContext", "FlowDefinition", "FlowExecutor", "FlowOutcome",
    "Step", "StepResult", "StepStatus",
    "Counter", "MetricsRegistry", "Rate", "TDigest", "Trend",
    "ArrivalProcess", "LoadMode", "LoadProfile", "RateController", "Stage",
    "RunResult",
    "RunState", "Scenario", "Scheduler", "WeightedTable",
    "Credential", "HttpTokenIssuer", "SessionCache",
    "ThresholdConstraint", "ThresholdVerdict", "VerdictReason", "evaluate", "parse_thresholds",
    "HttpTarget", "Request", "Response", "Target",
]
