"""
🎯 Preset Scenarios
===================
Ready-made load shapes for hitting a single URL without writing a config,
from a one-VU smoke check to a breaking-point stress ramp.

    loadgate preset http://localhost:8080/api/groups smoke
    loadgate preset http://localhost:8080/api/groups stress --i-know-what-im-doing
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ConfigurationError

RESPONSE_SERIES = "response_duration"

# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS: Dict[str, Dict[str, Any]] = {
    # -------------------------------------------------------------------------
    # QUICK CHECKS
    # -------------------------------------------------------------------------
    "smoke": {
        "name": "🌱 Smoke Test",
        "description": "1 VU for 30s to verify the endpoint responds",
        "scenario": {"executor": "constant-vus", "vus": 1, "duration": "30s"},
        "thresholds": {"fail_rate": ["rate<0.01"], RESPONSE_SERIES: ["p(95)<1000"]},
    },
    "baseline": {
        "name": "📏 Baseline",
        "description": "10 constant VUs for 1m to measure p95 at a fixed load",
        "scenario": {"executor": "constant-vus", "vus": 10, "duration": "1m"},
        "thresholds": {"fail_rate": ["rate<0.05"], RESPONSE_SERIES: ["p(95)<1000", "p(99)<2000"]},
    },

    # -------------------------------------------------------------------------
    # SHAPED LOAD
    # -------------------------------------------------------------------------
    "load": {
        "name": "🏋️ Load Test",
        "description": "Ramp 1→50 VUs over 2m30s, hold, cool down",
        "scenario": {
            "executor": "ramping-vus",
            "start_vus": 1,
            "stages": [
                {"duration": "30s", "target": 10},
                {"duration": "1m", "target": 30},
                {"duration": "1m", "target": 50},
                {"duration": "30s", "target": 10},
                {"duration": "30s", "target": 0},
            ],
        },
        "thresholds": {"fail_rate": ["rate<0.05"], RESPONSE_SERIES: ["p(95)<1000", "p(99)<2000"]},
    },
    "spike": {
        "name": "📈 Traffic Spike",
        "description": "5 VUs jumping to 100 in 10s, held for 30s",
        "scenario": {
            "executor": "ramping-vus",
            "start_vus": 0,
            "stages": [
                {"duration": "10s", "target": 5},
                {"duration": "10s", "target": 100},
                {"duration": "30s", "target": 100},
                {"duration": "10s", "target": 5},
                {"duration": "30s", "target": 5},
                {"duration": "10s", "target": 0},
            ],
        },
        "thresholds": {"fail_rate": ["rate<0.10"], RESPONSE_SERIES: ["p(95)<3000"]},
    },
    "soak": {
        "name": "🏃‍♂️ Soak Test",
        "description": "20 constant VUs for 30 minutes",
        "scenario": {"executor": "constant-vus", "vus": 20, "duration": "30m"},
        "thresholds": {"fail_rate": ["rate<0.02"], RESPONSE_SERIES: ["p(95)<1000"]},
    },
    "arrival": {
        "name": "⏱️ Arrival Rate",
        "description": "Open loop 5→50 requests/s regardless of response times",
        "scenario": {
            "executor": "ramping-arrival-rate",
            "start_rate": 5,
            "max_in_flight": 100,
            "stages": [
                {"duration": "1m", "target": 10},
                {"duration": "2m", "target": 30},
                {"duration": "1m", "target": 50},
                {"duration": "30s", "target": 0},
            ],
        },
        "thresholds": {"fail_rate": ["rate<0.01"], RESPONSE_SERIES: ["p(95)<400", "p(99)<800"]},
    },

    # -------------------------------------------------------------------------
    # EXTREME PRESETS (USE WITH CAUTION!)
    # -------------------------------------------------------------------------
    "stress": {
        "name": "💪 Stress Test",
        "description": "Find the breaking point: ramp to 500 VUs",
        "scenario": {
            "executor": "ramping-vus",
            "start_vus": 10,
            "stages": [
                {"duration": "1m", "target": 100},
                {"duration": "2m", "target": 300},
                {"duration": "2m", "target": 500},
                {"duration": "1m", "target": 0},
            ],
        },
        "thresholds": {"fail_rate": ["rate<0.20"]},
        "dangerous": True,
    },
}

CATEGORIES: List[Tuple[str, List[str]]] = [
    ("Quick checks", ["smoke", "baseline"]),
    ("Shaped load", ["load", "spike", "soak", "arrival"]),
    ("☢️ EXTREME", ["stress"]),
]


def get_preset(name: str) -> Dict[str, Any]:
    if name not in PRESETS:
        raise ConfigurationError(f"unknown preset {name!r} (available: {', '.join(PRESETS)})")
    return PRESETS[name]


def build_preset_config(
    url: str,
    name: str,
    method: str = "GET",
    think_time: Optional[Tuple[float, float]] = (1.0, 2.0),
) -> Dict[str, Any]:
    """
    Expand a preset into a config document for a single-URL flow.

    Closed-loop presets pause ``think_time`` between iterations the way a
    user would; arrival-rate presets ignore it.
    """
    preset = get_preset(name)
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(f"preset target must be an http(s) URL, got {url!r}")
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    scenario = dict(preset["scenario"])
    open_loop = "arrival-rate" in scenario["executor"]
    flow: Dict[str, Any] = {
        "steps": [{"name": "request", "method": method, "path": path, "metric": RESPONSE_SERIES}],
    }
    if think_time and not open_loop:
        flow["think_time"] = list(think_time)

    return {
        "name": f"preset:{name}",
        "base_url": f"{parts.scheme}://{parts.netloc}",
        "flows": {"request": flow},
        "scenarios": {name: scenario},
        "thresholds": preset["thresholds"],
    }
