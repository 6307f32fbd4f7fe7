"""
Request templating
==================
Declarative steps describe their requests with ``${...}`` placeholders:

- ``${group_id}``      value from the flow context (extracted or actor attribute)
- ``${fake:company}``  synthetic data from a Faker provider

A string that is exactly one placeholder renders to the raw value, so
``{"id": "${group_id}"}`` keeps an integer id an integer. Templates are walked
recursively through dicts and lists.
"""

import re
from typing import Any, FrozenSet, Mapping, Optional, Set

from faker import Faker

from .errors import ConfigurationError, MissingContextValue

PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")
FAKE_PREFIX = "fake:"

_fake: Optional[Faker] = None


def get_faker() -> Faker:
    global _fake
    if _fake is None:
        _fake = Faker()
    return _fake


def seed_faker(seed: int):
    Faker.seed(seed)


def references(source: Any) -> Set[str]:
    """Context keys a template consumes (Faker placeholders excluded)."""
    found: Set[str] = set()
    if isinstance(source, str):
        for name in PLACEHOLDER_RE.findall(source):
            name = name.strip()
            if not name.startswith(FAKE_PREFIX):
                found.add(name)
    elif isinstance(source, Mapping):
        for key, value in source.items():
            found |= references(key)
            found |= references(value)
    elif isinstance(source, (list, tuple)):
        for item in source:
            found |= references(item)
    return found


def fake_providers(source: Any) -> Set[str]:
    found: Set[str] = set()
    if isinstance(source, str):
        for name in PLACEHOLDER_RE.findall(source):
            name = name.strip()
            if name.startswith(FAKE_PREFIX):
                found.add(name[len(FAKE_PREFIX):])
    elif isinstance(source, Mapping):
        for value in source.values():
            found |= fake_providers(value)
    elif isinstance(source, (list, tuple)):
        for item in source:
            found |= fake_providers(item)
    return found


def _resolve(name: str, values: Mapping[str, Any]) -> Any:
    name = name.strip()
    if name.startswith(FAKE_PREFIX):
        provider = name[len(FAKE_PREFIX):]
        return getattr(get_faker(), provider)()
    if name not in values or values[name] is None:
        raise MissingContextValue(name)
    return values[name]


def render(source: Any, values: Mapping[str, Any]) -> Any:
    """Substitute placeholders in *source* using *values*."""
    if isinstance(source, str):
        match = PLACEHOLDER_RE.fullmatch(source)
        if match:
            return _resolve(match.group(1), values)
        return PLACEHOLDER_RE.sub(lambda m: str(_resolve(m.group(1), values)), source)
    if isinstance(source, Mapping):
        return {render(k, values): render(v, values) for k, v in source.items()}
    if isinstance(source, list):
        return [render(item, values) for item in source]
    if isinstance(source, tuple):
        return tuple(render(item, values) for item in source)
    return source


class Template:
    """A parsed request fragment with its consumed keys precomputed."""

    def __init__(self, source: Any):
        self.source = source
        self.references: FrozenSet[str] = frozenset(references(source))
        faker = get_faker()
        for provider in fake_providers(source):
            if not callable(getattr(faker, provider, None)):
                raise ConfigurationError(f"unknown faker provider {provider!r}")

    def render(self, values: Mapping[str, Any]) -> Any:
        return render(self.source, values)

    def __repr__(self) -> str:
        return f"Template({self.source!r})"
