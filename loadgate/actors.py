"""
Virtual actor pool
==================
Actors are the identities executions act as: a bare slot index, or a domain
user loaded from a fixture file with static attributes (role, group id, ...).
The pool is immutable once loaded; scenarios take filtered, round-robin views
of it.
"""

import itertools
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Union

from .errors import ConfigurationError

Eligibility = Callable[["VirtualActor"], bool]


@dataclass(frozen=True)
class VirtualActor:
    """An identity plus static attributes; equality and hashing use ``id`` only."""
    id: Hashable
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.attributes.get(name, default)

    def context(self) -> Dict[str, Any]:
        """Seed values for a flow context: ``actor_id`` plus every attribute."""
        values = dict(self.attributes)
        values["actor_id"] = self.id
        return values

    def __str__(self) -> str:
        return str(self.id)


def attribute_filter(expected: Mapping[str, Any]) -> Eligibility:
    """Eligibility predicate matching actors whose attributes equal *expected*."""
    expected = dict(expected)

    def predicate(actor: VirtualActor) -> bool:
        return all(actor.get(key) == value for key, value in expected.items())

    predicate.__qualname__ = "attribute_filter(" + ", ".join(f"{k}={v!r}" for k, v in expected.items()) + ")"
    return predicate


class ActorPool:
    """Ordered, immutable collection of actors."""

    def __init__(self, actors: Iterable[VirtualActor]):
        self._actors = tuple(actors)
        seen = set()
        for actor in self._actors:
            if actor.id in seen:
                raise ConfigurationError(f"duplicate actor id {actor.id!r}")
            seen.add(actor.id)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "ActorPool":
        """Build a pool from dicts; ``id`` is the identity, the rest are attributes."""
        actors = []
        for index, record in enumerate(records):
            if not isinstance(record, Mapping) or "id" not in record:
                raise ConfigurationError(f"actor #{index} must be an object with an 'id'")
            attributes = {k: v for k, v in record.items() if k != "id"}
            actors.append(VirtualActor(record["id"], attributes))
        return cls(actors)

    @classmethod
    def range(cls, size: int) -> "ActorPool":
        return cls(VirtualActor(i) for i in range(size))

    def __len__(self) -> int:
        return len(self._actors)

    def __iter__(self) -> Iterator[VirtualActor]:
        return iter(self._actors)

    def __getitem__(self, index: int) -> VirtualActor:
        return self._actors[index]

    def filter(self, predicate: Optional[Eligibility]) -> "ActorPool":
        if predicate is None:
            return self
        return ActorPool(a for a in self._actors if predicate(a))

    def round_robin(self) -> Iterator[VirtualActor]:
        """Endless iterator over the pool; raises if the pool is empty."""
        if not self._actors:
            raise ConfigurationError("actor pool is empty")
        return itertools.cycle(self._actors)


def load_actors(source: Union[str, Path, List[Mapping[str, Any]], Mapping[str, Any]]) -> ActorPool:
    """
    Load actors from a JSON file path or already-parsed data.

    Accepts a plain list of actor objects or ``{"users": [...]}``.
    """
    data: Any = source
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            data = json.loads(path.read_text())
        except OSError as exc:
            raise ConfigurationError(f"cannot read actors file {path}: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"actors file {path} is not valid JSON: {exc}") from exc
    if isinstance(data, Mapping):
        if "users" not in data:
            raise ConfigurationError("actors object must have a 'users' list")
        data = data["users"]
    if not isinstance(data, list):
        raise ConfigurationError("actors must be a list")
    return ActorPool.from_records(data)
