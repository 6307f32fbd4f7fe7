"""
Session cache
=============
Maps an actor identity to a credential acquired lazily through an issuance
callable. Concurrent misses for one identity share a single in-flight
issuance (single-flight); the first caller issues, the others await the same
future and receive the same credential or the same error.

Failed issuances are not remembered: the next ``get`` after a failure tries
again. Credentials never expire here; a stale token shows up as ordinary
step failures (401) and is the flow's business.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, Optional, Union

from .actors import VirtualActor
from .errors import IssuanceError, LoadgateError
from .metrics import ISSUANCE_DURATION, ISSUANCE_FAILURES, MetricsRegistry
from .templates import render
from .transport import Request, Target

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    identity: Hashable
    token: str
    issued_at: float = field(default_factory=time.time)

    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


IssueResult = Union[Credential, str]
Issuer = Callable[[Any], Union[IssueResult, Awaitable[IssueResult]]]


class SessionCache:
    """
    Per-identity credential memo with single-flight issuance.

    ``issue`` may be a plain function or a coroutine function; it may return a
    Credential or a bare token string. Anything it raises is wrapped in
    IssuanceError.
    """

    def __init__(self, issue: Issuer, metrics: Optional[MetricsRegistry] = None):
        self._issue = issue
        self._metrics = metrics
        self._credentials: Dict[Hashable, Credential] = {}
        self._in_flight: Dict[Hashable, asyncio.Future] = {}
        self.issuance_calls = 0

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, identity: Hashable) -> bool:
        return identity in self._credentials

    def peek(self, identity: Hashable) -> Optional[Credential]:
        return self._credentials.get(identity)

    def evict(self, identity: Hashable) -> bool:
        """Drop a cached credential; returns whether one was cached."""
        return self._credentials.pop(identity, None) is not None

    def clear(self):
        self._credentials.clear()

    async def get(self, identity: Hashable) -> Credential:
        """Return the identity's credential, issuing it on first use."""
        credential = self._credentials.get(identity)
        if credential is not None:
            return credential

        pending = self._in_flight.get(identity)
        if pending is not None:
            # shield: a cancelled waiter must not cancel the shared issuance
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[identity] = future
        try:
            credential = await self._call_issuer(identity)
        except IssuanceError as exc:
            future.set_exception(exc)
            # waiters retrieve it; mark retrieved so an unawaited future stays quiet
            future.exception()
            raise
        except BaseException:
            future.set_exception(IssuanceError(getattr(identity, "id", identity), "issuance was cancelled"))
            future.exception()
            raise
        else:
            self._credentials[identity] = credential
            future.set_result(credential)
            return credential
        finally:
            self._in_flight.pop(identity, None)

    async def _call_issuer(self, identity: Hashable) -> Credential:
        self.issuance_calls += 1
        key = getattr(identity, "id", identity)
        start = time.perf_counter()
        try:
            result = self._issue(identity)
            if inspect.isawaitable(result):
                result = await result
        except IssuanceError:
            self._record_failure()
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure()
            logger.warning("Issuance for %r failed: %s", key, exc)
            raise IssuanceError(key, f"{type(exc).__name__}: {exc}", exc) from exc

        if isinstance(result, str):
            result = Credential(key, result)
        if not isinstance(result, Credential) or not result.token:
            self._record_failure()
            raise IssuanceError(key, f"issuer returned no credential ({result!r})")

        if self._metrics is not None:
            self._metrics.trend(ISSUANCE_DURATION).add((time.perf_counter() - start) * 1000)
        logger.debug("Issued credential for %r", key)
        return result

    def _record_failure(self):
        if self._metrics is not None:
            self._metrics.counter(ISSUANCE_FAILURES).add()


# =============================================================================
# HTTP TOKEN ISSUER
# =============================================================================

DEFAULT_TOKEN_PATHS = ("data.accessToken", "accessToken")


def lookup_path(data: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists; None if any hop is missing."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


class HttpTokenIssuer:
    """
    Issues bearer tokens by calling an authentication endpoint on the target.

    The request is templated against the actor's context (``${actor_id}``,
    attributes). The token is read from a response cookie when
    ``token_cookie`` is set, otherwise from the first JSON path in
    ``token_paths`` that holds a value.
    """

    def __init__(
        self,
        target: Target,
        path: str,
        method: str = "POST",
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        token_cookie: Optional[str] = None,
        token_paths: Iterable[str] = DEFAULT_TOKEN_PATHS,
        timeout: float = 10.0,
    ):
        self.target = target
        self.path = path
        self.method = method
        self.json = json
        self.headers = headers or {}
        self.cookies = cookies
        self.token_cookie = token_cookie
        self.token_paths = tuple(token_paths)
        self.timeout = timeout

    def _values(self, identity: Any) -> Dict[str, Any]:
        if isinstance(identity, VirtualActor):
            return identity.context()
        return {"actor_id": identity}

    async def __call__(self, identity: Any) -> Credential:
        values = self._values(identity)
        key = values["actor_id"]
        try:
            request = Request(
                method=self.method,
                url=render(self.path, values),
                headers=render(self.headers, values),
                json=render(self.json, values),
                cookies=render(self.cookies, values) if self.cookies else None,
            )
        except LoadgateError as exc:
            raise IssuanceError(key, str(exc), exc) from exc

        response = await self.target.send(request, self.timeout)
        if not response.ok:
            raise IssuanceError(key, f"{self.method} {request.url} returned {response.status}")

        token = None
        if self.token_cookie:
            token = response.cookies.get(self.token_cookie)
        if not token:
            body = response.json_or_none()
            for path in self.token_paths:
                token = lookup_path(body, path)
                if token:
                    break
        if not token:
            raise IssuanceError(key, f"no token in response from {request.url}")
        return Credential(key, str(token))
