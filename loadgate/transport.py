"""
Target service transport
========================
The core only needs "send a request, get a status back with a latency".
HttpTarget implements that over a pooled aiohttp session; tests and
embedders can provide any object with the same ``send`` coroutine.
"""

import asyncio
import json as jsonlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Union

import aiohttp

from .errors import ConnectionFailed, RequestTimeout, TransportError

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "loadgate/1.0",
}

_MISSING = object()


@dataclass
class Request:
    """An HTTP request; ``url`` may be relative to the target's base URL."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    data: Optional[Union[str, bytes]] = None
    cookies: Optional[Dict[str, str]] = None


@dataclass
class Response:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    url: str = ""
    _json: Any = field(default=_MISSING, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decoded JSON body; raises ValueError if the body is not JSON."""
        if self._json is _MISSING:
            self._json = jsonlib.loads(self.body) if self.body else None
        return self._json

    def json_or_none(self) -> Any:
        try:
            return self.json()
        except ValueError:
            return None


class Target(Protocol):
    async def send(self, request: Request, timeout: float) -> Response:
        ...


class HttpTarget:
    """
    aiohttp backed target with connection pooling and keep-alive.

    Use as an async context manager, or call ``open()`` / ``close()``.
    """

    def __init__(
        self,
        base_url: str = "",
        default_headers: Optional[Dict[str, str]] = None,
        verify_ssl: bool = True,
        pool_size: int = 100,
        connect_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(DEFAULT_HEADERS if default_headers is None else default_headers)
        self.verify_ssl = verify_ssl
        self.pool_size = pool_size
        self.connect_timeout = connect_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self) -> "HttpTarget":
        if self._session is None:
            connector = aiohttp.TCPConnector(
                limit=self.pool_size,
                limit_per_host=self.pool_size,
                keepalive_timeout=60,
            )
            self._session = aiohttp.ClientSession(connector=connector)
        return self

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "HttpTarget":
        return await self.open()

    async def __aexit__(self, *exc):
        await self.close()

    def url_for(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        if not url.startswith("/"):
            url = "/" + url
        return f"{self.base_url}{url}"

    async def send(self, request: Request, timeout: float) -> Response:
        if self._session is None:
            await self.open()
        url = self.url_for(request.url)
        headers = {**self.headers, **request.headers}
        client_timeout = aiohttp.ClientTimeout(total=timeout, connect=min(timeout, self.connect_timeout))

        start = time.perf_counter()
        try:
            async with self._session.request(
                request.method.upper(),
                url,
                headers=headers,
                params=request.params,
                json=request.json if request.data is None else None,
                data=request.data,
                cookies=request.cookies,
                timeout=client_timeout,
                ssl=self.verify_ssl,
            ) as response:
                body = await response.read()
                latency = (time.perf_counter() - start) * 1000
                return Response(
                    status=response.status,
                    body=body,
                    headers=dict(response.headers),
                    cookies={name: morsel.value for name, morsel in response.cookies.items()},
                    elapsed_ms=latency,
                    url=url,
                )
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"{request.method} {url} timed out after {timeout:g}s", e) from e
        except aiohttp.ClientConnectorError as e:
            raise ConnectionFailed(f"{request.method} {url}: {type(e).__name__}: {e}", e) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"{request.method} {url}: {type(e).__name__}: {e}", e) from e
