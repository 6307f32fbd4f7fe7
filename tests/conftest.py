"""Shared fixtures: an in-memory target service standing in for HTTP."""

import inspect
import json

import pytest

from loadgate.metrics import MetricsRegistry
from loadgate.transport import Response


def json_response(status, data=None, headers=None, cookies=None):
    body = json.dumps(data).encode() if data is not None else b""
    return Response(status=status, body=body, headers=headers or {}, cookies=cookies or {})


class FakeTarget:
    """
    Records every request and answers through ``handler(request)``, which may
    be a plain function or a coroutine function returning a Response.
    """

    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def send(self, request, timeout):
        self.requests.append(request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            result = self.handler(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self.in_flight -= 1


@pytest.fixture
def metrics():
    return MetricsRegistry()


@pytest.fixture
def make_target():
    return FakeTarget


@pytest.fixture
def respond():
    return json_response
