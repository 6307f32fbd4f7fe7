"""
Exception taxonomy
==================
Everything loadgate raises on purpose derives from LoadgateError so callers
can tell harness problems apart from bugs in user supplied callables.
"""

from typing import Optional


class LoadgateError(Exception):
    """Base class for all loadgate errors."""


class ConfigurationError(LoadgateError, ValueError):
    """Malformed profile, flow, threshold or actor configuration.

    Always raised before any traffic is generated.
    """


class TransportError(LoadgateError):
    """The request failed to complete (no HTTP status was received)."""

    kind = "transport"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RequestTimeout(TransportError):
    kind = "timeout"


class ConnectionFailed(TransportError):
    kind = "connection"


class IssuanceError(LoadgateError):
    """Credential issuance failed for an identity."""

    def __init__(self, identity, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"credential issuance failed for {identity!r}: {message}")
        self.identity = identity
        self.cause = cause


class MissingContextValue(LoadgateError, KeyError):
    """A step referenced a flow context value that was never produced."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"flow context has no value for {self.key!r}"
