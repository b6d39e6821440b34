# src/chaosproxy/errors.py
"""ChaosProxy exceptions.

Three failure kinds reach callers of the proxy:

- Configuration errors (InvalidDestinationError) are raised while building
  a proxy, never per request.
- Forwarding errors come from the underlying httpx transport and are
  re-raised unchanged. They are not defined here.
- Injected drops (RequestDroppedError) are synthesized by the
  fault-injecting transport.
"""

import httpx


class ChaosProxyError(Exception):
    """Base class for errors raised by ChaosProxy itself."""


class InvalidDestinationError(ChaosProxyError, ValueError):
    """Raised when the configured destination is not an absolute http(s) URL.

    Subclasses ValueError so pydantic validators can raise it directly and
    have it reported as a validation error.

    Attributes:
        destination: The rejected destination string
        reason: Human-readable description of the problem
    """

    def __init__(self, destination: str, reason: str) -> None:
        self.destination = destination
        self.reason = reason
        super().__init__(f"Invalid destination {destination!r}: {reason}")


class RequestDroppedError(httpx.TransportError):
    """Raised by FaultInjectingTransport when a request is deliberately dropped.

    This is an httpx transport error so HTTP clients treat it like any other
    connection failure, but it is its own class so tests can tell injected
    drops apart from genuine network errors.
    """

    def __init__(self, message: str = "Request dropped by fault injection", *, request: httpx.Request | None = None) -> None:
        super().__init__(message, request=request)
