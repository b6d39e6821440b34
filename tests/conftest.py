"""Shared test fixtures and helpers for ChaosProxy.

Fake destinations are httpx.MockTransport instances, so no test opens a
real socket. Delays are observed through an injected sleep coroutine.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import asyncio
import os
import random
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest
from hypothesis import Phase, Verbosity, settings

# =============================================================================
# Test Doubles
# =============================================================================


class RecordingSleep:
    """Sleep replacement that records delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class BlockingSleep:
    """Sleep replacement that blocks forever on the Nth call.

    Lets a test cancel a request while it is suspended in a specific delay.
    """

    def __init__(self, block_on_call: int = 1) -> None:
        self.calls: list[float] = []
        self.blocked = asyncio.Event()
        self._block_on_call = block_on_call

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if len(self.calls) == self._block_on_call:
            self.blocked.set()
            await asyncio.Event().wait()


class ConstantRandom(random.Random):
    """A Random whose exponential and uniform draws are fixed."""

    def __init__(self, expo_value: float = 0.0, uniform_value: float = 0.0) -> None:
        super().__init__(0)
        self._expo_value = expo_value
        self._uniform_value = uniform_value

    def expovariate(self, lambd: float = 1.0) -> float:
        return self._expo_value

    def random(self) -> float:
        return self._uniform_value


class CountingTransport(httpx.AsyncBaseTransport):
    """Wraps a MockTransport handler and counts how often it is called."""

    def __init__(self, handler: Any) -> None:
        self.calls = 0
        self.requests: list[httpx.Request] = []
        self._inner = httpx.MockTransport(handler)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.requests.append(request)
        return await self._inner.handle_async_request(request)


class TrackingStream(httpx.AsyncByteStream):
    """Response body stream that records whether it was closed."""

    def __init__(self, chunks: tuple[bytes, ...] = (b"body",)) -> None:
        self.closed = False
        self._chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def echo_handler(request: httpx.Request) -> httpx.Response:
    """Fake destination that reflects the request it received as JSON."""
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "host": request.headers.get("host"),
            "path": request.url.path,
            "query": request.url.query.decode(),
            "body": request.content.decode(),
            "headers": dict(request.headers),
        },
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def echo_transport() -> CountingTransport:
    """Counting fake destination that echoes requests."""
    return CountingTransport(echo_handler)


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
