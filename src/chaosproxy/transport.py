# src/chaosproxy/transport.py
"""Fault-injecting httpx transport.

FaultInjectingTransport decorates any httpx.AsyncBaseTransport. Every
request goes through the same fixed sequence:

1. Log the incoming request
2. Sleep for a sampled pre-delay
3. Decide whether to drop the request
4. Forward it to the wrapped transport (unless dropped)
5. Sleep for a sampled post-delay, whatever happened in 3-4
6. Return the wrapped transport's response, or raise its error (or the
   drop error) unchanged

Usage:
    transport = FaultInjectingTransport(FaultConfig(destination="http://backend", drop_probability=0.1))
    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://backend/health")
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import httpx

from chaosproxy.delay import DelayGenerator, spawn_rngs
from chaosproxy.errors import RequestDroppedError
from chaosproxy.injection import DropDecider
from chaosproxy.logging import get_logger
from chaosproxy.stats import ProxyStats

if TYPE_CHECKING:
    import structlog

    from chaosproxy.config import FaultConfig


class FaultInjectingTransport(httpx.AsyncBaseTransport):
    """httpx transport that delays and drops requests before delegating.

    Delays suspend only the current task. The delay and drop streams are
    lock-guarded, and no lock is held across an await, so concurrent
    requests never wait on each other.

    Cancellation while sleeping aborts the request immediately: the wrapped
    transport is not called if the pre-delay was interrupted, and a response
    already received is closed if the post-delay was interrupted.
    """

    def __init__(
        self,
        config: FaultConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        delays: DelayGenerator | None = None,
        dropper: DropDecider | None = None,
        stats: ProxyStats | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Fault injection settings.
            transport: Transport to forward to (default: httpx.AsyncHTTPTransport()).
            logger: Observability sink (default: module logger).
            delays: Delay generator (default: built from config and its seed).
            dropper: Drop decider (default: built from config and its seed).
            stats: Counters to update (default: a fresh ProxyStats).
            sleep: Sleep coroutine for testing (default: asyncio.sleep).
        """
        pre_rng, post_rng, drop_rng = spawn_rngs(config.seed, 3)
        self._config = config
        self._transport = transport if transport is not None else httpx.AsyncHTTPTransport()
        self._logger = logger if logger is not None else get_logger(__name__)
        self._delays = delays if delays is not None else DelayGenerator.from_config(config, pre_rng=pre_rng, post_rng=post_rng)
        self._dropper = dropper if dropper is not None else DropDecider(config.drop_probability, rng=drop_rng)
        self._stats = stats if stats is not None else ProxyStats()
        self._sleep = sleep if sleep is not None else asyncio.sleep

    @property
    def delays(self) -> DelayGenerator:
        return self._delays

    @property
    def dropper(self) -> DropDecider:
        return self._dropper

    @property
    def stats(self) -> ProxyStats:
        return self._stats

    async def _wait(self, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """Send one request through the fault-injection sequence.

        Raises:
            RequestDroppedError: If the drop decision fired.
            asyncio.CancelledError: If the calling task was cancelled.
            Exception: Whatever the wrapped transport raised, unchanged.
        """
        log = self._logger.bind(method=request.method, url=str(request.url))
        log.info("Incoming request")
        self._stats.record_request()

        response: httpx.Response | None = None
        error: Exception | None = None
        stage = "pre_delay"
        try:
            pre_delay = self._delays.pre_delay()
            log.debug("Sleeping before request", delay_sec=pre_delay)
            await self._wait(pre_delay)

            stage = "forward"
            if self._dropper.should_drop():
                log.info("Dropping request", drop_probability=self._dropper.probability)
                error = RequestDroppedError(request=request)
                outcome = "dropped"
            else:
                log.debug("Sending request", target=self._config.destination)
                try:
                    response = await self._transport.handle_async_request(request)
                    outcome = "forwarded"
                except Exception as e:
                    log.info("Forwarding failed", error_type=type(e).__name__, error=str(e))
                    error = e
                    outcome = "forward_error"

            stage = "post_delay"
            post_delay = self._delays.post_delay()
            log.debug("Sleeping after response returned", delay_sec=post_delay)
            await self._wait(post_delay)
        except asyncio.CancelledError:
            log.info("Request cancelled", stage=stage)
            self._stats.record_outcome("cancelled")
            if response is not None:
                await response.aclose()
            raise

        self._stats.record_delay(pre_sec=pre_delay, post_sec=post_delay)
        self._stats.record_outcome(outcome)
        log.debug("Returning response to client", outcome=outcome)
        if error is not None:
            raise error
        if response is None:
            raise RuntimeError("Forwarded request produced neither a response nor an error")
        return response

    async def aclose(self) -> None:
        await self._transport.aclose()
