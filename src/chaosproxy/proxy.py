# src/chaosproxy/proxy.py
"""Starlette reverse proxy that sends through a FaultInjectingTransport.

Every inbound request is rewritten to the configured destination, keeping
the client's original Host header, and handed to the fault-injecting
transport. The response streams back untouched.

Usage:
    from chaosproxy.proxy import ChaosProxy, create_app
    from chaosproxy.config import FaultConfig

    proxy = ChaosProxy(FaultConfig(destination="http://127.0.0.1:9000", drop_probability=0.05))
    app = proxy.app

    # Or from a full config, as the CLI does
    app = create_app(load_config(preset="gentle", cli_overrides=...))
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, cast

import httpx
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from chaosproxy.config import parse_destination
from chaosproxy.errors import RequestDroppedError
from chaosproxy.logging import get_logger
from chaosproxy.transport import FaultInjectingTransport

if TYPE_CHECKING:
    import structlog

    from chaosproxy.config import ChaosProxyConfig, FaultConfig

# Headers that describe a single connection and are never forwarded.
_HOP_BY_HOP_HEADERS: frozenset[bytes] = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-connection",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"te",
        b"trailer",
        b"transfer-encoding",
        b"upgrade",
    }
)

# Inbound headers rebuilt for the outbound request.
_REWRITTEN_REQUEST_HEADERS: frozenset[bytes] = frozenset(
    {
        b"host",
        b"content-length",
        b"x-forwarded-for",
        b"x-forwarded-host",
        b"x-forwarded-proto",
    }
)

_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def strip_hop_by_hop(raw_headers: Iterable[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Drop hop-by-hop headers, including any named in a Connection header."""
    headers = list(raw_headers)
    named: set[bytes] = set()
    for key, value in headers:
        if key.lower() == b"connection":
            named.update(token.strip().lower() for token in value.split(b","))
    return [(key, value) for key, value in headers if key.lower() not in _HOP_BY_HOP_HEADERS and key.lower() not in named]


def _join_path(base: bytes, extra: bytes) -> bytes:
    """Join two URL paths with exactly one slash between them."""
    if base.endswith(b"/") and extra.startswith(b"/"):
        joined = base + extra[1:]
    elif base and extra and not base.endswith(b"/") and not extra.startswith(b"/"):
        joined = base + b"/" + extra
    else:
        joined = base + extra
    return joined or b"/"


def rewrite_url(destination: httpx.URL, raw_path: bytes, query: bytes) -> httpx.URL:
    """Point an inbound path and query at the destination.

    The scheme, host and port come from the destination. Its path prefixes
    the inbound path, and its query (if any) precedes the inbound query.
    """
    dest_path = destination.raw_path.partition(b"?")[0]
    dest_query = destination.query
    path = _join_path(dest_path, raw_path)
    if dest_query and query:
        merged_query = dest_query + b"&" + query
    else:
        merged_query = dest_query or query
    target = path + b"?" + merged_query if merged_query else path
    return destination.copy_with(raw_path=target, fragment=None)


async def _body_iterator(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """Iterate the raw upstream body, still content-encoded.

    A response built in memory (``httpx.Response(content=...)``) is already
    consumed, and ``.content`` would be the decoded body. Its ByteStream
    still holds the bytes as sent and can be replayed.
    """
    if upstream.is_stream_consumed:
        stream = cast(httpx.AsyncByteStream, upstream.stream)
        async for chunk in stream:
            yield chunk
    else:
        async for chunk in upstream.aiter_raw():
            yield chunk


async def _discard(forward: asyncio.Future[httpx.Response]) -> None:
    """Cancel a forwarding task, wait for it, and close any response it produced."""
    forward.cancel()
    await asyncio.wait({forward})
    if not forward.cancelled() and forward.exception() is None:
        await forward.result().aclose()


class ChaosProxy:
    """Reverse proxy assembled around a FaultInjectingTransport.

    Holds only the destination URL and the transport. Construction fails
    with InvalidDestinationError before any handler exists if the
    destination is not an absolute http(s) URL.

    A FaultConfig built normally never gets this far with a bad
    destination: its validator raises the same InvalidDestinationError,
    which pydantic reports as a ValidationError wrapping it (available as
    ``exc.errors()[0]["ctx"]["error"]``). Only configs that skipped
    validation (``model_construct``) are rejected here.
    """

    def __init__(
        self,
        config: FaultConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
        timeout_sec: float | None = 30.0,
        admin_prefix: str | None = None,
    ) -> None:
        """Initialize the proxy.

        Args:
            config: Destination and fault settings.
            transport: Transport that performs the real request
                (default: httpx.AsyncHTTPTransport()).
            logger: Observability sink (default: module logger).
            timeout_sec: Timeout for each outbound network operation.
            admin_prefix: Mount health/stats/reset routes under this prefix.
        """
        self._destination = parse_destination(config.destination)
        self._logger = logger if logger is not None else get_logger(__name__)
        self._transport = FaultInjectingTransport(config, transport=transport, logger=self._logger)
        self._timeout = httpx.Timeout(timeout_sec)
        self._admin_prefix = admin_prefix
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        """Create the Starlette application; the catch-all route must be last."""
        routes: list[Route] = []
        if self._admin_prefix is not None:
            routes += [
                Route(f"{self._admin_prefix}/health", self._health_endpoint, methods=["GET"]),
                Route(f"{self._admin_prefix}/stats", self._stats_endpoint, methods=["GET"]),
                Route(f"{self._admin_prefix}/reset", self._reset_endpoint, methods=["POST"]),
            ]
        routes.append(Route("/{path:path}", self._proxy_endpoint, methods=_PROXY_METHODS))

        @asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            yield
            await self.aclose()

        return Starlette(debug=False, routes=routes, lifespan=lifespan)

    @property
    def app(self) -> Starlette:
        """Get the Starlette ASGI application."""
        return self._app

    @property
    def destination(self) -> httpx.URL:
        return self._destination

    @property
    def transport(self) -> FaultInjectingTransport:
        return self._transport

    def get_stats(self) -> dict[str, Any]:
        """Get current fault-injection counters."""
        return self._transport.stats.snapshot()

    def reset_stats(self) -> None:
        self._transport.stats.reset()

    async def aclose(self) -> None:
        """Close the underlying transport and its connection pool."""
        await self._transport.aclose()

    # === Endpoint handlers ===

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET {admin_prefix}/health."""
        return JSONResponse(
            {
                "status": "healthy",
                "destination": str(self._destination),
                "drop_probability": self._transport.dropper.probability,
            }
        )

    async def _stats_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET {admin_prefix}/stats."""
        return JSONResponse(self.get_stats())

    async def _reset_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST {admin_prefix}/reset."""
        self.reset_stats()
        return JSONResponse({"status": "reset"})

    async def _proxy_endpoint(self, request: Request) -> Response:
        """Forward any request to the destination through the transport.

        Request flow:
        1. Read the inbound body and rewrite URL and headers
        2. Send through the fault-injecting transport, watching for the
           client to disconnect
        3. Map drops to 504 and other forwarding errors to 502
        4. Stream the upstream response back unchanged
        """
        body = await request.body()
        outbound = self._build_outbound_request(request, body)

        forward = asyncio.ensure_future(self._transport.handle_async_request(outbound))
        disconnect = asyncio.ensure_future(self._wait_for_disconnect(request))
        try:
            done, _ = await asyncio.wait({forward, disconnect}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _discard(forward)
            raise
        finally:
            disconnect.cancel()

        if forward not in done:
            return await self._abandon(forward, outbound)

        error = forward.exception()
        if isinstance(error, RequestDroppedError):
            return Response(status_code=504)
        if error is not None:
            self._logger.warning(
                "Upstream request failed",
                method=outbound.method,
                url=str(outbound.url),
                error_type=type(error).__name__,
                error=str(error),
            )
            return Response(status_code=502)

        upstream = forward.result()
        response = StreamingResponse(
            _body_iterator(upstream),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = strip_hop_by_hop(upstream.headers.raw)
        return response

    def _build_outbound_request(self, request: Request, body: bytes) -> httpx.Request:
        """Rewrite an inbound request to target the destination."""
        raw_path: bytes = (request.scope.get("raw_path") or request.url.path.encode()).partition(b"?")[0]
        query: bytes = request.scope.get("query_string", b"")
        url = rewrite_url(self._destination, raw_path, query)

        headers = [(key, value) for key, value in strip_hop_by_hop(request.headers.raw) if key.lower() not in _REWRITTEN_REQUEST_HEADERS]
        inbound_host = request.headers.get("host")
        if inbound_host is not None:
            headers.append((b"host", inbound_host.encode("latin-1")))

        return httpx.Request(
            request.method,
            url,
            headers=headers,
            content=body or None,
            extensions={"timeout": self._timeout.as_dict()},
        )

    async def _wait_for_disconnect(self, request: Request) -> None:
        """Return once the client has gone away."""
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    async def _abandon(self, forward: asyncio.Future[httpx.Response], outbound: httpx.Request) -> Response:
        """Cancel an in-flight request whose client disconnected."""
        await _discard(forward)
        self._logger.info("Client disconnected, request abandoned", method=outbound.method, url=str(outbound.url))
        # Nobody is listening; the status only reaches access logs.
        return Response(status_code=499)


def create_app(
    config: ChaosProxyConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: structlog.stdlib.BoundLogger | None = None,
) -> Starlette:
    """Create a Starlette ASGI application from a full config.

    For access to stats and the transport, use ChaosProxy directly or read
    ``app.state.proxy``.
    """
    if transport is None:
        transport = httpx.AsyncHTTPTransport(verify=config.upstream.verify_tls)
    proxy = ChaosProxy(
        config.faults,
        transport=transport,
        logger=logger,
        timeout_sec=config.upstream.timeout_sec,
        admin_prefix=config.admin_prefix,
    )
    proxy.app.state.proxy = proxy
    return proxy.app
