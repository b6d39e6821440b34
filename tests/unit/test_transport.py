"""Tests for FaultInjectingTransport."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest
from structlog.testing import capture_logs

from chaosproxy.config import FaultConfig
from chaosproxy.delay import DelayGenerator
from chaosproxy.errors import RequestDroppedError
from chaosproxy.injection import DropDecider
from chaosproxy.transport import FaultInjectingTransport
from tests.conftest import BlockingSleep, ConstantRandom, CountingTransport, RecordingSleep, TrackingStream

DESTINATION = "http://backend.test:9000"


def make_config(**overrides: object) -> FaultConfig:
    return FaultConfig(destination=DESTINATION, **overrides)


def fixed_delays(pre_ms: float, post_ms: float) -> DelayGenerator:
    """Delay generator that always returns the given delays."""
    return DelayGenerator(
        pre_rate=1.0,
        pre_max_ms=10_000.0,
        post_rate=1.0,
        post_max_ms=10_000.0,
        pre_rng=ConstantRandom(expo_value=pre_ms),
        post_rng=ConstantRandom(expo_value=post_ms),
    )


def make_request(path: str = "/resource") -> httpx.Request:
    return httpx.Request("GET", f"{DESTINATION}{path}")


class TestForwarding:
    """Requests that are not dropped reach the wrapped transport."""

    @pytest.mark.asyncio
    async def test_response_returned_unchanged(self, echo_transport: CountingTransport, recording_sleep: RecordingSleep) -> None:
        transport = FaultInjectingTransport(make_config(), transport=echo_transport, sleep=recording_sleep)

        response = await transport.handle_async_request(make_request("/users/7?expand=true"))

        assert response.status_code == 200
        assert response.json()["path"] == "/users/7"
        assert response.json()["query"] == "expand=true"
        assert echo_transport.calls == 1

    @pytest.mark.asyncio
    async def test_request_forwarded_unchanged(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(make_config(), transport=echo_transport)
        request = httpx.Request("POST", f"{DESTINATION}/submit", headers={"X-Trace": "abc"}, content=b"payload")

        await transport.handle_async_request(request)

        assert echo_transport.requests == [request]

    @pytest.mark.asyncio
    async def test_zero_rates_never_sleep(self, echo_transport: CountingTransport, recording_sleep: RecordingSleep) -> None:
        transport = FaultInjectingTransport(make_config(pre_delay_rate=0, post_delay_rate=-1), transport=echo_transport, sleep=recording_sleep)

        for _ in range(20):
            await transport.handle_async_request(make_request())

        assert recording_sleep.calls == []

    @pytest.mark.asyncio
    async def test_works_with_async_client(self, echo_transport: CountingTransport) -> None:
        """The transport plugs into httpx.AsyncClient like any other."""
        transport = FaultInjectingTransport(make_config(), transport=echo_transport)
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(f"{DESTINATION}/ping", headers={"Host": "client.example"})
        assert response.json()["host"] == "client.example"


class TestProtocolOrder:
    """Pre-delay, drop decision, forward, post-delay, return."""

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self) -> None:
        events: list[tuple[str, float]] = []

        async def sleep(delay: float) -> None:
            events.append(("sleep", delay))

        def handler(request: httpx.Request) -> httpx.Response:
            events.append(("forward", 0.0))
            return httpx.Response(204)

        transport = FaultInjectingTransport(
            make_config(),
            transport=httpx.MockTransport(handler),
            delays=fixed_delays(pre_ms=120.0, post_ms=45.0),
            sleep=sleep,
        )

        response = await transport.handle_async_request(make_request())

        assert response.status_code == 204
        assert events == [("sleep", 0.12), ("forward", 0.0), ("sleep", 0.045)]

    @pytest.mark.asyncio
    async def test_drop_decided_after_pre_delay(self, echo_transport: CountingTransport) -> None:
        events: list[str] = []

        class RecordingDecider(DropDecider):
            def should_drop(self) -> bool:
                events.append("decide")
                return False

        async def sleep(delay: float) -> None:
            events.append("sleep")

        transport = FaultInjectingTransport(
            make_config(),
            transport=echo_transport,
            delays=fixed_delays(pre_ms=10.0, post_ms=10.0),
            dropper=RecordingDecider(0.5),
            sleep=sleep,
        )

        await transport.handle_async_request(make_request())

        assert events == ["sleep", "decide", "sleep"]


class TestDrops:
    """Injected drops are distinct, skip forwarding, and still post-delay."""

    @pytest.mark.asyncio
    async def test_probability_one_drops_every_request(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(make_config(drop_probability=1.0), transport=echo_transport)

        for _ in range(50):
            with pytest.raises(RequestDroppedError):
                await transport.handle_async_request(make_request())

        assert echo_transport.calls == 0
        assert transport.stats.snapshot()["dropped"] == 50

    @pytest.mark.asyncio
    async def test_probability_zero_never_drops(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(make_config(drop_probability=0.0), transport=echo_transport)

        for _ in range(200):
            response = await transport.handle_async_request(make_request())
            assert response.status_code == 200

        assert echo_transport.calls == 200

    @pytest.mark.asyncio
    async def test_drop_still_applies_post_delay(self, echo_transport: CountingTransport, recording_sleep: RecordingSleep) -> None:
        transport = FaultInjectingTransport(
            make_config(drop_probability=1.0),
            transport=echo_transport,
            delays=fixed_delays(pre_ms=30.0, post_ms=70.0),
            sleep=recording_sleep,
        )

        with pytest.raises(RequestDroppedError):
            await transport.handle_async_request(make_request())

        assert recording_sleep.calls == [0.03, 0.07]

    @pytest.mark.asyncio
    async def test_drop_error_is_distinguishable(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(make_config(drop_probability=1.0), transport=echo_transport)
        request = make_request()

        with pytest.raises(RequestDroppedError) as exc_info:
            await transport.handle_async_request(request)

        error = exc_info.value
        assert isinstance(error, httpx.TransportError)
        assert not isinstance(error, httpx.NetworkError)
        assert not isinstance(error, httpx.TimeoutException)
        assert error.request is request

    @pytest.mark.asyncio
    async def test_async_client_surfaces_drop(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(make_config(drop_probability=1.0), transport=echo_transport)
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(RequestDroppedError):
                await client.get(f"{DESTINATION}/")


class TestForwardingErrors:
    """Errors from the wrapped transport pass through verbatim."""

    @pytest.mark.asyncio
    async def test_error_reraised_unchanged(self, recording_sleep: RecordingSleep) -> None:
        error = httpx.ConnectError("Connection refused")
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise error

        transport = FaultInjectingTransport(
            make_config(),
            transport=httpx.MockTransport(handler),
            delays=fixed_delays(pre_ms=5.0, post_ms=15.0),
            sleep=recording_sleep,
        )

        with pytest.raises(httpx.ConnectError) as exc_info:
            await transport.handle_async_request(make_request())

        assert exc_info.value is error
        assert calls == 1  # no retry
        assert recording_sleep.calls == [0.005, 0.015]
        assert transport.stats.snapshot()["forward_errors"] == 1

    @pytest.mark.asyncio
    async def test_non_httpx_errors_also_pass_through(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("transport bug")

        transport = FaultInjectingTransport(make_config(), transport=httpx.MockTransport(handler))

        with pytest.raises(RuntimeError, match="transport bug"):
            await transport.handle_async_request(make_request())

    @pytest.mark.asyncio
    async def test_error_statuses_are_responses_not_errors(self) -> None:
        transport = FaultInjectingTransport(make_config(), transport=httpx.MockTransport(lambda request: httpx.Response(503)))

        response = await transport.handle_async_request(make_request())

        assert response.status_code == 503
        assert transport.stats.snapshot()["forwarded"] == 1


class TestCancellation:
    """Cancelling a request while it sleeps aborts it immediately."""

    @pytest.mark.asyncio
    async def test_cancel_during_pre_delay_skips_forwarding(self, echo_transport: CountingTransport) -> None:
        sleep = BlockingSleep(block_on_call=1)
        transport = FaultInjectingTransport(
            make_config(),
            transport=echo_transport,
            delays=fixed_delays(pre_ms=1000.0, post_ms=1000.0),
            sleep=sleep,
        )

        task = asyncio.create_task(transport.handle_async_request(make_request()))
        await sleep.blocked.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert echo_transport.calls == 0
        assert len(sleep.calls) == 1
        assert transport.stats.snapshot()["cancelled"] == 1

    @pytest.mark.asyncio
    async def test_cancel_during_post_delay_closes_response(self) -> None:
        stream = TrackingStream()
        sleep = BlockingSleep(block_on_call=2)
        transport = FaultInjectingTransport(
            make_config(),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)),
            delays=fixed_delays(pre_ms=10.0, post_ms=1000.0),
            sleep=sleep,
        )

        task = asyncio.create_task(transport.handle_async_request(make_request()))
        await sleep.blocked.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert stream.closed is True
        assert transport.stats.snapshot()["cancelled"] == 1
        assert transport.stats.snapshot()["forwarded"] == 0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_timeout_interrupts_real_sleep(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(
            make_config(),
            transport=echo_transport,
            delays=fixed_delays(pre_ms=5000.0, post_ms=0.0),
        )

        start = time.monotonic()
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(transport.handle_async_request(make_request()), timeout=0.05)

        assert time.monotonic() - start < 2.0
        assert echo_transport.calls == 0


class TestConcurrency:
    """Delays suspend only the request that owns them."""

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_concurrent_requests_sleep_in_parallel(self, echo_transport: CountingTransport) -> None:
        transport = FaultInjectingTransport(
            make_config(),
            transport=echo_transport,
            delays=fixed_delays(pre_ms=100.0, post_ms=0.0),
        )

        start = time.monotonic()
        responses = await asyncio.gather(*(transport.handle_async_request(make_request()) for _ in range(10)))
        elapsed = time.monotonic() - start

        assert [r.status_code for r in responses] == [200] * 10
        # Sequential execution would take at least 1.0s
        assert elapsed < 0.6


class TestSeeding:
    """A fixed seed reproduces delays and drops."""

    @pytest.mark.asyncio
    async def test_same_seed_same_fault_sequence(self, echo_transport: CountingTransport) -> None:
        config = make_config(
            drop_probability=0.3,
            pre_delay_rate=0.02,
            pre_delay_max_ms=400,
            post_delay_rate=0.01,
            post_delay_max_ms=400,
            seed=8675309,
        )

        async def run() -> tuple[list[float], list[bool]]:
            sleep = RecordingSleep()
            transport = FaultInjectingTransport(config, transport=echo_transport, sleep=sleep)
            dropped = []
            for _ in range(100):
                try:
                    await transport.handle_async_request(make_request())
                    dropped.append(False)
                except RequestDroppedError:
                    dropped.append(True)
            return sleep.calls, dropped

        first = await run()
        second = await run()

        assert first == second
        assert any(first[1])
        assert not all(first[1])


class TestObservability:
    """Every stage emits a log event; logging never changes outcomes."""

    @pytest.mark.asyncio
    async def test_stage_events_logged(self, echo_transport: CountingTransport, recording_sleep: RecordingSleep) -> None:
        with capture_logs() as logs:
            transport = FaultInjectingTransport(
                make_config(),
                transport=echo_transport,
                delays=fixed_delays(pre_ms=10.0, post_ms=20.0),
                sleep=recording_sleep,
            )
            await transport.handle_async_request(make_request())

        events = [(entry["event"], entry["log_level"]) for entry in logs]
        assert events == [
            ("Incoming request", "info"),
            ("Sleeping before request", "debug"),
            ("Sending request", "debug"),
            ("Sleeping after response returned", "debug"),
            ("Returning response to client", "debug"),
        ]
        assert logs[1]["delay_sec"] == 0.01
        assert logs[2]["target"] == DESTINATION

    @pytest.mark.asyncio
    async def test_drop_logged(self, echo_transport: CountingTransport) -> None:
        with capture_logs() as logs:
            transport = FaultInjectingTransport(make_config(drop_probability=1.0), transport=echo_transport)
            with pytest.raises(RequestDroppedError):
                await transport.handle_async_request(make_request())

        assert "Dropping request" in [entry["event"] for entry in logs]

    @pytest.mark.asyncio
    async def test_explicit_logger_is_used(self, echo_transport: CountingTransport) -> None:
        import structlog

        with capture_logs() as logs:
            logger = structlog.get_logger("custom").bind(proxy="edge")
            transport = FaultInjectingTransport(make_config(), transport=echo_transport, logger=logger)
            await transport.handle_async_request(make_request())

        assert logs
        assert all(entry["proxy"] == "edge" for entry in logs)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_aclose_closes_wrapped_transport(self) -> None:
        closed = False

        class ClosingTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
                return httpx.Response(200)

            async def aclose(self) -> None:
                nonlocal closed
                closed = True

        transport = FaultInjectingTransport(make_config(), transport=ClosingTransport())
        await transport.aclose()

        assert closed is True

    def test_default_transport_is_httpx(self) -> None:
        transport = FaultInjectingTransport(make_config())
        assert isinstance(transport._transport, httpx.AsyncHTTPTransport)

    def test_seeded_default_components(self) -> None:
        """Without injected components, delays and drops come from the config seed."""
        config = make_config(drop_probability=0.5, pre_delay_rate=0.1, pre_delay_max_ms=1000, seed=3)
        first = FaultInjectingTransport(config)
        second = FaultInjectingTransport(config)
        assert [first.delays.pre_delay() for _ in range(20)] == [second.delays.pre_delay() for _ in range(20)]
        assert [first.dropper.should_drop() for _ in range(20)] == [second.dropper.should_drop() for _ in range(20)]
        assert first.dropper.probability == 0.5
