"""Tests for the HTTP probe executor against httpx.MockTransport."""

import asyncio
import time

import httpx
import pytest

from sourcewatch.config import ProbeConfig
from sourcewatch.models import ErrorKind
from sourcewatch.tools.probe import ProbeExecutor, is_success_status
from sourcewatch.tools.rate_limiter import DomainRateLimiter


@pytest.fixture
def make_executor(recording_transport):
    def _make(handler, **config):
        transport = recording_transport(handler)
        return ProbeExecutor(ProbeConfig(**config), transport=transport), transport

    return _make


class TestSuccessStatus:
    @pytest.mark.parametrize("status", [200, 204, 301, 403, 429])
    def test_success(self, status: int) -> None:
        assert is_success_status(status)

    @pytest.mark.parametrize("status", [404, 410, 500, 502, 503])
    def test_failure(self, status: int) -> None:
        assert not is_success_status(status)


class TestProbe:
    @pytest.mark.asyncio
    async def test_head_success(self, make_executor) -> None:
        executor, transport = make_executor(lambda request: httpx.Response(200))
        outcome = await executor.probe("https://example.com/", "HEAD", timeout_ms=1000)
        assert outcome.success is True
        assert outcome.http_status == 200
        assert outcome.body_sample is None
        assert outcome.error is None
        assert transport.requests[0].headers["user-agent"].startswith("SourceWatch")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 410, 503])
    async def test_failing_status_is_http_error(self, status: int, make_executor) -> None:
        executor, _ = make_executor(lambda request: httpx.Response(status))
        outcome = await executor.probe("https://example.com/", "GET", timeout_ms=1000)
        assert outcome.success is False
        assert outcome.http_status == status
        assert outcome.error == ErrorKind.HTTP

    @pytest.mark.asyncio
    async def test_redirect_followed_to_final_status(self, make_executor) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "https://example.com/new"})
            return httpx.Response(404)

        executor, transport = make_executor(handler)
        outcome = await executor.probe("https://example.com/old", "GET", timeout_ms=1000)
        assert outcome.success is False
        assert outcome.http_status == 404
        assert outcome.final_url == "https://example.com/new"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_redirect_loop_is_transport_error(self, make_executor) -> None:
        executor, _ = make_executor(
            lambda request: httpx.Response(302, headers={"location": "https://example.com/loop"}),
            max_redirects=3,
        )
        outcome = await executor.probe("https://example.com/loop", "HEAD", timeout_ms=1000)
        assert outcome.success is False
        assert outcome.error == ErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_body_is_truncated_at_max_bytes(self, make_executor) -> None:
        executor, _ = make_executor(lambda request: httpx.Response(200, content=b"x" * 5000))
        outcome = await executor.probe("https://example.com/", "GET", timeout_ms=1000, max_bytes=1024)
        assert outcome.success is True
        assert len(outcome.body_sample) == 1024
        assert outcome.truncated is True

    @pytest.mark.asyncio
    async def test_small_body_read_whole(self, make_executor) -> None:
        executor, _ = make_executor(lambda request: httpx.Response(200, content=b"<html></html>"))
        outcome = await executor.probe("https://example.com/", "GET", timeout_ms=1000, max_bytes=1024)
        assert outcome.body_sample == b"<html></html>"
        assert outcome.truncated is False

    @pytest.mark.asyncio
    async def test_unresponsive_endpoint_times_out(self, make_executor) -> None:
        async def never(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            return httpx.Response(200)

        executor, _ = make_executor(never)
        start = time.perf_counter()
        outcome = await executor.probe("https://example.com/", "HEAD", timeout_ms=100)
        elapsed = time.perf_counter() - start
        assert outcome.success is False
        assert outcome.error == ErrorKind.TIMEOUT
        assert elapsed < 0.5

    @pytest.mark.asyncio
    async def test_httpx_timeout_maps_to_timeout(self, make_executor) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        executor, _ = make_executor(handler)
        outcome = await executor.probe("https://example.com/", "GET", timeout_ms=1000)
        assert outcome.error == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connect_error_retried_once(self, make_executor) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        executor, _ = make_executor(handler)
        outcome = await executor.probe("https://example.com/", "HEAD", timeout_ms=2000)
        assert outcome.success is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_connect_error_is_transport_error(self, make_executor) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        executor, transport = make_executor(handler, connect_retries=1)
        outcome = await executor.probe("https://example.com/", "HEAD", timeout_ms=2000)
        assert outcome.success is False
        assert outcome.error == ErrorKind.TRANSPORT
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_private_host_blocked_before_network(self, make_executor) -> None:
        executor, transport = make_executor(lambda request: httpx.Response(200), block_private_hosts=True)
        outcome = await executor.probe("http://127.0.0.1:8080/", "HEAD", timeout_ms=1000)
        assert outcome.error == ErrorKind.TRANSPORT
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_rate_limiter_bounds_per_host_concurrency(self, recording_transport) -> None:
        active = 0
        peak = 0

        async def slow(request: httpx.Request) -> httpx.Response:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return httpx.Response(200)

        limiter = DomainRateLimiter({"defaults": {"concurrent_limit": 2}})
        executor = ProbeExecutor(ProbeConfig(), transport=recording_transport(slow), rate_limiter=limiter)
        outcomes = await asyncio.gather(
            *(executor.probe(f"https://example.com/{i}", "HEAD", timeout_ms=2000) for i in range(6))
        )
        assert all(o.success for o in outcomes)
        assert peak == 2
