"""
HTTP probe executor: one bounded request per call.

Every probe runs under a hard deadline enforced with ``asyncio.wait_for``; when it
elapses the in-flight httpx request is cancelled and its connection closed, and the
caller receives a ``timeout`` outcome instead of an exception. Each probe opens a
fresh client, so no connection outlives the call.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from sourcewatch.config import ProbeConfig
from sourcewatch.models import ErrorKind, ProbeOutcome
from sourcewatch.observability import metrics as obs_metrics
from sourcewatch.tools.rate_limiter import DomainRateLimiter

logger = structlog.get_logger()

# Statuses meaning the endpoint is gone, on top of every 5xx
_GONE_STATUSES = frozenset({404, 410})

_PRIVATE_HOST_PREFIXES = ("localhost", "127.", "0.0.0.0", "10.", "192.168.", "172.16.")


def is_success_status(status: int) -> bool:
    """True unless the status is a server error or says the endpoint is gone."""
    return status < 500 and status not in _GONE_STATUSES


def _is_private_host(url: str) -> bool:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    return any(host.startswith(prefix) for prefix in _PRIVATE_HOST_PREFIXES)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class ProbeExecutor:
    """
    Issues single HEAD/GET probes with per-attempt timeouts.

    ``transport`` lets callers (and tests) swap the network layer, e.g. for an
    ``httpx.MockTransport``. ``rate_limiter`` bounds per-host fan-out; the wait for
    a slot counts against the probe deadline.
    """

    def __init__(
        self,
        config: Optional[ProbeConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
    ) -> None:
        self._config = config or ProbeConfig()
        self._transport = transport
        self._limiter = rate_limiter

    def _headers(self, method: str) -> dict[str, str]:
        return {
            "User-Agent": self._config.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
            if method == "GET"
            else "*/*",
            "Accept-Language": self._config.accept_language,
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
        }

    async def probe(
        self,
        url: str,
        method: str = "HEAD",
        timeout_ms: int = 5000,
        max_bytes: Optional[int] = None,
    ) -> ProbeOutcome:
        """
        Run one probe and fold every transport condition into a ProbeOutcome.

        Args:
            url: Fully substituted URL to request.
            method: "HEAD" or "GET".
            timeout_ms: Hard deadline for the whole attempt, redirects included.
            max_bytes: For GET, stop reading the body after this many bytes.
        """
        method = method.upper()
        start = time.perf_counter()
        timeout_s = max(timeout_ms, 1) / 1000.0

        if self._config.block_private_hosts and _is_private_host(url):
            outcome = self._failure(url, method, start, ErrorKind.TRANSPORT, "private or loopback host blocked")
        else:
            try:
                outcome = await asyncio.wait_for(
                    self._limited_attempt(url, method, timeout_s, max_bytes, start),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                outcome = self._failure(
                    url, method, start, ErrorKind.TIMEOUT, f"no response within {timeout_ms}ms"
                )

        obs_metrics.record_probe(
            method=method,
            outcome="ok" if outcome.success else (outcome.error.value if outcome.error else "fail"),
            duration=outcome.response_time_ms / 1000.0,
        )
        if not outcome.success:
            logger.debug(
                "probe_failed",
                url=url,
                method=method,
                status=outcome.http_status,
                error=outcome.error.value if outcome.error else None,
                time_ms=outcome.response_time_ms,
            )
        return outcome

    async def _limited_attempt(
        self,
        url: str,
        method: str,
        timeout_s: float,
        max_bytes: Optional[int],
        start: float,
    ) -> ProbeOutcome:
        if self._limiter is None:
            return await self._attempt(url, method, timeout_s, max_bytes, start)
        async with self._limiter.acquire(url):
            return await self._attempt(url, method, timeout_s, max_bytes, start)

    async def _attempt(
        self,
        url: str,
        method: str,
        timeout_s: float,
        max_bytes: Optional[int],
        start: float,
    ) -> ProbeOutcome:
        """Send with connect-error retries and map httpx failures to ErrorKind."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.connect_retries + 1),
                wait=wait_exponential(multiplier=0.05, max=0.5),
                retry=retry_if_exception_type(httpx.ConnectError),
                reraise=True,
            ):
                with attempt:
                    return await self._send(url, method, timeout_s, max_bytes, start)
        except httpx.TimeoutException as e:
            return self._failure(url, method, start, ErrorKind.TIMEOUT, str(e) or "timed out")
        except httpx.TooManyRedirects as e:
            return self._failure(url, method, start, ErrorKind.TRANSPORT, f"too many redirects: {e}")
        except httpx.RequestError as e:
            return self._failure(url, method, start, ErrorKind.TRANSPORT, str(e) or type(e).__name__)
        except httpx.InvalidURL as e:
            return self._failure(url, method, start, ErrorKind.TRANSPORT, f"invalid url: {e}")
        raise AssertionError("unreachable: AsyncRetrying exhausted without result")

    async def _send(
        self,
        url: str,
        method: str,
        timeout_s: float,
        max_bytes: Optional[int],
        start: float,
    ) -> ProbeOutcome:
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=timeout_s,
            follow_redirects=True,
            max_redirects=self._config.max_redirects,
            headers=self._headers(method),
        ) as client:
            async with client.stream(method, url) as response:
                body: Optional[bytes] = None
                truncated = False
                if method != "HEAD":
                    body, truncated = await self._read_body(response, max_bytes)
                status = response.status_code
                success = is_success_status(status)
                return ProbeOutcome(
                    url=url,
                    method=method,
                    success=success,
                    http_status=status,
                    response_time_ms=_elapsed_ms(start),
                    body_sample=body,
                    truncated=truncated,
                    content_type=response.headers.get("content-type", ""),
                    final_url=str(response.url),
                    error=None if success else ErrorKind.HTTP,
                    error_message=None if success else f"HTTP {status}",
                )

    @staticmethod
    async def _read_body(response: httpx.Response, max_bytes: Optional[int]) -> tuple[bytes, bool]:
        """Read the body, stopping once ``max_bytes`` have arrived (streaming early exit)."""
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            chunks.append(chunk)
            size += len(chunk)
            if max_bytes is not None and size >= max_bytes:
                return b"".join(chunks)[:max_bytes], True
        return b"".join(chunks), False

    @staticmethod
    def _failure(url: str, method: str, start: float, kind: ErrorKind, message: str) -> ProbeOutcome:
        return ProbeOutcome(
            url=url,
            method=method,
            success=False,
            response_time_ms=_elapsed_ms(start),
            error=kind,
            error_message=message[:200],
        )
