"""
Per-host probe limiter using asyncio semaphores.

Reads host policies from config/domain_policies.yaml to bound how many probes
run against one upstream at a time and, optionally, how quickly they start.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger()


class DomainRateLimiter:
    """Per-host concurrency cap plus a minimum interval between request starts."""

    def __init__(
        self,
        policies: dict[str, Any] | None = None,
        default_concurrent_limit: int = 4,
        default_requests_per_second: float = 0.0,
    ) -> None:
        policies = policies or {}
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._last_request: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._defaults: dict[str, Any] = {
            "concurrent_limit": default_concurrent_limit,
            "requests_per_second": default_requests_per_second,
            **(policies.get("defaults") or {}),
        }
        self._policies: dict[str, dict[str, Any]] = {
            domain.lower(): policy
            for domain, policy in (policies.get("domains") or {}).items()
            if isinstance(policy, dict)
        }

    def _get_policy(self, domain: str) -> dict[str, Any]:
        """Get the policy for a host; exact match, then without www., then defaults."""
        domain_lower = domain.lower()
        if domain_lower in self._policies:
            return self._policies[domain_lower]
        bare = domain_lower.removeprefix("www.")
        if bare in self._policies:
            return self._policies[bare]
        return self._defaults

    def _get_semaphore(self, domain: str) -> asyncio.Semaphore:
        if domain not in self._semaphores:
            policy = self._get_policy(domain)
            limit = int(policy.get("concurrent_limit", self._defaults["concurrent_limit"]))
            self._semaphores[domain] = asyncio.Semaphore(max(1, limit))
        return self._semaphores[domain]

    @staticmethod
    def _extract_domain(url: str) -> str:
        try:
            return (urlparse(url).netloc or "").lower() or "unknown"
        except ValueError:
            return "unknown"

    @asynccontextmanager
    async def acquire(self, url: str) -> AsyncIterator[None]:
        """Hold a slot for ``url``'s host; sleeps if the host was hit too recently."""
        domain = self._extract_domain(url)
        policy = self._get_policy(domain)
        rps = float(policy.get("requests_per_second", self._defaults["requests_per_second"]) or 0.0)
        min_interval = 1.0 / rps if rps > 0 else 0.0

        sem = self._get_semaphore(domain)
        async with sem:
            if min_interval > 0:
                lock = self._locks.setdefault(domain, asyncio.Lock())
                async with lock:
                    now = time.monotonic()
                    wait_time = min_interval - (now - self._last_request.get(domain, 0.0))
                    if wait_time > 0:
                        logger.debug("probe_throttled", host=domain, wait_s=round(wait_time, 3))
                        await asyncio.sleep(wait_time)
                    self._last_request[domain] = time.monotonic()
            yield
