"""Shared pytest fixtures for SourceWatch tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

import httpx
import pytest

from sourcewatch.config import CacheConfig, CheckConfig, ProbeConfig, SchedulerConfig, Settings
from sourcewatch.models import (
    AssessmentResult,
    AvailabilityTier,
    CheckTier,
    SourceDescriptor,
    SourceStatus,
)


class FakeClock:
    """Injectable clock for cache expiry tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], object]) -> None:
        self.requests: list[httpx.Request] = []

        async def recording(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            response = handler(request)
            if hasattr(response, "__await__"):
                response = await response  # type: ignore[misc]
            return response  # type: ignore[return-value]

        super().__init__(recording)

    def methods(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]


def _results_page(keyword: str, cards: int = 12, title: Optional[str] = None) -> str:
    """Search-results HTML: keyword in <title> plus ``cards`` result blocks."""
    page_title = title if title is not None else f"{keyword} - Search results"
    items = "\n".join(
        f'<div class="result-card"><a href="/v/{i}">{keyword} item {i}</a><img src="/{i}.jpg"></div>'
        for i in range(cards)
    )
    return (
        f"<html><head><title>{page_title}</title></head><body>"
        f'<nav class="navbar"><a href="/">Home</a></nav>'
        f'<div class="results">{items}</div>'
        f'<div class="pagination"><a rel="next" href="?page=2">Next</a></div>'
        f"</body></html>"
    )


def _html_response(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, text=body, headers={"content-type": "text/html; charset=utf-8"})


@pytest.fixture
def results_page() -> Callable[..., str]:
    """Builder for search-results HTML pages."""
    return _results_page


@pytest.fixture
def html_response() -> Callable[..., httpx.Response]:
    return _html_response


@pytest.fixture
def recording_transport() -> type[RecordingTransport]:
    return RecordingTransport


@pytest.fixture
def echo_handler() -> Callable[[httpx.Request], httpx.Response]:
    """HEAD answers 200; GET answers a results page for the `q` keyword."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(200)
        return _html_response(_results_page(request.url.params.get("q", "")))

    return handler


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with no pacing so batch tests stay fast."""
    return Settings(
        probe=ProbeConfig(),
        checks=CheckConfig(),
        cache=CacheConfig(),
        scheduler=SchedulerConfig(pacing_ms=0),
    )


@pytest.fixture
def source() -> SourceDescriptor:
    return SourceDescriptor(
        id="example",
        url_template="https://example.com/search?q={keyword}",
        name="Example",
    )


@pytest.fixture
def make_result() -> Callable[..., AssessmentResult]:
    def _make(
        source_id: str = "example",
        status: SourceStatus = SourceStatus.AVAILABLE,
        tier: CheckTier = CheckTier.FUNCTIONAL,
        score: float = 1.0,
    ) -> AssessmentResult:
        available = status == SourceStatus.AVAILABLE
        return AssessmentResult(
            source_id=source_id,
            tier=tier,
            composite_score=score if available else 0.0,
            availability_tier=AvailabilityTier.EXCELLENT if available else AvailabilityTier.FAILING,
            available=available,
            status=status,
            response_time_ms=120,
        )

    return _make
