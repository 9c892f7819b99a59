"""
SourceWatch command line entry point.

Usage:
    python -m sourcewatch.main check sources.yaml --tier content --keyword MIMK-186
    python -m sourcewatch.main check sources.json --tier basic --json
    python -m sourcewatch.main probe "https://example.com/search?q=test" --method GET
"""

from __future__ import annotations

# Load .env before the rest so settings see it
import sourcewatch.config  # noqa: F401

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import structlog
import yaml
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

from sourcewatch.config import get_settings
from sourcewatch.engine import AvailabilityEngine
from sourcewatch.models import AssessmentResult, AvailabilityTier, BatchOptions, CheckTier, SourceDescriptor
from sourcewatch.observability import metrics as obs_metrics
from sourcewatch.scoring import summarize
from sourcewatch.tools.probe import ProbeExecutor

_CUSTOM_THEME = Theme({
    "tier.excellent": "bold #22c55e",
    "tier.good":      "#84cc16",
    "tier.moderate":  "#f59e0b",
    "tier.poor":      "#ea580c",
    "tier.failing":   "bold #dc2626",
    "log.key":        "#64748b",
    "log.val":        "#94a3b8",
})

console = Console(theme=_CUSTOM_THEME, highlight=False, stderr=True)
out = Console(theme=_CUSTOM_THEME, highlight=False)


class _RichStructlogRenderer:
    """Structlog processor that renders log lines via Rich on stderr."""

    _SKIP_KEYS = frozenset({"event", "level"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()
        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            kv_parts.append(f"[log.key]{k}[/log.key]=[log.val]{vs}[/log.val]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix, ev_fmt = "[bold #f59e0b]⚠[/bold #f59e0b]", f"[bold #f59e0b]{event}[/bold #f59e0b]"
        elif level in ("error", "critical"):
            prefix, ev_fmt = "[bold #dc2626]✗[/bold #dc2626]", f"[bold #dc2626]{event}[/bold #dc2626]"
        elif level == "debug":
            prefix, ev_fmt = "[#64748b]·[/#64748b]", f"[#64748b]{event}[/#64748b]"
        else:
            prefix, ev_fmt = "[#0ea5e9]▪[/#0ea5e9]", f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


logger = structlog.get_logger()


def load_sources(path: Path) -> list[SourceDescriptor]:
    """Read a JSON or YAML list of sources (or a mapping with a ``sources`` list)."""
    text = path.read_text(encoding="utf-8")
    data: Any = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    if isinstance(data, dict):
        data = data.get("sources", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of sources")
    return [SourceDescriptor.model_validate(item) for item in data]


def _tier_cell(result: AssessmentResult) -> str:
    name = result.availability_tier.value
    return f"[tier.{name}]{name}[/tier.{name}]"


def _display_results(results: list[AssessmentResult]) -> None:
    table = Table(title="Source Availability", border_style="#64748b", title_style="bold #e2e8f0")
    table.add_column("Source", style="bold #e2e8f0")
    table.add_column("Tier")
    table.add_column("Score", justify="right")
    table.add_column("Status", style="#94a3b8")
    table.add_column("Basic", justify="right")
    table.add_column("Func", justify="right")
    table.add_column("Content", justify="right")
    table.add_column("Deep", justify="right")
    table.add_column("Time", justify="right", style="#94a3b8")

    def fmt(v: float | None) -> str:
        return "-" if v is None else f"{v:.2f}"

    for r in results:
        s = r.sub_scores
        table.add_row(
            r.source_name or r.source_id,
            _tier_cell(r),
            f"{r.composite_score:.2f}",
            r.status.value + (" (cached)" if r.from_cache else ""),
            fmt(s.basic),
            fmt(s.functional),
            fmt(s.content),
            fmt(s.deep),
            f"{r.response_time_ms}ms",
        )
    out.print(table)

    summary = summarize(results)
    out.print(
        f"  {summary['available']}/{summary['total']} available  ·  "
        f"{summary['failing']} failing  ·  avg {summary['average_response_time_ms']}ms"
    )


async def run_check(
    sources_file: str,
    tier: str,
    keyword: str | None,
    timeout_ms: int,
    concurrency: int,
    use_cache: bool,
    as_json: bool,
) -> int:
    sources = load_sources(Path(sources_file))
    if not sources:
        console.print("[#f59e0b]No sources to check.[/#f59e0b]")
        return 1
    logger.info("check_started", sources=len(sources), tier=tier, keyword=keyword)
    settings = get_settings()
    options = BatchOptions(
        tier=CheckTier(tier),
        keyword=keyword,
        timeout_ms=timeout_ms,
        use_cache=use_cache,
        concurrency=concurrency,
        pacing_ms=settings.scheduler.pacing_ms,
    )
    engine = AvailabilityEngine(settings)
    results = await engine.assess_batch(sources, options)

    if as_json:
        out.print_json(
            json.dumps(
                {
                    "results": [r.model_dump(mode="json") for r in results],
                    "summary": summarize(results),
                }
            )
        )
    else:
        _display_results(results)
    return 0 if any(r.availability_tier != AvailabilityTier.FAILING for r in results) else 2


async def run_probe(url: str, method: str, timeout_ms: int, max_bytes: int | None) -> int:
    executor = ProbeExecutor(get_settings().probe)
    outcome = await executor.probe(url, method=method, timeout_ms=timeout_ms, max_bytes=max_bytes)
    data = outcome.summary()
    data["content_type"] = outcome.content_type
    data["final_url"] = outcome.final_url
    if outcome.body_sample is not None:
        data["body_bytes"] = len(outcome.body_sample)
    out.print_json(json.dumps(data))
    return 0 if outcome.success else 2


def main() -> None:
    parser = argparse.ArgumentParser(description="SourceWatch source availability checker")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (debug, info, warning)")
    sub = parser.add_subparsers(dest="command")

    chk = sub.add_parser("check", help="Assess every source in a JSON or YAML file")
    chk.add_argument("sources_file", help="Path to a JSON or YAML list of {id, urlTemplate, name}")
    chk.add_argument("--tier", choices=[t.value for t in CheckTier], default=CheckTier.FUNCTIONAL.value)
    chk.add_argument("--keyword", default=None, help="Target keyword for content and deep tiers")
    chk.add_argument("--timeout-ms", type=int, default=10000, help="Per-source deadline (clamped to 1000-30000)")
    chk.add_argument("--concurrency", type=int, default=None, help="Sources checked at once")
    chk.add_argument("--no-cache", action="store_true", help="Skip cached verdicts")
    chk.add_argument("--json", action="store_true", help="Print results as JSON")

    prb = sub.add_parser("probe", help="Run a single HTTP probe")
    prb.add_argument("url")
    prb.add_argument("--method", choices=["HEAD", "GET"], default="HEAD")
    prb.add_argument("--timeout-ms", type=int, default=5000)
    prb.add_argument("--max-bytes", type=int, default=None)

    args = parser.parse_args()
    settings = get_settings()
    _configure_logging(args.log_level or settings.observability.log_level)
    obs_metrics.start_server(settings.observability.metrics_port)

    if args.command == "check":
        code = asyncio.run(
            run_check(
                args.sources_file,
                args.tier,
                args.keyword,
                args.timeout_ms,
                args.concurrency or settings.scheduler.concurrency,
                not args.no_cache,
                args.json,
            )
        )
    elif args.command == "probe":
        code = asyncio.run(run_probe(args.url, args.method, args.timeout_ms, args.max_bytes))
    else:
        parser.print_help()
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
