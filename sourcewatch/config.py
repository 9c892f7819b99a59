"""
Centralized configuration for the source availability engine.

All settings are loaded from environment variables (SOURCEWATCH_*) with sensible
defaults. Pydantic Settings provides validation and type coercion; optional YAML
files under config/ refine per-host probe policies and keyword pools.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env then .env.local (so .env.local overrides).
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env")
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)


class ProbeConfig(BaseSettings):
    """HTTP probe behavior."""

    model_config = SettingsConfigDict(env_prefix="SOURCEWATCH_PROBE_")

    user_agent: str = "SourceWatch-StatusChecker/1.0"
    accept_language: str = "zh-CN,zh;q=0.8,en;q=0.6"
    max_redirects: int = 5
    # Extra attempts on connection failures; always inside the probe deadline
    connect_retries: int = 1
    functional_sample_bytes: int = 1024
    content_sample_bytes: int = 262144
    block_private_hosts: bool = False
    # Per-host limiter fallback when domain_policies.yaml has no entry
    default_concurrent_limit: int = 4
    default_requests_per_second: float = 0.0


class CheckConfig(BaseSettings):
    """Tier composition: keywords substituted into source URL templates."""

    model_config = SettingsConfigDict(env_prefix="SOURCEWATCH_CHECK_")

    fallback_keywords: list[str] = Field(default_factory=lambda: ["test", "001", "sample"])
    max_fallback_keywords: int = 3
    default_keyword: str = "MIMK-186"
    deep_keyword_pools: list[list[str]] = Field(
        default_factory=lambda: [["SSIS-001", "ABP-123"], ["sample", "video"]]
    )


class CacheConfig(BaseSettings):
    """Adaptive verdict cache: base TTL per tier, scaled by verdict status."""

    model_config = SettingsConfigDict(env_prefix="SOURCEWATCH_CACHE_")

    basic_ttl_seconds: float = 300.0
    functional_ttl_seconds: float = 600.0
    content_ttl_seconds: float = 900.0
    deep_ttl_seconds: float = 1800.0
    status_multipliers: dict[str, float] = Field(
        default_factory=lambda: {
            "available": 1.0,
            "unavailable": 0.5,
            "timeout": 0.3,
            "error": 0.2,
        }
    )
    max_entries: int = 1000
    max_age_seconds: float = 86400.0
    cleanup_interval_seconds: float = 3600.0


class SchedulerConfig(BaseSettings):
    """Batch scheduling and reliability window."""

    model_config = SettingsConfigDict(env_prefix="SOURCEWATCH_")

    concurrency: int = 3
    pacing_ms: int = 200
    reliability_window: int = 10


class ObservabilityConfig(BaseSettings):
    """Logging level and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class YAMLConfigLoader:
    """Loads YAML config files from a configurable directory."""

    def __init__(self, config_dir: str | Path = "config") -> None:
        self._dir = _repo_root / config_dir

    def load(self, filename: str) -> dict[str, Any]:
        """Load a YAML file; returns empty dict if the file is missing or malformed."""
        path = self._dir / filename
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, yaml.YAMLError):
            return {}


class Settings(BaseSettings):
    """Root settings container: access all config from one object."""

    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    checks: CheckConfig = Field(default_factory=CheckConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # YAML-loaded config (populated in get_settings)
    domain_policies: dict[str, Any] = Field(default_factory=dict)

    def apply_keyword_overrides(self, data: dict[str, Any]) -> None:
        """Merge config/keywords.yaml into the check settings."""
        fallback = data.get("fallback_keywords")
        if isinstance(fallback, list) and fallback:
            self.checks.fallback_keywords = [str(k) for k in fallback]
        pools = data.get("deep_keyword_pools")
        if isinstance(pools, list) and pools:
            self.checks.deep_keyword_pools = [
                [str(k) for k in pool] for pool in pools if isinstance(pool, list) and pool
            ]
        default = data.get("default_keyword")
        if isinstance(default, str) and default.strip():
            self.checks.default_keyword = default.strip()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    settings = Settings()
    loader = YAMLConfigLoader()
    settings.domain_policies = loader.load("domain_policies.yaml")
    settings.apply_keyword_overrides(loader.load("keywords.yaml"))
    return settings
