"""
Configuration management for the company discovery layer.

This module provides environment-based configuration using Pydantic BaseSettings.
Every ceiling, TTL and backoff parameter used by the governance components is
exposed here so deployments can tune them without code changes. Secrets (the
provider API key) are read from the environment only and never have defaults.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

# Determine project root for resolving .env by default
PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_ENV_FILE = PROJECT_ROOT / ".env"
ENV_FILE_OVERRIDE = os.getenv("DISCOVERY_ENV_FILE")
if ENV_FILE_OVERRIDE:
    env_file_candidate = Path(ENV_FILE_OVERRIDE).expanduser()
    if not env_file_candidate.is_absolute():
        env_file_candidate = PROJECT_ROOT / env_file_candidate
    SETTINGS_ENV_FILE = env_file_candidate
else:
    SETTINGS_ENV_FILE = DEFAULT_ENV_FILE

FALLBACK_STRATEGY_NAMES = (
    "cached_results",
    "manual_entry",
    "skip_discovery",
    "offline_mode",
    "heuristic_guess",
)

DAYS_PER_MONTH_WINDOW = 30


class Settings(BaseSettings):
    """
    Discovery layer settings with environment variable support.

    Environment variables are loaded with the DISCOVERY_ prefix. For example,
    DISCOVERY_QUOTA_MONTHLY_LIMIT=5000 overrides quota_monthly_limit.
    """

    # Provider
    provider_base_url: str = Field(
        default="http://localhost:8080/search",
        description="Search endpoint of the company lookup provider",
    )
    provider_api_key: str = Field(
        default="",
        description="Provider API key; loaded from DISCOVERY_PROVIDER_API_KEY",
    )
    provider_timeout_seconds: float = Field(
        default=10.0, description="Upper bound on a single provider call"
    )
    provider_max_results: int = Field(
        default=3, description="Maximum candidates kept per lookup"
    )

    # Quota windows
    quota_burst_limit: int = Field(default=5, description="Calls allowed per burst window")
    quota_burst_window_seconds: int = Field(
        default=10, description="Length of the burst window in seconds"
    )
    quota_minute_limit: int = Field(default=10, description="Calls allowed per minute")
    quota_daily_limit: Optional[int] = Field(
        default=None,
        description="Calls allowed per day (None = monthly limit / 30)",
    )
    quota_monthly_limit: int = Field(
        default=2000, description="Calls allowed per 30-day window"
    )

    # Cache tiers
    cache_memory_ttl_seconds: int = Field(
        default=3600, description="Expiry of in-process cache entries"
    )
    cache_memory_max_items: int = Field(
        default=100, description="Capacity of the in-process cache tier"
    )
    cache_durable_ttl_seconds: int = Field(
        default=7 * 24 * 3600, description="Expiry of durable cache entries"
    )
    cache_memory_sweep_interval_seconds: int = Field(
        default=300, description="Interval of the in-process expiry sweep"
    )
    cache_durable_cleanup_interval_seconds: int = Field(
        default=6 * 3600, description="Interval of the durable cache cleanup"
    )

    # Retry and backoff
    retry_max_retries: int = Field(
        default=3,
        description="Retries after the first attempt of a guarded call (3 means 4 attempts)",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0, description="Base delay of the exponential backoff"
    )
    retry_max_delay_seconds: float = Field(
        default=30.0, description="Upper bound on any backoff delay"
    )
    scheduler_max_retries: int = Field(
        default=2, description="Queue-level retries per request"
    )
    scheduler_backoff_base_seconds: float = Field(
        default=1.0, description="Base delay for queue-level retries"
    )

    # Pacing between dequeues
    pacing_base_seconds: float = Field(default=0.1, description="Minimum gap between calls")
    pacing_per_item_seconds: float = Field(
        default=0.05, description="Extra gap per queued request"
    )
    pacing_queue_cap_seconds: float = Field(
        default=0.5, description="Cap on the queue-length component of the gap"
    )
    pacing_near_ceiling_seconds: float = Field(
        default=0.2, description="Extra gap when minute usage exceeds half the limit"
    )

    # Circuit breaker
    circuit_failure_threshold: int = Field(
        default=5, description="Consecutive failures that open the circuit"
    )
    circuit_cooldown_seconds: float = Field(
        default=60.0, description="Time an open circuit waits before a trial call"
    )
    circuit_half_open_successes: int = Field(
        default=2, description="Trial successes needed to close the circuit"
    )

    # Fallback chain
    fallback_enabled_strategies: List[str] = Field(
        default_factory=lambda: list(FALLBACK_STRATEGY_NAMES),
        description="Fallback strategies enabled at startup",
    )
    fallback_fresh_window_seconds: int = Field(
        default=1800, description="Maximum age of a cached result served as fallback"
    )
    heuristic_url_template: str = Field(
        default="https://www.linkedin.com/company/{slug}",
        description="Company page URL pattern used for heuristic guesses",
    )

    # Rollout
    discovery_rollout_percentage: int = Field(
        default=100, description="Rollout percentage of the company_discovery flag"
    )
    flag_cache_ttl_seconds: int = Field(
        default=300, description="Lifetime of cached flag evaluations"
    )
    feature_flags_file: Optional[str] = Field(
        default=None, description="Override path of the default flag catalogue"
    )

    # Durable store
    store_url: str = Field(
        default="sqlite:///company_discovery.db",
        description="SQLAlchemy URL of the durable key-value store",
    )
    store_table: str = Field(
        default="discovery_store", description="Table backing the durable store"
    )

    # Housekeeping
    quota_persist_interval_seconds: int = Field(
        default=30, description="Interval for persisting quota counters"
    )
    health_check_interval_seconds: int = Field(
        default=300, description="Interval of the scheduled health check"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write logs to a file")
    log_file_dir: str = Field(default="logs", description="Directory for log files")

    @field_validator("fallback_enabled_strategies")
    @classmethod
    def _validate_strategy_names(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in FALLBACK_STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"Unknown fallback strategies: {', '.join(unknown)}")
        return value

    @field_validator("discovery_rollout_percentage")
    @classmethod
    def _validate_rollout(cls, value: int) -> int:
        if not 0 <= value <= 100:
            raise ValueError("discovery_rollout_percentage must be within 0..100")
        return value

    @model_validator(mode="after")
    def _derive_daily_limit(self) -> "Settings":
        if self.quota_daily_limit is None:
            self.quota_daily_limit = self.quota_monthly_limit // DAYS_PER_MONTH_WINDOW
        return self

    model_config = SettingsConfigDict(
        env_prefix="DISCOVERY_",
        env_file=str(SETTINGS_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance with loaded configuration
    """
    return Settings()
