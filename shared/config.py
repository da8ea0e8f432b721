"""
Shared configuration management for the CRM admission layer.
"""

import math
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Durable dedupe store
    redis_url: str = "redis://localhost:6379/0"
    dedupe_namespace: str = "admission"

    # Per-operation tuning overrides (JSON)
    profiles_file: Optional[str] = None


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


class AdmissionConfig(BaseSettings):
    """Tuning for one admission gate.

    All durations are milliseconds. Failure TTLs fall back to the matching
    success TTL when unset.
    """

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Local cache
    cache_ttl_ms: int = Field(default=15 * 60 * 1000, gt=0)
    cache_failure_ttl_ms: Optional[int] = Field(default=None, gt=0)
    cache_max_size: int = Field(default=100, gt=0)
    cache_eviction_fraction: float = Field(default=0.3, gt=0.0, lt=1.0)

    # Hourly rate windows
    rate_limit_per_identity_per_hour: int = Field(default=20, gt=0)
    rate_limit_global_per_hour: int = Field(default=100, gt=0)

    # Burst / loop detection
    burst_fast_threshold_ms: int = Field(default=1000, gt=0)
    burst_max_calls: int = Field(default=5, gt=0)
    burst_state_ttl_ms: int = Field(default=5 * 60 * 1000, gt=0)

    # Load shedding
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    # Durable cross-instance dedupe
    dedupe_ttl_ms: int = Field(default=60 * 60 * 1000, gt=0)
    dedupe_failure_ttl_ms: Optional[int] = Field(default=None, gt=0)

    # On-access sweep
    housekeeping_probability: float = Field(default=0.1, ge=0.0, le=1.0)

    # Batch evaluation
    batch_max_items: int = Field(default=20, gt=0)
    batch_concurrency: int = Field(default=10, gt=0)
    batch_pause_ms: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def _eviction_keeps_an_entry(self) -> "AdmissionConfig":
        if math.floor(self.cache_max_size * (1 - self.cache_eviction_fraction)) < 1:
            raise ValueError(
                "cache_max_size and cache_eviction_fraction must leave at least one entry after eviction"
            )
        return self

    @property
    def effective_cache_failure_ttl_ms(self) -> int:
        return self.cache_failure_ttl_ms or self.cache_ttl_ms

    @property
    def effective_dedupe_failure_ttl_ms(self) -> int:
        return self.dedupe_failure_ttl_ms or self.dedupe_ttl_ms


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
