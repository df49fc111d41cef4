"""
Router configuration.

DestinationConfig is the per-destination configuration surface; RouterSettings
loads runtime values (and optionally destinations) from ``LOG_ROUTER_*``
environment variables or a ``.env`` file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RoutingRule, Severity

BackpressurePolicy = Literal["block", "drop_newest", "drop_oldest"]


class DestinationConfig(BaseModel):
    """Thresholds, retry and backpressure settings for one destination."""

    destination_id: str
    severity_threshold: Optional[Severity] = None  # None = always
    max_batch_events: int = 500
    max_batch_bytes: int = 1_048_576
    max_batch_age: float = 5.0  # seconds
    retry_max_attempts: int = 3
    retry_backoff_base: float = 0.1  # seconds
    retry_backoff_max: float = 5.0
    retry_max_total_wait: float = 30.0
    backpressure_ceiling: int = 10_000
    backpressure_policy: BackpressurePolicy = "block"

    @field_validator("destination_id")
    def _non_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("destination_id must be non-empty")
        return v.strip()

    @field_validator("severity_threshold", mode="before")
    def _parse_threshold(cls, v):
        if v is None or (isinstance(v, str) and v.strip().lower() == "always"):
            return None
        return Severity.parse(v)

    @field_validator("max_batch_events", "max_batch_bytes", "retry_max_attempts", "backpressure_ceiling")
    def _positive_int(cls, v):
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("max_batch_age", "retry_backoff_base", "retry_backoff_max", "retry_max_total_wait")
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @model_validator(mode="after")
    def _check_limits(self):
        if self.backpressure_ceiling < self.max_batch_events:
            raise ValueError("backpressure_ceiling must be >= max_batch_events")
        if self.retry_backoff_max < self.retry_backoff_base:
            raise ValueError("retry_backoff_max must be >= retry_backoff_base")
        return self

    @property
    def rule(self) -> RoutingRule:
        return RoutingRule(self.destination_id, self.severity_threshold)


class RouterSettings(BaseSettings):
    tick_interval: float = 0.25
    shutdown_timeout: float = 10.0
    default_app: str = "unknown"
    partition_hourly: bool = False
    serialize_deliveries: bool = True
    destinations: List[DestinationConfig] = []

    model_config = SettingsConfigDict(
        env_prefix="LOG_ROUTER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("tick_interval")
    def _tick_positive(cls, v):
        if v <= 0:
            raise ValueError("tick_interval must be > 0")
        return v


@lru_cache()
def get_settings() -> RouterSettings:
    return RouterSettings()
