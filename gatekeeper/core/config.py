from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Admission pipeline configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="GATEKEEPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    project_name: str = "Gatekeeper Admission API"
    api_prefix: str = "/api"

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection string for the shared counter store",
    )
    redis_socket_timeout_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Socket level connect/read timeout passed to the Redis client",
    )
    store_timeout_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Upper bound for a single counter store round trip before failing open",
    )

    forwarded_for_header: str = Field(
        default="x-forwarded-for",
        description="Proxy chain header; its first entry is the original client",
    )
    real_ip_header: str = Field(
        default="x-real-ip",
        description="Fallback header set by the reverse proxy with the client address",
    )

    high_frequency_threshold: int = Field(default=50, ge=1)
    high_frequency_window_seconds: int = Field(default=3600, ge=1)
    scanning_threshold: int = Field(default=20, ge=1)
    scanning_window_seconds: int = Field(default=60, ge=1)

    default_rate_limit: int = Field(
        default=40,
        ge=1,
        description="Limit used by the policy table for endpoints without an explicit entry",
    )
    default_rate_limit_window_seconds: int = Field(default=3600, ge=1)

    blacklist_default_ttl_seconds: int = Field(default=86400, ge=1)
    violation_ttl_seconds: int = Field(
        default=86400,
        ge=1,
        description="Lifetime of the best-effort per-IP throttling violation counter",
    )
    bot_filter_path_prefixes: List[str] = Field(
        default_factory=lambda: ["/api"],
        description="Path prefixes screened by the global user agent filter",
    )

    log_level: str = Field(default="INFO")

    enable_prometheus_metrics: bool = Field(
        default=True, description="Mount the scrape endpoint for admission and store metrics"
    )
    prometheus_metrics_path: str = Field(
        default="/metrics/prometheus",
        description="Route serving the Prometheus text exposition format",
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None,
        description="Collector URL for admission spans; tracing is off when unset",
    )
    otel_exporter_otlp_headers: str | None = Field(
        default=None,
        description="Extra exporter headers as key=value pairs separated by commas",
    )
    otel_service_name: str | None = Field(
        default=None, description="service.name resource attribute; defaults to project_name"
    )


@lru_cache
def get_settings() -> Settings:
    """Read the environment once per process."""

    return Settings()
