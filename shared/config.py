"""
Shared configuration management for the Facility Access Layer.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    storage_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)

    # Evaluation
    collaborator_timeout_seconds: float = Field(default=2.0, gt=0)

    # Audit
    csv_export_max_rows: int = Field(default=10000, ge=1)
    query_default_limit: int = Field(default=50, ge=1)
    query_max_limit: int = Field(default=500, ge=1)
    retention_days: int = Field(default=365, ge=1)

    # Suspicious activity
    suspicious_window_minutes: int = Field(default=30, ge=1)
    suspicious_threshold: int = Field(default=5, ge=1)

    # Proximity
    default_minimum_rssi: int = Field(default=-70)
    allow_proximity_test_mode: bool = Field(default=False)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
