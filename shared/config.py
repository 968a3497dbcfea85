"""
Shared configuration management for the Module Entitlements service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENTITLEMENTS_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")

    # PostgreSQL store
    postgres_dsn: str = Field(default="postgres://localhost:5432/entitlements")
    postgres_min_pool_size: int = Field(default=2, ge=1)
    postgres_max_pool_size: int = Field(default=10, ge=1)
    postgres_command_timeout: float = Field(default=30.0, gt=0)
    postgres_create_schema: bool = Field(default=True)

    # Redis cache
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=5.0, gt=0)


class EntitlementsConfig(BaseConfig):
    """Entitlements-specific configuration."""

    service_name: str = "entitlements"

    # Backend selection
    use_in_memory_store: bool = Field(default=False, description="Serve from process memory instead of PostgreSQL")
    cache_enabled: bool = Field(default=True, description="Wrap the store with the Redis cache")

    # Cache behaviour; the TTL is the staleness bound for entries that
    # invalidation did not reach.
    cache_ttl_seconds: int = Field(default=300, ge=1)
    cache_key_prefix: str = Field(default="entitlement:")
    cache_failure_threshold: int = Field(default=5, ge=1)
    cache_recovery_timeout: float = Field(default=30.0, ge=0)

    # Audit queries
    audit_default_limit: int = Field(default=50, ge=1)
    audit_max_limit: int = Field(default=500, ge=1)

    # Writes
    grant_conflict_retries: int = Field(default=3, ge=1)
    grant_retry_base_delay: float = Field(default=0.05, ge=0)

    # Actor recorded when the caller does not name one
    default_actor: str = Field(default="system")

    # Optional metrics HTTP exporter port
    metrics_port: Optional[int] = Field(default=None)


def get_config(**overrides) -> EntitlementsConfig:
    """Get configuration for the entitlements service."""
    return EntitlementsConfig(**overrides)
