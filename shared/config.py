"""
Shared configuration management for the identity access core.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Outbound provider calls
    http_timeout_seconds: float = Field(default=10.0)
    circuit_failure_threshold: int = Field(default=5)
    circuit_recovery_seconds: float = Field(default=30.0)

    # Sessions
    session_ttl_seconds: int = Field(default=3600)

    # CSRF
    csrf_token_ttl_seconds: int = Field(default=86400)
    csrf_exempt_paths: List[str] = Field(default_factory=lambda: ["/api/public", "/health", "/metrics", "/docs"])

    # Rate limiting
    rate_limit_requests: int = Field(default=30)
    rate_limit_window_seconds: float = Field(default=60.0)
    rate_limit_global_requests: int = Field(default=1000)


def get_config() -> BaseConfig:
    """Load configuration from environment and ``.env``."""
    return BaseConfig()
