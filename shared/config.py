"""
Shared configuration management for the rate limiter service.
"""

import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigurationError

# Property group consumed from dynamic configuration events.
CONFIGURATION_PROPERTY_NAME = "redis-rate-limiter"

REMAINING_HEADER = "X-RateLimit-Remaining"
REPLENISH_RATE_HEADER = "X-RateLimit-Replenish-Rate"
BURST_CAPACITY_HEADER = "X-RateLimit-Burst-Capacity"
REQUESTED_TOKENS_HEADER = "X-RateLimit-Requested-Tokens"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class RateLimiterSettings(BaseConfig):
    """Settings for the Redis backed request rate limiter.

    Every field can be supplied through an environment variable prefixed
    with ``RATE_LIMITER_`` (for example ``RATE_LIMITER_REPLENISH_RATE``).
    """

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMITER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Shared quota store
    store_backend: str = Field(default="redis")
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_timeout_seconds: Optional[float] = Field(default=0.5)
    socket_timeout_seconds: float = Field(default=1.0)

    # Default ("defaultFilters") bucket
    replenish_rate: Optional[int] = Field(default=None)
    burst_capacity: Optional[int] = Field(default=None)
    requested_tokens: int = Field(default=1)

    # Response headers
    include_headers: bool = Field(default=True)
    remaining_header: str = Field(default=REMAINING_HEADER)
    replenish_rate_header: str = Field(default=REPLENISH_RATE_HEADER)
    burst_capacity_header: str = Field(default=BURST_CAPACITY_HEADER)
    requested_tokens_header: str = Field(default=REQUESTED_TOKENS_HEADER)

    # Per-route overrides loaded at startup
    routes_file: Optional[str] = Field(default=None)

    # Request filter
    # Number of reverse proxies in front of the gateway whose X-Forwarded-For
    # entries are trusted. Zero limits by the socket peer address.
    trusted_proxies: int = Field(default=0, ge=0)
    deny_empty_key: bool = Field(default=True)
    empty_key_status_code: int = Field(default=403)
    denied_status_code: int = Field(default=429)

    def default_fields(self) -> Optional[Dict[str, int]]:
        """Return the fallback bucket fields, or None when no default is configured."""
        if self.replenish_rate is None:
            return None
        burst_capacity = self.burst_capacity
        if burst_capacity is None:
            burst_capacity = self.replenish_rate
        return {
            "replenish_rate": self.replenish_rate,
            "burst_capacity": burst_capacity,
            "requested_tokens": self.requested_tokens,
        }


def normalize_property_name(name: str) -> str:
    """Map ``burst-capacity`` / ``burstCapacity`` / ``burst_capacity`` to snake case."""
    name = _CAMEL_BOUNDARY.sub("_", name.strip())
    return name.replace("-", "_").lower()


def load_route_overrides(path: str) -> Dict[str, Dict[str, Any]]:
    """Load per-route bucket settings from a YAML file.

    The file maps route ids to field mappings::

        orders:
          replenish-rate: 10
          burst-capacity: 20
    """
    file_path = Path(path)
    try:
        with file_path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Unable to read rate limit routes file {path}",
            details={"error": str(e)}
        ) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            "Rate limit routes file must contain a mapping of route ids",
            details={"path": path}
        )

    overrides: Dict[str, Dict[str, Any]] = {}
    for route_id, fields in raw.items():
        if not isinstance(fields, dict):
            raise ConfigurationError(
                f"Route {route_id} must map to a set of rate limit fields",
                details={"path": path, "route_id": str(route_id)}
            )
        overrides[str(route_id)] = {
            normalize_property_name(str(name)): value for name, value in fields.items()
        }
    return overrides


def get_settings(**overrides: Any) -> RateLimiterSettings:
    """Get rate limiter settings from the environment."""
    return RateLimiterSettings(**overrides)
