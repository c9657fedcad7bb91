"""
Data models for the request rate limiter.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from shared.config import (
    BURST_CAPACITY_HEADER,
    REMAINING_HEADER,
    REPLENISH_RATE_HEADER,
    REQUESTED_TOKENS_HEADER,
    RateLimiterSettings,
)
from shared.errors import AccessLayerException, ConfigurationError


class RateLimitConfig(BaseModel):
    """Token bucket parameters for one route."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    replenish_rate: int = Field(..., ge=1, description="Tokens added per second")
    burst_capacity: int = Field(default=1, ge=0, description="Maximum tokens held by the bucket")
    requested_tokens: int = Field(default=1, ge=1, description="Tokens consumed per request")

    @model_validator(mode="after")
    def _burst_covers_rate(self) -> "RateLimitConfig":
        if self.burst_capacity < self.replenish_rate:
            raise ValueError(
                f"BurstCapacity({self.burst_capacity}) must be greater than or equal "
                f"than replenishRate({self.replenish_rate})"
            )
        return self

    @classmethod
    def build(cls, **fields: Any) -> "RateLimitConfig":
        """Validate fields into a config, raising ConfigurationError on failure."""
        try:
            return cls(**fields)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid rate limit configuration",
                details={
                    "fields": {name: str(value) for name, value in fields.items()},
                    "errors": [err["msg"] for err in e.errors()],
                }
            ) from e


class HeaderSettings(BaseModel):
    """Names of the informational headers attached to each decision."""

    model_config = ConfigDict(frozen=True)

    include_headers: bool = True
    remaining_header: str = REMAINING_HEADER
    replenish_rate_header: str = REPLENISH_RATE_HEADER
    burst_capacity_header: str = BURST_CAPACITY_HEADER
    requested_tokens_header: str = REQUESTED_TOKENS_HEADER

    @classmethod
    def from_settings(cls, settings: RateLimiterSettings) -> "HeaderSettings":
        return cls(
            include_headers=settings.include_headers,
            remaining_header=settings.remaining_header,
            replenish_rate_header=settings.replenish_rate_header,
            burst_capacity_header=settings.burst_capacity_header,
            requested_tokens_header=settings.requested_tokens_header,
        )


@dataclass(frozen=True, repr=False)
class Response:
    """Outcome of one rate limit decision.

    ``tokens_remaining`` is -1 when the quota store could not be consulted.
    """

    allowed: bool
    tokens_remaining: int = -1
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def __repr__(self) -> str:
        return (
            f"Response{{allowed={self.allowed}, headers={dict(self.headers)}, "
            f"tokens_remaining={self.tokens_remaining}}}"
        )


@dataclass(frozen=True)
class BucketOutcome:
    """Verdict returned by a bucket evaluator."""
    allowed: bool
    tokens_remaining: int


@dataclass(frozen=True)
class StoreFailure:
    """A bucket evaluation that did not produce a verdict."""
    error: AccessLayerException

    @property
    def error_type(self) -> str:
        cause = self.error.__cause__
        return type(cause).__name__ if cause is not None else type(self.error).__name__


EvaluationResult = Union[BucketOutcome, StoreFailure]


class RouteConfigUpdate(BaseModel):
    """Partial route configuration accepted by the admin API."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    replenish_rate: Optional[int] = Field(default=None, alias="replenishRate")
    burst_capacity: Optional[int] = Field(default=None, alias="burstCapacity")
    requested_tokens: Optional[int] = Field(default=None, alias="requestedTokens")

    def fields(self) -> Dict[str, int]:
        return self.model_dump(exclude_none=True)
