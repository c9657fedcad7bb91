"""
Rate limiting package for the Gateway.

Holds the Redis token bucket evaluator, per-route configuration and the
fail-open decision wrapper that enforce per-identity request budgets with
burst tolerance.
"""

from .config_resolver import DEFAULT_FILTERS, LIMITER_DEFAULT, ConfigResolver
from .headers import build_headers
from .limiter import RateLimiter, fail_open
from .models import BucketOutcome, HeaderSettings, RateLimitConfig, Response, StoreFailure
from .token_bucket import BucketEvaluator, LocalBucketEvaluator, RedisBucketEvaluator, get_keys

__all__ = [
    "BucketEvaluator",
    "BucketOutcome",
    "ConfigResolver",
    "DEFAULT_FILTERS",
    "HeaderSettings",
    "LIMITER_DEFAULT",
    "LocalBucketEvaluator",
    "RateLimitConfig",
    "RateLimiter",
    "RedisBucketEvaluator",
    "Response",
    "StoreFailure",
    "build_headers",
    "fail_open",
    "get_keys",
]
