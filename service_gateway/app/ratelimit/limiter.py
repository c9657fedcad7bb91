"""
Request rate limiter: resolves route configuration, evaluates the token
bucket and degrades to a permissive decision when the quota store fails.
"""

import asyncio
import time
from typing import Awaitable, Optional

import redis.asyncio as redis

from shared.config import RateLimiterSettings
from shared.errors import MalformedResultError, StoreUnavailableError
from shared.logging import get_logger, set_limit_context
from shared.metrics import RateLimiterMetrics
from .config_resolver import ConfigResolver
from .headers import build_headers
from .models import BucketOutcome, EvaluationResult, HeaderSettings, RateLimitConfig, Response, StoreFailure
from .token_bucket import BucketEvaluator, LocalBucketEvaluator, RedisBucketEvaluator

logger = get_logger("gateway.rate_limiter")


async def fail_open(evaluation: Awaitable[BucketOutcome],
                    timeout: Optional[float] = None) -> EvaluationResult:
    """Await a bucket evaluation, turning store failures into StoreFailure.

    The evaluation is never retried: a retried deduction could charge the
    bucket twice. Cancellation is not a failure and propagates.
    """
    try:
        if timeout is not None:
            return await asyncio.wait_for(evaluation, timeout)
        return await evaluation
    except asyncio.TimeoutError as e:
        error = StoreUnavailableError(
            "Quota store call timed out",
            details={"timeout_seconds": timeout}
        )
        error.__cause__ = e
        return StoreFailure(error)
    except (StoreUnavailableError, MalformedResultError) as e:
        return StoreFailure(e)
    except Exception as e:
        error = StoreUnavailableError(
            "Unexpected error calling quota store",
            details={"error": str(e)}
        )
        error.__cause__ = e
        return StoreFailure(error)


class RateLimiter:
    """Grants or denies requests against per-route token buckets."""

    def __init__(self,
                 evaluator: BucketEvaluator,
                 resolver: Optional[ConfigResolver] = None,
                 header_settings: Optional[HeaderSettings] = None,
                 metrics: Optional[RateLimiterMetrics] = None,
                 store_timeout: Optional[float] = None):
        self.evaluator = evaluator
        self.resolver = resolver or ConfigResolver()
        self.header_settings = header_settings or HeaderSettings()
        self.metrics = metrics
        self.store_timeout = store_timeout
        self.logger = logger

    @classmethod
    def with_defaults(cls, evaluator: BucketEvaluator, replenish_rate: int,
                      burst_capacity: int, requested_tokens: int = 1, **kwargs) -> "RateLimiter":
        """Create a limiter whose own default bucket applies to unconfigured routes."""
        default_config = RateLimitConfig.build(
            replenish_rate=replenish_rate,
            burst_capacity=burst_capacity,
            requested_tokens=requested_tokens,
        )
        return cls(evaluator, resolver=ConfigResolver(default_config=default_config), **kwargs)

    @classmethod
    def from_settings(cls, settings: RateLimiterSettings,
                      redis_client: Optional[redis.Redis] = None,
                      evaluator: Optional[BucketEvaluator] = None,
                      metrics: Optional[RateLimiterMetrics] = None) -> "RateLimiter":
        """Wire a limiter from settings.

        An explicit evaluator wins; otherwise ``store_backend`` selects the
        Redis script evaluator or the in-process one.
        """
        if evaluator is None:
            if settings.store_backend == "memory":
                evaluator = LocalBucketEvaluator()
            else:
                if redis_client is None:
                    redis_client = redis.from_url(
                        settings.redis_url,
                        socket_connect_timeout=settings.socket_timeout_seconds,
                        socket_timeout=settings.socket_timeout_seconds,
                        health_check_interval=30
                    )
                evaluator = RedisBucketEvaluator(redis_client)

        return cls(
            evaluator,
            resolver=ConfigResolver.from_settings(settings),
            header_settings=HeaderSettings.from_settings(settings),
            metrics=metrics,
            store_timeout=settings.store_timeout_seconds,
        )

    def get_headers(self, config: RateLimitConfig, tokens_remaining: int):
        return build_headers(config, tokens_remaining, self.header_settings)

    async def guard_evaluation(self, key: str, config: RateLimitConfig) -> EvaluationResult:
        """Run the bucket evaluation for ``key`` behind the fail-open combinator."""
        return await fail_open(
            self.evaluator.evaluate(
                key,
                config.replenish_rate,
                config.burst_capacity,
                config.requested_tokens,
            ),
            self.store_timeout,
        )

    async def decide(self, route_id: str, key: str) -> Response:
        """Decide whether the request identified by ``key`` may proceed on ``route_id``.

        Raises ConfigurationError when the route has no configuration and no
        fallback exists. Store failures never raise; they produce an allowed
        response with ``tokens_remaining == -1``.
        """
        set_limit_context(route_id=route_id, key=key)
        # Metrics are labelled by the matched entry so unknown route ids
        # cannot grow the label set.
        source_id, config = self.resolver.resolve_entry(route_id)

        start_time = time.perf_counter()
        result = await self.guard_evaluation(key, config)
        duration = time.perf_counter() - start_time

        if isinstance(result, StoreFailure):
            self.logger.warning(
                "Rate limiter store failure, allowing request",
                route_id=route_id,
                key=key,
                code=result.error.code,
                error_type=result.error_type,
                error=result.error.message
            )
            if self.metrics:
                self.metrics.record_store_failure(source_id, result.error_type)
                self.metrics.record_decision(source_id, "fail_open")
            return Response(allowed=True, tokens_remaining=-1, headers=self.get_headers(config, -1))

        response = Response(
            allowed=result.allowed,
            tokens_remaining=result.tokens_remaining,
            headers=self.get_headers(config, result.tokens_remaining),
        )
        if self.metrics:
            self.metrics.observe_evaluation(source_id, duration)
            self.metrics.record_decision(source_id, "allowed" if result.allowed else "denied")

        self.logger.debug("Rate limit decision", route_id=route_id, key=key, response=repr(response))
        return response

    async def close(self) -> None:
        await self.evaluator.close()
