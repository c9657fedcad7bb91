"""
Shared fixtures for Gateway rate limiter tests.
"""

import pytest
from prometheus_client import CollectorRegistry

from service_gateway.app.ratelimit.token_bucket import LocalBucketEvaluator
from shared.metrics import RateLimiterMetrics


class FakeClock:
    """Store clock that only moves when told to."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def advance(self, seconds: float):
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    """Deterministic store clock."""
    return FakeClock()


@pytest.fixture
def local_evaluator(clock):
    """In-process evaluator driven by the fake clock."""
    return LocalBucketEvaluator(clock=clock)


@pytest.fixture
def registry():
    """Isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    """Rate limiter metrics bound to the isolated registry."""
    return RateLimiterMetrics("gateway", registry)
