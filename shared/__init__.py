"""
Shared utilities for the rate limiter service.

This package aggregates common building blocks consumed by the gateway:

- config: Rate limiter settings via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics for rate limit decisions
- errors: Canonical error types and responses

Do not import from service packages into shared/.
"""
