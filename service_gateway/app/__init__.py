"""
Gateway service package for the distributed request rate limiter.

The gateway admits or rejects requests against per-key token buckets held
in Redis, shared by every gateway instance:
- Quota decisions: atomic Lua token bucket, evaluated on the store clock
- Configuration: per-route buckets with a defaultFilters fallback
- Degradation: store failures fail open instead of rejecting traffic

Structure:
- app.main: FastAPI app, admin routes and middleware wiring.
- app.ratelimit: Token bucket evaluators, configuration and the decision wrapper.
"""
