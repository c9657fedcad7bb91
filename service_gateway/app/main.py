"""
Rate limiting gateway service.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi import Response as HTTPResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from shared.config import RateLimiterSettings, get_settings
from shared.errors import AccessLayerException, ConfigurationError, RateLimitError
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector
from .ratelimit.limiter import RateLimiter
from .ratelimit.middleware import RequestRateLimiter, forwarded_address_key_resolver
from .ratelimit.models import RouteConfigUpdate
from .ratelimit.token_bucket import BucketEvaluator

SERVICE_NAME = "gateway"


def _config_body(config) -> Dict[str, Any]:
    return {
        "replenishRate": config.replenish_rate,
        "burstCapacity": config.burst_capacity,
        "requestedTokens": config.requested_tokens,
    }


def create_app(settings: Optional[RateLimiterSettings] = None,
               redis_client: Optional[redis.Redis] = None,
               evaluator: Optional[BucketEvaluator] = None,
               registry: Optional[CollectorRegistry] = None) -> FastAPI:
    """Create the gateway application around a fully wired rate limiter."""
    settings = settings or get_settings()
    configure_logging(SERVICE_NAME, settings.log_level)
    logger = get_logger(SERVICE_NAME)

    registry = registry or CollectorRegistry()
    metrics = get_metrics_collector(SERVICE_NAME, registry)
    limiter = RateLimiter.from_settings(
        settings,
        redis_client=redis_client,
        evaluator=evaluator,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not await limiter.evaluator.ping():
            logger.warning("Quota store unreachable at startup, decisions will fail open")
        logger.info("Rate limiter started", routes=sorted(limiter.resolver.routes()))
        yield
        await limiter.close()
        logger.info("Rate limiter stopped")

    app = FastAPI(
        title="Gateway Service",
        description="Distributed request rate limiter",
        version="1.0.0",
        docs_url="/docs" if settings.env == "local" else None,
        redoc_url="/redoc" if settings.env == "local" else None,
        lifespan=lifespan,
    )
    app.state.rate_limiter = limiter
    app.state.settings = settings

    guard = RequestRateLimiter(
        limiter,
        key_resolver=forwarded_address_key_resolver(settings.trusted_proxies),
        deny_empty_key=settings.deny_empty_key,
        empty_key_status_code=settings.empty_key_status_code,
        denied_status_code=settings.denied_status_code,
    )

    @app.middleware("http")
    async def correlation_context(request: Request, call_next):
        set_request_id(request.headers.get("X-Request-ID"))
        try:
            return await call_next(request)
        finally:
            clear_context()

    @app.exception_handler(AccessLayerException)
    async def access_layer_exception_handler(request: Request, exc: AccessLayerException):
        if isinstance(exc, RateLimitError):
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_response().model_dump(),
                headers=exc.headers,
            )
        if isinstance(exc, ConfigurationError):
            logger.error("Rate limit configuration error", error=exc.message, details=exc.details)
        return JSONResponse(status_code=500, content=exc.to_response().model_dump())

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        store_ok = await limiter.evaluator.ping()
        return {
            "service": SERVICE_NAME,
            "status": "ok",
            "dependencies": {"quota_store": "ok" if store_ok else "unavailable"},
            "version": "1.0.0",
            "commit": os.getenv("GIT_COMMIT", "unknown"),
        }

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return HTTPResponse(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    @app.get("/ratelimit/routes")
    async def list_routes():
        """List configured routes."""
        return {route_id: _config_body(config) for route_id, config in limiter.resolver.routes().items()}

    @app.get("/ratelimit/routes/{route_id}")
    async def get_route(route_id: str):
        """Return the configuration in effect for a route."""
        try:
            config = limiter.resolver.resolve(route_id)
        except ConfigurationError as e:
            raise HTTPException(status_code=404, detail=e.to_response().model_dump())
        return {"routeId": route_id, **_config_body(config)}

    @app.put("/ratelimit/routes/{route_id}")
    async def update_route(route_id: str, update: RouteConfigUpdate):
        """Apply a configuration change for a route."""
        try:
            config = limiter.resolver.update_config(route_id, update.fields())
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=e.to_response().model_dump())
        return {"routeId": route_id, **_config_body(config)}

    async def configured_route(route_id: str) -> str:
        if limiter.resolver.get(route_id) is None:
            raise HTTPException(status_code=404, detail=f"No rate limit configured for route {route_id}")
        return route_id

    @app.get("/ratelimit/check/{route_id}", dependencies=[Depends(configured_route)])
    async def check_route(route_id: str, decision=Depends(guard)):
        """Consume quota on a route for the calling client."""
        if decision is None:
            return {"routeId": route_id, "allowed": True, "limited": False}
        return {
            "routeId": route_id,
            "allowed": decision.allowed,
            "limited": True,
            "tokensRemaining": decision.tokens_remaining,
        }

    return app
