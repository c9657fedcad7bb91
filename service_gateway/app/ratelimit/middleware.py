"""
FastAPI integration for the request rate limiter.
"""

from typing import Awaitable, Callable, Optional

from fastapi import HTTPException, Request
from fastapi import Response as HTTPResponse

from shared.errors import RateLimitError
from shared.logging import get_logger
from .limiter import RateLimiter
from .models import Response

KeyResolver = Callable[[Request], Awaitable[Optional[str]]]


async def remote_address_key_resolver(request: Request) -> Optional[str]:
    """Limit by the socket peer address, ignoring client supplied headers."""
    return request.client.host if request.client else None


def forwarded_address_key_resolver(trusted_proxies: int) -> KeyResolver:
    """Limit by the client address recorded by ``trusted_proxies`` reverse proxies.

    Each trusted proxy appends the address it received the request from to
    X-Forwarded-For, so the entry ``trusted_proxies`` places from the right is
    the outermost address a trusted hop observed. Entries further left are
    client supplied and never used. X-Real-IP is only read when a single
    trusted proxy sets it and no X-Forwarded-For is present.
    """
    if trusted_proxies < 1:
        return remote_address_key_resolver

    async def resolve(request: Request) -> Optional[str]:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",")]
            if len(hops) >= trusted_proxies:
                return hops[-trusted_proxies] or None
        elif trusted_proxies == 1:
            real_ip = request.headers.get("X-Real-IP")
            if real_ip:
                return real_ip.strip() or None
        return await remote_address_key_resolver(request)

    return resolve


async def principal_key_resolver(request: Request) -> Optional[str]:
    """Limit by the authenticated user set on request state by auth middleware."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict):
        return user_info.get("user_id")
    return None


class RequestRateLimiter:
    """Route dependency that enforces a rate limit decision.

    Decision headers are copied onto the response whether or not the request
    is admitted. A denied request is rejected with ``denied_status_code``.
    """

    def __init__(self,
                 limiter: RateLimiter,
                 route_id: Optional[str] = None,
                 key_resolver: KeyResolver = remote_address_key_resolver,
                 deny_empty_key: bool = True,
                 empty_key_status_code: int = 403,
                 denied_status_code: int = 429):
        self.limiter = limiter
        self.route_id = route_id
        self.key_resolver = key_resolver
        self.deny_empty_key = deny_empty_key
        self.empty_key_status_code = empty_key_status_code
        self.denied_status_code = denied_status_code
        self.logger = get_logger("gateway.rate_limit_middleware")

    def _route_id(self, request: Request) -> str:
        if self.route_id:
            return self.route_id
        route_id = request.path_params.get("route_id")
        if route_id:
            return route_id
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)

    async def __call__(self, request: Request, response: HTTPResponse) -> Optional[Response]:
        key = await self.key_resolver(request)
        if not key:
            if self.deny_empty_key:
                self.logger.info("Rejecting request without a rate limit key", path=request.url.path)
                raise HTTPException(status_code=self.empty_key_status_code, detail="Missing rate limit key")
            return None

        route_id = self._route_id(request)
        decision = await self.limiter.decide(route_id, key)

        for name, value in decision.headers.items():
            response.headers[name] = value

        if not decision.allowed:
            raise RateLimitError(
                details={"route_id": route_id, "tokens_remaining": decision.tokens_remaining},
                headers=dict(decision.headers),
                status_code=self.denied_status_code
            )

        return decision
