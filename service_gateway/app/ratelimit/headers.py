"""
Informational response headers for rate limit decisions.
"""

from typing import Dict, Optional

from .models import HeaderSettings, RateLimitConfig

_DEFAULT_HEADER_SETTINGS = HeaderSettings()


def build_headers(config: RateLimitConfig, tokens_remaining: int,
                  header_settings: Optional[HeaderSettings] = None) -> Dict[str, str]:
    """Build the X-RateLimit-* headers for a decision.

    Returns an empty mapping when header emission is disabled.
    """
    settings = header_settings or _DEFAULT_HEADER_SETTINGS
    if not settings.include_headers:
        return {}

    return {
        settings.remaining_header: str(tokens_remaining),
        settings.replenish_rate_header: str(config.replenish_rate),
        settings.burst_capacity_header: str(config.burst_capacity),
        settings.requested_tokens_header: str(config.requested_tokens),
    }
