"""
Per-route rate limit configuration.
"""

import threading
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from shared.config import (
    CONFIGURATION_PROPERTY_NAME,
    RateLimiterSettings,
    load_route_overrides,
    normalize_property_name,
)
from shared.errors import ConfigurationError
from shared.logging import get_logger
from .models import RateLimitConfig

DEFAULT_FILTERS = "defaultFilters"
LIMITER_DEFAULT = "default"

_BUCKET_FIELDS = frozenset(RateLimitConfig.model_fields)


class ConfigResolver:
    """Maps route ids to bucket configuration.

    Readers take the current table reference without locking. Writers copy
    the table, validate the change and publish a new read-only table, so a
    reader sees either the old or the new configuration and never a mix.
    """

    def __init__(self, routes: Optional[Mapping[str, RateLimitConfig]] = None,
                 default_config: Optional[RateLimitConfig] = None):
        self.logger = get_logger("gateway.rate_limiter.config")
        self._table: Mapping[str, RateLimitConfig] = MappingProxyType(dict(routes or {}))
        self._default_config = default_config
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: RateLimiterSettings) -> "ConfigResolver":
        """Build the startup table from settings and the optional routes file."""
        resolver = cls()
        default_fields = settings.default_fields()
        if default_fields is not None:
            resolver.update_config(DEFAULT_FILTERS, default_fields)

        if settings.routes_file:
            for route_id, fields in load_route_overrides(settings.routes_file).items():
                resolver.update_config(route_id, fields)

        return resolver

    @property
    def default_config(self) -> Optional[RateLimitConfig]:
        return self._default_config

    def get(self, route_id: str) -> Optional[RateLimitConfig]:
        """Return the route-specific entry, if any."""
        return self._table.get(route_id)

    def routes(self) -> Dict[str, RateLimitConfig]:
        """Snapshot of the current table."""
        return dict(self._table)

    def _fallback(self, table: Mapping[str, RateLimitConfig]) -> Optional[RateLimitConfig]:
        if self._default_config is not None:
            return self._default_config
        return table.get(DEFAULT_FILTERS)

    def resolve_entry(self, route_id: str) -> Tuple[str, RateLimitConfig]:
        """Return the configuration in effect for ``route_id`` and the entry it came from.

        The entry id is ``route_id`` itself, ``"default"`` for the limiter
        default or ``defaultFilters``. Unconfigured route ids therefore
        collapse onto one of the two fallback ids.
        """
        table = self._table
        config = table.get(route_id)
        if config is not None:
            return route_id, config
        if self._default_config is not None:
            return LIMITER_DEFAULT, self._default_config
        config = table.get(DEFAULT_FILTERS)
        if config is not None:
            return DEFAULT_FILTERS, config
        raise ConfigurationError(
            f"No Configuration found for route {route_id} or defaultFilters",
            details={"route_id": route_id}
        )

    def resolve(self, route_id: str) -> RateLimitConfig:
        """Return the configuration in effect for ``route_id``."""
        return self.resolve_entry(route_id)[1]

    def update_config(self, route_id: str, fields: Mapping[str, Any]) -> RateLimitConfig:
        """Merge ``fields`` into the route's configuration and publish it.

        The merged configuration is validated before publishing; on failure
        the previous table stays in effect and ConfigurationError is raised.
        """
        normalized = {normalize_property_name(name): value for name, value in fields.items()}

        with self._write_lock:
            table = self._table
            base = table.get(route_id) or self._fallback(table)
            merged: Dict[str, Any] = base.model_dump() if base is not None else {}
            merged.update(normalized)

            try:
                config = RateLimitConfig.build(**merged)
            except ConfigurationError as e:
                self.logger.error(
                    "Rejected rate limit configuration update",
                    route_id=route_id,
                    fields=normalized,
                    errors=e.details.get("errors")
                )
                raise

            updated = dict(table)
            updated[route_id] = config
            self._table = MappingProxyType(updated)

        self.logger.info(
            "Rate limit configuration updated",
            route_id=route_id,
            replenish_rate=config.replenish_rate,
            burst_capacity=config.burst_capacity,
            requested_tokens=config.requested_tokens
        )
        return config

    def on_filter_args(self, route_id: str, args: Mapping[str, Any]) -> Optional[RateLimitConfig]:
        """Apply a property event such as ``{"redis-rate-limiter.replenish-rate": "5"}``.

        Events without any ``redis-rate-limiter.`` property are ignored.
        """
        prefix = CONFIGURATION_PROPERTY_NAME + "."
        relevant = {
            name[len(prefix):]: value for name, value in args.items() if name.startswith(prefix)
        }
        if not relevant:
            return None

        fields: Dict[str, Any] = {}
        for name, value in relevant.items():
            field_name = normalize_property_name(name)
            if field_name in _BUCKET_FIELDS:
                fields[field_name] = value
            else:
                self.logger.debug("Ignoring non-bucket property", route_id=route_id, property=name)

        if not fields:
            return None
        return self.update_config(route_id, fields)
