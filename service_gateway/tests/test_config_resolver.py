"""
Unit tests for per-route rate limit configuration.
"""

import pytest

from service_gateway.app.ratelimit.config_resolver import DEFAULT_FILTERS, LIMITER_DEFAULT, ConfigResolver
from service_gateway.app.ratelimit.models import RateLimitConfig
from shared.config import RateLimiterSettings, load_route_overrides, normalize_property_name
from shared.errors import ConfigurationError


class TestRateLimitConfig:
    """Test cases for RateLimitConfig validation."""

    def test_defaults(self):
        """Requested tokens default to one."""
        config = RateLimitConfig.build(replenish_rate=1)
        assert config.burst_capacity == 1
        assert config.requested_tokens == 1

    def test_burst_below_rate_is_rejected(self):
        """burst_capacity < replenish_rate is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            RateLimitConfig.build(replenish_rate=10, burst_capacity=5)

        assert exc_info.value.code == "CONFIGURATION_ERROR"
        assert any("BurstCapacity(5)" in msg for msg in exc_info.value.details["errors"])

    @pytest.mark.parametrize("fields", [
        {"replenish_rate": 0, "burst_capacity": 1},
        {"replenish_rate": 1, "burst_capacity": 1, "requested_tokens": 0},
        {"burst_capacity": 1},
        {"replenish_rate": 1, "burst_capacity": 1, "unknown": 3},
    ])
    def test_invalid_fields_are_rejected(self, fields):
        """Out of range, missing or unknown fields are rejected."""
        with pytest.raises(ConfigurationError):
            RateLimitConfig.build(**fields)

    def test_config_is_immutable(self):
        """A published config cannot be edited in place."""
        config = RateLimitConfig.build(replenish_rate=1, burst_capacity=2)
        with pytest.raises(Exception):
            config.burst_capacity = 10


class TestConfigResolver:
    """Test cases for ConfigResolver."""

    @pytest.fixture
    def orders_config(self):
        return RateLimitConfig.build(replenish_rate=10, burst_capacity=20)

    @pytest.fixture
    def resolver(self, orders_config):
        """Resolver with one route and a defaultFilters fallback."""
        return ConfigResolver(routes={
            "orders": orders_config,
            DEFAULT_FILTERS: RateLimitConfig.build(replenish_rate=1, burst_capacity=2),
        })

    def test_resolve_route_entry(self, resolver, orders_config):
        """A route-specific entry wins."""
        assert resolver.resolve("orders") == orders_config

    def test_resolve_falls_back_to_default_filters(self, resolver):
        """Unknown routes use the defaultFilters entry."""
        assert resolver.resolve("quotes") == resolver.get(DEFAULT_FILTERS)

    def test_limiter_default_precedes_default_filters(self, orders_config):
        """A resolver-level default is consulted before defaultFilters."""
        default_config = RateLimitConfig.build(replenish_rate=5, burst_capacity=5)
        resolver = ConfigResolver(
            routes={DEFAULT_FILTERS: orders_config},
            default_config=default_config,
        )

        assert resolver.resolve("quotes") == default_config

    def test_resolve_entry_names_the_source(self, resolver, orders_config):
        """The matched entry id is reported alongside the config."""
        assert resolver.resolve_entry("orders") == ("orders", orders_config)
        assert resolver.resolve_entry("quotes") == (DEFAULT_FILTERS, resolver.get(DEFAULT_FILTERS))

        default_config = RateLimitConfig.build(replenish_rate=5, burst_capacity=5)
        with_default = ConfigResolver(default_config=default_config)
        assert with_default.resolve_entry("quotes") == (LIMITER_DEFAULT, default_config)

    def test_missing_route_without_fallback(self):
        """No entry and no fallback is a configuration error."""
        resolver = ConfigResolver()

        with pytest.raises(ConfigurationError) as exc_info:
            resolver.resolve("quotes")

        assert exc_info.value.details["route_id"] == "quotes"

    def test_update_merges_partial_fields(self, resolver):
        """Only the supplied fields change."""
        config = resolver.update_config("orders", {"burst_capacity": 30})

        assert config == RateLimitConfig(replenish_rate=10, burst_capacity=30, requested_tokens=1)
        assert resolver.resolve("orders") == config

    def test_invalid_update_keeps_previous_config(self, resolver, orders_config):
        """A rejected update leaves the previous table in effect."""
        before = resolver.routes()

        with pytest.raises(ConfigurationError):
            resolver.update_config("orders", {"burst_capacity": 5})

        assert resolver.resolve("orders") == orders_config
        assert resolver.routes() == before

    def test_new_route_inherits_fallback(self, resolver):
        """A new route starts from the fallback before applying fields."""
        config = resolver.update_config("quotes", {"requested_tokens": 2})

        assert config == RateLimitConfig(replenish_rate=1, burst_capacity=2, requested_tokens=2)

    def test_new_route_without_fallback_needs_rate(self):
        """Without a fallback, a partial update lacking a rate is invalid."""
        resolver = ConfigResolver()

        with pytest.raises(ConfigurationError):
            resolver.update_config("quotes", {"burst_capacity": 5})

        assert resolver.get("quotes") is None

    def test_update_accepts_property_name_styles(self, resolver):
        """camelCase and kebab-case names are normalized."""
        config = resolver.update_config("orders", {"replenishRate": 4, "burst-capacity": 8})

        assert config.replenish_rate == 4
        assert config.burst_capacity == 8

    def test_snapshots_are_not_affected_by_updates(self, resolver, orders_config):
        """A reader's snapshot keeps the configuration it saw."""
        snapshot = resolver.routes()

        resolver.update_config("orders", {"burst_capacity": 40})

        assert snapshot["orders"] == orders_config
        assert resolver.resolve("orders").burst_capacity == 40

    def test_on_filter_args_ignores_unrelated_events(self, resolver, orders_config):
        """Events without redis-rate-limiter properties change nothing."""
        assert resolver.on_filter_args("orders", {}) is None
        assert resolver.on_filter_args("orders", {"retry.retries": "3"}) is None
        assert resolver.resolve("orders") == orders_config

    def test_on_filter_args_applies_bucket_properties(self, resolver):
        """Prefixed properties are bound onto the route."""
        config = resolver.on_filter_args("orders", {
            "redis-rate-limiter.replenish-rate": "5",
            "redis-rate-limiter.burst-capacity": "15",
            "redis-rate-limiter.include-headers": "false",
            "key-resolver": "#{@userKeyResolver}",
        })

        assert config == RateLimitConfig(replenish_rate=5, burst_capacity=15, requested_tokens=1)
        assert resolver.resolve("orders") == config

    def test_on_filter_args_rejects_invalid_values(self, resolver, orders_config):
        """Invalid bound values are rejected atomically."""
        with pytest.raises(ConfigurationError):
            resolver.on_filter_args("orders", {
                "redis-rate-limiter.replenish-rate": "50",
                "redis-rate-limiter.burst-capacity": "15",
            })

        assert resolver.resolve("orders") == orders_config


class TestConfigurationLoading:
    """Test cases for settings driven configuration."""

    @pytest.fixture
    def routes_file(self, tmp_path):
        path = tmp_path / "routes.yaml"
        path.write_text(
            "orders:\n"
            "  replenish-rate: 10\n"
            "  burst-capacity: 20\n"
            "quotes:\n"
            "  requestedTokens: 3\n",
            encoding="utf-8",
        )
        return path

    def test_normalize_property_name(self):
        """Property names map to snake case."""
        assert normalize_property_name("replenishRate") == "replenish_rate"
        assert normalize_property_name("burst-capacity") == "burst_capacity"
        assert normalize_property_name("requested_tokens") == "requested_tokens"

    def test_load_route_overrides(self, routes_file):
        """The routes file is read into normalized field maps."""
        overrides = load_route_overrides(str(routes_file))

        assert overrides == {
            "orders": {"replenish_rate": 10, "burst_capacity": 20},
            "quotes": {"requested_tokens": 3},
        }

    def test_load_route_overrides_rejects_non_mapping(self, tmp_path):
        """A routes file must be a mapping."""
        path = tmp_path / "routes.yaml"
        path.write_text("- orders\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_route_overrides(str(path))

    def test_load_route_overrides_missing_file(self, tmp_path):
        """A missing routes file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_route_overrides(str(tmp_path / "missing.yaml"))

    def test_from_settings(self, routes_file):
        """Settings seed defaultFilters and the routes file adds route entries."""
        settings = RateLimiterSettings(
            _env_file=None,
            replenish_rate=2,
            burst_capacity=4,
            routes_file=str(routes_file),
        )

        resolver = ConfigResolver.from_settings(settings)

        assert resolver.resolve("unknown") == RateLimitConfig(replenish_rate=2, burst_capacity=4)
        assert resolver.resolve("orders") == RateLimitConfig(replenish_rate=10, burst_capacity=20)
        assert resolver.resolve("quotes") == RateLimitConfig(replenish_rate=2, burst_capacity=4, requested_tokens=3)

    def test_from_settings_burst_defaults_to_rate(self):
        """An unset burst capacity equals the replenish rate."""
        settings = RateLimiterSettings(_env_file=None, replenish_rate=7)

        resolver = ConfigResolver.from_settings(settings)

        assert resolver.resolve("any").burst_capacity == 7

    def test_from_settings_without_default(self):
        """Without a default rate there is no fallback entry."""
        resolver = ConfigResolver.from_settings(RateLimiterSettings(_env_file=None))

        assert resolver.get(DEFAULT_FILTERS) is None
        with pytest.raises(ConfigurationError):
            resolver.resolve("any")

    def test_settings_read_environment(self, monkeypatch):
        """RATE_LIMITER_ environment variables populate settings."""
        monkeypatch.setenv("RATE_LIMITER_REPLENISH_RATE", "3")
        monkeypatch.setenv("RATE_LIMITER_INCLUDE_HEADERS", "false")

        settings = RateLimiterSettings(_env_file=None)

        assert settings.replenish_rate == 3
        assert settings.include_headers is False
        assert settings.trusted_proxies == 0

    def test_trusted_proxies_from_environment(self, monkeypatch):
        """The trusted proxy count is read from the environment and must not be negative."""
        monkeypatch.setenv("RATE_LIMITER_TRUSTED_PROXIES", "2")
        assert RateLimiterSettings(_env_file=None).trusted_proxies == 2

        with pytest.raises(ValueError):
            RateLimiterSettings(_env_file=None, trusted_proxies=-1)
