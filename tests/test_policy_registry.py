"""Tests for policy parsing and the policy registry."""

import json

import pytest

from quotaguard.app.core.config import Settings
from quotaguard.app.exceptions import InvalidConfigurationError, PolicyNotFoundError
from quotaguard.app.services.rate_limit import (
    DEFAULT_POLICIES,
    PolicyRegistry,
    RateLimitPolicy,
    parse_policy,
)
from quotaguard.app.services.rate_limit.registry import load_policies_file, parse_policies


class TestParsePolicy:
    """Tests for building policies from configuration mappings."""

    def test_snake_case_fields(self):
        policy = parse_policy({
            "name": "query",
            "request_limit": 100,
            "window_size_seconds": 3600,
            "description": "Query execution",
            "applies_to": ["query"],
        })
        assert policy == RateLimitPolicy("query", 100, 3600, "Query execution", ("query",))

    def test_camel_case_fields(self):
        policy = parse_policy({
            "name": "login",
            "requestLimit": 10,
            "windowSizeSeconds": 900,
            "appliesTo": "login, auth",
        })
        assert policy.request_limit == 10
        assert policy.window_size_seconds == 900
        assert policy.applies_to == ("login", "auth")

    def test_numeric_strings_accepted(self):
        policy = parse_policy({"name": "api", "request_limit": " 5 ", "window_size_seconds": "60"})
        assert policy.request_limit == 5
        assert policy.window_size_seconds == 60

    @pytest.mark.parametrize("limit", [0, -1, "0"])
    def test_non_positive_limit_rejected(self, limit):
        with pytest.raises(InvalidConfigurationError) as exc_info:
            parse_policy({"name": "bad", "request_limit": limit, "window_size_seconds": 60})
        assert exc_info.value.policy_name == "bad"

    @pytest.mark.parametrize("window", [0, -60])
    def test_non_positive_window_rejected(self, window):
        with pytest.raises(InvalidConfigurationError):
            parse_policy({"name": "bad", "request_limit": 1, "window_size_seconds": window})

    @pytest.mark.parametrize("value", [True, 1.5, "ten", None])
    def test_non_integer_rejected(self, value):
        with pytest.raises(InvalidConfigurationError):
            parse_policy({"name": "bad", "request_limit": value, "window_size_seconds": 60})

    def test_missing_field_rejected(self):
        with pytest.raises(InvalidConfigurationError, match="window_size_seconds"):
            parse_policy({"name": "bad", "request_limit": 1})

    def test_missing_name_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            parse_policy({"request_limit": 1, "window_size_seconds": 60})

    def test_colon_in_name_rejected(self):
        with pytest.raises(InvalidConfigurationError):
            parse_policy({"name": "a:b", "request_limit": 1, "window_size_seconds": 60})

    def test_duplicate_names_in_one_source_rejected(self):
        entries = [
            {"name": "dup", "request_limit": 1, "window_size_seconds": 60},
            {"name": "dup", "request_limit": 2, "window_size_seconds": 60},
        ]
        with pytest.raises(InvalidConfigurationError, match="duplicate"):
            parse_policies(entries, source="test")


class TestPolicyRegistry:
    """Tests for registry lookup."""

    @pytest.fixture
    def registry(self):
        return PolicyRegistry([
            RateLimitPolicy("login", 3, 60, applies_to=("login",)),
            RateLimitPolicy("burst", 5, 1, applies_to=("query",)),
            RateLimitPolicy("hourly", 100, 3600, applies_to=("query", "history")),
        ])

    def test_get_known_policy(self, registry):
        assert registry.get("login").request_limit == 3

    def test_get_unknown_policy_raises(self, registry):
        with pytest.raises(PolicyNotFoundError) as exc_info:
            registry.get("missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.policy_name == "missing"

    def test_find_returns_none_for_unknown(self, registry):
        assert registry.find("missing") is None

    def test_for_tag_keeps_registry_order(self, registry):
        assert [p.name for p in registry.for_tag("query")] == ["burst", "hourly"]

    def test_for_tag_is_case_insensitive(self, registry):
        assert [p.name for p in registry.for_tag("HISTORY")] == ["hourly"]

    def test_resolve_prefers_policy_name(self, registry):
        assert registry.resolve("hourly").name == "hourly"

    def test_resolve_falls_back_to_tag(self, registry):
        assert registry.resolve("history").name == "hourly"

    def test_resolve_unknown_raises(self, registry):
        with pytest.raises(PolicyNotFoundError):
            registry.resolve("nothing")

    def test_later_definition_overrides_but_keeps_position(self):
        registry = PolicyRegistry([
            RateLimitPolicy("a", 1, 60),
            RateLimitPolicy("b", 2, 60),
            RateLimitPolicy("a", 9, 60),
        ])
        assert registry.names() == ["a", "b"]
        assert registry.get("a").request_limit == 9

    def test_registry_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry._policies["new"] = RateLimitPolicy("new", 1, 1)

    def test_container_protocol(self, registry):
        assert "login" in registry
        assert "missing" not in registry
        assert len(registry) == 3
        assert [p.name for p in registry] == ["login", "burst", "hourly"]


class TestRegistryFromSettings:
    """Tests for loading policies from settings sources."""

    def test_defaults_loaded(self):
        registry = PolicyRegistry.from_settings(Settings(rate_limit_policies=[]))
        assert registry.names() == [p.name for p in DEFAULT_POLICIES]
        assert registry.get("login").request_limit == 10
        assert registry.get("login").window_size_seconds == 900

    def test_defaults_can_be_disabled(self):
        settings = Settings(
            rate_limit_include_default_policies=False,
            rate_limit_policies=[{"name": "only", "request_limit": 1, "window_size_seconds": 1}],
        )
        assert PolicyRegistry.from_settings(settings).names() == ["only"]

    def test_file_then_env_override(self, tmp_path):
        policies_file = tmp_path / "policies.json"
        policies_file.write_text(json.dumps({"policies": [
            {"name": "login", "requestLimit": 3, "windowSizeSeconds": 60, "appliesTo": ["login"]},
            {"name": "export", "requestLimit": 5, "windowSizeSeconds": 86400},
        ]}))
        settings = Settings(
            rate_limit_policies_file=str(policies_file),
            rate_limit_policies=[{"name": "export", "request_limit": 7, "window_size_seconds": 86400}],
        )

        registry = PolicyRegistry.from_settings(settings)

        assert registry.get("login").request_limit == 3
        assert registry.get("export").request_limit == 7
        assert registry.names()[-1] == "export"

    def test_invalid_env_policy_fails_startup(self):
        settings = Settings(
            rate_limit_policies=[{"name": "bad", "request_limit": 0, "window_size_seconds": 60}]
        )
        with pytest.raises(InvalidConfigurationError):
            PolicyRegistry.from_settings(settings)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(InvalidConfigurationError, match="cannot read"):
            load_policies_file(str(tmp_path / "absent.json"))

    def test_malformed_file_raises(self, tmp_path):
        policies_file = tmp_path / "policies.json"
        policies_file.write_text("{not json")
        with pytest.raises(InvalidConfigurationError, match="not valid JSON"):
            load_policies_file(str(policies_file))
