"""Immutable registry of named rate limit policies.

The registry is built once at startup from configuration and handed to the
rate limit service; nothing mutates it afterwards.
"""

import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional

from quotaguard.app.core.logging import get_logger
from quotaguard.app.exceptions import InvalidConfigurationError, PolicyNotFoundError
from quotaguard.app.services.rate_limit.models import RateLimitPolicy

logger = get_logger(__name__)


# Endpoint defaults of the reporting backend: (limit, window seconds, description)
DEFAULT_POLICIES: tuple[RateLimitPolicy, ...] = (
    RateLimitPolicy("query", 100, 3600, "Natural language query execution", ("query",)),
    RateLimitPolicy("history", 200, 3600, "Query history reads", ("history",)),
    RateLimitPolicy("feedback", 50, 3600, "Query feedback submissions", ("feedback",)),
    RateLimitPolicy("suggestions", 300, 3600, "Query suggestions", ("suggestions",)),
    RateLimitPolicy("login", 10, 900, "Authentication attempts", ("login",)),
    RateLimitPolicy("api", 1000, 3600, "General API traffic", ("api",)),
)

_FIELD_ALIASES = {
    "requestLimit": "request_limit",
    "windowSizeSeconds": "window_size_seconds",
    "appliesTo": "applies_to",
}


def _coerce_positive_int(value: Any, field_name: str, policy_name: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidConfigurationError(f"{field_name} must be an integer", policy_name)
    try:
        number = int(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError(f"{field_name} must be an integer", policy_name) from None
    if number <= 0:
        raise InvalidConfigurationError(f"{field_name} must be positive, got {number}", policy_name)
    return number


def _coerce_tags(value: Any, policy_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise InvalidConfigurationError("applies_to must be a list of tags", policy_name)
    return tuple(str(tag).strip() for tag in value if str(tag).strip())


def parse_policy(raw: Mapping[str, Any]) -> RateLimitPolicy:
    """Build a policy from a configuration mapping.

    Accepts snake_case keys and their camelCase spellings (requestLimit,
    windowSizeSeconds, appliesTo).

    Raises:
        InvalidConfigurationError: On missing fields or non-positive values
    """
    if not isinstance(raw, Mapping):
        raise InvalidConfigurationError(f"policy entry must be an object, got {type(raw).__name__}")

    data = {_FIELD_ALIASES.get(k, k): v for k, v in raw.items()}
    name = str(data.get("name") or "").strip()
    if not name:
        raise InvalidConfigurationError("policy entry is missing a name")
    if ":" in name:
        # The name is embedded in colon separated store keys
        raise InvalidConfigurationError("name must not contain ':'", name)

    for required in ("request_limit", "window_size_seconds"):
        if required not in data:
            raise InvalidConfigurationError(f"missing {required}", name)

    return RateLimitPolicy(
        name=name,
        request_limit=_coerce_positive_int(data["request_limit"], "request_limit", name),
        window_size_seconds=_coerce_positive_int(
            data["window_size_seconds"], "window_size_seconds", name
        ),
        description=str(data.get("description") or ""),
        applies_to=_coerce_tags(data.get("applies_to"), name),
    )


def parse_policies(entries: Iterable[Mapping[str, Any]], source: str) -> list[RateLimitPolicy]:
    """Parse one configuration source, rejecting duplicate names within it."""
    policies: list[RateLimitPolicy] = []
    seen: set[str] = set()
    for entry in entries:
        policy = parse_policy(entry)
        if policy.name in seen:
            raise InvalidConfigurationError(f"duplicate policy name in {source}", policy.name)
        seen.add(policy.name)
        policies.append(policy)
    return policies


def load_policies_file(path: str) -> list[RateLimitPolicy]:
    """Load policies from a JSON file holding a list of policy objects."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidConfigurationError(f"cannot read policies file {path}: {e}") from e
    try:
        entries = json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidConfigurationError(f"policies file {path} is not valid JSON: {e}") from e
    if isinstance(entries, dict):
        entries = entries.get("policies", [])
    if not isinstance(entries, list):
        raise InvalidConfigurationError(f"policies file {path} must contain a list")
    return parse_policies(entries, source=path)


class PolicyRegistry:
    """Ordered, read-only collection of rate limit policies.

    Iteration order is the order policies were first defined; a later
    source overriding a name keeps the original position.
    """

    def __init__(self, policies: Iterable[RateLimitPolicy] = ()):
        merged: dict[str, RateLimitPolicy] = {}
        for policy in policies:
            merged[policy.name] = policy
        self._policies: Mapping[str, RateLimitPolicy] = MappingProxyType(merged)

    @classmethod
    def from_settings(cls, settings: Any) -> "PolicyRegistry":
        """Build the registry from application settings.

        Sources, later ones overriding earlier ones by name: built-in
        defaults, the policies file, the RATE_LIMIT_POLICIES variable.
        """
        policies: list[RateLimitPolicy] = []
        if getattr(settings, "rate_limit_include_default_policies", True):
            policies.extend(DEFAULT_POLICIES)

        policies_file = getattr(settings, "rate_limit_policies_file", "")
        if policies_file:
            policies.extend(load_policies_file(policies_file))

        inline = getattr(settings, "rate_limit_policies", None) or []
        policies.extend(parse_policies(inline, source="RATE_LIMIT_POLICIES"))

        registry = cls(policies)
        logger.info(
            f"Loaded {len(registry)} rate limit policies: {', '.join(registry.names())}"
        )
        return registry

    def get(self, name: str) -> RateLimitPolicy:
        """Return the policy with the given name.

        Raises:
            PolicyNotFoundError: If no policy has that name
        """
        try:
            return self._policies[name]
        except KeyError:
            raise PolicyNotFoundError(name) from None

    def find(self, name: str) -> Optional[RateLimitPolicy]:
        return self._policies.get(name)

    def for_tag(self, tag: str) -> list[RateLimitPolicy]:
        """All policies whose applies_to contains the tag, in registry order."""
        return [p for p in self._policies.values() if p.matches(tag)]

    def resolve(self, endpoint_or_policy: str) -> RateLimitPolicy:
        """Resolve a policy name, or else the first policy tagged with the endpoint.

        Raises:
            PolicyNotFoundError: If neither lookup matches
        """
        policy = self._policies.get(endpoint_or_policy)
        if policy is not None:
            return policy
        tagged = self.for_tag(endpoint_or_policy)
        if tagged:
            return tagged[0]
        raise PolicyNotFoundError(endpoint_or_policy)

    def names(self) -> list[str]:
        return list(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[RateLimitPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)
