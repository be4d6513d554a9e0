import json
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_policy_list(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Policies must be JSON; the registry rejects malformed entries with a
    # proper configuration error, so only the outer shape is checked here.
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"RATE_LIMIT_POLICIES must be a JSON list: {e}") from e
    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        raise ValueError("RATE_LIMIT_POLICIES must be a JSON list of policy objects")
    return parsed


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_default_window_seconds: int = 3600  # Window used by statistics
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )
    # Fail open for at most this many seconds of a continuous outage, then
    # fail closed. None keeps failing open for the whole outage.
    rate_limit_fail_open_grace_seconds: float | None = None
    rate_limit_key_prefix: str = "rate_limit"

    # Client identity. Both sources are client controlled: enable them only
    # behind a proxy that overwrites X-Forwarded-For or a gateway that
    # rejects unknown API keys before this service sees the request.
    rate_limit_trust_forwarded_for: bool = False
    rate_limit_trust_api_keys: bool = False

    # Policy sources (later sources override earlier ones by name)
    rate_limit_include_default_policies: bool = True
    rate_limit_policies_file: str = ""
    # Use NoDecode so the raw env value reaches the validator untouched.
    rate_limit_policies: Annotated[list[dict[str, Any]], NoDecode] = []

    @field_validator("rate_limit_policies", mode="before")
    @classmethod
    def decode_rate_limit_policies(cls, v: Any) -> list[dict[str, Any]]:
        return _parse_policy_list(v)

    # Local (single-process) fallback store
    rate_limit_local_fallback_enabled: bool = True
    rate_limit_local_max_keys: int = 10000
    rate_limit_cleanup_interval_seconds: float = 60.0

    # Circuit breaker around the shared store
    rate_limit_breaker_failure_threshold: int = 5
    rate_limit_breaker_cooldown_seconds: float = 30.0

    # Redis settings (optional)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 0.5  # Seconds; a slow store must not stall requests
    redis_socket_connect_timeout: float = 0.5

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "rate_limit_default_window_seconds",
        "rate_limit_local_max_keys",
        "rate_limit_breaker_failure_threshold",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate integer limits are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "rate_limit_cleanup_interval_seconds",
        "rate_limit_breaker_cooldown_seconds",
        "redis_socket_timeout",
        "redis_socket_connect_timeout",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate intervals and timeouts are positive."""
        if v <= 0:
            raise ValueError("Timeout and interval values must be positive")
        return v

    @field_validator("rate_limit_fail_open_grace_seconds")
    @classmethod
    def validate_grace(cls, v: float | None) -> float | None:
        """Validate the fail-open grace period is not negative."""
        if v is not None and v < 0:
            raise ValueError("rate_limit_fail_open_grace_seconds must not be negative")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
