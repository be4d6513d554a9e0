"""Distributed sliding-window rate limiting.

This package provides atomic check-and-admit operations using a Redis Lua
script, with an in-process store for single-instance deployments and as a
fallback while Redis is unavailable.
"""

from .backends import InMemoryWindowStore, RedisWindowStore, WindowStore
from .health import StoreCircuitBreaker
from .models import (
    RateLimitKey,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStatistics,
    WindowDecision,
)
from .redis_lua import SLIDING_WINDOW_SCRIPT
from .registry import DEFAULT_POLICIES, PolicyRegistry, parse_policy
from .service import (
    RateLimitService,
    get_rate_limit_service,
    reset_rate_limit_service,
    set_rate_limit_service,
)

__all__ = [
    # Models
    "RateLimitKey",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimitStatistics",
    "WindowDecision",
    # Registry
    "DEFAULT_POLICIES",
    "PolicyRegistry",
    "parse_policy",
    # Stores
    "WindowStore",
    "InMemoryWindowStore",
    "RedisWindowStore",
    "SLIDING_WINDOW_SCRIPT",
    "StoreCircuitBreaker",
    # Service
    "RateLimitService",
    "get_rate_limit_service",
    "reset_rate_limit_service",
    "set_rate_limit_service",
]
