"""Data models for sliding-window rate limiting."""

from dataclasses import dataclass, field
from typing import Optional


DEGRADED_SUFFIX = ":degraded"
LOCAL_SUFFIX = ":local"


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named request quota over a sliding window.

    Attributes:
        name: Unique policy name, part of the store key
        request_limit: Maximum admitted requests per window (0 blocks everything)
        window_size_seconds: Length of the trailing window
        description: Human readable description
        applies_to: Role or endpoint tags the policy guards
    """
    name: str
    request_limit: int
    window_size_seconds: int
    description: str = ""
    applies_to: tuple[str, ...] = ()

    def matches(self, tag: str) -> bool:
        """Check whether the policy guards the given endpoint or role tag."""
        return tag.lower() in (t.lower() for t in self.applies_to)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "request_limit": self.request_limit,
            "window_size_seconds": self.window_size_seconds,
            "description": self.description,
            "applies_to": list(self.applies_to),
        }


@dataclass(frozen=True)
class RateLimitKey:
    """Composite lookup key: who is limited, under which policy."""
    identifier: str
    policy_name: str

    def render(self, prefix: str = "rate_limit") -> str:
        return f"{prefix}:{self.identifier}:{self.policy_name}"


@dataclass(frozen=True)
class WindowDecision:
    """Outcome of one atomic purge/count/admit against a window store.

    Attributes:
        admitted: Whether a new entry was recorded
        count: Entries in the window after the operation
        oldest: Timestamp of the oldest surviving entry, None if empty
    """
    admitted: bool
    count: int
    oldest: Optional[float] = None


@dataclass
class RateLimitResult:
    """Result of a rate limit check. Produced fresh for every check."""
    is_allowed: bool
    request_count: int
    request_limit: int
    window_size_seconds: int
    reset_time: float
    retry_after: float
    policy_name: str
    degraded: bool = False

    @property
    def remaining(self) -> int:
        """Quota left in the current window."""
        return max(0, self.request_limit - self.request_count)

    @property
    def base_policy_name(self) -> str:
        """Policy name without the degraded or local-fallback tag."""
        for suffix in (DEGRADED_SUFFIX, LOCAL_SUFFIX):
            if self.policy_name.endswith(suffix):
                return self.policy_name[: -len(suffix)]
        return self.policy_name

    def to_dict(self) -> dict:
        return {
            "is_allowed": self.is_allowed,
            "request_count": self.request_count,
            "request_limit": self.request_limit,
            "remaining": self.remaining,
            "window_size_seconds": self.window_size_seconds,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "policy_name": self.policy_name,
            "degraded": self.degraded,
        }


@dataclass
class RateLimitStatistics:
    """Aggregate view over a key's recorded entries."""
    identifier: str
    policy_name: str
    window_start: float
    window_end: float
    request_timestamps: list[float] = field(default_factory=list)
    average_requests_per_minute: float = 0.0
    peak_requests_per_minute: int = 0

    @property
    def current_window_requests(self) -> int:
        return len(self.request_timestamps)

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "policy_name": self.policy_name,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "current_window_requests": self.current_window_requests,
            "request_timestamps": list(self.request_timestamps),
            "average_requests_per_minute": self.average_requests_per_minute,
            "peak_requests_per_minute": self.peak_requests_per_minute,
        }
