"""Window store backends for sliding-window rate limiting.

A window store keeps, per rate limit key, the timestamps of admitted
requests and exposes one atomic primitive: drop entries older than the
window, count the rest, and record a new entry only if the count is below
the limit. The evaluator builds every result from that primitive, so both
backends share the same algorithm.
"""

import asyncio
import bisect
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis
from redis import asyncio as aioredis

from quotaguard.app.core.config import settings
from quotaguard.app.core.logging import get_logger
from quotaguard.app.exceptions import StatisticsDataCorruptError, StoreUnavailableError
from quotaguard.app.services.rate_limit.models import WindowDecision
from quotaguard.app.services.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)

STORE_EXCEPTIONS = (
    redis.ConnectionError,
    redis.TimeoutError,
    redis.RedisError,
    asyncio.TimeoutError,
    OSError,
)


def key_ttl_seconds(window_seconds: int) -> int:
    """TTL applied to a window key: twice the window so abandoned keys self-clean."""
    return 2 * window_seconds


class WindowStore(ABC):
    """Abstract base class for window store backends."""

    #: Backend name reported in logs, metrics and health output
    name: str = "abstract"

    #: Whether the store coordinates across processes
    distributed: bool = False

    @abstractmethod
    async def acquire(
        self, key: str, now: float, limit: int, window_seconds: int
    ) -> WindowDecision:
        """Atomically purge, count and conditionally admit one request.

        Args:
            key: Rendered rate limit key
            now: Current Unix time in seconds
            limit: Maximum entries allowed in the window
            window_seconds: Window length

        Returns:
            WindowDecision describing the state after the call

        Raises:
            StoreUnavailableError: If the store cannot complete the operation
        """

    @abstractmethod
    async def entries(self, key: str, since: float, until: float) -> list[float]:
        """Return sorted entry timestamps within [since, until]."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Delete every entry for the key. Deleting a missing key is a no-op."""

    async def cleanup(self) -> int:
        """Remove expired keys. Returns the number of keys removed."""
        return 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryWindowStore(WindowStore):
    """In-process window store.

    Implements the same primitive as the Redis store under a single asyncio
    lock. Counts are only correct within one process: with several
    instances each one admits up to the limit on its own.

    Memory optimization:
    - Uses OrderedDict for LRU cache behavior
    - Limits max keys to prevent unbounded memory growth
    - Keys expire after twice their window, swept by cleanup()
    """

    name = "local"
    distributed = False

    DEFAULT_MAX_KEYS = 10000

    def __init__(
        self,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.time,
    ):
        self._max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, list[float]] = OrderedDict()
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _enforce_lru_limit(self) -> None:
        if len(self._windows) >= self._max_keys:
            # Remove oldest 20% of keys
            remove_count = max(1, int(self._max_keys * 0.2))
            for _ in range(min(remove_count, len(self._windows))):
                evicted, _ = self._windows.popitem(last=False)
                self._expires_at.pop(evicted, None)
            logger.debug(f"Evicted {remove_count} rate limit keys from local store")

    def _live_window(self, key: str, now: float) -> Optional[list[float]]:
        window = self._windows.get(key)
        if window is not None and self._expires_at.get(key, math.inf) < now:
            del self._windows[key]
            self._expires_at.pop(key, None)
            return None
        return window

    async def acquire(
        self, key: str, now: float, limit: int, window_seconds: int
    ) -> WindowDecision:
        async with self._lock:
            window = self._live_window(key, now)

            if window is None:
                window = []
            else:
                # Drop entries strictly older than the window start
                del window[:bisect.bisect_left(window, now - window_seconds)]

            if len(window) >= limit:
                if window:
                    self._windows.move_to_end(key)
                return WindowDecision(
                    admitted=False,
                    count=len(window),
                    oldest=window[0] if window else None,
                )

            if key not in self._windows:
                self._enforce_lru_limit()
                self._windows[key] = window
            else:
                self._windows.move_to_end(key)

            bisect.insort(window, now)
            self._expires_at[key] = now + key_ttl_seconds(window_seconds)
            return WindowDecision(admitted=True, count=len(window), oldest=window[0])

    async def entries(self, key: str, since: float, until: float) -> list[float]:
        async with self._lock:
            window = self._live_window(key, until)
            if not window:
                return []
            lo = bisect.bisect_left(window, since)
            hi = bisect.bisect_right(window, until)
            return window[lo:hi]

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)
            self._expires_at.pop(key, None)

    async def cleanup(self) -> int:
        """Clean up keys whose TTL has passed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, at in self._expires_at.items() if at < now]
            for key in expired:
                self._windows.pop(key, None)
                del self._expires_at[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class RedisWindowStore(WindowStore):
    """Redis-based distributed window store.

    Each key is a sorted set with one member per admitted request, scored by
    its timestamp. The check-and-admit runs as one Lua script so it is a
    single round trip evaluated entirely by Redis.
    """

    name = "redis"
    distributed = True

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        socket_timeout: Optional[float] = None,
        socket_connect_timeout: Optional[float] = None,
    ):
        """Initialize Redis window store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            socket_timeout: Per-command timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
        """
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._socket_timeout = socket_timeout or settings.redis_socket_timeout
        self._socket_connect_timeout = (
            socket_connect_timeout or settings.redis_socket_connect_timeout
        )

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
            )
        return self._redis

    async def acquire(
        self, key: str, now: float, limit: int, window_seconds: int
    ) -> WindowDecision:
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        try:
            result = await self._get_redis().eval(
                SLIDING_WINDOW_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                repr(now),  # ARGV[1]
                repr(now - window_seconds),  # ARGV[2]
                limit,  # ARGV[3]
                key_ttl_seconds(window_seconds),  # ARGV[4]
                member,  # ARGV[5]
            )
        except STORE_EXCEPTIONS as e:
            raise StoreUnavailableError("acquire", e) from e

        admitted = bool(int(result[0]))
        count = int(result[1])
        oldest = float(result[2]) if len(result) > 2 and result[2] is not None else None
        return WindowDecision(admitted=admitted, count=count, oldest=oldest)

    async def entries(self, key: str, since: float, until: float) -> list[float]:
        try:
            raw = await self._get_redis().zrangebyscore(key, since, until, withscores=True)
        except redis.ResponseError as e:
            # WRONGTYPE and friends: the key holds something other than a window
            raise StatisticsDataCorruptError(key, str(e)) from e
        except STORE_EXCEPTIONS as e:
            raise StoreUnavailableError("entries", e) from e
        return parse_scores(key, raw)

    async def reset(self, key: str) -> None:
        try:
            await self._get_redis().delete(key)
        except STORE_EXCEPTIONS as e:
            raise StoreUnavailableError("reset", e) from e

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except STORE_EXCEPTIONS as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except STORE_EXCEPTIONS as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


def parse_scores(key: str, raw: Any) -> list[float]:
    """Convert a ZRANGEBYSCORE WITHSCORES reply into sorted timestamps.

    Raises:
        StatisticsDataCorruptError: If the payload is not a list of
            (member, score) pairs with finite numeric scores
    """
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise StatisticsDataCorruptError(key, f"unexpected payload type {type(raw).__name__}")
    timestamps: list[float] = []
    for item in raw:
        try:
            _, score = item
            value = float(score)
        except (TypeError, ValueError) as e:
            raise StatisticsDataCorruptError(key, f"malformed entry {item!r}") from e
        if not math.isfinite(value):
            raise StatisticsDataCorruptError(key, f"non-finite score {item!r}")
        timestamps.append(value)
    timestamps.sort()
    return timestamps
