"""Sliding-window rate limit evaluation.

Provides the single evaluator used by every caller. The evaluator owns the
algorithm (reset and retry-after computation, failure policy, multi-policy
short-circuit); window stores only implement the atomic purge/count/admit
primitive.
"""

import asyncio
import time
from typing import Any, Callable, Iterable, Optional, Union

from quotaguard.app.api.metrics import MetricsCollector, get_metrics_collector
from quotaguard.app.core.logging import get_log_context, get_logger
from quotaguard.app.exceptions import (
    RateLimitExceededError,
    StatisticsDataCorruptError,
    StoreUnavailableError,
)
from quotaguard.app.services.rate_limit.backends import (
    InMemoryWindowStore,
    RedisWindowStore,
    WindowStore,
)
from quotaguard.app.services.rate_limit.health import StoreCircuitBreaker
from quotaguard.app.services.rate_limit.models import (
    DEGRADED_SUFFIX,
    LOCAL_SUFFIX,
    RateLimitKey,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStatistics,
    WindowDecision,
)
from quotaguard.app.services.rate_limit.registry import PolicyRegistry
from quotaguard.app.services.rate_limit.statistics import build_statistics, empty_statistics

logger = get_logger(__name__)

PolicyRef = Union[RateLimitPolicy, str]


class RateLimitService:
    """Evaluates sliding-window rate limits against a window store.

    Provides:
    - Exact sliding-window check-and-admit, atomic in the store
    - Ordered multi-policy checks that stop at the first denial
    - Fail-open / fail-closed handling when the shared store is unavailable,
      optionally failing closed once an outage outlasts a grace period
    - A circuit breaker that routes checks to an in-process store after
      repeated store failures
    - Statistics and reset for administrators

    Store key format:
    - {prefix}:{identifier}:{policy_name} - sorted set of admission timestamps
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        store: WindowStore,
        *,
        fallback_store: Optional[WindowStore] = None,
        breaker: Optional[StoreCircuitBreaker] = None,
        enabled: bool = True,
        fail_closed: bool = False,
        fail_open_grace_seconds: Optional[float] = None,
        default_window_seconds: int = 3600,
        key_prefix: str = "rate_limit",
        cleanup_interval_seconds: float = 60.0,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the rate limit service.

        Args:
            registry: Policies available to callers
            store: Primary window store (Redis, or local when Redis is off)
            fallback_store: Local store used while the breaker is open
            breaker: Circuit breaker guarding the primary store
            enabled: Global switch; when False every check is allowed
            fail_closed: Deny instead of allow when the store fails
            fail_open_grace_seconds: Fail open only this long into an outage
            default_window_seconds: Window read by get_statistics
            key_prefix: Prefix of rendered store keys
            cleanup_interval_seconds: Period of the local store sweep
            metrics: Metrics collector (defaults to the global one)
            clock: Time source returning Unix seconds
        """
        self._registry = registry
        self._store = store
        self._fallback_store = fallback_store
        self._breaker = breaker
        self._enabled = enabled
        self._fail_closed = fail_closed
        self._fail_open_grace_seconds = fail_open_grace_seconds
        self._default_window_seconds = default_window_seconds
        self._key_prefix = key_prefix
        self._cleanup_interval = cleanup_interval_seconds
        self._metrics = metrics
        self._clock = clock

        self._outage_started_at: Optional[float] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        if not store.distributed:
            logger.warning(
                "Rate limiting uses the in-process window store: limits are "
                "enforced per instance only, not across processes",
                extra=get_log_context(event="rate_limiter_local_mode", backend=store.name),
            )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        registry: Optional[PolicyRegistry] = None,
        redis_client: Optional[Any] = None,
    ) -> "RateLimitService":
        """Build the service from application settings."""
        if registry is None:
            registry = PolicyRegistry.from_settings(settings)

        local_max_keys = settings.rate_limit_local_max_keys
        if settings.redis_enabled or redis_client is not None:
            store: WindowStore = RedisWindowStore(
                redis_client=redis_client,
                redis_url=settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_connect_timeout,
            )
            fallback = (
                InMemoryWindowStore(max_keys=local_max_keys)
                if settings.rate_limit_local_fallback_enabled
                else None
            )
            breaker = StoreCircuitBreaker(
                failure_threshold=settings.rate_limit_breaker_failure_threshold,
                cooldown_seconds=settings.rate_limit_breaker_cooldown_seconds,
            )
        else:
            store = InMemoryWindowStore(max_keys=local_max_keys)
            fallback = None
            breaker = None

        return cls(
            registry,
            store,
            fallback_store=fallback,
            breaker=breaker,
            enabled=settings.rate_limit_enabled,
            fail_closed=settings.rate_limit_fail_closed,
            fail_open_grace_seconds=settings.rate_limit_fail_open_grace_seconds,
            default_window_seconds=settings.rate_limit_default_window_seconds,
            key_prefix=settings.rate_limit_key_prefix,
            cleanup_interval_seconds=settings.rate_limit_cleanup_interval_seconds,
        )

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics if self._metrics is not None else get_metrics_collector()

    def make_key(self, identifier: str, policy_name: str) -> str:
        return RateLimitKey(identifier, policy_name).render(self._key_prefix)

    def _coerce_policy(self, policy: PolicyRef) -> RateLimitPolicy:
        if isinstance(policy, RateLimitPolicy):
            return policy
        return self._registry.get(policy)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def check(self, identifier: str, policy: PolicyRef) -> RateLimitResult:
        """Check and, if allowed, admit one request for identifier under policy.

        Never raises for store failures: those produce a degraded result
        according to the fail-open / fail-closed configuration.

        Raises:
            PolicyNotFoundError: If policy is a name missing from the registry
        """
        policy = self._coerce_policy(policy)
        now = self._clock()

        if not self._enabled:
            return RateLimitResult(
                is_allowed=True,
                request_count=0,
                request_limit=policy.request_limit,
                window_size_seconds=policy.window_size_seconds,
                reset_time=now + policy.window_size_seconds,
                retry_after=0.0,
                policy_name=policy.name,
            )

        key = self.make_key(identifier, policy.name)

        if self._breaker is not None and not self._breaker.allow_request():
            if self._fallback_store is None:
                return await self._failure_result(identifier, policy, now, "circuit_open")
            decision = await self._fallback_store.acquire(
                key, now, policy.request_limit, policy.window_size_seconds
            )
            result = self._build_result(policy, decision, now, local=True)
            await self.metrics.record_degraded(policy.name, "local")
            await self.metrics.record_check(policy.name, result.is_allowed)
            return result

        try:
            decision = await self._store.acquire(
                key, now, policy.request_limit, policy.window_size_seconds
            )
        except StoreUnavailableError as e:
            self._record_store_failure(now)
            return await self._failure_result(identifier, policy, now, "store_unavailable", e)
        except Exception as e:
            # Unexpected error - log with traceback and apply the same policy
            logger.exception(
                f"Unexpected rate limit error for {identifier} on {policy.name}: {e}",
                extra=get_log_context(identifier=identifier, policy=policy.name),
            )
            self._record_store_failure(now)
            return await self._failure_result(identifier, policy, now, "unexpected", e)

        self._record_store_success()
        result = self._build_result(policy, decision, now)
        if not result.is_allowed:
            logger.info(
                f"Rate limit exceeded for {identifier} on {policy.name}: "
                f"{result.request_count}/{result.request_limit}",
                extra=get_log_context(
                    identifier=identifier, policy=policy.name, event="rate_limit_exceeded"
                ),
            )
        await self.metrics.record_check(policy.name, result.is_allowed)
        return result

    def _build_result(
        self,
        policy: RateLimitPolicy,
        decision: WindowDecision,
        now: float,
        local: bool = False,
    ) -> RateLimitResult:
        window = policy.window_size_seconds
        if decision.oldest is not None:
            reset_time = max(now, decision.oldest + window)
        else:
            reset_time = now + window

        retry_after = 0.0 if decision.admitted else max(0.0, reset_time - now)
        return RateLimitResult(
            is_allowed=decision.admitted,
            request_count=decision.count,
            request_limit=policy.request_limit,
            window_size_seconds=window,
            reset_time=reset_time,
            retry_after=retry_after,
            policy_name=policy.name + LOCAL_SUFFIX if local else policy.name,
            degraded=local,
        )

    def _record_store_failure(self, now: float) -> None:
        if self._outage_started_at is None:
            self._outage_started_at = now
        if self._breaker is not None:
            self._breaker.record_failure()

    def _record_store_success(self) -> None:
        self._outage_started_at = None
        if self._breaker is not None:
            self._breaker.record_success()

    def _should_fail_closed(self, now: float) -> bool:
        if self._fail_closed:
            return True
        if self._fail_open_grace_seconds is None:
            return False
        started = self._outage_started_at if self._outage_started_at is not None else now
        return now - started > self._fail_open_grace_seconds

    async def _failure_result(
        self,
        identifier: str,
        policy: RateLimitPolicy,
        now: float,
        reason: str,
        error: Optional[Exception] = None,
    ) -> RateLimitResult:
        """Produce the verdict for a check the shared store could not serve.

        Emits exactly one degraded log record and one degraded metric.
        """
        fail_closed = self._should_fail_closed(now)
        mode = "closed" if fail_closed else "open"
        window = policy.window_size_seconds

        logger.warning(
            f"Rate limiter degraded ({reason}): failing {mode} for {identifier} "
            f"on policy {policy.name}" + (f": {error}" if error is not None else ""),
            extra=get_log_context(
                identifier=identifier,
                policy=policy.name,
                event="rate_limiter_degraded",
                backend=self._store.name,
                reason=reason,
                fail_mode=mode,
            ),
        )
        await self.metrics.record_degraded(policy.name, mode)

        if fail_closed:
            return RateLimitResult(
                is_allowed=False,
                request_count=policy.request_limit,
                request_limit=policy.request_limit,
                window_size_seconds=window,
                reset_time=now + window,
                retry_after=float(window),
                policy_name=policy.name + DEGRADED_SUFFIX,
                degraded=True,
            )
        return RateLimitResult(
            is_allowed=True,
            request_count=0,
            request_limit=policy.request_limit,
            window_size_seconds=window,
            reset_time=now + window,
            retry_after=0.0,
            policy_name=policy.name + DEGRADED_SUFFIX,
            degraded=True,
        )

    async def check_multiple(
        self, identifier: str, policies: Iterable[PolicyRef]
    ) -> dict[str, RateLimitResult]:
        """Check policies in the given order, stopping at the first denial.

        Policies after a denial are neither evaluated nor charged, so the
        returned mapping omits them.
        """
        results: dict[str, RateLimitResult] = {}
        for ref in policies:
            policy = self._coerce_policy(ref)
            result = await self.check(identifier, policy)
            results[policy.name] = result
            if not result.is_allowed:
                break
        return results

    async def check_rate_limit(
        self, identifier: str, endpoint_or_policy: str
    ) -> RateLimitResult:
        """Check the policy named by, or tagged with, endpoint_or_policy.

        Raises:
            PolicyNotFoundError: If nothing in the registry matches
        """
        return await self.check(identifier, self._registry.resolve(endpoint_or_policy))

    async def check_endpoint(
        self, identifier: str, endpoint: str
    ) -> dict[str, RateLimitResult]:
        """Check every policy tagged with the endpoint, in registry order."""
        return await self.check_multiple(identifier, self._registry.for_tag(endpoint))

    async def enforce(self, identifier: str, endpoint_or_policy: str) -> RateLimitResult:
        """Like check_rate_limit, but raise when the request is denied.

        Raises:
            RateLimitExceededError: If the request is denied
            PolicyNotFoundError: If nothing in the registry matches
        """
        result = await self.check_rate_limit(identifier, endpoint_or_policy)
        if not result.is_allowed:
            raise RateLimitExceededError(result)
        return result

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def reset(self, identifier: str, policy_name: str) -> None:
        """Delete all recorded entries for identifier under policy_name.

        Idempotent. Clears the local fallback store too.

        Raises:
            PolicyNotFoundError: If the policy is unknown
            StoreUnavailableError: If the shared store cannot be reached
        """
        policy = self._registry.get(policy_name)
        key = self.make_key(identifier, policy.name)
        if self._fallback_store is not None:
            await self._fallback_store.reset(key)
        try:
            await self._store.reset(key)
        except StoreUnavailableError as e:
            logger.error(
                f"Error resetting rate limit for {identifier} on policy {policy.name}: {e}",
                extra=get_log_context(identifier=identifier, policy=policy.name),
            )
            raise
        logger.info(
            f"Reset rate limit for {identifier} on policy {policy.name}",
            extra=get_log_context(
                identifier=identifier, policy=policy.name, event="rate_limit_reset"
            ),
        )

    async def get_statistics(
        self, identifier: str, policy_name: str
    ) -> RateLimitStatistics:
        """Summarize entries recorded within the default statistics window.

        Store failures and corrupt payloads are logged and reported as an
        empty data set.

        Raises:
            PolicyNotFoundError: If the policy is unknown
        """
        policy = self._registry.get(policy_name)
        key = self.make_key(identifier, policy.name)
        now = self._clock()
        window_start = now - self._default_window_seconds

        try:
            timestamps = await self._store.entries(key, window_start, now)
        except StatisticsDataCorruptError as e:
            logger.warning(
                f"Discarding corrupt rate limit data for {identifier} on {policy.name}: {e.detail}",
                extra=get_log_context(
                    identifier=identifier, policy=policy.name, event="statistics_data_corrupt"
                ),
            )
            return empty_statistics(identifier, policy.name, window_start, now)
        except StoreUnavailableError as e:
            logger.error(
                f"Error getting rate limit statistics for {identifier} on policy {policy.name}: {e}",
                extra=get_log_context(identifier=identifier, policy=policy.name),
            )
            return empty_statistics(identifier, policy.name, window_start, now)

        return build_statistics(identifier, policy.name, timestamps, window_start, now)

    def describe(self) -> dict[str, Any]:
        """Backend and consistency information for health endpoints."""
        info: dict[str, Any] = {
            "enabled": self._enabled,
            "backend": self._store.name,
            "consistency": "distributed" if self._store.distributed else "local",
            "fail_mode": "closed" if self._fail_closed else "open",
            "fail_open_grace_seconds": self._fail_open_grace_seconds,
            "fallback": self._fallback_store.name if self._fallback_store else None,
            "policies": len(self._registry),
        }
        if self._breaker is not None:
            info["breaker"] = self._breaker.get_status()
        return info

    async def ping(self) -> bool:
        return await self._store.ping()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _local_stores(self) -> list[WindowStore]:
        return [s for s in (self._store, self._fallback_store) if s is not None and not s.distributed]

    async def start_cleanup_task(self) -> None:
        """Start the periodic sweep of expired keys in local stores."""
        if self._cleanup_task is not None or not self._local_stores():
            return
        self._shutdown_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Started rate limit cleanup task")

    async def stop_cleanup_task(self) -> None:
        if self._cleanup_task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
        self._cleanup_task = None
        logger.info("Stopped rate limit cleanup task")

    async def _cleanup_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self._cleanup_interval
                )
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            await self.cleanup()

    async def cleanup(self) -> int:
        removed = 0
        for store in self._local_stores():
            try:
                removed += await store.cleanup()
            except Exception as e:
                logger.error(f"Error during rate limit cleanup: {e}")
        if removed:
            logger.debug(f"Removed {removed} expired rate limit keys")
        return removed

    async def close(self) -> None:
        """Stop background work and release store connections."""
        await self.stop_cleanup_task()
        for store in (self._store, self._fallback_store):
            if store is not None:
                await store.close()


_rate_limit_service: Optional[RateLimitService] = None


def get_rate_limit_service() -> RateLimitService:
    """Get the global rate limit service instance, building it from settings."""
    global _rate_limit_service
    if _rate_limit_service is None:
        from quotaguard.app.core.config import settings

        _rate_limit_service = RateLimitService.from_settings(settings)
    return _rate_limit_service


def set_rate_limit_service(service: Optional[RateLimitService]) -> None:
    """Install a specific service instance as the global one."""
    global _rate_limit_service
    _rate_limit_service = service


def reset_rate_limit_service() -> None:
    """Reset the global rate limit service instance."""
    global _rate_limit_service
    _rate_limit_service = None
