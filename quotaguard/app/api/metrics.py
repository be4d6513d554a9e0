"""Metrics and monitoring endpoints for the rate limiting service.

This module provides Prometheus-compatible metrics endpoints for monitoring
rate limit decisions and degraded-mode events.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from quotaguard.app.core.logging import get_logger
from quotaguard.app.middleware.auth import require_admin

logger = get_logger(__name__)
router = APIRouter()


@dataclass
class RequestMetrics:
    """Metrics for a single endpoint."""

    count: int = 0
    total_duration: float = 0.0
    errors: int = 0


@dataclass
class PolicyMetrics:
    """Rate limit decisions for a single policy."""

    allowed: int = 0
    denied: int = 0


@dataclass
class MetricsCollector:
    """Collects and stores rate limiter metrics.

    Collects:
    - Request counts and latencies per endpoint
    - Allowed/denied decisions per policy
    - Degraded-mode events per policy and failure mode
    """

    _requests: Dict[str, RequestMetrics] = field(
        default_factory=lambda: defaultdict(RequestMetrics)
    )
    _policies: Dict[str, PolicyMetrics] = field(
        default_factory=lambda: defaultdict(PolicyMetrics)
    )
    # (policy, mode) -> count, mode is "open", "closed" or "local"
    _degraded: Dict[Tuple[str, str], int] = field(
        default_factory=lambda: defaultdict(int)
    )

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    _start_time: float = field(default_factory=time.time)

    async def record_request(
        self, endpoint: str, duration: float, status_code: int
    ) -> None:
        async with self._lock:
            metrics = self._requests[endpoint]
            metrics.count += 1
            metrics.total_duration += duration
            if status_code >= 500:
                metrics.errors += 1

    async def record_check(self, policy: str, allowed: bool) -> None:
        """Record one rate limit decision.

        Args:
            policy: Policy name (untagged)
            allowed: Whether the request was admitted
        """
        async with self._lock:
            if allowed:
                self._policies[policy].allowed += 1
            else:
                self._policies[policy].denied += 1

    async def record_degraded(self, policy: str, mode: str) -> None:
        """Record one degraded-mode verdict.

        Args:
            policy: Policy name (untagged)
            mode: "open" or "closed" for failure-policy verdicts, "local" for
                checks served by the in-process fallback store
        """
        async with self._lock:
            self._degraded[(policy, mode)] += 1

    async def get_degraded_count(self, policy: Optional[str] = None) -> int:
        async with self._lock:
            return sum(
                count for (name, _), count in self._degraded.items()
                if policy is None or name == policy
            )

    async def get_summary(self) -> Dict[str, Any]:
        async with self._lock:
            total_allowed = sum(m.allowed for m in self._policies.values())
            total_denied = sum(m.denied for m in self._policies.values())
            total_checks = total_allowed + total_denied

            degraded: Dict[str, Dict[str, int]] = defaultdict(dict)
            for (policy, mode), count in self._degraded.items():
                degraded[policy][mode] = count

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "checks": {
                    "total": total_checks,
                    "allowed": total_allowed,
                    "denied": total_denied,
                    "denied_rate": round(total_denied / total_checks, 4)
                    if total_checks > 0
                    else 0,
                },
                "policies": {
                    name: {"allowed": m.allowed, "denied": m.denied}
                    for name, m in self._policies.items()
                },
                "degraded": dict(degraded),
                "endpoints": {
                    endpoint: {
                        "count": m.count,
                        "avg_duration_ms": round((m.total_duration / m.count) * 1000, 2),
                        "error_count": m.errors,
                    }
                    for endpoint, m in self._requests.items()
                    if m.count > 0
                },
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP ratelimit_checks_total Rate limit decisions")
            lines.append("# TYPE ratelimit_checks_total counter")
            for policy, m in self._policies.items():
                lines.append(
                    f'ratelimit_checks_total{{policy="{policy}",decision="allowed"}} {m.allowed}'
                )
                lines.append(
                    f'ratelimit_checks_total{{policy="{policy}",decision="denied"}} {m.denied}'
                )

            lines.append(
                "\n# HELP ratelimit_degraded_total Verdicts produced without the shared store"
            )
            lines.append("# TYPE ratelimit_degraded_total counter")
            for (policy, mode), count in self._degraded.items():
                lines.append(
                    f'ratelimit_degraded_total{{policy="{policy}",mode="{mode}"}} {count}'
                )

            lines.append("\n# HELP ratelimit_http_requests_total Total HTTP requests")
            lines.append("# TYPE ratelimit_http_requests_total counter")
            for endpoint, m in self._requests.items():
                lines.append(
                    f'ratelimit_http_requests_total{{endpoint="{endpoint}"}} {m.count}'
                )

            lines.append("\n# HELP ratelimit_uptime_seconds Service uptime in seconds")
            lines.append("# TYPE ratelimit_uptime_seconds gauge")
            lines.append(
                f"ratelimit_uptime_seconds{{}} {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global metrics collector (useful for testing)."""
    global _metrics_collector
    _metrics_collector = None


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(admin=Depends(require_admin)) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    from quotaguard.app.services.rate_limit import get_rate_limit_service

    content = await get_metrics_collector().get_prometheus_metrics()

    breaker = get_rate_limit_service().describe().get("breaker")
    if breaker is not None:
        state_value = {"closed": 0, "half_open": 1, "open": 2}[breaker["state"]]
        content += (
            "\n# HELP ratelimit_store_circuit_state Store circuit (0=closed, 1=half_open, 2=open)\n"
            "# TYPE ratelimit_store_circuit_state gauge\n"
            f"ratelimit_store_circuit_state{{}} {state_value}\n"
        )
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def rate_limit_stats(admin=Depends(require_admin)) -> dict[str, Any]:
    """Detailed rate limiter statistics (admin only)."""
    return await get_metrics_collector().get_summary()


class MetricsMiddleware:
    """ASGI middleware to collect request metrics.

    Example:
        app.add_middleware(MetricsMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start_time = time.time()
        status_code = 200

        async def wrapped_send(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 200)
            await send(message)

        try:
            await self.app(scope, receive, wrapped_send)
        finally:
            duration = time.time() - start_time
            # Label by route template, never by raw path
            route = scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            await get_metrics_collector().record_request(endpoint, duration, status_code)
