"""Statistics derived from a key's recorded window entries."""

from typing import Sequence

from quotaguard.app.services.rate_limit.models import RateLimitStatistics

SUB_WINDOW_SECONDS = 60.0


def average_requests_per_minute(timestamps: Sequence[float]) -> float:
    """Average rate over the span covered by the entries.

    The span is floored at one minute, so a single entry (or a burst inside
    one minute) yields exactly the entry count.
    """
    if not timestamps:
        return 0.0
    elapsed_minutes = (max(timestamps) - min(timestamps)) / 60.0
    return len(timestamps) / max(1.0, elapsed_minutes)


def peak_requests_per_minute(timestamps: Sequence[float]) -> int:
    """Largest number of entries inside any rolling one-minute sub-window.

    Forward two-pointer scan over sorted timestamps; a sub-window covers
    [t, t + 60).
    """
    ordered = sorted(timestamps)
    peak = 0
    left = 0
    for right, ts in enumerate(ordered):
        while ts - ordered[left] >= SUB_WINDOW_SECONDS:
            left += 1
        peak = max(peak, right - left + 1)
    return peak


def build_statistics(
    identifier: str,
    policy_name: str,
    timestamps: Sequence[float],
    window_start: float,
    window_end: float,
) -> RateLimitStatistics:
    ordered = sorted(timestamps)
    return RateLimitStatistics(
        identifier=identifier,
        policy_name=policy_name,
        window_start=window_start,
        window_end=window_end,
        request_timestamps=ordered,
        average_requests_per_minute=average_requests_per_minute(ordered),
        peak_requests_per_minute=peak_requests_per_minute(ordered),
    )


def empty_statistics(
    identifier: str, policy_name: str, window_start: float, window_end: float
) -> RateLimitStatistics:
    return RateLimitStatistics(
        identifier=identifier,
        policy_name=policy_name,
        window_start=window_start,
        window_end=window_end,
    )
