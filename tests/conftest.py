"""Shared fixtures for rate limiter tests."""

import logging
from unittest.mock import MagicMock

import pytest
import redis

from quotaguard.app.api.metrics import reset_metrics_collector
from quotaguard.app.services.rate_limit import reset_rate_limit_service


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_fake_redis():
    """Create a mock Redis client that evaluates the sliding window script.

    Sorted sets live in ``redis.zsets`` as {key: {member: score}}. The mock
    ignores the script text and applies the same purge, count and admit
    steps the Lua script performs.
    """
    client = MagicMock()
    client.zsets = {}
    client.ttls = {}

    def oldest_score(zset):
        if not zset:
            return None
        return repr(min(zset.values())).encode()

    async def mock_eval(script, numkeys, key, now, window_start, limit, ttl, member):
        zset = client.zsets.get(key, {})
        start = float(window_start)
        for m in [m for m, score in zset.items() if score < start]:
            del zset[m]
        count = len(zset)
        if count >= int(limit):
            return [0, count, oldest_score(zset)]
        zset[member] = float(now)
        client.zsets[key] = zset
        client.ttls[key] = int(ttl)
        return [1, count + 1, oldest_score(zset)]

    async def mock_zrangebyscore(key, min_score, max_score, withscores=False):
        zset = client.zsets.get(key, {})
        items = [
            (m.encode(), score) for m, score in zset.items()
            if float(min_score) <= score <= float(max_score)
        ]
        return sorted(items, key=lambda item: item[1])

    async def mock_delete(*keys):
        removed = 0
        for key in keys:
            if client.zsets.pop(key, None) is not None:
                removed += 1
            client.ttls.pop(key, None)
        return removed

    async def mock_ping():
        return True

    async def mock_aclose():
        return None

    client.eval = MagicMock(side_effect=mock_eval)
    client.zrangebyscore = MagicMock(side_effect=mock_zrangebyscore)
    client.delete = MagicMock(side_effect=mock_delete)
    client.ping = MagicMock(side_effect=mock_ping)
    client.aclose = MagicMock(side_effect=mock_aclose)
    return client


def make_failing_redis(error: Exception = None):
    """Create a mock Redis client whose every command raises."""
    error = error or redis.ConnectionError("Connection refused")
    client = MagicMock()

    async def fail(*args, **kwargs):
        raise error

    for name in ("eval", "zrangebyscore", "delete", "ping", "aclose"):
        setattr(client, name, MagicMock(side_effect=fail))
    return client


class RecordCollector(logging.Handler):
    """Handler that keeps every record it receives."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def events(self, event):
        return [r for r in self.records if getattr(r, "event", None) == event]


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_rate_limit_service()
    reset_metrics_collector()
    yield
    reset_rate_limit_service()
    reset_metrics_collector()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return make_fake_redis()


@pytest.fixture
def failing_redis():
    return make_failing_redis()


@pytest.fixture
def log_records():
    """Collect records from the rate limiter loggers.

    Attached directly to the loggers because the application's logging
    config stops propagation at the package logger.
    """
    collector = RecordCollector()
    names = (
        "quotaguard.app.services.rate_limit.service",
        "quotaguard.app.services.rate_limit.health",
        "quotaguard.app.services.rate_limit.registry",
    )
    loggers = [logging.getLogger(name) for name in names]
    previous = [log.level for log in loggers]
    for log in loggers:
        log.addHandler(collector)
        log.setLevel(logging.DEBUG)
    yield collector
    for log, level in zip(loggers, previous):
        log.removeHandler(collector)
        log.setLevel(level)
