"""Tests for the in-memory and Redis window stores."""

import asyncio

import fakeredis
import pytest
import redis

from quotaguard.app.exceptions import StatisticsDataCorruptError, StoreUnavailableError
from quotaguard.app.services.rate_limit import (
    InMemoryWindowStore,
    RedisWindowStore,
    SLIDING_WINDOW_SCRIPT,
)
from quotaguard.app.services.rate_limit.backends import key_ttl_seconds, parse_scores
from tests.conftest import FakeClock, make_failing_redis, make_fake_redis


class TestInMemoryWindowStore:
    """Tests for the in-process store."""

    @pytest.fixture
    def store(self, clock):
        return InMemoryWindowStore(clock=clock)

    @pytest.mark.asyncio
    async def test_admits_until_limit(self, store, clock):
        for expected in (1, 2, 3):
            decision = await store.acquire("k", clock(), 3, 60)
            assert decision.admitted is True
            assert decision.count == expected

        decision = await store.acquire("k", clock(), 3, 60)
        assert decision.admitted is False
        assert decision.count == 3
        assert decision.oldest == clock()

    @pytest.mark.asyncio
    async def test_denied_request_not_recorded(self, store, clock):
        await store.acquire("k", clock(), 1, 60)
        await store.acquire("k", clock(), 1, 60)
        await store.acquire("k", clock(), 1, 60)
        assert await store.entries("k", clock() - 60, clock()) == [clock()]

    @pytest.mark.asyncio
    async def test_entry_at_window_start_still_counts(self, store, clock):
        start = clock()
        await store.acquire("k", start, 1, 60)

        decision = await store.acquire("k", start + 60, 1, 60)
        assert decision.admitted is False

        decision = await store.acquire("k", start + 60.001, 1, 60)
        assert decision.admitted is True
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_zero_limit_denies_on_empty_window(self, store, clock):
        decision = await store.acquire("k", clock(), 0, 60)
        assert decision.admitted is False
        assert decision.count == 0
        assert decision.oldest is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, store, clock):
        await store.acquire("a", clock(), 1, 60)
        decision = await store.acquire("b", clock(), 1, 60)
        assert decision.admitted is True

    @pytest.mark.asyncio
    async def test_reset_clears_key(self, store, clock):
        await store.acquire("k", clock(), 1, 60)
        await store.reset("k")
        await store.reset("k")
        decision = await store.acquire("k", clock(), 1, 60)
        assert decision.admitted is True

    @pytest.mark.asyncio
    async def test_entries_bounds_inclusive(self, store, clock):
        start = clock()
        for offset in (0, 10, 20, 30):
            await store.acquire("k", start + offset, 10, 60)
        assert await store.entries("k", start + 10, start + 20) == [start + 10, start + 20]

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_keys(self, store, clock):
        await store.acquire("short", clock(), 5, 10)
        await store.acquire("long", clock(), 5, 3600)

        clock.advance(key_ttl_seconds(10) + 1)

        assert await store.cleanup() == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self, clock):
        store = InMemoryWindowStore(max_keys=10, clock=clock)
        for i in range(25):
            await store.acquire(f"k{i}", clock(), 5, 60)
        assert len(store) <= 10
        # The most recently used key survives
        assert await store.entries("k24", clock() - 60, clock()) == [clock()]

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_limit(self, store, clock):
        decisions = await asyncio.gather(
            *(store.acquire("k", clock(), 10, 60) for _ in range(50))
        )
        assert sum(d.admitted for d in decisions) == 10

    @pytest.mark.asyncio
    async def test_store_is_local(self, store):
        assert store.name == "local"
        assert store.distributed is False
        assert await store.ping() is True


class TestRedisWindowStore:
    """Tests for the Redis store against a mocked client."""

    @pytest.fixture
    def store(self, fake_redis):
        return RedisWindowStore(redis_client=fake_redis)

    @pytest.mark.asyncio
    async def test_acquire_runs_script_atomically(self, store, fake_redis, clock):
        decision = await store.acquire("rate_limit:u:login", clock(), 3, 60)

        assert decision.admitted is True
        assert decision.count == 1
        assert decision.oldest == clock()

        args = fake_redis.eval.call_args.args
        assert args[0] == SLIDING_WINDOW_SCRIPT
        assert args[1] == 1
        assert args[2] == "rate_limit:u:login"
        assert float(args[4]) == clock() - 60
        assert args[5] == 3
        assert args[6] == 120
        assert fake_redis.ttls["rate_limit:u:login"] == 120

    @pytest.mark.asyncio
    async def test_same_timestamp_requests_get_unique_members(self, store, fake_redis, clock):
        for _ in range(3):
            await store.acquire("k", clock(), 5, 60)
        assert len(fake_redis.zsets["k"]) == 3

    @pytest.mark.asyncio
    async def test_denies_at_limit(self, store, clock):
        await store.acquire("k", clock(), 2, 60)
        await store.acquire("k", clock(), 2, 60)
        decision = await store.acquire("k", clock(), 2, 60)
        assert decision.admitted is False
        assert decision.count == 2

    @pytest.mark.asyncio
    async def test_zero_limit_returns_no_oldest(self, store, clock):
        decision = await store.acquire("k", clock(), 0, 60)
        assert decision.admitted is False
        assert decision.oldest is None

    @pytest.mark.asyncio
    async def test_entries_returns_sorted_scores(self, store, clock):
        start = clock()
        for offset in (5, 0, 2):
            await store.acquire("k", start + offset, 10, 60)
        assert await store.entries("k", start - 60, start + 60) == [start, start + 2, start + 5]

    @pytest.mark.asyncio
    async def test_reset_deletes_key(self, store, fake_redis, clock):
        await store.acquire("k", clock(), 1, 60)
        await store.reset("k")
        fake_redis.delete.assert_called_once_with("k")
        assert "k" not in fake_redis.zsets

    @pytest.mark.asyncio
    async def test_connection_error_raises_store_unavailable(self, clock):
        store = RedisWindowStore(redis_client=make_failing_redis())
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.acquire("k", clock(), 1, 60)
        assert exc_info.value.operation == "acquire"
        assert isinstance(exc_info.value.cause, redis.ConnectionError)

    @pytest.mark.asyncio
    async def test_timeout_raises_store_unavailable(self, clock):
        store = RedisWindowStore(redis_client=make_failing_redis(redis.TimeoutError("slow")))
        with pytest.raises(StoreUnavailableError):
            await store.reset("k")

    @pytest.mark.asyncio
    async def test_wrong_type_is_corrupt_data(self):
        store = RedisWindowStore(
            redis_client=make_failing_redis(redis.ResponseError("WRONGTYPE Operation"))
        )
        with pytest.raises(StatisticsDataCorruptError):
            await store.entries("k", 0, 1)

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(self):
        store = RedisWindowStore(redis_client=make_failing_redis())
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_close_releases_client(self, store, fake_redis):
        await store.close()
        fake_redis.aclose.assert_called_once()
        assert store._redis is None

    @pytest.mark.asyncio
    async def test_two_instances_share_one_window(self, fake_redis):
        clock = FakeClock()
        first = RedisWindowStore(redis_client=fake_redis)
        second = RedisWindowStore(redis_client=fake_redis)

        decisions = await asyncio.gather(
            *(store.acquire("k", clock(), 5, 60) for store in (first, second) * 5)
        )
        assert sum(d.admitted for d in decisions) == 5


class TestSlidingWindowScript:
    """Tests running the Lua script itself against an in-process Redis."""

    @pytest.fixture
    def redis_client(self):
        return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())

    @pytest.fixture
    def store(self, redis_client):
        return RedisWindowStore(redis_client=redis_client)

    @pytest.mark.asyncio
    async def test_login_scenario(self, store, redis_client, clock):
        start = clock()
        for offset, expected in ((0, 1), (1, 2), (2, 3)):
            decision = await store.acquire("k", start + offset, 3, 60)
            assert decision.admitted is True
            assert decision.count == expected

        decision = await store.acquire("k", start + 3, 3, 60)
        assert decision.admitted is False
        assert decision.count == 3
        assert decision.oldest == start

        # An entry exactly at the window start still counts
        decision = await store.acquire("k", start + 60, 3, 60)
        assert decision.admitted is False
        assert await redis_client.zcard("k") == 3

        decision = await store.acquire("k", start + 60.5, 3, 60)
        assert decision.admitted is True
        assert decision.count == 3
        assert decision.oldest == start + 1

    @pytest.mark.asyncio
    async def test_zero_limit_never_writes(self, store, redis_client, clock):
        decision = await store.acquire("k", clock(), 0, 60)

        assert decision.admitted is False
        assert decision.count == 0
        assert decision.oldest is None
        assert await redis_client.exists("k") == 0

    @pytest.mark.asyncio
    async def test_key_ttl_is_twice_the_window(self, store, redis_client, clock):
        await store.acquire("k", clock(), 3, 60)

        ttl = await redis_client.ttl("k")
        assert key_ttl_seconds(60) - 5 <= ttl <= key_ttl_seconds(60)

    @pytest.mark.asyncio
    async def test_oldest_keeps_fractional_seconds(self, store, clock):
        first = clock() + 0.123456
        await store.acquire("k", first, 1, 60)

        decision = await store.acquire("k", first + 1, 1, 60)

        assert decision.admitted is False
        assert decision.oldest == pytest.approx(first, abs=1e-6)

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_exceed_limit(self, redis_client, clock):
        stores = [RedisWindowStore(redis_client=redis_client) for _ in range(3)]

        decisions = await asyncio.gather(
            *(stores[i % 3].acquire("k", clock(), 10, 60) for i in range(30))
        )

        assert sum(d.admitted for d in decisions) == 10
        assert await redis_client.zcard("k") == 10

    @pytest.mark.asyncio
    async def test_entries_and_reset(self, store, redis_client, clock):
        start = clock()
        for offset in (0, 10, 20):
            await store.acquire("k", start + offset, 10, 60)

        assert await store.entries("k", start + 5, start + 20) == [start + 10, start + 20]

        await store.reset("k")
        assert await redis_client.exists("k") == 0


class TestParseScores:
    """Tests for validating stored sorted set payloads."""

    def test_valid_payload(self):
        assert parse_scores("k", [(b"b", 2.0), (b"a", "1.5")]) == [1.5, 2.0]

    def test_none_is_empty(self):
        assert parse_scores("k", None) == []

    def test_non_list_payload(self):
        with pytest.raises(StatisticsDataCorruptError):
            parse_scores("k", b"garbage")

    def test_malformed_entry(self):
        with pytest.raises(StatisticsDataCorruptError):
            parse_scores("k", [(b"a", "not-a-number")])

    def test_non_finite_score(self):
        with pytest.raises(StatisticsDataCorruptError):
            parse_scores("k", [(b"a", float("nan"))])

    def test_unexpected_shape(self):
        with pytest.raises(StatisticsDataCorruptError):
            parse_scores("k", [b"a"])
