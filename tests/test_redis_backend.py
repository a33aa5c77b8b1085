"""Tests for RedisAdmissionBackend.

Tests cover:
- Redis key format and script arguments (mock client)
- Script reply parsing and error wrapping
- The real Lua scripts, executed by fakeredis' embedded Lua runtime
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from bucketguard.app.exceptions import StoreUnavailableError
from bucketguard.app.services.admission import (
    DECIDE_SCRIPT,
    RELEASE_SCRIPT,
    AdmissionService,
    RateLimitConfig,
    RedisAdmissionBackend,
    ThrottleSnapshot,
)

from .conftest import DEFAULT_CONFIG


@pytest.fixture
def mock_redis():
    """Create a mock Redis client for testing."""
    redis = MagicMock()
    redis.eval = AsyncMock(return_value=[1, 0, b"1860", b"internal"])
    redis.delete = AsyncMock(return_value=5)
    redis.lrange = AsyncMock(return_value=[])

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 3, True])
    redis.pipeline = MagicMock(return_value=pipe)
    redis.pipe = pipe
    return redis


@pytest.fixture
def redis_backend(mock_redis):
    return RedisAdmissionBackend(redis_client=mock_redis, key_prefix="test")


class TestRedisKeys:
    """Key naming."""

    def test_key_format(self, redis_backend):
        keys = redis_backend.make_keys("shop1")

        assert keys.tokens == "test:{shop1}:tokens"
        assert keys.timestamp == "test:{shop1}:timestamp"
        assert keys.state == "test:{shop1}:state"
        assert keys.concurrency == "test:{shop1}:concurrent"
        assert keys.debug == "test:{shop1}:debug"

    def test_tenants_never_share_keys(self, redis_backend):
        assert not set(redis_backend.make_keys("a")) & set(redis_backend.make_keys("b"))


class TestRedisDecide:
    """Decide through a mock client."""

    @pytest.mark.asyncio
    async def test_decide_passes_keys_and_arguments(self, redis_backend, mock_redis, config):
        await redis_backend.decide("shop1", 50.0, config)

        args = mock_redis.eval.call_args[0]
        assert args[0] == DECIDE_SCRIPT
        assert args[1] == 5
        assert args[2:7] == tuple(redis_backend.make_keys("shop1"))
        assert args[7:16] == ("50.0", "100.0", "2000.0", 5, "70.0", "10.0", "0.2", "1.1", "0")
        assert args[16:] == (10, 1000, 2**53 - 1)

    @pytest.mark.asyncio
    async def test_decide_debug_flag(self, redis_backend, mock_redis):
        config = RateLimitConfig.model_validate({**DEFAULT_CONFIG, "debug": True})

        await redis_backend.decide("shop1", 1.0, config)

        assert mock_redis.eval.call_args[0][15] == "1"

    @pytest.mark.asyncio
    async def test_decide_parses_admission(self, redis_backend, config):
        decision = await redis_backend.decide("shop1", 50.0, config)

        assert decision.allowed is True
        assert decision.wait_time_ms == 0
        assert decision.remaining == 1860.0
        assert decision.source == "internal"

    @pytest.mark.asyncio
    async def test_decide_parses_rejection(self, redis_backend, mock_redis, config):
        mock_redis.eval.return_value = [0, 44880, "1920", "external"]

        decision = await redis_backend.decide("shop1", 5000.0, config)

        assert decision.allowed is False
        assert decision.wait_time_ms == 44880
        assert decision.remaining == 1920.0
        assert decision.source == "external"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [None, [1, 0], [1, 0, b"abc", b"internal"], [1, 0, b"10", b"bogus"]],
    )
    async def test_unexpected_reply_raises(self, redis_backend, mock_redis, config, reply):
        mock_redis.eval.return_value = reply

        with pytest.raises(StoreUnavailableError):
            await redis_backend.decide("shop1", 50.0, config)

    @pytest.mark.asyncio
    async def test_connection_error_is_wrapped(self, redis_backend, mock_redis, config):
        mock_redis.eval.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_backend.decide("shop1", 50.0, config)

        assert exc_info.value.operation == "decide"
        assert exc_info.value.tenant == "shop1"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_script_error_is_wrapped(self, redis_backend, mock_redis, config):
        mock_redis.eval.side_effect = ResponseError("WRONGTYPE")

        with pytest.raises(StoreUnavailableError):
            await redis_backend.decide("shop1", 50.0, config)

    @pytest.mark.asyncio
    async def test_service_does_not_retry(self, redis_backend, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("down")
        service = AdmissionService(redis_backend)

        with pytest.raises(StoreUnavailableError):
            await service.decide("shop1", 50, DEFAULT_CONFIG)

        assert mock_redis.eval.await_count == 1


class TestRedisOtherOperations:
    """Release, sync, cleanup and reads through a mock client."""

    @pytest.mark.asyncio
    async def test_release_runs_script(self, redis_backend, mock_redis):
        mock_redis.eval.return_value = 2

        assert await redis_backend.release("shop1") == 2
        args = mock_redis.eval.call_args[0]
        assert args == (RELEASE_SCRIPT, 1, "test:{shop1}:concurrent", 10)

    @pytest.mark.asyncio
    async def test_release_error_is_wrapped(self, redis_backend, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("down")

        with pytest.raises(StoreUnavailableError):
            await redis_backend.release("shop1")

    @pytest.mark.asyncio
    async def test_sync_replaces_snapshot_with_ttl(self, redis_backend, mock_redis):
        snapshot = ThrottleSnapshot(maximum_available=2000, currently_available=100, restore_rate=50)

        await redis_backend.sync("shop1", snapshot)

        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe = mock_redis.pipe
        pipe.delete.assert_called_once_with("test:{shop1}:state")
        pipe.hset.assert_called_once_with(
            "test:{shop1}:state",
            mapping={
                "maximumAvailable": "2000.0",
                "currentlyAvailable": "100.0",
                "restoreRate": "50.0",
            },
        )
        pipe.expire.assert_called_once_with("test:{shop1}:state", 10)
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_error_is_wrapped(self, redis_backend, mock_redis):
        mock_redis.pipe.execute.side_effect = RedisConnectionError("down")
        snapshot = ThrottleSnapshot(maximum_available=2000, currently_available=100, restore_rate=50)

        with pytest.raises(StoreUnavailableError):
            await redis_backend.sync("shop1", snapshot)

    @pytest.mark.asyncio
    async def test_cleanup_deletes_all_keys_at_once(self, redis_backend, mock_redis):
        await redis_backend.cleanup("shop1")

        mock_redis.delete.assert_awaited_once_with(*redis_backend.make_keys("shop1"))

    @pytest.mark.asyncio
    async def test_get_state_parses_values(self, redis_backend, mock_redis):
        mock_redis.pipe.execute.return_value = [
            b"60.5",
            b"1700000000000",
            b"2",
            {b"maximumAvailable": b"2000.0", b"currentlyAvailable": b"100.0", b"restoreRate": b"50.0"},
        ]

        state = await redis_backend.get_state("shop1")

        assert state.consumed_tokens == 60.5
        assert state.last_update_ms == 1700000000000
        assert state.concurrency == 2
        assert state.throttle.restore_rate == 50.0

    @pytest.mark.asyncio
    async def test_get_state_absent_tenant(self, redis_backend, mock_redis):
        mock_redis.pipe.execute.return_value = [None, None, None, {}]

        state = await redis_backend.get_state("shop1")

        assert state.consumed_tokens == 0
        assert state.last_update_ms is None
        assert state.concurrency == 0
        assert state.throttle is None

    @pytest.mark.asyncio
    async def test_get_debug_trace_decodes_entries(self, redis_backend, mock_redis):
        mock_redis.lrange.return_value = [b'{"allowed":false,"cost":5}', b'{"allowed":true,"cost":1}']

        trace = await redis_backend.get_debug_trace("shop1", limit=2)

        mock_redis.lrange.assert_awaited_once_with("test:{shop1}:debug", 0, 1)
        assert trace == [{"allowed": False, "cost": 5}, {"allowed": True, "cost": 1}]

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(self, redis_backend, mock_redis):
        mock_redis.aclose = AsyncMock()

        await redis_backend.close()

        mock_redis.aclose.assert_not_awaited()


# ============================================================================
# Lua scripts on fakeredis
# ============================================================================

@pytest.fixture
def fake_redis():
    fakeredis = pytest.importorskip("fakeredis")
    pytest.importorskip("lupa")
    return fakeredis.FakeAsyncRedis()


@pytest.fixture
def lua_service(fake_redis):
    return AdmissionService(RedisAdmissionBackend(redis_client=fake_redis, key_prefix="lua"))


class TestLuaScripts:
    """The Lua scripts produce the same decisions as the Python arithmetic."""

    @pytest.mark.asyncio
    async def test_fresh_tenant_scenarios(self, lua_service):
        small = await lua_service.decide("a", 50, DEFAULT_CONFIG)
        zero = await lua_service.decide("b", 0, DEFAULT_CONFIG)
        large = await lua_service.decide("c", 5000, DEFAULT_CONFIG)

        assert (small.allowed, small.wait_time_ms) == (True, 0)
        assert small.remaining == pytest.approx(1860)
        assert zero.allowed is True
        assert zero.remaining == pytest.approx(1920)
        assert (large.allowed, large.wait_time_ms) == (False, 44880)
        assert large.remaining == pytest.approx(1920)

    @pytest.mark.asyncio
    async def test_admission_writes_state(self, lua_service, fake_redis):
        await lua_service.decide("shop", 50, DEFAULT_CONFIG)

        state = await lua_service.get_state("shop")

        assert state.consumed_tokens == pytest.approx(60)
        assert state.last_update_ms is not None
        assert state.concurrency == 1
        assert 0 < await fake_redis.ttl("lua:{shop}:concurrent") <= 10
        # Bucket keys never expire on their own
        assert await fake_redis.ttl("lua:{shop}:tokens") == -1

    @pytest.mark.asyncio
    async def test_second_call_is_rejected(self, lua_service):
        await lua_service.decide("shop", 50, DEFAULT_CONFIG)

        decision = await lua_service.decide("shop", 1900, DEFAULT_CONFIG)

        assert decision.allowed is False
        assert decision.wait_time_ms > 0
        assert (await lua_service.get_state("shop")).concurrency == 1

    @pytest.mark.asyncio
    async def test_synced_state_rejects(self, lua_service, fake_redis):
        await lua_service.sync(
            "shop",
            {"maximumAvailable": 2000, "currentlyAvailable": 100, "restoreRate": 100},
        )

        decision = await lua_service.decide("shop", 150, DEFAULT_CONFIG)

        assert decision.allowed is False
        assert decision.wait_time_ms > 0
        assert decision.source == "external"
        assert 0 < await fake_redis.ttl("lua:{shop}:state") <= 10

    @pytest.mark.asyncio
    async def test_malformed_state_falls_back(self, lua_service, fake_redis):
        await fake_redis.hset(
            "lua:{shop}:state",
            mapping={"maximumAvailable": "2000", "currentlyAvailable": "lots", "restoreRate": "100"},
        )

        decision = await lua_service.decide("shop", 50, DEFAULT_CONFIG)

        assert decision.allowed is True
        assert decision.remaining == pytest.approx(1860)
        assert decision.source == "internal-fallback"

    @pytest.mark.asyncio
    async def test_wrong_type_state_falls_back(self, lua_service, fake_redis):
        await fake_redis.set("lua:{shop}:state", '{"maximumAvailable": 2000}')

        decision = await lua_service.decide("shop", 50, DEFAULT_CONFIG)

        assert decision.allowed is True
        assert decision.source == "internal-fallback"

    @pytest.mark.asyncio
    async def test_negative_counter_is_repaired(self, lua_service, fake_redis):
        await fake_redis.set("lua:{shop}:concurrent", -4)

        decision = await lua_service.decide("shop", 50, DEFAULT_CONFIG)

        assert decision.remaining == pytest.approx(1860)
        assert (await lua_service.get_state("shop")).concurrency == 1

    @pytest.mark.asyncio
    async def test_release_floor(self, lua_service, fake_redis):
        assert await lua_service.release("shop") == 0
        assert await fake_redis.exists("lua:{shop}:concurrent") == 0

        await lua_service.decide("shop", 10, DEFAULT_CONFIG)
        assert await lua_service.release("shop") == 0
        assert await lua_service.release("shop") == 0

        await fake_redis.set("lua:{shop}:concurrent", -2)
        assert await lua_service.release("shop") == 0
        assert await fake_redis.get("lua:{shop}:concurrent") == b"0"

    @pytest.mark.asyncio
    async def test_cleanup_then_fresh_decision(self, lua_service):
        config = {**DEFAULT_CONFIG, "debug": True}
        first = await lua_service.decide("shop", 50, config)
        await lua_service.sync(
            "shop",
            {"maximumAvailable": 2000, "currentlyAvailable": 1500, "restoreRate": 100},
        )

        await lua_service.cleanup("shop")

        assert await lua_service.get_debug_trace("shop") == []
        again = await lua_service.decide("shop", 50, config)
        assert again == first

    @pytest.mark.asyncio
    async def test_debug_trace_is_bounded(self, fake_redis):
        service = AdmissionService(
            RedisAdmissionBackend(redis_client=fake_redis, key_prefix="lua", debug_trace_max_entries=2)
        )
        config = {**DEFAULT_CONFIG, "debug": True}
        await service.decide("shop", 50, config)
        await service.decide("shop", 5000, config)
        await service.decide("shop", 7000, config)

        trace = await service.get_debug_trace("shop")

        assert [entry["cost"] for entry in trace] == [7000, 5000]
        assert trace[0]["allowed"] is False
        assert trace[0]["source"] == "internal"
        assert json.dumps(trace)

    @pytest.mark.asyncio
    async def test_overflowing_cost_gets_bounded_wait(self, lua_service):
        config = {**DEFAULT_CONFIG, "debug": True}

        decision = await lua_service.decide("shop", 1e308, config)

        assert decision.allowed is False
        assert decision.wait_time_ms == 2**53 - 1
        assert decision.remaining == pytest.approx(1920)
        trace = await lua_service.get_debug_trace("shop")
        assert trace[0]["adjusted_cost"] is None
        assert trace[0]["wait_time_ms"] == 2**53 - 1
        assert (await lua_service.get_state("shop")).concurrency == 0

    @pytest.mark.asyncio
    async def test_parallel_requests_stay_within_capacity(self, lua_service):
        config = {**DEFAULT_CONFIG, "maxConcurrency": 10}

        results = await asyncio.gather(
            *(lua_service.decide("shop", 100, config) for _ in range(20))
        )

        allowed = [r for r in results if r.allowed]
        assert 0 < len(allowed) < 20
        state = await lua_service.get_state("shop")
        assert state.consumed_tokens <= 2000 - 70
        assert state.concurrency == len(allowed)

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, lua_service):
        await lua_service.decide("store1", 1500, DEFAULT_CONFIG)
        await lua_service.sync(
            "store1",
            {"maximumAvailable": 2000, "currentlyAvailable": 100, "restoreRate": 100},
        )

        decision = await lua_service.decide("store2", 500, DEFAULT_CONFIG)

        assert decision.allowed is True
        assert decision.source == "internal"
