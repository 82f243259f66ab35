"""Unit tests for RedisCorrelationStore (mocked redis client)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from leave_helper.correlation import (
    CorrelationState,
    RedisCorrelationStore,
    correlation_key,
)
from leave_helper.errors import CorrelationStoreError, RemoteCallError

pytestmark = pytest.mark.unit


def _make_client() -> MagicMock:
    client = MagicMock()
    client.setex = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def client() -> MagicMock:
    return _make_client()


@pytest.fixture
def store(client: MagicMock) -> RedisCorrelationStore:
    return RedisCorrelationStore(client)


def test_correlation_key_format():
    assert correlation_key("A1") == "leaveHelper:approval:A1"
    assert correlation_key("A1", "other") == "other:approval:A1"


class TestPut:
    async def test_setex_with_ttl_seconds(self, store: RedisCorrelationStore, client: MagicMock):
        written = await store.put("A1", "evt-1", timedelta(hours=2))

        assert written is True
        client.setex.assert_awaited_once_with("leaveHelper:approval:A1", 7200, "evt-1")

    async def test_sub_second_remainder_rounds_up(
        self, store: RedisCorrelationStore, client: MagicMock
    ):
        await store.put("A1", "evt-1", timedelta(seconds=10, milliseconds=1))
        assert client.setex.await_args.args[1] == 11

        await store.put("A1", "evt-1", timedelta(milliseconds=200))
        assert client.setex.await_args.args[1] == 1

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-5)])
    async def test_non_positive_ttl_is_not_written(
        self, store: RedisCorrelationStore, client: MagicMock, ttl: timedelta
    ):
        written = await store.put("A1", "evt-1", ttl)

        assert written is False
        client.setex.assert_not_awaited()

    async def test_namespace_is_applied(self, client: MagicMock):
        store = RedisCorrelationStore(client, namespace="tenant-x")

        await store.put("A1", "evt-1", timedelta(minutes=1))

        assert client.setex.await_args.args[0] == "tenant-x:approval:A1"

    async def test_redis_error_raises_store_error(
        self, store: RedisCorrelationStore, client: MagicMock
    ):
        client.setex.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(CorrelationStoreError) as exc_info:
            await store.put("A1", "evt-1", timedelta(minutes=1))

        assert isinstance(exc_info.value, RemoteCallError)
        assert exc_info.value.operation == "correlation_put"
        assert "connection refused" in str(exc_info.value)


class TestGet:
    async def test_missing_key_returns_none(self, store: RedisCorrelationStore):
        assert await store.get("A1") is None

    async def test_returns_str_value(self, store: RedisCorrelationStore, client: MagicMock):
        client.get.return_value = "evt-1"

        assert await store.get("A1") == "evt-1"
        client.get.assert_awaited_once_with("leaveHelper:approval:A1")

    async def test_decodes_bytes_value(self, store: RedisCorrelationStore, client: MagicMock):
        client.get.return_value = b"evt-1"
        assert await store.get("A1") == "evt-1"

    async def test_redis_error_is_distinct_from_absent(
        self, store: RedisCorrelationStore, client: MagicMock
    ):
        client.get.side_effect = RedisConnectionError("timeout")

        with pytest.raises(CorrelationStoreError) as exc_info:
            await store.get("A1")

        assert exc_info.value.operation == "correlation_get"


class TestLookup:
    async def test_absent(self, store: RedisCorrelationStore):
        lookup = await store.lookup("A1")

        assert lookup.state is CorrelationState.ABSENT
        assert lookup.event_id is None
        assert lookup.cached is False

    async def test_cached(self, store: RedisCorrelationStore, client: MagicMock):
        client.get.return_value = "evt-1"

        lookup = await store.lookup("A1")

        assert lookup.state is CorrelationState.CACHED
        assert lookup.event_id == "evt-1"
        assert lookup.cached is True


class TestLifecycle:
    async def test_ping(self, store: RedisCorrelationStore):
        assert await store.ping() is True

    async def test_ping_failure_raises(self, store: RedisCorrelationStore, client: MagicMock):
        client.ping.side_effect = RedisConnectionError("refused")

        with pytest.raises(CorrelationStoreError):
            await store.ping()

    async def test_aclose_only_closes_owned_client(self, client: MagicMock):
        await RedisCorrelationStore(client).aclose()
        client.aclose.assert_not_awaited()

        await RedisCorrelationStore(client, owns_client=True).aclose()
        client.aclose.assert_awaited_once()

    def test_from_url_rejects_bad_scheme(self):
        with pytest.raises(ValueError):
            RedisCorrelationStore.from_url("http://localhost:6379/0")

    def test_from_url_sets_namespace(self):
        store = RedisCorrelationStore.from_url("redis://localhost:6379/0", namespace="ns")
        assert store.key_for("A1") == "ns:approval:A1"
