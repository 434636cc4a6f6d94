from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from token_gateway.errors import StoreUnavailableError
from token_gateway.pool import store as store_module
from token_gateway.pool.store import (
    InMemoryStateStore,
    RedisStateStore,
    build_state_store,
)


def test_in_memory_store_expires_keys_after_ttl(monkeypatch: Any) -> None:
    clock = {"now": 1000.0}
    monkeypatch.setattr(store_module.time, "monotonic", lambda: clock["now"])

    async def _run() -> tuple[str | None, str | None, bool]:
        store = InMemoryStateStore()
        await store.set("token_status:a", "busy", ttl_seconds=5)
        before = await store.get("token_status:a")
        clock["now"] += 5.0
        after = await store.get("token_status:a")
        return before, after, await store.exists("token_status:a")

    before, after, exists = asyncio.run(_run())
    assert before == "busy"
    assert after is None
    assert exists is False


def test_in_memory_store_hash_fields_merge() -> None:
    async def _run() -> tuple[dict[str, str], bool, str | None]:
        store = InMemoryStateStore()
        await store.hset("token:a", {"tenant_url": "https://d1/", "status": "active"})
        await store.hset("token:a", {"status": "disabled"})
        return (
            await store.hgetall("token:a"),
            await store.hexists("token:a", "remark"),
            await store.hget("token:a", "status"),
        )

    fields, has_remark, status = asyncio.run(_run())
    assert fields == {"tenant_url": "https://d1/", "status": "disabled"}
    assert has_remark is False
    assert status == "disabled"


def test_in_memory_store_keys_match_prefix_pattern() -> None:
    async def _run() -> list[str]:
        store = InMemoryStateStore()
        await store.hset("token:a", {"tenant_url": "x"})
        await store.hset("token:b", {"tenant_url": "y"})
        await store.set("token_usage:a", "3")
        return await store.keys("token:*")

    assert sorted(asyncio.run(_run())) == ["token:a", "token:b"]


def test_in_memory_store_incr_and_delete() -> None:
    async def _run() -> tuple[int, int, int, int]:
        store = InMemoryStateStore()
        first = await store.incr("token_usage:a")
        second = await store.incr("token_usage:a")
        removed = await store.delete("token_usage:a")
        missing = await store.delete("token_usage:a")
        return first, second, removed, missing

    assert asyncio.run(_run()) == (1, 2, 1, 0)


def test_in_memory_store_incr_rejects_non_integer() -> None:
    async def _run() -> None:
        store = InMemoryStateStore()
        await store.set("token_usage:a", "many")
        await store.incr("token_usage:a")

    with pytest.raises(StoreUnavailableError):
        asyncio.run(_run())


class _FakeRedis:
    def __init__(self, pages: list[tuple[int, list[str]]]) -> None:
        self._pages = list(pages)
        self.scan_calls: list[dict[str, Any]] = []

    async def scan(self, *, cursor: Any, match: str, count: int) -> tuple[int, list[str]]:
        self.scan_calls.append({"cursor": cursor, "match": match, "count": count})
        return self._pages.pop(0)

    async def get(self, key: str) -> str | None:
        raise RedisConnectionError("connection refused")


def test_redis_store_keys_follow_scan_cursor_until_zero() -> None:
    fake = _FakeRedis([(7, ["token:a", "token:b"]), (0, ["token:b", "token:c"])])
    store = RedisStateStore(redis_client=fake, scan_count=2)

    keys = asyncio.run(store.keys("token:*"))

    assert keys == ["token:a", "token:b", "token:c"]
    assert [call["cursor"] for call in fake.scan_calls] == [0, 7]
    assert all(call["match"] == "token:*" for call in fake.scan_calls)


def test_redis_store_maps_redis_errors() -> None:
    store = RedisStateStore(redis_client=_FakeRedis([]))

    with pytest.raises(StoreUnavailableError) as exc_info:
        asyncio.run(store.get("token_status:a"))

    assert "token_status:a" in exc_info.value.message


def test_build_state_store_without_url_uses_memory(caplog: Any) -> None:
    logger = logging.getLogger("test.state_store")
    with caplog.at_level(logging.WARNING, logger="test.state_store"):
        store = build_state_store(redis_url=None, logger=logger)

    assert isinstance(store, InMemoryStateStore)
    assert "state_store_in_memory" in caplog.text


def test_build_state_store_with_url_uses_redis() -> None:
    store = build_state_store(redis_url="redis://localhost:6379/0")

    assert isinstance(store, RedisStateStore)
