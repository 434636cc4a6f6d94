from __future__ import annotations

import asyncio
import fnmatch
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Protocol

from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError

from token_gateway.errors import StoreUnavailableError

if TYPE_CHECKING:
    import logging


class StateStore(Protocol):
    async def ping(self) -> None: ...

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def hget(self, key: str, field: str) -> str | None: ...

    async def hset(self, key: str, mapping: dict[str, str]) -> None: ...

    async def hgetall(self, key: str) -> dict[str, str]: ...

    async def hexists(self, key: str, field: str) -> bool: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def close(self) -> None: ...


class InMemoryStateStore:
    """Process-local store; pool state is not shared with other instances."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._strings: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._expires_at: dict[str, float] = {}

    def _prune_locked(self, key: str) -> None:
        until = self._expires_at.get(key)
        if until is not None and time.monotonic() >= until:
            self._expires_at.pop(key, None)
            self._strings.pop(key, None)
            self._hashes.pop(key, None)

    async def ping(self) -> None:
        return None

    async def get(self, key: str) -> str | None:
        async with self._lock:
            self._prune_locked(key)
            return self._strings.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        async with self._lock:
            self._hashes.pop(key, None)
            self._strings[key] = value
            if ttl_seconds:
                self._expires_at[key] = time.monotonic() + float(ttl_seconds)
            else:
                self._expires_at.pop(key, None)

    async def delete(self, key: str) -> int:
        async with self._lock:
            self._prune_locked(key)
            self._expires_at.pop(key, None)
            removed = 0
            if self._strings.pop(key, None) is not None:
                removed = 1
            if self._hashes.pop(key, None) is not None:
                removed = 1
            return removed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            self._prune_locked(key)
            return key in self._strings or key in self._hashes

    async def incr(self, key: str) -> int:
        async with self._lock:
            self._prune_locked(key)
            try:
                value = int(self._strings.get(key, "0")) + 1
            except ValueError as exc:
                raise StoreUnavailableError(
                    f"value at {key} is not an integer"
                ) from exc
            self._strings[key] = str(value)
            return value

    async def hget(self, key: str, field: str) -> str | None:
        async with self._lock:
            self._prune_locked(key)
            return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        async with self._lock:
            self._prune_locked(key)
            self._hashes.setdefault(key, {}).update(
                {str(name): str(value) for name, value in mapping.items()}
            )

    async def hgetall(self, key: str) -> dict[str, str]:
        async with self._lock:
            self._prune_locked(key)
            return dict(self._hashes.get(key, {}))

    async def hexists(self, key: str, field: str) -> bool:
        async with self._lock:
            self._prune_locked(key)
            return field in self._hashes.get(key, {})

    async def keys(self, pattern: str) -> list[str]:
        async with self._lock:
            for key in list(self._expires_at):
                self._prune_locked(key)
            names = list(self._strings) + list(self._hashes)
            return [name for name in names if fnmatch.fnmatchcase(name, pattern)]

    async def close(self) -> None:
        return None


@contextmanager
def _store_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(
            f"state store {operation} failed for {key}: {exc}"
        ) from exc


class RedisStateStore:
    def __init__(self, redis_client: Any, *, scan_count: int = 200) -> None:
        self._redis = redis_client
        self._scan_count = max(1, int(scan_count))

    async def ping(self) -> None:
        with _store_errors("ping", "-"):
            await self._redis.ping()

    async def get(self, key: str) -> str | None:
        with _store_errors("get", key):
            return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        with _store_errors("set", key):
            if ttl_seconds:
                await self._redis.set(key, value, px=max(1, int(ttl_seconds * 1000)))
            else:
                await self._redis.set(key, value)

    async def delete(self, key: str) -> int:
        with _store_errors("delete", key):
            return int(await self._redis.delete(key))

    async def exists(self, key: str) -> bool:
        with _store_errors("exists", key):
            return int(await self._redis.exists(key)) > 0

    async def incr(self, key: str) -> int:
        with _store_errors("incr", key):
            return int(await self._redis.incr(key))

    async def hget(self, key: str, field: str) -> str | None:
        with _store_errors("hget", key):
            return await self._redis.hget(key, field)

    async def hset(self, key: str, mapping: dict[str, str]) -> None:
        with _store_errors("hset", key):
            await self._redis.hset(key, mapping=mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        with _store_errors("hgetall", key):
            raw = await self._redis.hgetall(key)
        return {str(name): str(value) for name, value in (raw or {}).items()}

    async def hexists(self, key: str, field: str) -> bool:
        with _store_errors("hexists", key):
            return bool(await self._redis.hexists(key, field))

    async def keys(self, pattern: str) -> list[str]:
        output: list[str] = []
        cursor: Any = 0
        with _store_errors("scan", pattern):
            while True:
                cursor, batch = await self._redis.scan(
                    cursor=cursor, match=pattern, count=self._scan_count
                )
                output.extend(str(key) for key in batch)
                if cursor in (0, "0"):
                    break
        return list(dict.fromkeys(output))

    async def close(self) -> None:
        await self._redis.aclose()


def build_state_store(
    *,
    redis_url: str | None,
    logger: logging.Logger | None = None,
) -> StateStore:
    if not redis_url:
        if logger is not None:
            logger.warning(
                "state_store_in_memory reason=redis_url_unset shared_across_instances=false"
            )
        return InMemoryStateStore()
    try:
        client = redis_from_url(redis_url, decode_responses=True)
    except ValueError as exc:
        if logger is not None:
            logger.warning(
                "state_store_redis_unavailable reason=%s fallback=in_memory", str(exc)
            )
        return InMemoryStateStore()
    return RedisStateStore(redis_client=client)
