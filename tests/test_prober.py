from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from token_gateway.errors import (
    CredentialInvalidError,
    CredentialNotFoundError,
    NoValidEndpointError,
)
from token_gateway.pool.models import CredentialStatus
from token_gateway.pool.prober import HealthProber
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.pool.store import InMemoryStateStore
from token_gateway.translator.upstream import UpstreamClient

SHARDS = [f"https://d{index}.shard.test/" for index in (3, 2, 1)]


def _prober(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[HealthProber, CredentialRegistry]:
    registry = CredentialRegistry(InMemoryStateStore())
    upstream = UpstreamClient(transport=httpx.MockTransport(handler))
    prober = HealthProber(registry=registry, upstream=upstream, shard_urls=SHARDS)
    return prober, registry


def test_candidates_put_stored_endpoint_first_without_duplicates() -> None:
    prober, _ = _prober(lambda request: httpx.Response(500))
    assert prober.candidates("https://d2.shard.test/") == [
        "https://d2.shard.test/",
        "https://d3.shard.test/",
        "https://d1.shard.test/",
    ]
    assert prober.candidates("") == SHARDS


def test_probe_adopts_first_healthy_shard() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host == "d2.shard.test":
            return httpx.Response(200, content=b'{"text":"hi","done":false}\n')
        return httpx.Response(503, content=b"unavailable")

    async def _run() -> tuple[Any, Any]:
        prober, registry = _prober(handler)
        await registry.save("token-probe-01", "https://stale.shard.test/")
        result = await prober.probe_and_repair("token-probe-01")
        return result, await registry.get("token-probe-01")

    result, credential = asyncio.run(_run())
    assert seen == [
        "https://stale.shard.test/chat-stream",
        "https://d3.shard.test/chat-stream",
        "https://d2.shard.test/chat-stream",
    ]
    assert result.old_tenant_url == "https://stale.shard.test/"
    assert result.tenant_url == "https://d2.shard.test/"
    assert result.changed is True
    assert credential.tenant_url == "https://d2.shard.test/"
    assert credential.status is CredentialStatus.ACTIVE


def test_invalid_token_on_third_candidate_disables_and_stops() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "d2.shard.test":
            return httpx.Response(401, content=b'{"error":"Invalid token"}')
        return httpx.Response(502)

    async def _run() -> Any:
        prober, registry = _prober(handler)
        await registry.save("token-probe-02", "https://stale.shard.test/")
        with pytest.raises(CredentialInvalidError):
            await prober.probe_and_repair("token-probe-02")
        return await registry.get("token-probe-02")

    credential = asyncio.run(_run())
    assert seen == ["stale.shard.test", "d3.shard.test", "d2.shard.test"]
    assert credential.status is CredentialStatus.DISABLED
    assert credential.tenant_url == "https://stale.shard.test/"


def test_plain_unauthorized_moves_on_to_next_candidate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "d3.shard.test":
            return httpx.Response(401, content=b"wrong shard")
        return httpx.Response(200, content=b"ok")

    async def _run() -> str:
        prober, registry = _prober(handler)
        await registry.save("token-probe-03", "https://d3.shard.test/")
        return (await prober.probe_and_repair("token-probe-03")).tenant_url

    assert asyncio.run(_run()) == "https://d2.shard.test/"


def test_no_healthy_shard_leaves_record_untouched() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "d1.shard.test":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, content=b"")

    async def _run() -> Any:
        prober, registry = _prober(handler)
        await registry.save("token-probe-04", "https://d3.shard.test/")
        with pytest.raises(NoValidEndpointError):
            await prober.probe_and_repair("token-probe-04")
        return await registry.get("token-probe-04")

    credential = asyncio.run(_run())
    assert credential.tenant_url == "https://d3.shard.test/"
    assert credential.status is CredentialStatus.ACTIVE


def test_probe_unknown_token_raises_not_found() -> None:
    prober, _ = _prober(lambda request: httpx.Response(200, content=b"ok"))
    with pytest.raises(CredentialNotFoundError):
        asyncio.run(prober.probe_and_repair("missing-token"))


def test_probe_request_is_minimal_chat_payload() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["headers"] = request.headers
        return httpx.Response(200, content=b"ok")

    async def _run() -> None:
        prober, registry = _prober(handler)
        await registry.save("token-probe-05", "https://d1.shard.test/")
        await prober.probe_and_repair("token-probe-05")

    asyncio.run(_run())
    body = captured["body"]
    assert body["mode"] == "CHAT"
    assert body["tool_definitions"] == []
    assert body["chat_history"] == []
    assert body["blobs"]["checkpoint_id"] is None
    headers = captured["headers"]
    assert headers["authorization"] == "Bearer token-probe-05"
    assert headers["x-api-version"] == "2"
    assert headers["x-request-id"] != headers["x-request-session-id"]


def test_probe_all_counts_updates_and_disables() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        token = request.headers["authorization"].removeprefix("Bearer ")
        if token == "token-dead-0001":
            return httpx.Response(401, content=b"Invalid token")
        if token == "token-move-0001" and request.url.host != "d1.shard.test":
            return httpx.Response(503)
        return httpx.Response(200, content=b"ok")

    async def _run() -> dict[str, Any]:
        prober, registry = _prober(handler)
        await registry.save("token-dead-0001", "https://d3.shard.test/")
        await registry.save("token-move-0001", "https://d3.shard.test/")
        await registry.save("token-stay-0001", "https://d3.shard.test/")
        await registry.save("token-gone-0001", "https://d3.shard.test/")
        await registry.disable("token-gone-0001")
        return (await prober.probe_all()).to_dict()

    summary = asyncio.run(_run())
    assert summary == {"status": "success", "total": 4, "updated": 1, "disabled": 1}


def test_malformed_stored_endpoint_is_skipped_and_probe_all_completes() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        if request.url.host == "d3.shard.test":
            return httpx.Response(200, content=b"ok")
        return httpx.Response(503)

    async def _run() -> tuple[dict[str, Any], Any]:
        prober, registry = _prober(handler)
        await registry.save("token-good-0001", "https://d3.shard.test/")
        await registry.save("token-bad-url-01", "http://[::1/")
        summary = (await prober.probe_all()).to_dict()
        return summary, await registry.get("token-bad-url-01")

    summary, repaired = asyncio.run(_run())
    assert summary == {"status": "success", "total": 2, "updated": 1, "disabled": 0}
    assert repaired.tenant_url == "https://d3.shard.test/"
    assert sorted(seen) == ["d3.shard.test", "d3.shard.test"]
