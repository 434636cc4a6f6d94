from __future__ import annotations

import asyncio
import random
from typing import Any, AsyncIterator, Callable

import httpx

from token_gateway.errors import UpstreamUnreachableError
from token_gateway.pool.admission import Admission, AdmissionTicket, TokenLockRegistry
from token_gateway.pool.models import ConversationMode
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.pool.scheduler import PoolScheduler, SchedulerLimits
from token_gateway.pool.store import InMemoryStateStore
from token_gateway.translator.dispatch import ChatDispatcher
from token_gateway.translator.messages import parse_chat_request
from token_gateway.translator.request import to_upstream
from token_gateway.translator.response import to_client_response
from token_gateway.translator.upstream import UpstreamClient

TOKEN = "token-release-01"
SHARD = "https://d1.shard.test/"


class _FailingBody(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        raise httpx.ReadError("connection reset")


class _Pool:
    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.registry = CredentialRegistry(InMemoryStateStore())
        self.locks = TokenLockRegistry()
        scheduler = PoolScheduler(
            self.registry,
            limits=SchedulerLimits(min_request_interval_seconds=0),
            rng=random.Random(3),
        )
        self.admission = Admission(
            scheduler=scheduler, registry=self.registry, locks=self.locks
        )
        self.upstream = UpstreamClient(transport=httpx.MockTransport(handler))

    async def admit(self) -> AdmissionTicket:
        await self.registry.save(TOKEN, SHARD)
        return await self.admission.admit(ConversationMode.CHAT)

    async def lock_held(self) -> bool:
        return (await self.locks.lock_for(TOKEN)).locked()

    async def in_progress(self) -> bool:
        return (await self.registry.get_request_state(TOKEN)).in_progress


def _chat(stream: bool) -> Any:
    return parse_chat_request(
        {
            "model": "augment-chat",
            "stream": stream,
            "messages": [{"role": "user", "content": "hello"}],
        }
    )


def test_error_body_read_failure_releases_ticket() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, stream=_FailingBody())

    async def _run() -> tuple[str, bool, bool, bool]:
        pool = _Pool(handler)
        ticket = await pool.admit()
        dispatcher = ChatDispatcher(registry=pool.registry, upstream=pool.upstream)
        error = ""
        try:
            await dispatcher.dispatch(_chat(stream=False), ticket)
        except UpstreamUnreachableError as exc:
            error = type(exc).__name__
        return error, ticket.released, await pool.lock_held(), await pool.in_progress()

    assert asyncio.run(_run()) == ("UpstreamUnreachableError", True, False, False)


def test_stream_abandoned_before_first_chunk_releases_ticket() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"text":"hi","done":true}\n')

    async def _run() -> tuple[int, bool, bool, bool, bool]:
        pool = _Pool(handler)
        ticket = await pool.admit()
        request = _chat(stream=True)
        upstream = await pool.upstream.open_chat_stream(
            tenant_url=SHARD, token=TOKEN, payload={}
        )
        calls = {"count": 0}

        async def on_complete() -> None:
            calls["count"] += 1
            await ticket.release()

        response = await to_client_response(
            upstream,
            stream=True,
            model=request.model,
            upstream_request=to_upstream(request),
            on_complete=on_complete,
        )

        async def receive() -> dict[str, Any]:
            return {"type": "http.disconnect"}

        async def send(message: dict[str, Any]) -> None:
            await asyncio.sleep(0.05)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "method": "POST",
            "path": "/v1/chat/completions",
            "headers": [],
        }
        try:
            await response(scope, receive, send)
        except OSError:
            pass
        return (
            calls["count"],
            upstream.is_closed,
            ticket.released,
            await pool.lock_held(),
            await pool.in_progress(),
        )

    assert asyncio.run(_run()) == (1, True, True, False, False)


def test_fully_consumed_stream_completes_once() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"text":"hi","done":true}\n')

    async def _run() -> tuple[int, int]:
        pool = _Pool(handler)
        upstream = await pool.upstream.open_chat_stream(
            tenant_url=SHARD, token=TOKEN, payload={}
        )
        request = _chat(stream=True)
        calls = {"count": 0}

        async def on_complete() -> None:
            calls["count"] += 1

        response = await to_client_response(
            upstream,
            stream=True,
            model=request.model,
            upstream_request=to_upstream(request),
            on_complete=on_complete,
        )
        sent: list[dict[str, Any]] = []

        async def receive() -> dict[str, Any]:
            await asyncio.sleep(10)
            return {"type": "http.disconnect"}

        async def send(message: dict[str, Any]) -> None:
            sent.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "method": "POST",
            "path": "/v1/chat/completions",
            "headers": [],
        }
        await response(scope, receive, send)
        bodies = [message for message in sent if message["type"] == "http.response.body"]
        return calls["count"], len(bodies)

    count, bodies = asyncio.run(_run())
    assert count == 1
    assert bodies >= 2
