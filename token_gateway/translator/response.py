from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from token_gateway.translator.request import UpstreamChatRequest

logger = logging.getLogger("uvicorn.error")

_CJK_START = 0x4E00
_CJK_END = 0x9FFF


def estimate_tokens(text: str) -> int:
    cjk_count = 0
    latin_chars: list[str] = []
    for char in text:
        if _CJK_START <= ord(char) <= _CJK_END:
            cjk_count += 1
            latin_chars.append(" ")
        else:
            latin_chars.append(char)
    word_count = len("".join(latin_chars).split())
    return word_count + math.floor(0.75 * cjk_count + 0.5)


def estimate_prompt_tokens(upstream_request: UpstreamChatRequest) -> int:
    total = estimate_tokens(upstream_request.message)
    for request_text, response_text in upstream_request.history_pairs():
        total += estimate_tokens(request_text) + estimate_tokens(response_text)
    return total


def completion_id(now: float | None = None) -> str:
    return f"chatcmpl-{int(time.time() if now is None else now)}"


async def iter_upstream_frames(
    upstream: httpx.Response,
) -> AsyncIterator[dict[str, Any]]:
    """Yield ``{text, done}`` objects from the newline-delimited body.

    Blank and unparseable lines are skipped; a transport error mid-body is
    logged and ends iteration.
    """
    try:
        async for line in upstream.aiter_lines():
            payload = line.strip()
            if not payload:
                continue
            try:
                parsed = json.loads(payload)
            except ValueError:
                logger.debug("upstream_frame_unparseable line=%s", payload[:200])
                continue
            if isinstance(parsed, dict):
                yield parsed
    except httpx.RequestError as exc:
        upstream_url = "<unknown>"
        try:
            upstream_url = str(upstream.request.url)
        except RuntimeError:
            pass
        logger.warning(
            "upstream_stream_error url=%s error=%s",
            upstream_url,
            exc,
        )


def _frame_text(frame: dict[str, Any]) -> str:
    text = frame.get("text")
    return text if isinstance(text, str) else ""


def chat_completion_chunk(
    chunk_id: str,
    created: int,
    model: str,
    content: str,
    finish_reason: str | None = None,
) -> bytes:
    chunk = {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }
    return f"data: {json.dumps(chunk, ensure_ascii=False, separators=(',', ':'))}\n\n".encode(
        "utf-8"
    )


DONE_EVENT = b"data: [DONE]\n\n"


async def stream_chat_completion(
    upstream: httpx.Response,
    *,
    model: str,
) -> AsyncIterator[bytes]:
    chunk_id = completion_id()
    finished = False
    async for frame in iter_upstream_frames(upstream):
        done = bool(frame.get("done"))
        yield chat_completion_chunk(
            chunk_id,
            int(time.time()),
            model,
            _frame_text(frame),
            finish_reason="stop" if done else None,
        )
        if done:
            finished = True
            break
    if not finished:
        yield chat_completion_chunk(
            chunk_id, int(time.time()), model, "", finish_reason="stop"
        )
    yield DONE_EVENT


async def collect_chat_completion(
    upstream: httpx.Response,
    *,
    model: str,
    upstream_request: UpstreamChatRequest,
) -> dict[str, Any]:
    parts: list[str] = []
    async for frame in iter_upstream_frames(upstream):
        parts.append(_frame_text(frame))
        if frame.get("done"):
            break
    full_text = "".join(parts)
    prompt_tokens = estimate_prompt_tokens(upstream_request)
    completion_tokens = estimate_tokens(full_text)
    return {
        "id": completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": full_text},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


class ReleasingStreamingResponse(StreamingResponse):
    """``StreamingResponse`` that runs ``on_close`` however the ASGI call ends.

    Starlette can abandon a body iterator that never started, so cleanup tied
    only to the generator's ``finally`` is not enough.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        *,
        on_close: Callable[[], Awaitable[None]],
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


async def to_client_response(
    upstream: httpx.Response,
    *,
    stream: bool,
    model: str,
    upstream_request: UpstreamChatRequest,
    on_complete: Callable[[], Awaitable[None]],
) -> StreamingResponse | JSONResponse:
    """Relay a 200 upstream body to the client.

    ``on_complete`` runs exactly once after the upstream body is closed, on
    every exit path including a client disconnect before the first chunk.
    """
    finished = False

    async def finish() -> None:
        nonlocal finished
        if finished:
            return
        finished = True
        try:
            await upstream.aclose()
        finally:
            await on_complete()

    if stream:

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                async for event in stream_chat_completion(upstream, model=model):
                    yield event
            finally:
                await finish()

        return ReleasingStreamingResponse(
            stream_generator(),
            on_close=finish,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    try:
        body = await collect_chat_completion(
            upstream, model=model, upstream_request=upstream_request
        )
    finally:
        await finish()
    return JSONResponse(content=body)
