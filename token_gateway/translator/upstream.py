from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from token_gateway.errors import UpstreamUnreachableError
from token_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")

CHAT_STREAM_PATH = "chat-stream"
API_VERSION = "2"
USER_AGENTS: tuple[str, ...] = (
    "augment.intellij/0.160.0 (Mac OS X; aarch64; 15.2) GoLand/2024.3.5",
    "augment.intellij/0.160.0 (Mac OS X; aarch64; 15.2) WebStorm/2024.3.5",
    "augment.intellij/0.160.0 (Mac OS X; aarch64; 15.2) PyCharm/2024.3.5",
)


def chat_stream_url(tenant_url: str) -> str:
    base = tenant_url if tenant_url.endswith("/") else tenant_url + "/"
    return f"{base}{CHAT_STREAM_PATH}"


class UpstreamClient:
    """Thin wrapper over one shared ``httpx.AsyncClient`` for shard calls."""

    def __init__(
        self,
        *,
        connect_timeout_seconds: float = 10.0,
        read_timeout_seconds: float = 300.0,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 10.0,
        proxy_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
    ) -> None:
        client_kwargs: dict[str, Any] = {
            "timeout": httpx.Timeout(
                timeout=None,
                connect=connect_timeout_seconds,
                read=read_timeout_seconds,
                write=write_timeout_seconds,
                pool=pool_timeout_seconds,
            ),
            "limits": httpx.Limits(max_connections=200, max_keepalive_connections=50),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif proxy_url:
            client_kwargs["proxy"] = proxy_url
        self.client = httpx.AsyncClient(**client_kwargs)
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> UpstreamClient:
        return cls(
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            read_timeout_seconds=settings.upstream_read_timeout_seconds,
            write_timeout_seconds=settings.upstream_write_timeout_seconds,
            pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
            proxy_url=settings.proxy_url,
            transport=transport,
        )

    def build_headers(self, token: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "User-Agent": self._rng.choice(USER_AGENTS),
            "x-api-version": API_VERSION,
            "x-request-id": str(uuid.uuid4()),
            "x-request-session-id": str(uuid.uuid4()),
        }

    async def open_chat_stream(
        self,
        *,
        tenant_url: str,
        token: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> httpx.Response:
        """POST the payload and return the response with its body unread.

        The caller owns the response and must ``aclose()`` it.
        """
        url = chat_stream_url(tenant_url)
        request_kwargs: dict[str, Any] = {
            "headers": self.build_headers(token),
            "json": payload,
        }
        if timeout is not None:
            request_kwargs["timeout"] = timeout
        try:
            request = self.client.build_request("POST", url, **request_kwargs)
            return await self.client.send(request, stream=True)
        except (httpx.InvalidURL, httpx.RequestError) as exc:
            logger.warning("upstream_request_failed url=%s error=%s", url, exc)
            raise UpstreamUnreachableError(f"upstream request failed: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()


def parse_retry_after_seconds(
    headers: httpx.Headers, default_seconds: float = 60.0
) -> float:
    raw = headers.get("retry-after")
    if not raw:
        return default_seconds

    value = raw.strip()
    if not value:
        return default_seconds

    try:
        seconds = float(value)
        if seconds > 0:
            return seconds
    except ValueError:
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default_seconds
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    if delta > 0:
        return float(delta)
    return default_seconds
