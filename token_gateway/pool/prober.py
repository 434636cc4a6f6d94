from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from token_gateway.errors import (
    CredentialInvalidError,
    CredentialNotFoundError,
    GatewayError,
    NoValidEndpointError,
    UpstreamUnreachableError,
)
from token_gateway.pool.models import CredentialStatus, mask_token
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.translator.request import probe_request
from token_gateway.translator.upstream import UpstreamClient

logger = logging.getLogger("uvicorn.error")

INVALID_TOKEN_MARKER = b"Invalid token"
_FIRST_CHUNK_BYTES = 1024


@dataclass(slots=True)
class ProbeResult:
    token: str
    old_tenant_url: str
    tenant_url: str

    @property
    def changed(self) -> bool:
        return self.old_tenant_url != self.tenant_url


@dataclass(slots=True)
class ProbeSummary:
    total: int = 0
    updated: int = 0
    disabled: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "success",
            "total": self.total,
            "updated": self.updated,
            "disabled": self.disabled,
        }


class _Verdict:
    INVALID = "invalid"
    HEALTHY = "healthy"
    SKIP = "skip"


class HealthProber:
    """Finds a working shard for a credential, or retires it.

    Candidates are tried one at a time: the stored endpoint first, then the
    configured shard list. A shard answering 401 with ``Invalid token``
    disables the credential and stops the walk.
    """

    def __init__(
        self,
        *,
        registry: CredentialRegistry,
        upstream: UpstreamClient,
        shard_urls: list[str],
        timeout_seconds: float | None = 15.0,
    ) -> None:
        self._registry = registry
        self._upstream = upstream
        self._shard_urls = list(shard_urls)
        self._timeout_seconds = timeout_seconds

    def candidates(self, current_tenant_url: str) -> list[str]:
        ordered: list[str] = []
        if current_tenant_url:
            ordered.append(current_tenant_url)
        for url in self._shard_urls:
            if url not in ordered:
                ordered.append(url)
        return ordered

    async def probe_and_repair(self, token: str) -> ProbeResult:
        credential = await self._registry.get(token)
        if credential is None:
            raise CredentialNotFoundError("credential not found")
        old_tenant_url = credential.tenant_url
        payload = probe_request().to_payload()

        for candidate in self.candidates(old_tenant_url):
            verdict = await self._probe_candidate(token, candidate, payload)
            if verdict == _Verdict.INVALID:
                await self._registry.disable(token)
                logger.info(
                    "probe_disabled token=%s tenant_url=%s",
                    mask_token(token),
                    candidate,
                )
                raise CredentialInvalidError("credential rejected by upstream")
            if verdict == _Verdict.HEALTHY:
                await self._registry.adopt_endpoint(token, candidate)
                logger.info(
                    "probe_adopted token=%s old_tenant_url=%s tenant_url=%s",
                    mask_token(token),
                    old_tenant_url,
                    candidate,
                )
                return ProbeResult(
                    token=token, old_tenant_url=old_tenant_url, tenant_url=candidate
                )

        logger.info("probe_no_endpoint token=%s", mask_token(token))
        raise NoValidEndpointError("no valid tenant url found")

    async def _probe_candidate(
        self, token: str, candidate: str, payload: dict[str, Any]
    ) -> str:
        try:
            response = await self._upstream.open_chat_stream(
                tenant_url=candidate,
                token=token,
                payload=payload,
                timeout=self._timeout_seconds,
            )
        except UpstreamUnreachableError:
            return _Verdict.SKIP
        try:
            if response.status_code not in (200, 401):
                return _Verdict.SKIP
            first_chunk = await _read_first_chunk(response)
            if response.status_code == 401:
                if INVALID_TOKEN_MARKER in first_chunk:
                    return _Verdict.INVALID
                return _Verdict.SKIP
            return _Verdict.HEALTHY if first_chunk else _Verdict.SKIP
        finally:
            await response.aclose()

    async def probe_all(self) -> ProbeSummary:
        tokens = await self._registry.tokens()
        summary = ProbeSummary(total=len(tokens))
        counter_lock = asyncio.Lock()

        async def _probe_one(token: str) -> None:
            try:
                result = await self.probe_and_repair(token)
            except CredentialInvalidError:
                async with counter_lock:
                    summary.disabled += 1
                return
            except GatewayError as exc:
                logger.info(
                    "probe_failed token=%s error=%s", mask_token(token), exc.message
                )
                return
            if result.changed:
                async with counter_lock:
                    summary.updated += 1

        pending: list[asyncio.Task[None]] = []
        for token in tokens:
            credential = await self._registry.get(token)
            if credential is None or credential.status is CredentialStatus.DISABLED:
                continue
            pending.append(
                asyncio.create_task(_probe_one(token), name=f"probe-{mask_token(token)}")
            )
        if pending:
            await asyncio.gather(*pending)
        logger.info(
            "probe_all_complete total=%d updated=%d disabled=%d",
            summary.total,
            summary.updated,
            summary.disabled,
        )
        return summary


async def _read_first_chunk(response: httpx.Response) -> bytes:
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                return chunk[:_FIRST_CHUNK_BYTES]
    except (httpx.HTTPError, httpx.StreamError) as exc:
        logger.debug("probe_read_failed error=%s", exc)
    return b""
