from __future__ import annotations

import logging

import httpx
from fastapi.responses import JSONResponse, StreamingResponse

from token_gateway.errors import (
    StoreUnavailableError,
    UpstreamStatusError,
    UpstreamUnreachableError,
)
from token_gateway.pool.admission import AdmissionTicket
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.translator.messages import ChatCompletionRequest
from token_gateway.translator.request import to_upstream
from token_gateway.translator.response import to_client_response
from token_gateway.translator.upstream import UpstreamClient, parse_retry_after_seconds

logger = logging.getLogger("uvicorn.error")


class ChatDispatcher:
    """Runs one admitted chat request against its credential's shard.

    The ticket is always released: on an error before the body is relayed,
    or once the relayed body has been fully consumed or abandoned.
    """

    def __init__(
        self,
        *,
        registry: CredentialRegistry,
        upstream: UpstreamClient,
        cooldown_seconds: float = 60.0,
    ) -> None:
        self._registry = registry
        self._upstream = upstream
        self._cooldown_seconds = cooldown_seconds

    async def dispatch(
        self,
        request: ChatCompletionRequest,
        ticket: AdmissionTicket,
    ) -> StreamingResponse | JSONResponse:
        try:
            upstream_request = to_upstream(request)
            await self._charge_usage(ticket)
            credential = ticket.credential
            upstream = await self._upstream.open_chat_stream(
                tenant_url=credential.tenant_url,
                token=credential.token,
                payload=upstream_request.to_payload(),
            )
        except BaseException:
            await ticket.release()
            raise

        if upstream.status_code != 200:
            try:
                body = await self._read_error_body(upstream)
                if upstream.status_code == 429 and ticket.pooled:
                    await self._start_cooldown(ticket, upstream)
            finally:
                await ticket.release()
            logger.warning(
                "upstream_status_error token=%s status=%d",
                ticket.credential.label,
                upstream.status_code,
            )
            raise UpstreamStatusError(upstream.status_code, body)

        logger.info(
            "upstream_dispatched token=%s mode=%s stream=%s history=%d",
            ticket.credential.label,
            upstream_request.mode.value,
            request.stream,
            len(upstream_request.chat_history),
        )
        return await to_client_response(
            upstream,
            stream=request.stream,
            model=request.model,
            upstream_request=upstream_request,
            on_complete=ticket.release,
        )

    async def _charge_usage(self, ticket: AdmissionTicket) -> None:
        if not ticket.pooled:
            return
        try:
            await self._registry.increment_usage(ticket.credential.token, ticket.mode)
        except StoreUnavailableError as exc:
            logger.warning(
                "usage_increment_failed token=%s mode=%s error=%s",
                ticket.credential.label,
                ticket.mode.value,
                exc,
            )

    async def _read_error_body(self, upstream: httpx.Response) -> str:
        try:
            raw = await upstream.aread()
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_error_body_read_failed status=%d error=%s",
                upstream.status_code,
                exc,
            )
            raise UpstreamUnreachableError(
                f"upstream error body read failed: {exc}"
            ) from exc
        finally:
            await upstream.aclose()
        return raw.decode("utf-8", errors="replace")

    async def _start_cooldown(
        self, ticket: AdmissionTicket, upstream: httpx.Response
    ) -> None:
        duration = parse_retry_after_seconds(
            upstream.headers, default_seconds=self._cooldown_seconds
        )
        try:
            await self._registry.start_cooldown(ticket.credential.token, duration)
        except StoreUnavailableError as exc:
            logger.warning(
                "cooldown_start_failed token=%s error=%s", ticket.credential.label, exc
            )
