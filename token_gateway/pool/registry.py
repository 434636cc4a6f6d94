from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from token_gateway.errors import CredentialNotFoundError, StoreUnavailableError
from token_gateway.pool.models import (
    COOL_STATUS_KEY_PREFIX,
    CREDENTIAL_KEY_PREFIX,
    REQUEST_STATUS_KEY_PREFIX,
    ConversationMode,
    CoolState,
    Credential,
    CredentialStatus,
    CredentialUsage,
    CredentialView,
    RequestState,
    credential_key,
    mask_token,
    token_from_credential_key,
    usage_key,
)
from token_gateway.pool.store import StateStore

logger = logging.getLogger("uvicorn.error")


class CredentialItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = ""
    tenant_url: str = Field(default="", alias="tenantUrl")


@dataclass(slots=True)
class AddResult:
    total: int
    success_count: int
    failed_tokens: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "success",
            "total": self.total,
            "success_count": self.success_count,
        }
        if self.failed_tokens:
            payload["failed_tokens"] = list(self.failed_tokens)
            payload["failed_count"] = len(self.failed_tokens)
        return payload


@dataclass(slots=True)
class CredentialPage:
    items: list[CredentialView]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "success",
            "tokens": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class CredentialRegistry:
    def __init__(
        self,
        store: StateStore,
        *,
        request_status_ttl_seconds: int = 3600,
        list_concurrency: int = 10,
    ) -> None:
        self._store = store
        self._request_status_ttl_seconds = max(1, int(request_status_ttl_seconds))
        self._list_concurrency = max(1, int(list_concurrency))

    @property
    def store(self) -> StateStore:
        return self._store

    async def tokens(self) -> list[str]:
        keys = await self._store.keys(f"{CREDENTIAL_KEY_PREFIX}*")
        return [token_from_credential_key(key) for key in keys]

    async def get(self, token: str) -> Credential | None:
        fields = await self._store.hgetall(credential_key(token))
        if not fields:
            return None
        return _credential_from_fields(token, fields)

    async def save(self, token: str, tenant_url: str) -> bool:
        key = credential_key(token)
        if await self._store.exists(key):
            return False
        await self._store.hset(
            key,
            {
                "tenant_url": tenant_url,
                "status": CredentialStatus.ACTIVE.value,
                "remark": "",
            },
        )
        return True

    async def add(self, items: Iterable[CredentialItem]) -> AddResult:
        batch = list(items)
        success_count = 0
        failed: list[str] = []
        for item in batch:
            token = item.token.strip()
            tenant_url = item.tenant_url.strip()
            if not token or not _is_http_url(tenant_url):
                failed.append(item.token)
                continue
            try:
                created = await self.save(token, tenant_url)
            except StoreUnavailableError as exc:
                logger.warning(
                    "credential_add_failed token=%s error=%s", mask_token(token), exc
                )
                failed.append(item.token)
                continue
            if created:
                logger.info(
                    "credential_added token=%s tenant_url=%s",
                    mask_token(token),
                    tenant_url,
                )
            success_count += 1
        return AddResult(
            total=len(batch), success_count=success_count, failed_tokens=failed
        )

    async def list_credentials(
        self, page: int = 1, page_size: int = 0
    ) -> CredentialPage:
        page = max(1, int(page))
        page_size = max(0, int(page_size))
        tokens = await self.tokens()
        semaphore = asyncio.Semaphore(self._list_concurrency)

        async def _load(token: str) -> CredentialView | None:
            async with semaphore:
                try:
                    return await self._view(token)
                except (StoreUnavailableError, ValueError) as exc:
                    logger.debug(
                        "credential_list_skip token=%s error=%s",
                        mask_token(token),
                        exc,
                    )
                    return None

        rows = await asyncio.gather(*(_load(token) for token in tokens))
        items = [row for row in rows if row is not None]
        total = len(items)
        total_pages = 1
        if page_size > 0:
            total_pages = math.ceil(total / page_size)
            if total_pages > 0 and page > total_pages:
                page = total_pages
            start = (page - 1) * page_size
            items = items[start : start + page_size]
        return CredentialPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )

    async def _view(self, token: str) -> CredentialView | None:
        fields = await self._store.hgetall(credential_key(token))
        tenant_url = fields.get("tenant_url")
        if not tenant_url:
            return None
        if fields.get("status") == CredentialStatus.DISABLED.value:
            return None
        cool_state = await self.get_cool_state(token)
        usage = await self.get_usage(token)
        return CredentialView(
            token=token,
            tenant_url=tenant_url,
            remark=fields.get("remark", ""),
            usage_count=usage.total,
            chat_usage_count=usage.chat,
            agent_usage_count=usage.agent,
            in_cool=cool_state.in_cool,
            cool_end=cool_state.cool_end if cool_state.in_cool else None,
        )

    async def delete(self, token: str) -> None:
        key = credential_key(token)
        if not await self._store.exists(key):
            raise CredentialNotFoundError("credential not found")
        await self._store.delete(key)
        for derived in (
            usage_key(token),
            usage_key(token, ConversationMode.CHAT),
            usage_key(token, ConversationMode.AGENT),
            f"{REQUEST_STATUS_KEY_PREFIX}{token}",
            f"{COOL_STATUS_KEY_PREFIX}{token}",
        ):
            await self._store.delete(derived)
        logger.info("credential_deleted token=%s", mask_token(token))

    async def update_remark(self, token: str, remark: str) -> None:
        key = credential_key(token)
        if not await self._store.exists(key):
            raise CredentialNotFoundError("credential not found")
        await self._store.hset(key, {"remark": remark})

    async def disable(self, token: str) -> None:
        await self._store.hset(
            credential_key(token), {"status": CredentialStatus.DISABLED.value}
        )

    async def adopt_endpoint(self, token: str, tenant_url: str) -> None:
        # One hash write so status and endpoint never diverge mid-probe.
        await self._store.hset(
            credential_key(token),
            {"tenant_url": tenant_url, "status": CredentialStatus.ACTIVE.value},
        )

    async def migrate_remarks(self) -> int:
        migrated = 0
        for key in await self._store.keys(f"{CREDENTIAL_KEY_PREFIX}*"):
            try:
                if await self._store.hexists(key, "remark"):
                    continue
                await self._store.hset(key, {"remark": ""})
            except StoreUnavailableError as exc:
                logger.warning("remark_migration_failed key=%s error=%s", key, exc)
                continue
            migrated += 1
        logger.info("remark_migration_complete migrated=%d", migrated)
        return migrated

    async def get_request_state(self, token: str) -> RequestState:
        raw = await self._store.get(f"{REQUEST_STATUS_KEY_PREFIX}{token}")
        return RequestState.from_json(raw)

    async def set_request_state(self, token: str, state: RequestState) -> None:
        await self._store.set(
            f"{REQUEST_STATUS_KEY_PREFIX}{token}",
            state.to_json(),
            ttl_seconds=self._request_status_ttl_seconds,
        )

    async def get_cool_state(self, token: str) -> CoolState:
        raw = await self._store.get(f"{COOL_STATUS_KEY_PREFIX}{token}")
        return CoolState.from_json(raw)

    async def start_cooldown(self, token: str, duration_seconds: float) -> CoolState:
        duration = max(1.0, float(duration_seconds))
        state = CoolState(in_cool=True, cool_end=time.time() + duration)
        await self._store.set(
            f"{COOL_STATUS_KEY_PREFIX}{token}", state.to_json(), ttl_seconds=duration
        )
        logger.info(
            "credential_cooldown token=%s duration_seconds=%.1f",
            mask_token(token),
            duration,
        )
        return state

    async def get_usage(self, token: str) -> CredentialUsage:
        return CredentialUsage(
            total=await self._read_counter(usage_key(token)),
            chat=await self._read_counter(usage_key(token, ConversationMode.CHAT)),
            agent=await self._read_counter(usage_key(token, ConversationMode.AGENT)),
        )

    async def increment_usage(self, token: str, mode: ConversationMode) -> None:
        await self._store.incr(usage_key(token, mode))
        await self._store.incr(usage_key(token))

    async def reset_usage(self, token: str) -> None:
        for key in (
            usage_key(token),
            usage_key(token, ConversationMode.CHAT),
            usage_key(token, ConversationMode.AGENT),
        ):
            await self._store.set(key, "0")

    async def _read_counter(self, key: str) -> int:
        raw = await self._store.get(key)
        if raw is None:
            return 0
        try:
            return max(0, int(raw))
        except ValueError:
            return 0


def _credential_from_fields(token: str, fields: dict[str, str]) -> Credential:
    status = CredentialStatus.ACTIVE
    if fields.get("status") == CredentialStatus.DISABLED.value:
        status = CredentialStatus.DISABLED
    return Credential(
        token=token,
        tenant_url=fields.get("tenant_url", ""),
        status=status,
        remark=fields.get("remark", ""),
    )


def _is_http_url(value: str) -> bool:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL:
        return False
    return url.scheme in ("http", "https") and bool(url.host)
