from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from token_gateway.errors import StoreUnavailableError
from token_gateway.pool.models import (
    ConversationMode,
    Credential,
    RequestState,
)
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.pool.scheduler import PoolScheduler

logger = logging.getLogger("uvicorn.error")


class TokenLockRegistry:
    """Process-wide map of per-credential locks, created on first use."""

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._locks: dict[str, asyncio.Lock] = {}

    async def lock_for(self, token: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(token)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[token] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


class AdmissionTicket:
    def __init__(
        self,
        *,
        credential: Credential,
        mode: ConversationMode,
        registry: CredentialRegistry | None = None,
        lock: asyncio.Lock | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credential = credential
        self.mode = mode
        self._registry = registry
        self._lock = lock
        self._clock = clock
        self._released = False

    @property
    def pooled(self) -> bool:
        return self._registry is not None

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._registry is not None:
                await self._registry.set_request_state(
                    self.credential.token,
                    RequestState(in_progress=False, last_request_at=self._clock()),
                )
        except StoreUnavailableError as exc:
            logger.warning(
                "admission_release_state_failed token=%s error=%s",
                self.credential.label,
                exc,
            )
        finally:
            if self._lock is not None and self._lock.locked():
                self._lock.release()
            logger.debug("admission_released token=%s", self.credential.label)


class Admission:
    """Hands out exclusive use of one credential per chat request."""

    def __init__(
        self,
        *,
        scheduler: PoolScheduler,
        registry: CredentialRegistry,
        locks: TokenLockRegistry,
        fixed_credential: Credential | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._scheduler = scheduler
        self._registry = registry
        self._locks = locks
        self._fixed_credential = fixed_credential
        self._clock = clock

    async def admit(self, mode: ConversationMode = ConversationMode.AGENT) -> AdmissionTicket:
        if self._fixed_credential is not None:
            return AdmissionTicket(credential=self._fixed_credential, mode=mode)

        credential = await self._scheduler.select_credential(mode)
        lock = await self._locks.lock_for(credential.token)
        await lock.acquire()
        try:
            await self._registry.set_request_state(
                credential.token,
                RequestState(in_progress=True, last_request_at=self._clock()),
            )
        except StoreUnavailableError as exc:
            lock.release()
            logger.warning(
                "admission_claim_failed token=%s error=%s", credential.label, exc
            )
            raise StoreUnavailableError("failed to update credential request state") from exc
        except BaseException:
            lock.release()
            raise

        logger.info(
            "admission_granted token=%s mode=%s tenant_url=%s",
            credential.label,
            mode.value,
            credential.tenant_url,
        )
        return AdmissionTicket(
            credential=credential,
            mode=mode,
            registry=self._registry,
            lock=lock,
            clock=self._clock,
        )

    @asynccontextmanager
    async def claim(
        self, mode: ConversationMode = ConversationMode.AGENT
    ) -> AsyncIterator[AdmissionTicket]:
        ticket = await self.admit(mode)
        try:
            yield ticket
        finally:
            await ticket.release()
