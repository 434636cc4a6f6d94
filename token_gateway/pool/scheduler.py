from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable

from token_gateway.errors import (
    NoCredentialError,
    PoolExhaustedError,
    StoreUnavailableError,
)
from token_gateway.pool.models import (
    ConversationMode,
    Credential,
    CredentialStatus,
    mask_token,
)
from token_gateway.pool.registry import CredentialRegistry

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class SchedulerLimits:
    chat_usage_limit: int = 3000
    agent_usage_limit: int = 50
    min_request_interval_seconds: float = 3.0

    def quota_for(self, mode: ConversationMode) -> int:
        if mode is ConversationMode.CHAT:
            return self.chat_usage_limit
        return self.agent_usage_limit


@dataclass(slots=True)
class _Candidates:
    available: list[Credential]
    cooling: list[Credential]


class PoolScheduler:
    """Picks one eligible credential for a new conversation.

    Eligible credentials are split into those outside cooldown and those in
    it; a cooling credential is only returned when no other eligible one
    exists. Within a group the choice is uniform random, so independent
    gateway processes spread load without a shared sequence counter.
    """

    def __init__(
        self,
        registry: CredentialRegistry,
        *,
        limits: SchedulerLimits | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._limits = limits or SchedulerLimits()
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    async def select_credential(
        self, mode: ConversationMode = ConversationMode.AGENT
    ) -> Credential:
        try:
            tokens = await self._registry.tokens()
        except StoreUnavailableError as exc:
            logger.warning("scheduler_enumerate_failed error=%s", exc)
            raise NoCredentialError(
                "no credential available, add a credential first"
            ) from exc
        if not tokens:
            raise NoCredentialError("no credential available, add a credential first")

        candidates = await self._collect_candidates(tokens, mode)
        pool = candidates.available or candidates.cooling
        if not pool:
            logger.info(
                "scheduler_pool_exhausted mode=%s credentials=%d",
                mode.value,
                len(tokens),
            )
            raise PoolExhaustedError("too many requests, please retry later")

        chosen = self._rng.choice(pool)
        logger.debug(
            "scheduler_selected token=%s mode=%s available=%d cooling=%d",
            chosen.label,
            mode.value,
            len(candidates.available),
            len(candidates.cooling),
        )
        return chosen

    async def _collect_candidates(
        self, tokens: list[str], mode: ConversationMode
    ) -> _Candidates:
        available: list[Credential] = []
        cooling: list[Credential] = []
        for token in tokens:
            try:
                eligible = await self._eligible(token, mode)
                if eligible is None:
                    continue
                cool_state = await self._registry.get_cool_state(token)
            except (StoreUnavailableError, ValueError) as exc:
                logger.debug(
                    "scheduler_skip token=%s error=%s", mask_token(token), exc
                )
                continue
            if cool_state.in_cool:
                cooling.append(eligible)
            else:
                available.append(eligible)
        return _Candidates(available=available, cooling=cooling)

    async def _eligible(
        self, token: str, mode: ConversationMode
    ) -> Credential | None:
        credential = await self._registry.get(token)
        if credential is None or credential.status is CredentialStatus.DISABLED:
            return None

        request_state = await self._registry.get_request_state(token)
        if request_state.in_progress:
            return None
        since_last = request_state.seconds_since_last_request(self._clock())
        if since_last < self._limits.min_request_interval_seconds:
            return None

        usage = await self._registry.get_usage(token)
        if usage.for_mode(mode) >= self._limits.quota_for(mode):
            return None

        if not credential.tenant_url:
            return None
        return credential
