from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from token_gateway.errors import StoreUnavailableError
from token_gateway.pool.models import mask_token
from token_gateway.pool.registry import CredentialRegistry


@dataclass(slots=True)
class UsageResetStatus:
    enabled: bool
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_reset_count: int = 0
    last_error: str | None = None


def next_monthly_run(now: datetime) -> datetime:
    """Return the next 00:01 on the first day of a month strictly after ``now``."""
    candidate = now.replace(day=1, hour=0, minute=1, second=0, microsecond=0)
    if candidate > now:
        return candidate
    if now.month == 12:
        return candidate.replace(year=now.year + 1, month=1)
    return candidate.replace(month=now.month + 1)


class UsageResetScheduler:
    def __init__(
        self,
        *,
        registry: CredentialRegistry,
        logger: logging.Logger | None = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._registry = registry
        self._logger = logger
        self._enabled = enabled
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._status = UsageResetStatus(enabled=enabled)

    @property
    def status(self) -> UsageResetStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="usage-reset-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> int:
        reset = 0
        for token in await self._registry.tokens():
            try:
                await self._registry.reset_usage(token)
            except StoreUnavailableError as exc:
                if self._logger is not None:
                    self._logger.warning(
                        "usage_reset_failed token=%s error=%s", mask_token(token), exc
                    )
                continue
            reset += 1
        self._status.last_run = self._clock()
        self._status.last_reset_count = reset
        self._status.last_error = None
        if self._logger is not None:
            self._logger.info("usage_reset_complete credentials=%d", reset)
        return reset

    async def _run(self) -> None:
        previous_run: datetime | None = None
        while True:
            now = self._clock()
            # An early wakeup must not schedule the same slot twice.
            next_run = next_monthly_run(
                now if previous_run is None else max(now, previous_run)
            )
            previous_run = next_run
            self._status.next_run = next_run
            await asyncio.sleep(max(1.0, (next_run - now).total_seconds()))
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning("usage_reset_run_failed error=%s", str(exc))
