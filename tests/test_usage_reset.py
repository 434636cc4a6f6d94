from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import pytest

from token_gateway.pool import usage_reset
from token_gateway.pool.models import ConversationMode
from token_gateway.pool.registry import CredentialRegistry
from token_gateway.pool.store import InMemoryStateStore
from token_gateway.pool.usage_reset import UsageResetScheduler, next_monthly_run


@pytest.mark.parametrize(
    ("now", "expected"),
    [
        (datetime(2026, 3, 15, 12, 0), datetime(2026, 4, 1, 0, 1)),
        (datetime(2026, 3, 1, 0, 0, 30), datetime(2026, 3, 1, 0, 1)),
        (datetime(2026, 3, 1, 0, 1), datetime(2026, 4, 1, 0, 1)),
        (datetime(2026, 12, 31, 23, 59), datetime(2027, 1, 1, 0, 1)),
    ],
)
def test_next_monthly_run(now: datetime, expected: datetime) -> None:
    assert next_monthly_run(now) == expected


def test_run_once_zeroes_every_counter() -> None:
    async def _run() -> tuple[int, list[tuple[int, int, int]]]:
        registry = CredentialRegistry(InMemoryStateStore())
        for token in ("token-reset-a1", "token-reset-b1"):
            await registry.save(token, "https://d1/")
            await registry.increment_usage(token, ConversationMode.AGENT)
            await registry.increment_usage(token, ConversationMode.CHAT)
        scheduler = UsageResetScheduler(registry=registry, enabled=False)
        reset = await scheduler.run_once()
        usages = []
        for token in ("token-reset-a1", "token-reset-b1"):
            usage = await registry.get_usage(token)
            usages.append((usage.total, usage.chat, usage.agent))
        return reset, usages

    reset, usages = asyncio.run(_run())
    assert reset == 2
    assert usages == [(0, 0, 0), (0, 0, 0)]


def test_start_is_noop_when_disabled_and_stop_cancels_task() -> None:
    async def _run() -> tuple[bool, bool]:
        registry = CredentialRegistry(InMemoryStateStore())
        disabled = UsageResetScheduler(registry=registry, enabled=False)
        await disabled.start()
        idle = disabled._task is None

        enabled = UsageResetScheduler(registry=registry, enabled=True)
        await enabled.start()
        await asyncio.sleep(0)
        assert enabled.status.next_run is not None
        await enabled.stop()
        return idle, enabled._task is None

    assert asyncio.run(_run()) == (True, True)


class _FlakyRegistry(CredentialRegistry):
    def __init__(self) -> None:
        super().__init__(InMemoryStateStore())
        self.calls = 0

    async def tokens(self) -> list[str]:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("listing exploded")
        return []


def test_failed_run_is_logged_and_loop_keeps_going(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    real_sleep = asyncio.sleep

    async def _fast_sleep(delay: float) -> None:
        await real_sleep(0)

    monkeypatch.setattr(usage_reset.asyncio, "sleep", _fast_sleep)
    caplog.set_level(logging.WARNING, logger="uvicorn.error")

    async def _run() -> tuple[int, int]:
        registry = _FlakyRegistry()
        scheduler = UsageResetScheduler(
            registry=registry,
            logger=logging.getLogger("uvicorn.error"),
            enabled=True,
        )
        await scheduler.start()
        for _ in range(100):
            await real_sleep(0)
            if registry.calls >= 2:
                break
        await scheduler.stop()
        return registry.calls, scheduler.status.last_reset_count

    calls, last_reset_count = asyncio.run(_run())
    assert calls >= 2
    assert last_reset_count == 0
    assert "usage_reset_run_failed error=listing exploded" in caplog.text
