"""Delayed callbacks with an injectable clock and sleep.

Every backoff in the fleet (engine retries, supervisor restoration
timeouts) goes through ``Timer`` so tests can replace ``sleep`` with a
recorder and drive time deterministically.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio
from anyio.abc import TaskGroup

from .logging import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass(eq=False, slots=True)
class TimerHandle:
    """Tracked handle for one pending callback."""

    name: str
    delay: float
    due_at: float
    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    fired: bool = False

    def cancel(self) -> None:
        self.scope.cancel()

    @property
    def cancelled(self) -> bool:
        return self.scope.cancel_called and not self.fired

    @property
    def pending(self) -> bool:
        return not self.fired and not self.scope.cancel_called


class Timer:
    """Runs async callbacks after a delay on a caller-owned task group."""

    def __init__(
        self,
        task_group: TaskGroup,
        *,
        sleep: Sleep = anyio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._tg = task_group
        self._sleep = sleep
        self._clock = clock
        self._pending: set[TimerHandle] = set()

    @property
    def pending(self) -> list[TimerHandle]:
        return [handle for handle in self._pending if handle.pending]

    def call_later(
        self,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str = "",
    ) -> TimerHandle:
        handle = TimerHandle(name=name, delay=delay, due_at=self._clock() + delay)
        self._pending.add(handle)
        self._tg.start_soon(self._run, handle, callback)
        return handle

    async def _run(
        self, handle: TimerHandle, callback: Callable[[], Awaitable[None]]
    ) -> None:
        try:
            with handle.scope:
                await self._sleep(handle.delay)
                handle.fired = True
            if handle.fired:
                await callback()
        finally:
            self._pending.discard(handle)

    def cancel_all(self) -> int:
        handles = self.pending
        for handle in handles:
            handle.cancel()
        if handles:
            logger.debug("timer.cancelled", count=len(handles))
        return len(handles)
