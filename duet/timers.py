from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .clock import Clock
from .logs import log_event


TimerAction = Callable[[], Awaitable[None]]


class TimerRegistry:
    """
    Named, cancellable delayed actions owned by one orchestrator.

    - schedule() on an existing name cancels the old entry first (cancel-and-reschedule).
    - An entry leaves the registry the moment it fires, so its action may re-arm the
      same name and a later cancel() never interrupts an action already running.
    """

    def __init__(self, *, clock: Clock, owner: str = "") -> None:
        self._clock = clock
        self._owner = owner
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running: set[asyncio.Task[None]] = set()

    def schedule(self, name: str, delay_ms: int, action: TimerAction) -> None:
        self.cancel(name)
        task = asyncio.create_task(self._fire(name, max(0, int(delay_ms)), action))
        self._tasks[name] = task

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def pending(self, name: str) -> bool:
        return name in self._tasks

    def names(self) -> list[str]:
        return sorted(self._tasks)

    async def _fire(self, name: str, delay_ms: int, action: TimerAction) -> None:
        await self._clock.sleep_ms(delay_ms)
        current = asyncio.current_task()
        if self._tasks.get(name) is current:
            del self._tasks[name]
        if current is not None:
            self._running.add(current)
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_event(
                "timers",
                "action_failed",
                level=logging.ERROR,
                owner=self._owner,
                timer=name,
                error=repr(e),
            )
        finally:
            if current is not None:
                self._running.discard(current)

    async def cancel_all(self, *, include_running: bool = True) -> None:
        tasks: list[asyncio.Task[None]] = list(self._tasks.values())
        self._tasks.clear()
        if include_running:
            current: Optional[asyncio.Task] = asyncio.current_task()
            tasks.extend(t for t in self._running if t is not current)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
