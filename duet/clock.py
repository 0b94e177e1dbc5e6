from __future__ import annotations

import asyncio
import heapq
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Optional, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    def wall_now(self) -> datetime: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def wall_now(self) -> datetime:
        return datetime.now()

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        await asyncio.sleep(ms / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


@dataclass(order=True)
class _Sleeper:
    wake_at: int
    seq: int
    fut: asyncio.Future[None] = field(compare=False)


class FakeClock(Clock):
    """
    Deterministic clock for tests.

    - now_ms() only moves on advance(); wall_now() is wall_start shifted by the same amount.
    - advance() wakes sleepers one deadline at a time, so timers that re-arm while
      the clock is moving (tick chains, minute polls) fire at every intermediate deadline.
    """

    def __init__(
        self,
        *,
        start_ms: int = 0,
        wall_start: Optional[datetime] = None,
        settle_yields: int = 25,
    ) -> None:
        self._start_ms = int(start_ms)
        self._now_ms = int(start_ms)
        self._wall_start = wall_start or datetime(2024, 1, 1, 12, 0, 0)
        self._settle_yields = max(1, int(settle_yields))
        self._seq = 0
        self._sleepers: list[_Sleeper] = []

    def now_ms(self) -> int:
        return self._now_ms

    def wall_now(self) -> datetime:
        return self._wall_start + timedelta(milliseconds=self._now_ms - self._start_ms)

    def pending_sleepers(self) -> int:
        return sum(1 for s in self._sleepers if not s.fut.done())

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        self._seq += 1
        heapq.heappush(self._sleepers, _Sleeper(self._now_ms + int(ms), self._seq, fut))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        main_task = asyncio.ensure_future(awaitable)
        timeout_task = asyncio.create_task(self.sleep_ms(timeout_ms))
        try:
            done, _ = await asyncio.wait(
                {main_task, timeout_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if timeout_task in done and not main_task.done():
                main_task.cancel()
                await asyncio.gather(main_task, timeout_task, return_exceptions=True)
                raise TimeoutError(f"operation timed out after {timeout_ms}ms")

            timeout_task.cancel()
            await asyncio.gather(timeout_task, return_exceptions=True)
            return await main_task
        except asyncio.CancelledError:
            main_task.cancel()
            timeout_task.cancel()
            await asyncio.gather(main_task, timeout_task, return_exceptions=True)
            raise

    async def settle(self) -> None:
        for _ in range(self._settle_yields):
            await asyncio.sleep(0)

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Let tasks scheduled before the advance register their sleepers first.
        await self.settle()
        target = self._now_ms + int(ms)
        while True:
            while self._sleepers and self._sleepers[0].fut.done():
                heapq.heappop(self._sleepers)
            if not self._sleepers or self._sleepers[0].wake_at > target:
                break
            wake_at = self._sleepers[0].wake_at
            self._now_ms = max(self._now_ms, wake_at)
            while self._sleepers and self._sleepers[0].wake_at <= self._now_ms:
                sl = heapq.heappop(self._sleepers)
                if not sl.fut.done():
                    sl.fut.set_result(None)
            await self.settle()
        self._now_ms = target
        await self.settle()
