from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .clock import Clock
from .errors import StoreError
from .protocol import Turn, TurnRow


TurnCallback = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class SessionRecord:
    session_id: str
    date_key: str
    topic: str
    created_at: datetime


class Subscription(Protocol):
    def close(self) -> None: ...


class Broadcast(Protocol):
    def subscribe(self, session_id: str, callback: TurnCallback) -> Subscription: ...


class ConversationStore(Protocol):
    async def get_or_create_session(self, date_key: str, topic: str) -> str: ...

    async def load_session(self, date_key: str) -> tuple[Optional[SessionRecord], list[Turn]]: ...

    async def append_turn(self, session_id: str, turn: Turn) -> None: ...

    async def list_sessions(self) -> list[SessionRecord]: ...

    async def load_turns(self, session_id: str) -> list[Turn]: ...


class _InMemorySubscription:
    def __init__(self, owner: "InMemoryBroadcast", session_id: str, callback: TurnCallback) -> None:
        self._owner = owner
        self.session_id = session_id
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._owner._remove(self)


class InMemoryBroadcast(Broadcast):
    """
    At-least-once insert notifications.

    - Delivery is always asynchronous (never inside publish()), after delay_ms on the clock.
    - copies > 1 simulates redelivery of the same row.
    """

    def __init__(self, *, clock: Clock, delay_ms: int = 0, copies: int = 1) -> None:
        self._clock = clock
        self.delay_ms = max(0, int(delay_ms))
        self.copies = max(1, int(copies))
        self._subs: list[_InMemorySubscription] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self.delivered_total = 0

    def subscribe(self, session_id: str, callback: TurnCallback) -> Subscription:
        sub = _InMemorySubscription(self, session_id, callback)
        self._subs.append(sub)
        return sub

    def _remove(self, sub: _InMemorySubscription) -> None:
        try:
            self._subs.remove(sub)
        except ValueError:
            pass

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        return sum(1 for s in self._subs if session_id is None or s.session_id == session_id)

    def publish(self, session_id: str, payload: dict[str, Any]) -> None:
        for sub in list(self._subs):
            if sub.session_id != session_id:
                continue
            for _ in range(self.copies):
                task = asyncio.create_task(self._deliver(sub, dict(payload)))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sub: _InMemorySubscription, payload: dict[str, Any]) -> None:
        await self._clock.sleep_ms(self.delay_ms)
        if sub.closed:
            return
        self.delivered_total += 1
        sub.callback(payload)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class InMemoryStore(ConversationStore):
    """
    Process-local store honouring the durable-store contract:
    atomic get-or-create per date_key, reads ordered by turn order,
    append rejects a repeated (session, order) pair like a unique constraint.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        broadcast: Optional[InMemoryBroadcast] = None,
        latency_ms: int = 0,
    ) -> None:
        self._clock = clock
        self._broadcast = broadcast
        self.latency_ms = max(0, int(latency_ms))
        self._lock = asyncio.Lock()
        self._sessions_by_date: dict[str, SessionRecord] = {}
        self._sessions_by_id: dict[str, SessionRecord] = {}
        self._turns: dict[str, dict[int, Turn]] = {}
        self._next_id = 0

        # Failure injection.
        self.fail_appends = 0
        self.fail_loads = 0
        self.append_calls = 0
        self.create_calls = 0

    async def _io(self) -> None:
        if self.latency_ms > 0:
            await self._clock.sleep_ms(self.latency_ms)

    def _maybe_fail_load(self) -> None:
        if self.fail_loads > 0:
            self.fail_loads -= 1
            raise StoreError("store unavailable")

    async def get_or_create_session(self, date_key: str, topic: str) -> str:
        self._maybe_fail_load()
        async with self._lock:
            await self._io()
            existing = self._sessions_by_date.get(date_key)
            if existing is not None:
                return existing.session_id
            self._next_id += 1
            self.create_calls += 1
            rec = SessionRecord(
                session_id=f"session-{self._next_id}",
                date_key=date_key,
                topic=topic,
                created_at=self._clock.wall_now(),
            )
            self._sessions_by_date[date_key] = rec
            self._sessions_by_id[rec.session_id] = rec
            self._turns[rec.session_id] = {}
            return rec.session_id

    async def load_session(self, date_key: str) -> tuple[Optional[SessionRecord], list[Turn]]:
        self._maybe_fail_load()
        await self._io()
        rec = self._sessions_by_date.get(date_key)
        if rec is None:
            return (None, [])
        return (rec, self._ordered(rec.session_id))

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        self.append_calls += 1
        await self._io()
        if self.fail_appends > 0:
            self.fail_appends -= 1
            raise StoreError(f"append failed for order {turn.order}")
        rows = self._turns.get(session_id)
        if rows is None:
            raise StoreError(f"unknown session {session_id}")
        if turn.order in rows:
            raise StoreError(f"duplicate order {turn.order} in {session_id}")
        rows[turn.order] = turn
        if self._broadcast is not None:
            row = TurnRow.from_turn(session_id, turn)
            self._broadcast.publish(session_id, row.model_dump(mode="json"))

    async def list_sessions(self) -> list[SessionRecord]:
        await self._io()
        return sorted(self._sessions_by_date.values(), key=lambda r: r.date_key, reverse=True)

    async def load_turns(self, session_id: str) -> list[Turn]:
        await self._io()
        if session_id not in self._turns:
            raise StoreError(f"unknown session {session_id}")
        return self._ordered(session_id)

    def _ordered(self, session_id: str) -> list[Turn]:
        rows = self._turns.get(session_id, {})
        return [rows[o] for o in sorted(rows)]

    def seed_turn(self, session_id: str, turn: Turn) -> None:
        """Insert without notifying subscribers (fixtures, imports)."""
        self._turns.setdefault(session_id, {})[turn.order] = turn
