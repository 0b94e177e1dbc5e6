from __future__ import annotations

import bisect
from typing import Iterable, Optional

from .errors import DuplicateOrder
from .ledger import DedupLedger
from .protocol import Turn


class ReconcilingMessageStore:
    """
    Ordered turns currently shown, fed by two racing sources.

    Local inserts are optimistic and raise on a repeated order; remote inserts are
    idempotent and consult the ledger first, so an echo of a local turn is dropped
    no matter which path reached the store first.
    Invariant: strictly ascending by order, no duplicate order, at every observable point.
    """

    def __init__(self, *, ledger: Optional[DedupLedger] = None) -> None:
        self._ledger = ledger if ledger is not None else DedupLedger()
        self._orders: list[int] = []
        self._turns: list[Turn] = []

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    @property
    def highest_order(self) -> int:
        return self._orders[-1] if self._orders else 0

    def _insert_sorted(self, turn: Turn) -> None:
        idx = bisect.bisect_left(self._orders, turn.order)
        self._orders.insert(idx, turn.order)
        self._turns.insert(idx, turn)

    def insert_local(self, turn: Turn) -> None:
        if turn.order in self:
            raise DuplicateOrder(turn.order)
        self._insert_sorted(turn)

    def insert_remote(self, turn: Turn) -> bool:
        if self._ledger.is_pending(turn.order):
            self._ledger.clear(turn.order)
            return False
        if turn.order in self:
            return False
        self._insert_sorted(turn)
        return True

    def replace_all(self, turns: Iterable[Turn]) -> None:
        by_order: dict[int, Turn] = {}
        for t in turns:
            by_order.setdefault(t.order, t)
        self._orders = sorted(by_order)
        self._turns = [by_order[o] for o in self._orders]

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def recent(self, n: int) -> tuple[Turn, ...]:
        if n <= 0:
            return ()
        return tuple(self._turns[-int(n):])

    def __contains__(self, order: object) -> bool:
        if not isinstance(order, int):
            return False
        idx = bisect.bisect_left(self._orders, order)
        return idx < len(self._orders) and self._orders[idx] == order

    def __len__(self) -> int:
        return len(self._turns)
