from __future__ import annotations

from collections import OrderedDict
from typing import Iterator


class DedupLedger:
    """
    Orders produced locally whose broadcast echo has not been seen yet.

    - mark_pending() must run before the local insert becomes visible to remote ingest.
    - A matching remote event is a duplicate; the ingest path clears the entry.
    - ttl_ms > 0 lets evict_expired() bound growth for echoes that never arrive.
      ttl_ms == 0 keeps entries until cleared.
    """

    def __init__(self, *, ttl_ms: int = 0) -> None:
        if ttl_ms < 0:
            raise ValueError("ttl_ms must be >= 0")
        self._ttl_ms = int(ttl_ms)
        self._marked_at: OrderedDict[int, int] = OrderedDict()

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    def mark_pending(self, order: int, *, now_ms: int = 0) -> None:
        order = int(order)
        self._marked_at.pop(order, None)
        self._marked_at[order] = int(now_ms)

    def is_pending(self, order: int) -> bool:
        return int(order) in self._marked_at

    def clear(self, order: int) -> bool:
        return self._marked_at.pop(int(order), None) is not None

    def reset(self) -> None:
        self._marked_at.clear()

    def evict_expired(self, now_ms: int) -> list[int]:
        if self._ttl_ms <= 0:
            return []
        evicted: list[int] = []
        # Insertion order == mark order, so the oldest entries are at the front.
        while self._marked_at:
            order, marked_at = next(iter(self._marked_at.items()))
            if int(now_ms) - marked_at < self._ttl_ms:
                break
            self._marked_at.popitem(last=False)
            evicted.append(order)
        return evicted

    def pending_orders(self) -> frozenset[int]:
        return frozenset(self._marked_at)

    def __contains__(self, order: object) -> bool:
        return isinstance(order, int) and order in self._marked_at

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._marked_at))

    def __len__(self) -> int:
        return len(self._marked_at)
