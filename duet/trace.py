from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Any


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_payload(obj: Any) -> str:
    # Canonical JSON to make hashing stable for replay.
    blob = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True, default=str).encode(
        "utf-8"
    )
    return _sha256_hex(blob)


@dataclass(frozen=True, slots=True)
class TraceEvent:
    seq: int
    t_ms: int
    session_id: str
    phase: str
    event_type: str
    order: int
    payload_hash: str


class TraceSink:
    """
    Ordered record of engine decisions. Two runs over the same clock and inputs
    must produce the same replay_digest().
    """

    def __init__(self, *, max_events: int = 20000) -> None:
        self._seq = 0
        self._events: deque[TraceEvent] = deque(maxlen=int(max_events))

    @property
    def events(self) -> list[TraceEvent]:
        return list(self._events)

    def emit(
        self,
        *,
        t_ms: int,
        session_id: str,
        phase: str,
        event_type: str,
        order: int = 0,
        payload_obj: Any = None,
    ) -> TraceEvent:
        self._seq += 1
        ev = TraceEvent(
            seq=self._seq,
            t_ms=int(t_ms),
            session_id=session_id,
            phase=phase,
            event_type=event_type,
            order=int(order),
            payload_hash=hash_payload(payload_obj),
        )
        self._events.append(ev)
        return ev

    def of_type(self, event_type: str) -> list[TraceEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def replay_digest(self) -> str:
        blob = "|".join(
            f"{e.seq}:{e.t_ms}:{e.session_id}:{e.phase}:{e.event_type}:{e.order}:{e.payload_hash}"
            for e in self._events
        ).encode("utf-8")
        return _sha256_hex(blob)
