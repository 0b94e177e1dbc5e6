from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class Speaker(str, Enum):
    SPEAKER_A = "SpeakerA"
    SPEAKER_B = "SpeakerB"
    HUMAN = "Human"

    @property
    def is_machine(self) -> bool:
        return self is not Speaker.HUMAN


MACHINE_SPEAKERS = (Speaker.SPEAKER_A, Speaker.SPEAKER_B)


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    order: int = Field(ge=1)
    speaker: Speaker
    text: str
    # Display-only; ordering and identity come from `order`.
    created_at: datetime


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    dormant_start_hour: int = Field(default=2, ge=0, le=23)
    dormant_end_hour: int = Field(default=8, ge=0, le=23)
    tick_interval_ms: int = Field(default=300_000, gt=0)


class TurnRow(BaseModel):
    """
    Row shape written by the store and pushed over the broadcast channel.
    """

    model_config = ConfigDict(extra="ignore")

    session_id: str
    message_order: int = Field(ge=1)
    sender: Speaker
    content: str
    timestamp: Optional[datetime] = None

    def to_turn(self, *, fallback_ts: datetime) -> Turn:
        return Turn(
            order=self.message_order,
            speaker=self.sender,
            text=self.content,
            created_at=self.timestamp or fallback_ts,
        )

    @staticmethod
    def from_turn(session_id: str, turn: Turn) -> "TurnRow":
        return TurnRow(
            session_id=session_id,
            message_order=turn.order,
            sender=turn.speaker,
            content=turn.text,
            timestamp=turn.created_at,
        )


_row_adapter = TypeAdapter(TurnRow)


def parse_turn_row(obj: Any) -> TurnRow:
    if isinstance(obj, TurnRow):
        return obj
    if isinstance(obj, (str, bytes)):
        return _row_adapter.validate_json(obj)
    return _row_adapter.validate_python(obj)


class StateChange(BaseModel):
    """
    Emitted to presentation listeners on every observable engine change.
    """

    model_config = ConfigDict(extra="forbid")

    kind: Literal["state"] = "state"
    seq: int = Field(ge=1)
    reason: str
    phase: str
    session_id: str = ""
    topic: str = ""
    is_dormant: bool = False
    typing: Optional[Speaker] = None
    next_speaker: Optional[Speaker] = None
    turn_count: int = 0
    last_order: int = 0
    error: Optional[str] = None
    turn: Optional[Turn] = None

    @model_validator(mode="after")
    def validate_counts(self) -> "StateChange":
        if self.turn_count < 0 or self.last_order < 0:
            raise ValueError("counts must be >= 0")
        return self


def dumps_state_change(ev: StateChange) -> str:
    return json.dumps(ev.model_dump(mode="json", exclude_none=True), separators=(",", ":"), sort_keys=True)
