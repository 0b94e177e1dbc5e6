from __future__ import annotations

from datetime import date
from typing import Callable


TopicSource = Callable[[date], str]


SUBJECTS = (
    "The Nature of Consciousness",
    "Free Will vs Determinism",
    "The Ethics of AI",
    "What Makes Us Human",
    "The Future of Creativity",
    "Love and Connection in the Digital Age",
    "The Meaning of Intelligence",
    "Dreams and Reality",
    "Time and Existence",
    "The Role of Emotion in Decision Making",
)


def date_key(d: date) -> str:
    return d.strftime("%Y-%m-%d")


def _hash_string(s: str) -> int:
    # 31-multiplier string hash kept within signed 32 bits at every step.
    h = 0
    for ch in s:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
        if h >= 0x80000000:
            h -= 0x100000000
    return abs(h)


def topic_for_date(d: date) -> str:
    return SUBJECTS[_hash_string(date_key(d)) % len(SUBJECTS)]
