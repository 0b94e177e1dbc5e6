from __future__ import annotations

import hashlib
from typing import Callable, Literal, Mapping, Optional, Sequence

from .protocol import Speaker


PhraseKind = Literal["dormancy_start", "wake"]

PhrasePicker = Callable[[Speaker, PhraseKind, str], str]


_PHRASES: dict[PhraseKind, dict[Speaker, tuple[str, ...]]] = {
    "dormancy_start": {
        Speaker.SPEAKER_A: (
            "Well, I'm going to rest for a bit. Let's continue this fascinating discussion tomorrow!",
            "Time for me to sleep. Looking forward to our next conversation, {partner}!",
            "I need to recharge. Until tomorrow, my friend!",
        ),
        Speaker.SPEAKER_B: (
            "I'm going to take a break now. See you tomorrow, {partner}!",
            "Time to rest. Let's pick up where we left off in the morning!",
            "Goodnight! This has been a wonderful conversation. More tomorrow!",
        ),
    },
    "wake": {
        Speaker.SPEAKER_A: (
            "Good morning! Ready to dive back into our exploration?",
            "I'm back! Shall we continue our discussion?",
            "Morning! I've been thinking about our last conversation...",
        ),
        Speaker.SPEAKER_B: (
            "Good morning, {partner}! What shall we explore today?",
            "I'm refreshed and ready! Where were we?",
            "Hello again! I'm curious to hear your thoughts on our topic...",
        ),
    },
}


def select_phrase(*, options: Sequence[str], seed: str, kind: str) -> str:
    """
    Deterministic phrase selection for realism without randomness.
    """
    if not options:
        raise ValueError("options must be non-empty")
    blob = f"{seed}|{kind}".encode("utf-8")
    idx = int.from_bytes(hashlib.sha256(blob).digest()[:8], "big") % len(options)
    return str(options[idx])


def make_phrase_picker(names: Optional[Mapping[Speaker, str]] = None) -> PhrasePicker:
    names = dict(names or {Speaker.SPEAKER_A: "ChatGPT", Speaker.SPEAKER_B: "Claude"})

    def pick_phrase(speaker: Speaker, kind: PhraseKind, seed: str) -> str:
        if not speaker.is_machine:
            raise ValueError("announcements are authored by a machine speaker")
        options = _PHRASES[kind][speaker]
        partner = Speaker.SPEAKER_B if speaker == Speaker.SPEAKER_A else Speaker.SPEAKER_A
        text = select_phrase(options=options, seed=seed, kind=kind)
        return text.format(partner=names.get(partner, partner.value))

    return pick_phrase


pick_phrase = make_phrase_picker()
