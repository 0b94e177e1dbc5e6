from __future__ import annotations

from typing import Optional, Sequence

from .protocol import Speaker, Turn


DEFAULT_FIRST_SPEAKER = Speaker.SPEAKER_A


def next_order(turns: Sequence[Turn]) -> int:
    if not turns:
        return 1
    return max(t.order for t in turns) + 1


def other_speaker(speaker: Speaker) -> Speaker:
    if speaker == Speaker.SPEAKER_A:
        return Speaker.SPEAKER_B
    if speaker == Speaker.SPEAKER_B:
        return Speaker.SPEAKER_A
    raise ValueError(f"no alternation partner for {speaker.value}")


def last_machine_turn(turns: Sequence[Turn]) -> Optional[Turn]:
    # Walk by order, not by position, so unsorted input still answers correctly.
    best: Optional[Turn] = None
    for t in turns:
        if not t.speaker.is_machine:
            continue
        if best is None or t.order > best.order:
            best = t
    return best


def next_speaker(turns: Sequence[Turn], *, default: Speaker = DEFAULT_FIRST_SPEAKER) -> Speaker:
    """
    Whose turn it is after `turns`.

    Human interjections are transparent: the speaker after a Human turn is whoever
    would have followed the last machine turn before it.
    """
    last = last_machine_turn(turns)
    if last is None:
        return default
    return other_speaker(last.speaker)
