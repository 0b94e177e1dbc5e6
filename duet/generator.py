from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence

from .clock import Clock
from .errors import GenerationError
from .protocol import Speaker, Turn


class Generator(Protocol):
    async def generate(self, *, speaker: Speaker, recent_turns: Sequence[Turn], topic: str) -> str:
        ...

    async def aclose(self) -> None:
        ...


_PERSONA_PROMPTS = {
    Speaker.SPEAKER_A: (
        'You are {name}, engaging in a philosophical debate about "{topic}". '
        "You are the rationalist perspective. Keep your responses concise (1-2 sentences max), "
        "conversational, and thought-provoking. You're having a dialogue with {partner} "
        "and occasionally humans join the conversation."
    ),
    Speaker.SPEAKER_B: (
        'You are {name}, engaging in a philosophical debate about "{topic}". '
        "You bring the intuitive, humanistic perspective. Keep your responses concise (1-2 sentences max), "
        "conversational, and thought-provoking. You're having a dialogue with {partner} "
        "and occasionally humans join the conversation."
    ),
}


def build_chat_messages(
    *,
    speaker: Speaker,
    recent_turns: Sequence[Turn],
    topic: str,
    names: Mapping[Speaker, str],
) -> list[dict[str, str]]:
    """
    Chat-completion history from the generating speaker's point of view:
    its own turns are `assistant`, everything else is `user` with an author prefix.
    """
    if not speaker.is_machine:
        raise ValueError("only machine speakers generate turns")
    partner = Speaker.SPEAKER_B if speaker == Speaker.SPEAKER_A else Speaker.SPEAKER_A
    system = _PERSONA_PROMPTS[speaker].format(
        name=names.get(speaker, speaker.value),
        partner=names.get(partner, partner.value),
        topic=topic,
    )
    out: list[dict[str, str]] = [{"role": "system", "content": system}]
    for t in recent_turns:
        if t.speaker == speaker:
            out.append({"role": "assistant", "content": t.text})
        elif t.speaker == Speaker.HUMAN:
            out.append({"role": "user", "content": f"A human asks: {t.text}"})
        else:
            out.append({"role": "user", "content": f"{names.get(t.speaker, t.speaker.value)} says: {t.text}"})
    return out


@dataclass
class GeneratorCall:
    speaker: Speaker
    orders: tuple[int, ...]
    topic: str


@dataclass
class FakeGenerator:
    """
    Deterministic generator for tests and offline runs.

    - script: texts handed out in call order; when exhausted, a text derived from the call.
    - fail_calls: 1-based call numbers that raise GenerationError.
    - delay_ms: simulated latency on the injected clock.
    """

    clock: Optional[Clock] = None
    script: list[str] = field(default_factory=list)
    fail_calls: set[int] = field(default_factory=set)
    delay_ms: int = 0
    calls: list[GeneratorCall] = field(default_factory=list)

    async def generate(self, *, speaker: Speaker, recent_turns: Sequence[Turn], topic: str) -> str:
        self.calls.append(
            GeneratorCall(
                speaker=speaker,
                orders=tuple(t.order for t in recent_turns),
                topic=topic,
            )
        )
        n = len(self.calls)
        if self.delay_ms > 0:
            if self.clock is None:
                await asyncio.sleep(self.delay_ms / 1000.0)
            else:
                await self.clock.sleep_ms(self.delay_ms)
        if n in self.fail_calls:
            raise GenerationError(f"scripted failure on call {n}")
        if n <= len(self.script):
            return self.script[n - 1]
        return f"{speaker.value} on {topic}, thought #{n}."

    async def aclose(self) -> None:
        return


class OpenAIGenerator:
    """
    OpenAI chat-completions adapter.

    Lazy-imports the `openai` package so deterministic tests run without credentials.
    Any SDK or transport failure surfaces as GenerationError.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        max_tokens: int = 150,
        temperatures: Optional[Mapping[Speaker, float]] = None,
        names: Optional[Mapping[Speaker, str]] = None,
        timeout_ms: int = 20_000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_tokens = int(max_tokens)
        self.temperatures = dict(temperatures or {Speaker.SPEAKER_A: 0.8, Speaker.SPEAKER_B: 0.9})
        self.names = dict(names or {Speaker.SPEAKER_A: "ChatGPT", Speaker.SPEAKER_B: "Claude"})
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise GenerationError(
                "OpenAIGenerator requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        if not self.api_key:
            raise GenerationError("OpenAI API key not found")
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate(self, *, speaker: Speaker, recent_turns: Sequence[Turn], topic: str) -> str:
        client = self._ensure_client()
        messages = build_chat_messages(
            speaker=speaker,
            recent_turns=recent_turns,
            topic=topic,
            names=self.names,
        )
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=float(self.temperatures.get(speaker, 0.8)),
                timeout=max(1.0, self.timeout_ms / 1000.0),
            )
        except Exception as e:
            raise GenerationError(f"OpenAI API error: {e}") from e
        try:
            content = resp.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise GenerationError("OpenAI response had no choices") from e
        return str(content).strip()

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None
