from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .clock import Clock, RealClock
from .config import EngineConfig
from .generator import FakeGenerator, Generator, OpenAIGenerator
from .metrics import Metrics
from .orchestrator import ConversationOrchestrator
from .phrases import make_phrase_picker
from .protocol import Speaker
from .store import InMemoryBroadcast, InMemoryStore
from .topics import topic_for_date
from .trace import TraceSink


def build_generator(cfg: EngineConfig, *, clock: Optional[Clock] = None) -> Generator:
    if cfg.generator_provider == "openai":
        return OpenAIGenerator(
            api_key=cfg.openai_api_key or os.getenv("OPENAI_API_KEY", ""),
            model=cfg.openai_model,
            max_tokens=cfg.openai_max_tokens,
            temperatures={
                Speaker.SPEAKER_A: cfg.speaker_a_temperature,
                Speaker.SPEAKER_B: cfg.speaker_b_temperature,
            },
            names=cfg.speaker_names(),
            timeout_ms=cfg.generator_timeout_ms,
        )
    return FakeGenerator(clock=clock)


@dataclass
class Engine:
    """Everything one process needs to serve a conversation."""

    cfg: EngineConfig
    clock: Clock
    metrics: Metrics
    trace: TraceSink
    broadcast: InMemoryBroadcast
    store: InMemoryStore
    generator: Generator
    orch: ConversationOrchestrator

    async def aclose(self) -> None:
        await self.orch.stop()
        await self.broadcast.aclose()
        await self.generator.aclose()


def build_engine(
    cfg: EngineConfig,
    *,
    clock: Optional[Clock] = None,
    generator: Optional[Generator] = None,
) -> Engine:
    clock = clock or RealClock()
    metrics = Metrics()
    trace = TraceSink()
    broadcast = InMemoryBroadcast(clock=clock)
    store = InMemoryStore(clock=clock, broadcast=broadcast)
    gen = generator or build_generator(cfg, clock=clock)
    orch = ConversationOrchestrator(
        config=cfg,
        clock=clock,
        store=store,
        broadcast=broadcast,
        generator=gen,
        topic_source=topic_for_date,
        pick_phrase=make_phrase_picker(cfg.speaker_names()),
        metrics=metrics,
        trace=trace,
    )
    return Engine(
        cfg=cfg,
        clock=clock,
        metrics=metrics,
        trace=trace,
        broadcast=broadcast,
        store=store,
        generator=gen,
        orch=orch,
    )
