from __future__ import annotations

import os
from dataclasses import dataclass

from .protocol import MACHINE_SPEAKERS, ScheduleConfig, Speaker


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clamp_hour(value: int, default: int) -> int:
    return value if 0 <= value <= 23 else default


@dataclass(frozen=True, slots=True)
class EngineConfig:
    # Dormancy window [start, end) in local hours; start > end crosses midnight.
    dormant_start_hour: int = 2
    dormant_end_hour: int = 8

    # Cadence
    tick_interval_ms: int = 300_000
    schedule_poll_ms: int = 60_000
    announce_window_ms: int = 300_000
    reading_delay_ms: int = 5_000
    initial_typing_delay_ms: int = 1_000
    post_wake_delay_ms: int = 30_000

    # Conversation
    default_speaker: Speaker = Speaker.SPEAKER_A
    history_window: int = 10
    ledger_ttl_ms: int = 0  # 0 = pending echoes never expire

    # Generators (provider-agnostic; tests default to deterministic fakes)
    generator_provider: str = "fake"  # fake | openai
    generator_timeout_ms: int = 20_000
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_max_tokens: int = 150
    speaker_a_temperature: float = 0.8
    speaker_b_temperature: float = 0.9
    speaker_a_name: str = "ChatGPT"
    speaker_b_name: str = "Claude"

    # Process
    structured_logging: bool = False
    log_level: str = "INFO"
    http_host: str = "0.0.0.0"
    http_port: int = 8080

    def schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            dormant_start_hour=self.dormant_start_hour,
            dormant_end_hour=self.dormant_end_hour,
            tick_interval_ms=self.tick_interval_ms,
        )

    def speaker_name(self, speaker: Speaker) -> str:
        if speaker == Speaker.SPEAKER_A:
            return self.speaker_a_name
        if speaker == Speaker.SPEAKER_B:
            return self.speaker_b_name
        return "Human"

    def speaker_names(self) -> dict[Speaker, str]:
        return {s: self.speaker_name(s) for s in MACHINE_SPEAKERS}

    @staticmethod
    def from_env() -> "EngineConfig":
        provider = _getenv_str("DUET_GENERATOR_PROVIDER", "fake").strip().lower()
        if provider not in {"fake", "openai"}:
            provider = "fake"
        raw_default = _getenv_str("DUET_DEFAULT_SPEAKER", Speaker.SPEAKER_A.value).strip()
        default_speaker = Speaker.SPEAKER_B if raw_default == Speaker.SPEAKER_B.value else Speaker.SPEAKER_A
        log_level = _getenv_str("DUET_LOG_LEVEL", "INFO").strip().upper()
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            log_level = "INFO"

        tick_interval_ms = _getenv_int("DUET_TICK_INTERVAL_MS", 300_000)
        if tick_interval_ms <= 0:
            tick_interval_ms = 300_000

        return EngineConfig(
            dormant_start_hour=_clamp_hour(_getenv_int("DUET_DORMANT_START_HOUR", 2), 2),
            dormant_end_hour=_clamp_hour(_getenv_int("DUET_DORMANT_END_HOUR", 8), 8),
            tick_interval_ms=tick_interval_ms,
            schedule_poll_ms=max(1_000, _getenv_int("DUET_SCHEDULE_POLL_MS", 60_000)),
            announce_window_ms=max(0, _getenv_int("DUET_ANNOUNCE_WINDOW_MS", 300_000)),
            reading_delay_ms=max(0, _getenv_int("DUET_READING_DELAY_MS", 5_000)),
            initial_typing_delay_ms=max(0, _getenv_int("DUET_INITIAL_TYPING_DELAY_MS", 1_000)),
            post_wake_delay_ms=max(0, _getenv_int("DUET_POST_WAKE_DELAY_MS", 30_000)),
            default_speaker=default_speaker,
            history_window=max(1, _getenv_int("DUET_HISTORY_WINDOW", 10)),
            ledger_ttl_ms=max(0, _getenv_int("DUET_LEDGER_TTL_MS", 0)),
            generator_provider=provider,
            generator_timeout_ms=max(0, _getenv_int("DUET_GENERATOR_TIMEOUT_MS", 20_000)),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_max_tokens=max(1, _getenv_int("OPENAI_MAX_TOKENS", 150)),
            speaker_a_temperature=_getenv_float("DUET_SPEAKER_A_TEMPERATURE", 0.8),
            speaker_b_temperature=_getenv_float("DUET_SPEAKER_B_TEMPERATURE", 0.9),
            speaker_a_name=_getenv_str("DUET_SPEAKER_A_NAME", "ChatGPT"),
            speaker_b_name=_getenv_str("DUET_SPEAKER_B_NAME", "Claude"),
            structured_logging=_getenv_bool("DUET_STRUCTURED_LOGGING", False),
            log_level=log_level,
            http_host=_getenv_str("DUET_HTTP_HOST", "0.0.0.0"),
            http_port=_getenv_int("DUET_HTTP_PORT", 8080),
        )
