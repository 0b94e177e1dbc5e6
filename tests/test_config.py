from __future__ import annotations

from duet.config import EngineConfig
from duet.protocol import Speaker


def test_defaults() -> None:
    cfg = EngineConfig()
    assert (cfg.dormant_start_hour, cfg.dormant_end_hour) == (2, 8)
    assert cfg.tick_interval_ms == 300_000
    assert cfg.reading_delay_ms == 5_000
    assert cfg.initial_typing_delay_ms == 1_000
    assert cfg.history_window == 10
    assert cfg.generator_provider == "fake"
    sc = cfg.schedule_config()
    assert sc.dormant_start_hour == 2
    assert sc.tick_interval_ms == 300_000


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("DUET_DORMANT_START_HOUR", "23")
    monkeypatch.setenv("DUET_DORMANT_END_HOUR", "5")
    monkeypatch.setenv("DUET_TICK_INTERVAL_MS", "60000")
    monkeypatch.setenv("DUET_GENERATOR_PROVIDER", "OpenAI")
    monkeypatch.setenv("DUET_DEFAULT_SPEAKER", "SpeakerB")
    monkeypatch.setenv("DUET_LEDGER_TTL_MS", "30000")
    monkeypatch.setenv("DUET_STRUCTURED_LOGGING", "yes")
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4o")
    cfg = EngineConfig.from_env()
    assert cfg.dormant_start_hour == 23
    assert cfg.dormant_end_hour == 5
    assert cfg.tick_interval_ms == 60_000
    assert cfg.generator_provider == "openai"
    assert cfg.default_speaker == Speaker.SPEAKER_B
    assert cfg.ledger_ttl_ms == 30_000
    assert cfg.structured_logging is True
    assert cfg.openai_model == "gpt-4o"


def test_from_env_invalid_values_fall_back(monkeypatch) -> None:
    monkeypatch.setenv("DUET_DORMANT_START_HOUR", "25")
    monkeypatch.setenv("DUET_TICK_INTERVAL_MS", "-5")
    monkeypatch.setenv("DUET_HISTORY_WINDOW", "not-a-number")
    monkeypatch.setenv("DUET_GENERATOR_PROVIDER", "mystery")
    monkeypatch.setenv("DUET_LOG_LEVEL", "chatty")
    monkeypatch.setenv("DUET_SCHEDULE_POLL_MS", "10")
    cfg = EngineConfig.from_env()
    assert cfg.dormant_start_hour == 2
    assert cfg.tick_interval_ms == 300_000
    assert cfg.history_window == 10
    assert cfg.generator_provider == "fake"
    assert cfg.log_level == "INFO"
    assert cfg.schedule_poll_ms == 1_000


def test_speaker_names() -> None:
    cfg = EngineConfig(speaker_a_name="Ada", speaker_b_name="Bo")
    assert cfg.speaker_name(Speaker.SPEAKER_A) == "Ada"
    assert cfg.speaker_name(Speaker.SPEAKER_B) == "Bo"
    assert cfg.speaker_name(Speaker.HUMAN) == "Human"
    assert cfg.speaker_names() == {Speaker.SPEAKER_A: "Ada", Speaker.SPEAKER_B: "Bo"}
