from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from duet.config import EngineConfig
from duet.engine_state import Phase
from duet.errors import GenerationError, LoadError
from duet.metrics import DUET
from duet.protocol import Speaker
from tests.harness.engine_harness import EngineHarness, alternating, make_turn


TICK = 300_000


def test_empty_session_first_tick_speaker_a_then_typing_b() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        try:
            assert h.orch.state.phase == Phase.ACTIVE
            assert h.orders() == []
            assert h.orch.next_speaker == Speaker.SPEAKER_A

            await h.advance(1_000)
            assert h.orch.is_typing_now() == (True, Speaker.SPEAKER_A)

            await h.advance(TICK - 1_000)
            snap = h.orch.current_snapshot()
            assert [t.order for t in snap] == [1]
            assert snap[0].speaker == Speaker.SPEAKER_A
            assert h.orch.next_speaker == Speaker.SPEAKER_B
            assert h.orch.is_typing_now() == (False, None)

            await h.advance(h.cfg.reading_delay_ms)
            assert h.orch.is_typing_now() == (True, Speaker.SPEAKER_B)

            # Echo of our own insert came back over the broadcast and was suppressed.
            assert len(h.orch.ledger) == 0
            assert h.metrics.get(DUET["echo_suppressed_total"]) == 1
            assert h.metrics.get(DUET["persist_ok_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_turns_alternate_across_ticks() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        try:
            await h.advance(TICK * 4)
            assert h.orders() == [1, 2, 3, 4]
            assert h.speakers() == [
                Speaker.SPEAKER_A,
                Speaker.SPEAKER_B,
                Speaker.SPEAKER_A,
                Speaker.SPEAKER_B,
            ]
            # Each call saw the history that preceded it.
            assert [c.orders for c in h.generator.calls] == [(), (1,), (1, 2), (1, 2, 3)]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_dormancy_mid_alternation_announce_sleep_wake() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(
            wall_start=datetime(2024, 1, 1, 1, 50, 0),
            seed_turns=[make_turn(5, Speaker.SPEAKER_B)],
        )
        try:
            assert h.orch.next_speaker == Speaker.SPEAKER_A

            # 01:55 tick lands inside the announcement window.
            await h.advance_to(datetime(2024, 1, 1, 1, 55, 0))
            snap = h.orch.current_snapshot()
            assert [t.order for t in snap] == [5, 6]
            assert snap[1].speaker == Speaker.SPEAKER_A
            assert h.orch.is_dormant_now() is True
            assert h.orch.state.phase == Phase.WINDING_DOWN
            assert h.generator.calls == []

            await h.advance_to(datetime(2024, 1, 1, 2, 0, 0))
            assert h.orch.state.phase == Phase.DORMANT
            assert h.orch.timers.pending("wake")
            assert not h.orch.timers.pending("tick")

            await h.advance_to(datetime(2024, 1, 1, 7, 59, 0))
            assert h.orders() == [5, 6]
            assert h.generator.calls == []
            assert h.orch.is_typing_now() == (False, None)

            await h.advance_to(datetime(2024, 1, 1, 8, 0, 0))
            snap = h.orch.current_snapshot()
            assert [t.order for t in snap] == [5, 6, 7]
            assert snap[2].speaker == Speaker.SPEAKER_B
            assert h.orch.state.phase == Phase.ACTIVE
            assert h.orch.is_dormant_now() is False
            assert h.orch.next_speaker == Speaker.SPEAKER_A

            await h.advance(h.cfg.post_wake_delay_ms)
            snap = h.orch.current_snapshot()
            assert [t.order for t in snap] == [5, 6, 7, 8]
            assert snap[3].speaker == Speaker.SPEAKER_A
            assert len(h.generator.calls) == 1

            assert h.metrics.get(DUET["dormancy_announced_total"]) == 1
            assert h.metrics.get(DUET["dormancy_entered_total"]) == 1
            assert h.metrics.get(DUET["dormancy_woke_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_reload_inside_announcement_window_does_not_announce_twice() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(
            wall_start=datetime(2024, 1, 1, 1, 50, 0),
            seed_turns=[make_turn(5, Speaker.SPEAKER_B)],
        )
        try:
            await h.advance_to(datetime(2024, 1, 1, 1, 56, 0))
            assert h.orders() == [5, 6]
            assert h.orch.state.phase == Phase.WINDING_DOWN

            await h.orch.load()
            await h.clock.settle()
            assert h.orders() == [5, 6]
            assert h.orch.state.phase == Phase.WINDING_DOWN
            assert h.orch.timers.pending("dormancy_start")
            assert not h.orch.timers.pending("tick")
            assert h.orch.is_typing_now() == (False, None)
            assert h.metrics.get(DUET["dormancy_announced_total"]) == 1

            await h.advance_to(datetime(2024, 1, 1, 2, 0, 0))
            assert h.orch.state.phase == Phase.DORMANT
            assert h.orders() == [5, 6]
            assert h.generator.calls == []
        finally:
            await h.stop()

    asyncio.run(_run())


def test_wake_with_sub_millisecond_wall_clock_enters_dormancy_once() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(
            wall_start=datetime(2024, 1, 1, 7, 58, 0, 500),
            seed_turns=alternating(1),
        )
        try:
            assert h.orch.state.phase == Phase.DORMANT
            await h.advance(119_999)
            await h.clock.settle()
            assert h.orch.state.phase == Phase.DORMANT
            assert h.metrics.get(DUET["dormancy_entered_total"]) == 1

            await h.advance(1)
            assert h.orch.state.phase == Phase.ACTIVE
            assert h.orders() == [1, 2]
            assert h.metrics.get(DUET["dormancy_entered_total"]) == 1
            assert h.metrics.get(DUET["dormancy_woke_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_start_inside_dormant_window_sleeps_without_announcement() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(
            wall_start=datetime(2024, 1, 1, 3, 0, 0),
            seed_turns=alternating(2),
        )
        try:
            assert h.orch.state.phase == Phase.DORMANT
            assert h.orders() == [1, 2]
            await h.advance_to(datetime(2024, 1, 1, 8, 0, 0))
            assert h.orders() == [1, 2, 3]
            assert h.orch.current_snapshot()[-1].speaker == Speaker.SPEAKER_A
        finally:
            await h.stop()

    asyncio.run(_run())


def test_echo_of_local_order_12_is_not_rendered_twice() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(seed_turns=alternating(11), broadcast_delay_ms=300)
        try:
            await h.advance(TICK)
            assert h.orders() == list(range(1, 13))
            assert h.orch.current_snapshot()[-1].speaker == Speaker.SPEAKER_B
            assert h.orch.ledger.pending_orders() == frozenset({12})

            await h.advance(300)
            assert h.orders() == list(range(1, 13))
            assert len(h.orch.ledger) == 0
            assert h.metrics.get(DUET["echo_suppressed_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_redelivered_echo_is_dropped_after_ledger_clears() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(broadcast_copies=2)
        try:
            await h.advance(TICK)
            assert h.orders() == [1]
            assert h.metrics.get(DUET["echo_suppressed_total"]) == 1
            assert h.metrics.get(DUET["redelivery_dropped_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_remote_turn_is_accepted_and_retargets_typing() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(seed_turns=alternating(2))
        try:
            # Next local speaker is A; another client already produced A's turn.
            await h.remote_append(make_turn(3, Speaker.SPEAKER_A, "remote"))
            assert h.orders() == [1, 2, 3]
            assert h.orch.next_speaker == Speaker.SPEAKER_B
            assert h.metrics.get(DUET["remote_accepted_total"]) == 1

            await h.advance(h.cfg.reading_delay_ms)
            assert h.orch.is_typing_now() == (True, Speaker.SPEAKER_B)

            await h.advance(TICK)
            snap = h.orch.current_snapshot()
            assert [t.order for t in snap] == [1, 2, 3, 4]
            assert snap[-1].speaker == Speaker.SPEAKER_B
        finally:
            await h.stop()

    asyncio.run(_run())


def test_remote_payload_for_other_session_or_bad_schema_is_ignored() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        try:
            assert h.orch.ingest_remote({"session_id": "nope", "message_order": 1, "sender": "SpeakerA", "content": "x"}) is False
            assert h.orch.ingest_remote({"session_id": h.orch.session_id, "message_order": 0}) is False
            assert h.orch.ingest_remote("not json") is False
            assert h.orders() == []
            assert h.metrics.get(DUET["foreign_session_total"]) == 1
            assert h.metrics.get(DUET["bad_schema_total"]) == 2
        finally:
            await h.stop()

    asyncio.run(_run())


def test_generation_failure_is_retried_on_next_tick() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(fail_calls={1})
        try:
            await h.advance(TICK)
            assert h.orders() == []
            assert isinstance(h.orch.last_error(), GenerationError)
            assert h.orch.state.phase == Phase.ACTIVE
            assert h.orch.is_typing_now() == (False, None)

            await h.advance(TICK)
            assert h.orders() == [1]
            assert h.orch.current_snapshot()[0].speaker == Speaker.SPEAKER_A
            assert h.orch.last_error() is None
            assert h.metrics.get(DUET["generator_failures_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_empty_generator_text_counts_as_failure() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(script=["   "])
        try:
            await h.advance(TICK)
            assert h.orders() == []
            assert isinstance(h.orch.last_error(), GenerationError)
        finally:
            await h.stop()

    asyncio.run(_run())


def test_generator_timeout_becomes_generation_error() -> None:
    async def _run() -> None:
        cfg = EngineConfig(generator_timeout_ms=20_000)
        h = await EngineHarness.start(cfg=cfg, generator_delay_ms=60_000)
        try:
            await h.advance(TICK + 20_000)
            assert h.orders() == []
            err = h.orch.last_error()
            assert isinstance(err, GenerationError)
            assert "TimeoutError" in str(err)
            assert h.orch.state.phase == Phase.ACTIVE
        finally:
            await h.stop()

    asyncio.run(_run())


def test_slow_generation_skips_overlapping_tick() -> None:
    async def _run() -> None:
        cfg = EngineConfig(generator_timeout_ms=0)
        h = await EngineHarness.start(cfg=cfg, generator_delay_ms=TICK + 50_000)
        try:
            await h.advance(TICK)
            assert h.orch.state.phase == Phase.EMITTING
            assert h.orch.is_typing_now() == (True, Speaker.SPEAKER_A)

            await h.advance(TICK)
            assert h.metrics.get(DUET["tick_skipped_emitting_total"]) == 1
            assert len(h.generator.calls) == 1

            await h.advance(50_000)
            assert h.orders() == [1]
            assert h.orch.state.phase == Phase.ACTIVE
        finally:
            await h.stop()

    asyncio.run(_run())


def test_persistence_failure_keeps_turn_visible() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        h.store.fail_appends = 1
        try:
            await h.advance(TICK)
            assert h.orders() == [1]
            assert h.orch.last_persistence_error() is not None
            assert h.orch.last_error() is None
            assert h.metrics.get(DUET["persist_failures_total"]) == 1
            # No durable row, so no echo; the ledger keeps the entry.
            assert h.orch.ledger.pending_orders() == frozenset({1})

            await h.advance(TICK)
            assert h.orders() == [1, 2]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_load_failure_blocks_until_retry() -> None:
    async def _run() -> None:
        h = await EngineHarness.create()
        h.store.fail_loads = 1
        try:
            with pytest.raises(LoadError):
                await h.orch.start()
            assert h.orch.state.phase == Phase.LOAD_FAILED
            assert isinstance(h.orch.last_error(), LoadError)
            assert h.orch.session() is None
            assert h.orch.submit_human_turn("hello?") is None

            await h.advance(TICK)
            assert h.generator.calls == []

            await h.orch.load()
            assert h.orch.state.phase == Phase.ACTIVE
            assert h.orch.last_error() is None
            assert h.metrics.get(DUET["load_failures_total"]) == 1

            await h.advance(TICK)
            assert h.orders() == [1]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_human_turn_does_not_change_alternation() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        try:
            await h.advance(TICK)
            turn = h.orch.submit_human_turn("  What about dreams?  ")
            assert turn is not None
            assert turn.order == 2
            assert turn.speaker == Speaker.HUMAN
            assert turn.text == "What about dreams?"
            assert h.orch.next_speaker == Speaker.SPEAKER_B

            await h.advance(TICK)
            snap = h.orch.current_snapshot()
            assert [t.speaker for t in snap] == [Speaker.SPEAKER_A, Speaker.HUMAN, Speaker.SPEAKER_B]
            assert h.generator.calls[-1].orders == (1, 2)
            assert h.metrics.get(DUET["human_turns_total"]) == 1

            with pytest.raises(ValueError):
                h.orch.submit_human_turn("   ")
        finally:
            await h.stop()

    asyncio.run(_run())


def test_human_turn_refused_while_dormant() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(wall_start=datetime(2024, 1, 1, 4, 0, 0))
        try:
            assert h.orch.is_dormant_now()
            assert h.orch.submit_human_turn("anyone there?") is None
            assert h.orders() == []
        finally:
            await h.stop()

    asyncio.run(_run())


def test_in_flight_emission_completes_across_dormancy_start() -> None:
    async def _run() -> None:
        cfg = EngineConfig(announce_window_ms=0, generator_timeout_ms=0)
        h = await EngineHarness.start(
            cfg=cfg,
            wall_start=datetime(2024, 1, 1, 1, 54, 0),
            generator_delay_ms=120_000,
        )
        try:
            await h.advance_to(datetime(2024, 1, 1, 1, 59, 0))
            assert h.orch.state.phase == Phase.EMITTING

            await h.advance_to(datetime(2024, 1, 1, 2, 0, 30))
            assert h.orch.state.phase == Phase.EMITTING

            await h.advance_to(datetime(2024, 1, 1, 2, 2, 0))
            assert h.orders() == [1]
            assert h.orch.state.phase == Phase.DORMANT
            assert len(h.generator.calls) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_day_rollover_reloads_new_session() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(wall_start=datetime(2024, 1, 1, 23, 58, 0))
        try:
            first = h.orch.session()
            assert first is not None
            assert first.date_key == "2024-01-01"
            h.orch.submit_human_turn("late night thought")

            await h.advance_to(datetime(2024, 1, 2, 0, 0, 0))
            second = h.orch.session()
            assert second is not None
            assert second.date_key == "2024-01-02"
            assert second.session_id != first.session_id
            assert second.turns == ()
            assert h.metrics.get(DUET["day_rollover_total"]) == 1

            sessions = await h.store.list_sessions()
            assert [s.date_key for s in sessions] == ["2024-01-02", "2024-01-01"]
            assert len(await h.store.load_turns(first.session_id)) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_listeners_receive_state_changes() -> None:
    async def _run() -> None:
        h = await EngineHarness.start()
        try:
            await h.advance(TICK)
            reasons = h.reasons()
            assert "loaded" in reasons
            assert "emitting" in reasons
            assert "turn_generated" in reasons
            generated = [c for c in h.changes if c.reason == "turn_generated"]
            assert generated[0].turn is not None
            assert generated[0].turn.order == 1
            seqs = [c.seq for c in h.changes]
            assert seqs == sorted(seqs)
            assert len(set(seqs)) == len(seqs)
        finally:
            await h.stop()

    asyncio.run(_run())


def test_session_snapshot_reports_pending_local_orders() -> None:
    async def _run() -> None:
        h = await EngineHarness.start(broadcast_delay_ms=1_000)
        try:
            await h.advance(TICK)
            sess = h.orch.session()
            assert sess is not None
            assert sess.pending_local_orders == frozenset({1})
            assert sess.next_speaker == Speaker.SPEAKER_B
            assert sess.is_dormant is False
            await h.advance(1_000)
            sess = h.orch.session()
            assert sess is not None
            assert sess.pending_local_orders == frozenset()
        finally:
            await h.stop()

    asyncio.run(_run())


def test_ledger_ttl_evicts_unechoed_entries_on_poll() -> None:
    async def _run() -> None:
        cfg = EngineConfig(ledger_ttl_ms=60_000)
        h = await EngineHarness.start(cfg=cfg)
        h.store.fail_appends = 1
        try:
            await h.advance(TICK)
            assert h.orch.ledger.pending_orders() == frozenset({1})
            await h.advance(120_000)
            assert len(h.orch.ledger) == 0
            assert h.metrics.get(DUET["ledger_evicted_total"]) == 1
            # Store membership still rejects a late echo.
            assert h.orch.ingest_remote(
                {"session_id": h.orch.session_id, "message_order": 1, "sender": "SpeakerA", "content": "late"}
            ) is False
            assert h.orders() == [1]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_two_independent_engines_share_no_timers() -> None:
    async def _run() -> None:
        a = await EngineHarness.start()
        b = await EngineHarness.start()
        try:
            await a.advance(TICK)
            assert a.orders() == [1]
            assert b.orders() == []
            await a.stop()
            assert b.orch.timers.pending("tick")
        finally:
            await a.stop()
            await b.stop()

    asyncio.run(_run())


def test_replay_digest_is_deterministic() -> None:
    async def run_once() -> str:
        h = await EngineHarness.start(seed_turns=alternating(3), broadcast_delay_ms=300)
        try:
            await h.advance(TICK * 3)
            h.orch.submit_human_turn("a question")
            await h.advance(TICK)
            return h.trace.replay_digest()
        finally:
            await h.stop()

    d1 = asyncio.run(run_once())
    d2 = asyncio.run(run_once())
    assert d1 == d2
