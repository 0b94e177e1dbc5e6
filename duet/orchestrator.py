from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .clock import Clock
from .config import EngineConfig
from .engine_state import EngineState, Phase, Trigger, transition
from .errors import DuplicateOrder, EngineError, GenerationError, IllegalTransition, LoadError, PersistenceError
from .generator import Generator
from .ledger import DedupLedger
from .logs import log_event
from .message_store import ReconcilingMessageStore
from .metrics import DUET, Metrics
from .phrases import PhraseKind, PhrasePicker, make_phrase_picker
from .protocol import Speaker, StateChange, Turn, parse_turn_row
from .schedule import (
    is_dormant,
    ms_until_dormancy_end,
    ms_until_dormancy_start,
    should_announce_dormancy_start,
    tick_interval_ms,
)
from .sequencer import next_order, next_speaker
from .store import Broadcast, ConversationStore, Subscription
from .timers import TimerRegistry
from .topics import TopicSource, date_key, topic_for_date
from .trace import TraceSink


Listener = Callable[[StateChange], Any]


@dataclass(frozen=True, slots=True)
class ConversationSession:
    session_id: str
    date_key: str
    topic: str
    turns: tuple[Turn, ...]
    next_speaker: Speaker
    is_dormant: bool
    pending_local_orders: frozenset[int]


class ConversationOrchestrator:
    """
    Single actor driving one client's view of today's conversation.

    Owns the tagged engine state, every timer (tick, poll, typing, wake, dormancy_start),
    the ledger and the reconciling store. Remote turns enter only through ingest_remote().
    """

    def __init__(
        self,
        *,
        config: EngineConfig,
        clock: Clock,
        store: ConversationStore,
        broadcast: Broadcast,
        generator: Generator,
        topic_source: TopicSource = topic_for_date,
        pick_phrase: Optional[PhrasePicker] = None,
        metrics: Optional[Metrics] = None,
        trace: Optional[TraceSink] = None,
        name: str = "duet",
    ) -> None:
        self._cfg = config
        self._clock = clock
        self._backend = store
        self._broadcast = broadcast
        self._generator = generator
        self._topic_source = topic_source
        self._pick_phrase = pick_phrase or make_phrase_picker(config.speaker_names())
        self._metrics = metrics or Metrics()
        self._trace = trace or TraceSink()
        self._name = name

        self._schedule = config.schedule_config()
        self._state = EngineState()
        self._ledger = DedupLedger(ttl_ms=config.ledger_ttl_ms)
        self._store = ReconcilingMessageStore(ledger=self._ledger)
        self._timers = TimerRegistry(clock=clock, owner=name)

        self._session_id = ""
        self._date_key = ""
        self._topic = ""
        self._subscription: Optional[Subscription] = None
        self._highest_known = 0
        # Dormancy start already announced; survives reloads so the goodnight turn is posted once.
        self._announced_start: Optional[datetime] = None

        self._typing: Optional[Speaker] = None
        self._typing_target: Optional[Speaker] = None
        self._last_error: Optional[EngineError] = None
        self._last_persistence_error: Optional[PersistenceError] = None

        self._listeners: list[Listener] = []
        self._change_seq = 0
        self._persist_tasks: set[asyncio.Task[None]] = set()
        self._started = False
        self._loading = False

    # ------------------------------------------------------------------
    # Presentation surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def trace(self) -> TraceSink:
        return self._trace

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    @property
    def timers(self) -> TimerRegistry:
        return self._timers

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def next_speaker(self) -> Speaker:
        return next_speaker(self._store.snapshot(), default=self._cfg.default_speaker)

    def current_snapshot(self) -> tuple[Turn, ...]:
        return self._store.snapshot()

    def is_typing_now(self) -> tuple[bool, Optional[Speaker]]:
        return (self._typing is not None, self._typing)

    def is_dormant_now(self) -> bool:
        return self._state.is_dormant

    def last_error(self) -> Optional[EngineError]:
        return self._last_error

    def last_persistence_error(self) -> Optional[PersistenceError]:
        return self._last_persistence_error

    def session(self) -> Optional[ConversationSession]:
        if not self._session_id:
            return None
        return ConversationSession(
            session_id=self._session_id,
            date_key=self._date_key,
            topic=self._topic,
            turns=self._store.snapshot(),
            next_speaker=self.next_speaker,
            is_dormant=self._state.is_dormant,
            pending_local_orders=self._ledger.pending_orders(),
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._timers.schedule("poll", self._cfg.schedule_poll_ms, self._on_poll)
        await self.load()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self._timers.cancel_all()
        self._close_subscription()
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)
        self._log("stopped")

    async def load(self) -> None:
        """
        Resolve today's topic and session, then enter Active.

        Also the explicit retry after a LoadError, and the day-rollover reload.
        """
        if self._loading:
            raise IllegalTransition("a load is already in progress")
        if self._state.phase == Phase.LOAD_FAILED:
            self._apply(Trigger.RETRY)
        elif self._state.phase != Phase.LOADING:
            self._apply(Trigger.RELOAD)
        self._loading = True
        try:
            await self._load_today()
        finally:
            self._loading = False
        await self._check_schedule()

    async def _load_today(self) -> None:
        self._cancel_typing()
        self._typing = None
        for name in ("tick", "wake", "dormancy_start"):
            self._timers.cancel(name)
        self._close_subscription()
        self._publish("loading")

        today = self._clock.wall_now().date()
        key = date_key(today)
        try:
            topic = self._topic_source(today)
            session_id = await self._backend.get_or_create_session(key, topic)
            record, turns = await self._backend.load_session(key)
            if record is None or record.session_id != session_id:
                raise LoadError(f"session for {key} not readable after create")
        except Exception as e:
            err = e if isinstance(e, LoadError) else LoadError(f"{type(e).__name__}: {e}")
            self._last_error = err
            self._apply(Trigger.LOAD_FAILED)
            self._metrics.inc(DUET["load_failures_total"])
            self._log("load_failed", level=logging.ERROR, date_key=key, error=str(err))
            self._publish("load_failed")
            if err is e:
                raise
            raise err from e

        self._session_id = record.session_id
        self._date_key = key
        self._topic = record.topic
        self._ledger.reset()
        self._store.replace_all(turns)
        self._highest_known = self._store.highest_order
        self._subscription = self._broadcast.subscribe(self._session_id, self.ingest_remote)
        self._last_error = None
        self._apply(Trigger.LOADED)

        self._metrics.inc(DUET["session_loads_total"])
        self._log("loaded", date_key=key, topic=self._topic, turns=len(self._store))
        self._publish("loaded")

        self._schedule_typing(self.next_speaker, self._cfg.initial_typing_delay_ms)
        self._schedule_tick(tick_interval_ms(self._schedule))

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def _schedule_tick(self, delay_ms: int) -> None:
        self._timers.schedule("tick", delay_ms, self._on_tick)

    async def _on_tick(self) -> None:
        self._schedule_tick(tick_interval_ms(self._schedule))
        await self.tick()

    async def tick(self) -> Optional[Turn]:
        self._metrics.inc(DUET["ticks_total"])
        if self._state.is_emitting:
            # Re-entrancy guard: one generator call in flight per client.
            self._metrics.inc(DUET["tick_skipped_emitting_total"])
            return None
        await self._check_schedule()
        if self._state.phase != Phase.ACTIVE:
            if self._state.is_dormant:
                self._metrics.inc(DUET["tick_skipped_dormant_total"])
            return None
        return await self._emit_generated(self.next_speaker)

    async def _emit_generated(self, speaker: Speaker) -> Optional[Turn]:
        self._apply(Trigger.BEGIN_EMIT)
        self._cancel_typing()
        self._last_error = None
        self._typing = speaker
        self._publish("emitting")

        history = self._store.recent(self._cfg.history_window)
        t0 = self._clock.now_ms()
        self._metrics.inc(DUET["generator_calls_total"])
        try:
            text = await self._clock.run_with_timeout(
                self._generator.generate(speaker=speaker, recent_turns=history, topic=self._topic),
                self._cfg.generator_timeout_ms,
            )
            text = (text or "").strip()
            if not text:
                raise GenerationError("generator returned empty text")
        except asyncio.CancelledError:
            self._apply(Trigger.END_EMIT)
            raise
        except Exception as e:
            err = e if isinstance(e, GenerationError) else GenerationError(f"{type(e).__name__}: {e}")
            self._last_error = err
            self._metrics.inc(DUET["generator_failures_total"])
            self._log("generation_failed", level=logging.WARNING, speaker=speaker.value, error=str(err))
            self._trace_event("generation_failed", payload={"speaker": speaker.value})
            self._apply(Trigger.END_EMIT)
            self._set_typing(None, reason="generation_failed")
            return None
        self._metrics.observe(DUET["generator_latency_ms"], self._clock.now_ms() - t0)

        try:
            turn = self._commit(speaker, text, reason="turn_generated")
        except DuplicateOrder as e:
            self._last_error = e
            self._apply(Trigger.END_EMIT)
            self._set_typing(None, reason="duplicate_order")
            return None

        self._apply(Trigger.END_EMIT)
        self._set_typing(None, reason="idle")
        self._schedule_typing(self.next_speaker, self._cfg.reading_delay_ms)
        return turn

    # ------------------------------------------------------------------
    # Schedule / dormancy
    # ------------------------------------------------------------------

    async def _on_poll(self) -> None:
        self._timers.schedule("poll", self._cfg.schedule_poll_ms, self._on_poll)
        evicted = self._ledger.evict_expired(self._clock.now_ms())
        if evicted:
            self._metrics.inc(DUET["ledger_evicted_total"], len(evicted))
            self._metrics.set(DUET["ledger_pending_current"], len(self._ledger))
        await self._check_schedule()

    async def _check_schedule(self) -> None:
        phase = self._state.phase
        if phase in {Phase.LOADING, Phase.LOAD_FAILED}:
            return
        now = self._clock.wall_now()

        if phase != Phase.EMITTING and date_key(now.date()) != self._date_key:
            self._metrics.inc(DUET["day_rollover_total"])
            self._log("day_rollover", previous=self._date_key, current=date_key(now.date()))
            try:
                await self.load()
            except LoadError:
                # Already recorded; the presentation layer shows it until a retry.
                return
            return

        if is_dormant(now, self._schedule):
            if phase == Phase.EMITTING:
                # The in-flight call completes; dormancy suppresses the next tick.
                return
            if phase != Phase.DORMANT or not self._timers.pending("wake"):
                self._enter_dormancy()
            return

        if phase == Phase.DORMANT:
            self._wake()
            return
        if phase == Phase.WINDING_DOWN:
            # Window never observed (suspended process, clock jump): resume instead of stalling.
            if ms_until_dormancy_start(now, self._schedule) > self._cfg.announce_window_ms:
                self._wake()
            return
        if phase == Phase.ACTIVE and should_announce_dormancy_start(
            now, self._schedule, window_ms=self._cfg.announce_window_ms
        ):
            if self._announced_start == self._upcoming_dormancy_start(now):
                self._wind_down()
                self._log("winding_down_resumed", dormancy_start=self._announced_start.isoformat())
            else:
                self._announce_dormancy()

    def _upcoming_dormancy_start(self, now: datetime) -> datetime:
        ahead = now + timedelta(milliseconds=ms_until_dormancy_start(now, self._schedule))
        return ahead.replace(minute=0, second=0, microsecond=0)

    def _announce_dormancy(self) -> None:
        speaker = self.next_speaker
        text = self._phrase(speaker, "dormancy_start")
        try:
            self._commit(speaker, text, reason="dormancy_announced")
        except DuplicateOrder as e:
            self._last_error = e
            return
        self._announced_start = self._upcoming_dormancy_start(self._clock.wall_now())
        self._metrics.inc(DUET["dormancy_announced_total"])
        self._log("dormancy_announced", speaker=speaker.value)
        self._wind_down()

    def _wind_down(self) -> None:
        self._apply(Trigger.ANNOUNCE)
        self._cancel_typing()
        self._set_typing(None)
        self._timers.cancel("tick")
        self._timers.schedule(
            "dormancy_start",
            ms_until_dormancy_start(self._clock.wall_now(), self._schedule),
            self._check_schedule,
        )
        self._publish("winding_down")

    def _enter_dormancy(self) -> None:
        self._apply(Trigger.SLEEP)
        self._cancel_typing()
        self._set_typing(None)
        self._timers.cancel("tick")
        self._timers.cancel("dormancy_start")
        # Fresh measurement on every (re-)entry; never a stored deadline.
        wake_in = ms_until_dormancy_end(self._clock.wall_now(), self._schedule)
        self._timers.schedule("wake", wake_in, self._check_schedule)
        self._metrics.inc(DUET["dormancy_entered_total"])
        self._log("dormant", wake_in_ms=wake_in)
        self._publish("dormant")

    def _wake(self) -> None:
        self._apply(Trigger.WAKE)
        self._timers.cancel("wake")
        self._timers.cancel("dormancy_start")
        speaker = self.next_speaker
        text = self._phrase(speaker, "wake")
        try:
            self._commit(speaker, text, reason="woke")
        except DuplicateOrder as e:
            self._last_error = e
        self._schedule_typing(self.next_speaker, self._cfg.reading_delay_ms)
        self._schedule_tick(self._cfg.post_wake_delay_ms)
        self._metrics.inc(DUET["dormancy_woke_total"])
        self._log("woke", speaker=speaker.value)
        self._publish("awake")

    def _phrase(self, speaker: Speaker, kind: PhraseKind) -> str:
        seed = f"{self._session_id}|{self._next_local_order()}"
        return self._pick_phrase(speaker, kind, seed)

    # ------------------------------------------------------------------
    # Turn commit / persistence
    # ------------------------------------------------------------------

    def _next_local_order(self) -> int:
        # Remote producers may have moved past anything in the local snapshot.
        return max(next_order(self._store.snapshot()), self._highest_known + 1)

    def _commit(self, speaker: Speaker, text: str, *, reason: str) -> Turn:
        order = self._next_local_order()
        turn = Turn(order=order, speaker=speaker, text=text, created_at=self._clock.wall_now())
        # Ledger first: the echo must find the entry no matter how fast it arrives.
        self._ledger.mark_pending(order, now_ms=self._clock.now_ms())
        try:
            self._store.insert_local(turn)
        except DuplicateOrder:
            self._ledger.clear(order)
            self._metrics.inc(DUET["duplicate_order_total"])
            self._log("duplicate_order", level=logging.ERROR, order=order, speaker=speaker.value)
            raise
        self._highest_known = max(self._highest_known, order)
        self._metrics.inc(DUET["turns_committed_total"])
        self._trace_event("turn_committed", order=order, payload={"speaker": speaker.value, "text": text})
        self._persist(turn)
        self._publish(reason, turn=turn)
        return turn

    def _persist(self, turn: Turn) -> None:
        task = asyncio.create_task(self._persist_turn(self._session_id, turn))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _persist_turn(self, session_id: str, turn: Turn) -> None:
        try:
            await self._backend.append_turn(session_id, turn)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The turn stays visible; durability is best-effort from this client's side.
            err = PersistenceError(f"order {turn.order}: {e}")
            self._last_persistence_error = err
            self._metrics.inc(DUET["persist_failures_total"])
            self._log("persist_failed", level=logging.WARNING, order=turn.order, error=str(e))
            return
        self._metrics.inc(DUET["persist_ok_total"])

    def submit_human_turn(self, text: str) -> Optional[Turn]:
        """
        Out-of-band interjection. Does not change whose machine turn is next.
        Refused (None) while loading or dormant.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("text must be non-empty")
        if not self._state.accepts_turns:
            return None
        turn = self._commit(Speaker.HUMAN, text, reason="human_turn")
        self._metrics.inc(DUET["human_turns_total"])
        return turn

    # ------------------------------------------------------------------
    # Remote ingest
    # ------------------------------------------------------------------

    def ingest_remote(self, payload: Any) -> bool:
        try:
            row = parse_turn_row(payload)
        except ValidationError:
            self._metrics.inc(DUET["bad_schema_total"])
            self._log("remote_dropped", level=logging.WARNING, reason="BAD_SCHEMA")
            return False
        if not self._state.is_active or row.session_id != self._session_id:
            self._metrics.inc(DUET["foreign_session_total"])
            return False

        turn = row.to_turn(fallback_ts=self._clock.wall_now())
        was_pending = self._ledger.is_pending(turn.order)
        if not self._store.insert_remote(turn):
            if was_pending:
                self._metrics.inc(DUET["echo_suppressed_total"])
                self._trace_event("echo_suppressed", order=turn.order)
            else:
                self._metrics.inc(DUET["redelivery_dropped_total"])
            self._metrics.set(DUET["ledger_pending_current"], len(self._ledger))
            return False

        self._highest_known = max(self._highest_known, turn.order)
        self._metrics.inc(DUET["remote_accepted_total"])
        self._trace_event("remote_accepted", order=turn.order, payload={"speaker": turn.speaker.value})

        if self._state.phase == Phase.ACTIVE:
            nxt = self.next_speaker
            target = self._typing or self._typing_target
            if target is not None and target != nxt:
                self._cancel_typing()
                self._set_typing(None)
                self._schedule_typing(nxt, self._cfg.reading_delay_ms)
        self._publish("remote_turn", turn=turn)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule_typing(self, speaker: Speaker, delay_ms: int) -> None:
        self._typing_target = speaker

        async def _show() -> None:
            self._typing_target = None
            if self._state.phase != Phase.ACTIVE:
                return
            self._set_typing(speaker, reason="typing")

        self._timers.schedule("typing", delay_ms, _show)

    def _cancel_typing(self) -> None:
        self._timers.cancel("typing")
        self._typing_target = None

    def _set_typing(self, speaker: Optional[Speaker], *, reason: Optional[str] = None) -> None:
        if self._typing == speaker:
            return
        self._typing = speaker
        if reason is not None:
            self._publish(reason)

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _apply(self, trigger: Trigger) -> None:
        prev = self._state.phase
        self._state = transition(self._state, trigger)
        self._trace_event(
            "transition",
            payload={"from": prev.value, "trigger": trigger.value, "to": self._state.phase.value},
        )

    def _trace_event(self, event_type: str, *, order: int = 0, payload: Any = None) -> None:
        self._trace.emit(
            t_ms=self._clock.now_ms(),
            session_id=self._session_id or "-",
            phase=self._state.phase.value,
            event_type=event_type,
            order=order,
            payload_obj=payload,
        )

    def _log(self, event: str, *, level: int = logging.INFO, **payload: Any) -> None:
        log_event(
            "orchestrator",
            event,
            level=level,
            engine=self._name,
            session_id=self._session_id,
            phase=self._state.phase.value,
            **payload,
        )

    def _publish(self, reason: str, *, turn: Optional[Turn] = None) -> None:
        self._change_seq += 1
        self._metrics.set(DUET["turns_current"], len(self._store))
        self._metrics.set(DUET["ledger_pending_current"], len(self._ledger))
        err = self._last_error
        ev = StateChange(
            seq=self._change_seq,
            reason=reason,
            phase=self._state.phase.value,
            session_id=self._session_id,
            topic=self._topic,
            is_dormant=self._state.is_dormant,
            typing=self._typing,
            next_speaker=self.next_speaker if self._session_id else None,
            turn_count=len(self._store),
            last_order=self._store.highest_order,
            error=str(err) if err is not None else None,
            turn=turn,
        )
        for listener in list(self._listeners):
            try:
                listener(ev)
            except Exception as e:
                self._log("listener_failed", level=logging.ERROR, error=repr(e))
