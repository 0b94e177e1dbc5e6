from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import EngineConfig
from .errors import IllegalTransition, LoadError
from .logs import configure_logging, log_event
from .orchestrator import ConversationOrchestrator
from .protocol import StateChange, Turn, dumps_state_change
from .provider import Engine, build_engine
from .store import SessionRecord


EngineFactory = Callable[[], Engine]


class HumanTurnIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1, max_length=2000)


def _turn_view(turn: Turn) -> dict[str, Any]:
    return turn.model_dump(mode="json")


def _session_view(rec: SessionRecord) -> dict[str, Any]:
    return {
        "session_id": rec.session_id,
        "date_key": rec.date_key,
        "topic": rec.topic,
        "created_at": rec.created_at.isoformat(),
    }


def _conversation_view(orch: ConversationOrchestrator) -> dict[str, Any]:
    sess = orch.session()
    typing, typing_speaker = orch.is_typing_now()
    err = orch.last_error()
    return {
        "ok": sess is not None,
        "session_id": sess.session_id if sess else "",
        "date_key": sess.date_key if sess else "",
        "topic": sess.topic if sess else "",
        "turns": [_turn_view(t) for t in orch.current_snapshot()],
        "next_speaker": sess.next_speaker.value if sess else None,
        "is_dormant": orch.is_dormant_now(),
        "typing": typing,
        "typing_speaker": typing_speaker.value if typing_speaker else None,
        "error": str(err) if err is not None else None,
    }


def _default_build() -> Engine:
    return build_engine(EngineConfig.from_env())


def create_app(build: Optional[EngineFactory] = None) -> FastAPI:
    factory = build or _default_build

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = factory()
        configure_logging(structured=engine.cfg.structured_logging, level=engine.cfg.log_level)
        app.state.engine = engine
        try:
            await engine.orch.start()
        except LoadError as e:
            # Served as a terminal error until POST /api/conversation/reload succeeds.
            log_event("server", "start_load_failed", error=str(e))
        try:
            yield
        finally:
            await engine.aclose()

    app = FastAPI(lifespan=lifespan)

    def _engine(request: Request) -> Engine:
        return request.app.state.engine

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/metrics")
    async def metrics(request: Request) -> PlainTextResponse:
        return PlainTextResponse(_engine(request).metrics.render_prometheus())

    @app.get("/api/conversation")
    async def conversation(request: Request) -> JSONResponse:
        return JSONResponse(_conversation_view(_engine(request).orch))

    @app.get("/api/status")
    async def status(request: Request) -> JSONResponse:
        orch = _engine(request).orch
        err = orch.last_error()
        perr = orch.last_persistence_error()
        return JSONResponse(
            {
                "phase": orch.state.phase.value,
                "session_id": orch.session_id,
                "is_dormant": orch.is_dormant_now(),
                "pending_local_orders": sorted(orch.ledger.pending_orders()),
                "timers": orch.timers.names(),
                "last_error": str(err) if err is not None else None,
                "last_persistence_error": str(perr) if perr is not None else None,
            }
        )

    @app.post("/api/conversation/human")
    async def human_turn(request: Request, body: HumanTurnIn) -> JSONResponse:
        orch = _engine(request).orch
        try:
            turn = orch.submit_human_turn(body.text)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if turn is None:
            raise HTTPException(status_code=409, detail=f"not accepting turns in phase {orch.state.phase.value}")
        return JSONResponse({"ok": True, "turn": _turn_view(turn)})

    @app.post("/api/conversation/reload")
    async def reload_conversation(request: Request) -> JSONResponse:
        orch = _engine(request).orch
        try:
            await orch.load()
        except IllegalTransition as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except LoadError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return JSONResponse(_conversation_view(orch))

    @app.get("/api/history")
    async def history(request: Request) -> JSONResponse:
        records = await _engine(request).store.list_sessions()
        return JSONResponse({"ok": True, "sessions": [_session_view(r) for r in records]})

    @app.get("/api/history/{date_key}")
    async def history_day(request: Request, date_key: str) -> JSONResponse:
        rec, turns = await _engine(request).store.load_session(date_key)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"no conversation on {date_key}")
        return JSONResponse(
            {
                "ok": True,
                "session": _session_view(rec),
                "turns": [_turn_view(t) for t in turns],
            }
        )

    @app.websocket("/ws/conversation")
    async def conversation_ws(ws: WebSocket) -> None:
        engine: Engine = ws.app.state.engine
        await ws.accept()
        q: asyncio.Queue[StateChange] = asyncio.Queue(maxsize=256)

        def _on_change(ev: StateChange) -> None:
            if q.full():
                # Slow viewer: drop the oldest change, the next one carries full counts.
                q.get_nowait()
            q.put_nowait(ev)

        async def _pump() -> None:
            await ws.send_json({"kind": "snapshot", **_conversation_view(engine.orch)})
            while True:
                ev = await q.get()
                await ws.send_text(dumps_state_change(ev))

        remove = engine.orch.add_listener(_on_change)
        log_event("server", "ws_connect", session_id=engine.orch.session_id)
        sender = asyncio.create_task(_pump())
        try:
            # Viewers are passive; reading only detects the disconnect.
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            remove()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            log_event("server", "ws_disconnect", session_id=engine.orch.session_id)

    return app


app = create_app()


def main() -> None:
    import uvicorn

    cfg = EngineConfig.from_env()
    uvicorn.run("duet.server:app", host=cfg.http_host, port=cfg.http_port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
