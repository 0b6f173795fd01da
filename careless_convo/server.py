"""
server.py — Careless Convo · FastAPI Control Plane
==================================================
Drives one local VoiceChat over HTTP so a browser page (or curl) can start
and stop listening, read the transcript and the chat history, and tune the
runtime config.

Endpoints
---------
  GET    /health            Service liveness
  GET    /session           Session snapshot (phase, transcript, flags)
  POST   /session/start     Calibrate and start listening
  POST   /session/stop      Stop listening (finishes if there is a transcript)
  POST   /session/reset     Clear transcript and finished flag
  GET    /messages          Chat history
  DELETE /messages          Clear chat history
  GET    /config            Current runtime config
  PUT    /config            Deep-merge a partial config and persist it
  WS     /ws/logs           Real-time log stream

Config changes are saved to disk and apply the next time the server starts.

Run with:  uvicorn careless_convo.server:app
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat import VoiceChat, build_voice_chat
from .config import ConvoConfig
from .conversation import ChatMessage
from .session import SessionSnapshot

log = logging.getLogger("careless_convo.server")

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
HISTORY_MAX = 500


# ---------------------------------------------------------------------------
# WebSocket log broadcaster
# ---------------------------------------------------------------------------

class LogBroadcaster:
    """Fan out log events to every connected /ws/logs client.

    The most recent events are kept and replayed to each client as it
    connects.  A client whose send fails is dropped.
    """

    def __init__(self, history_max: int = HISTORY_MAX) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: deque[dict] = deque(maxlen=history_max)

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in list(self._history):
            if not await self._send(ws, json.dumps(event)):
                self._clients.discard(ws)
                return

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        text = json.dumps(event)
        for ws in list(self._clients):
            if not await self._send(ws, text):
                self._clients.discard(ws)

    @staticmethod
    async def _send(ws: WebSocket, text: str) -> bool:
        # No logging here: the record would come straight back to broadcast().
        try:
            await ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError, OSError):
            return False
        return True


class _WsLogHandler(logging.Handler):
    """Forward careless_convo records to the broadcaster on the server's loop.

    ``loop`` is bound while the app is running.  Records from other threads
    (PortAudio callbacks, executor workers) are handed over thread-safely;
    records emitted while no loop is bound are not forwarded.
    """

    def __init__(self, broadcaster: LogBroadcaster) -> None:
        super().__init__()
        self.broadcaster = broadcaster
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        try:
            event = {
                "level": record.levelname,
                "logger": record.name,
                "msg": self.format(record),
                "ts": record.created,
            }
            loop.call_soon_threadsafe(self._publish, event)
        except Exception:
            self.handleError(record)

    def _publish(self, event: dict) -> None:
        task = self.loop.create_task(self.broadcaster.broadcast(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _chat(request: Request) -> VoiceChat:
    chat = request.app.state.chat
    if chat is None:
        raise HTTPException(status_code=503, detail="Voice chat is not running.")
    return chat


def create_app(
    chat: Optional[VoiceChat] = None,
    config_path: str = "careless_convo.json",
    config: Optional[ConvoConfig] = None,
) -> FastAPI:
    """Build the control-plane app.

    With no *chat*, one is built from the config file on startup and closed
    on shutdown.  A chat passed in is owned by the caller.
    """
    broadcaster = LogBroadcaster()
    ws_handler = _WsLogHandler(broadcaster)
    ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        ws_handler.loop = asyncio.get_running_loop()
        logging.getLogger("careless_convo").addHandler(ws_handler)
        owned = app.state.chat is None
        if owned:
            app.state.chat = build_voice_chat(app.state.config, continuous=True)
        log.info("event=server_start config=%s owned_chat=%s", config_path, owned)
        try:
            yield
        finally:
            if owned and app.state.chat is not None:
                await app.state.chat.close()
                app.state.chat = None
            logging.getLogger("careless_convo").removeHandler(ws_handler)
            ws_handler.loop = None
            log.info("event=server_stopped")

    app = FastAPI(
        title="Careless Convo",
        version="0.1.0",
        description="Voice chat control plane",
        lifespan=_lifespan,
    )
    app.state.chat = chat
    app.state.config = config if config is not None else (
        chat.session.config if chat is not None else ConvoConfig.load(config_path)
    )
    app.state.config_path = config_path
    app.state.broadcaster = broadcaster

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness check with listening, generating and demo-mode flags."""
        chat = request.app.state.chat
        return JSONResponse({
            "status":     "ok",
            "listening":  bool(chat and chat.session.is_listening),
            "generating": bool(chat and chat.conversation.is_generating),
            "demo_mode":  bool(chat and chat.conversation.demo_mode),
        })

    @app.get("/session", response_model=SessionSnapshot)
    async def get_session(request: Request) -> SessionSnapshot:
        return _chat(request).session.snapshot()

    @app.post("/session/start", response_model=SessionSnapshot)
    async def start_session(request: Request) -> SessionSnapshot:
        chat = _chat(request)
        await chat.start()
        snapshot = chat.session.snapshot()
        if snapshot.error and not snapshot.is_listening:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=snapshot.error)
        return snapshot

    @app.post("/session/stop", response_model=SessionSnapshot)
    async def stop_session(request: Request) -> SessionSnapshot:
        chat = _chat(request)
        chat.session.stop_listening()
        return chat.session.snapshot()

    @app.post("/session/reset", response_model=SessionSnapshot)
    async def reset_session(request: Request) -> SessionSnapshot:
        chat = _chat(request)
        chat.session.reset_transcript()
        return chat.session.snapshot()

    @app.get("/messages", response_model=list[ChatMessage])
    async def list_messages(request: Request) -> list[ChatMessage]:
        return list(_chat(request).conversation.messages)

    @app.delete("/messages", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_messages(request: Request) -> None:
        _chat(request).conversation.clear()

    @app.get("/config")
    async def get_config(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.config.model_dump())

    @app.put("/config")
    async def put_config(request: Request) -> JSONResponse:
        """Deep-merge a partial config and persist it; applies on next server start."""
        try:
            patch = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON.")
        if not isinstance(patch, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object.")
        try:
            updated = request.app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=json.loads(exc.json()))
        updated.save(request.app.state.config_path)
        request.app.state.config = updated
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(updated.model_dump())

    @app.websocket("/ws/logs")
    async def ws_logs(ws: WebSocket) -> None:
        """
        Real-time log stream.  Every careless_convo log record as JSON:
        {"level": "INFO", "logger": "<logger name>", "msg": "<line>", "ts": <unix float>}
        """
        await broadcaster.connect(ws)
        log.info("event=ws_log_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            log.info("event=ws_log_client_disconnected remote=%s", ws.client)

    return app


def _make_default_app() -> FastAPI:
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("CONVO_DEBUG") else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    return create_app(config_path=os.getenv("CONVO_CONFIG", "careless_convo.json"))


app = _make_default_app()
