"""WebSocket gateway between kiosk clients and live backend sessions.

Runs as a FastAPI application.  Each client connects to ``/audio`` (see
``KIOSK_WS_PATH``) with an optional ``sessionId`` query parameter and gets
its own backend live session, adapter and turn controller.  Conversation
history lives in the shared session store, so a client that reconnects
with the same id resumes where it left off.

Message protocol (client → server)
-----------------------------------
Text frames are JSON::

    {"type": "activity_start"}                            # push-to-talk pressed
    {"type": "audio_stream", "data": "<b64 PCM16>", "sampleRate": 24000}
    {"type": "activity_end"} / {"type": "turn_complete"}  # push-to-talk released
    {"type": "text_input", "text": "..."}                 # quick-reply query
    {"type": "interrupt"}                                 # barge-in
    {"type": "action", "action": "Cant"}                  # request fallback answer

Message protocol (server → client)
-----------------------------------
::

    {"type": "audio_broadcast", "audio": "<b64 PCM16>", "sampleRate": 24000}
    {"type": "audio_transcription", "text": "..."}        # model speech transcript
    {"type": "input_audio_transcription", "text": "..."}  # what the model heard
    {"type": "function_call_result", "entry": {...}}      # originating client only
    {"type": "function_call_log", "entry": {...}}         # every connected client
    {"type": "error", "message": "..."}
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from kiosk_relay.config import Settings, get_settings
from kiosk_relay.models import ClientMessage, Role
from kiosk_relay.relay.backend import (
    AudioChunk,
    BackendClosed,
    BackendError,
    GeminiLiveConnector,
    LiveSessionAdapter,
    OutputTranscript,
    ToolCallRequested,
)
from kiosk_relay.relay.sessions import SessionStore
from kiosk_relay.relay.tools import FunctionCallLog, ToolDispatcher
from kiosk_relay.relay.turns import TurnController

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Broadcast fan-out
# ---------------------------------------------------------------------------

class Broadcaster:
    """Fan-out hub delivering events to every live connection."""

    def __init__(self) -> None:
        self._listeners: set[RelayConnection] = set()

    def register(self, connection: "RelayConnection") -> None:
        self._listeners.add(connection)

    def unregister(self, connection: "RelayConnection") -> None:
        self._listeners.discard(connection)

    def broadcast(self, payload: dict) -> None:
        for connection in list(self._listeners):
            connection.enqueue(payload)

    def __len__(self) -> int:
        return len(self._listeners)


# ---------------------------------------------------------------------------
# Per-connection relay
# ---------------------------------------------------------------------------

class RelayConnection:
    """Pumps one client socket and its backend session.

    Three tasks run until either side goes away: client frames into the
    turn controller, backend events out to the client, and the outbound
    queue into the socket.  All writes to the socket go through the queue.
    """

    def __init__(
        self,
        ws: WebSocket,
        session_id: str,
        adapter: LiveSessionAdapter,
        store: SessionStore,
        dispatcher: ToolDispatcher,
        function_log: FunctionCallLog,
        broadcaster: Broadcaster,
        settings: Settings,
    ) -> None:
        self.ws = ws
        self.session_id = session_id
        self.adapter = adapter
        self.store = store
        self.dispatcher = dispatcher
        self.function_log = function_log
        self.broadcaster = broadcaster
        self.settings = settings
        self.backend_error: Optional[str] = None
        self._outbox: asyncio.Queue[dict] = asyncio.Queue()
        self.controller = TurnController(
            adapter,
            min_turn_duration=settings.min_turn_duration_sec,
            processing_timeout=settings.processing_timeout_sec,
            flush_playback=self.flush_pending_audio,
        )

    # -- outbound -----------------------------------------------------------

    def enqueue(self, payload: dict) -> None:
        self._outbox.put_nowait(payload)

    def flush_pending_audio(self) -> int:
        """Drop queued audio frames, keep everything else. Returns frames dropped."""
        kept: list[dict] = []
        dropped = 0
        while True:
            try:
                item = self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item.get("type") == "audio_broadcast":
                dropped += 1
            else:
                kept.append(item)
        for item in kept:
            self._outbox.put_nowait(item)
        return dropped

    async def _drain_outbox(self) -> None:
        while True:
            payload = await self._outbox.get()
            await self.ws.send_text(json.dumps(payload, ensure_ascii=False))

    # -- lifecycle ----------------------------------------------------------

    async def run(self) -> str:
        """Relay until one side ends. Returns ``"client"`` or ``"backend"``."""
        client = asyncio.create_task(self._pump_client(), name=f"client_{self.session_id}")
        backend = asyncio.create_task(self._pump_backend(), name=f"backend_{self.session_id}")
        sender = asyncio.create_task(self._drain_outbox(), name=f"sender_{self.session_id}")
        tasks = (client, backend, sender)
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.controller.close()

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(
                    "[%s] %s ended with an error", self.session_id, task.get_name(),
                    exc_info=exc,
                )
                if task is backend:
                    self.backend_error = str(exc) or type(exc).__name__
        return "backend" if backend in done else "client"

    # -- client → backend ---------------------------------------------------

    async def _pump_client(self) -> None:
        while True:
            message = await self.ws.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("[%s] Client disconnected", self.session_id)
                return
            raw = message.get("text")
            if raw is None:
                logger.warning("[%s] Ignoring binary frame", self.session_id)
                continue
            await self.handle_client_frame(raw)

    async def handle_client_frame(self, raw: str) -> None:
        try:
            msg = ClientMessage.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("[%s] Malformed client frame: %s", self.session_id, exc.errors()[:1])
            self.enqueue({"type": "error", "message": "Malformed message"})
            return

        self.store.touch(self.session_id)
        ctrl = self.controller

        if msg.type == "activity_start":
            logger.info("[%s] User started speaking", self.session_id)
            await ctrl.start_recording()

        elif msg.type == "audio_stream":
            if not msg.data:
                return
            try:
                pcm = base64.b64decode(msg.data, validate=True)
            except (binascii.Error, ValueError):
                logger.warning("[%s] Audio frame is not valid base64", self.session_id)
                self.enqueue({"type": "error", "message": "Invalid audio data"})
                return
            await ctrl.forward_audio(pcm, msg.sample_rate or self.settings.sample_rate)

        elif msg.type in ("activity_end", "turn_complete"):
            logger.info("[%s] User stopped speaking", self.session_id)
            await ctrl.stop_recording()

        elif msg.type == "text_input":
            text = (msg.text or "").strip()
            if not text:
                return
            logger.info("[%s] Text input: %r", self.session_id, text)
            if not await ctrl.submit_text(text):
                self.enqueue({
                    "type": "error",
                    "message": "Assistant is busy; wait for the current answer to finish.",
                })

        elif msg.type == "interrupt":
            await ctrl.interrupt()

        elif msg.type == "action":
            if (msg.action or "").lower() == "cant":
                await ctrl.cant_answer()
            else:
                logger.debug("[%s] Unhandled action %r", self.session_id, msg.action)

        else:
            logger.debug("[%s] Unhandled message type %r", self.session_id, msg.type)

    # -- backend → client ---------------------------------------------------

    async def _pump_backend(self) -> None:
        async for event in self.adapter.events():
            if isinstance(event, BackendClosed):
                return
            if isinstance(event, BackendError):
                self.backend_error = event.message
                continue

            self.store.touch(self.session_id)
            if isinstance(event, ToolCallRequested):
                await self._handle_tool_call(event)
                continue
            if not self.controller.admit(event):
                continue
            if isinstance(event, AudioChunk):
                self.enqueue({
                    "type": "audio_broadcast",
                    "audio": event.base64,
                    "sampleRate": event.sample_rate_hz,
                })
            elif isinstance(event, OutputTranscript):
                self.enqueue({"type": "audio_transcription", "text": event.text})

    async def _handle_tool_call(self, event: ToolCallRequested) -> None:
        entry = await self.dispatcher.dispatch(event.call)
        self.function_log.append(entry)
        payload = entry.model_dump(mode="json")
        self.broadcaster.broadcast({"type": "function_call_log", "entry": payload})

        deliver = self.controller.admit(event)
        if entry.name == "return_user_text":
            heard = str(entry.args.get("text") or "").strip()
            if heard:
                self.store.append_turn(self.session_id, Role.USER, heard)
                if deliver:
                    self.enqueue({"type": "input_audio_transcription", "text": heard})
        if deliver:
            self.enqueue({"type": "function_call_result", "entry": payload})

        await self.adapter.send_tool_result(entry.id, entry.name, entry.response)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_relay_app(
    settings: Optional[Settings] = None,
    knowledge: Any = None,
    connector: Any = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    """Build the relay FastAPI application.

    ``knowledge`` (retrieval collaborator) and ``connector`` (live session
    factory with a ``connect()`` async context manager) default to the
    ChromaDB store and the Gemini Live connector.
    """
    settings = settings or get_settings()
    store = store or SessionStore(
        idle_timeout=settings.session_idle_timeout_sec,
        max_turns=settings.max_history_turns,
    )
    connector = connector or GeminiLiveConnector(settings)
    broadcaster = Broadcaster()
    function_log = FunctionCallLog(maxlen=settings.function_log_size)

    # Lazy-loaded knowledge store to avoid embedding-model cost at startup.
    _cache: dict[str, Any] = {}

    def get_knowledge() -> Any:
        if "knowledge" not in _cache:
            if knowledge is not None:
                _cache["knowledge"] = knowledge
            else:
                from kiosk_relay.knowledge.store import KnowledgeStore
                _cache["knowledge"] = KnowledgeStore(settings=settings)
        return _cache["knowledge"]

    def get_dispatcher() -> ToolDispatcher:
        if "dispatcher" not in _cache:
            _cache["dispatcher"] = ToolDispatcher(
                get_knowledge(),
                top_k=settings.search_top_k,
                min_score=settings.search_min_score,
                excluded_sources=settings.excluded_sources,
                timeout=settings.tool_timeout_sec,
            )
        return _cache["dispatcher"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(
            store.run_sweeper(settings.session_sweep_interval_sec), name="session_sweeper"
        )
        logger.info("Relay listening on %s", settings.ws_path)
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

    app = FastAPI(title="Kiosk Relay", version="0.3.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.function_log = function_log

    @app.get("/health")
    async def health():
        try:
            passages: Optional[int] = get_knowledge().count()
        except Exception:
            logger.exception("Knowledge store unavailable")
            passages = None
        return {
            "status": "ok",
            "connections": len(broadcaster),
            "sessions": len(store),
            "knowledge_passages": passages,
            "backend_configured": settings.backend_available,
        }

    @app.get("/function-calls")
    async def function_calls():
        return [e.model_dump(mode="json") for e in function_log.snapshot()]

    @app.websocket(settings.ws_path)
    async def audio_socket(ws: WebSocket):
        await ws.accept()
        session_id = ws.query_params.get("sessionId") or f"guest_{int(time.time() * 1000)}"
        store.get(session_id)
        store.touch(session_id)
        logger.info("Client connected: %s", session_id)

        ended_by = "client"
        close_code = status.WS_1000_NORMAL_CLOSURE
        try:
            async with connector.connect() as live:
                adapter = LiveSessionAdapter(live, store, session_id)
                await adapter.resume(store.sanitized_history(session_id))
                connection = RelayConnection(
                    ws, session_id, adapter, store, get_dispatcher(),
                    function_log, broadcaster, settings,
                )
                broadcaster.register(connection)
                try:
                    ended_by = await connection.run()
                finally:
                    broadcaster.unregister(connection)
                    await adapter.close()
                if connection.backend_error is not None:
                    close_code = status.WS_1011_INTERNAL_ERROR
        except WebSocketDisconnect:
            logger.info("Client %s left during setup", session_id)
            return
        except Exception:
            logger.exception("Live session failed for %s", session_id)
            ended_by = "backend"
            close_code = status.WS_1011_INTERNAL_ERROR

        # Backend gone: close the client so it reconnects and resumes.
        if ended_by == "backend" and ws.client_state == WebSocketState.CONNECTED:
            await ws.close(code=close_code)
        logger.info("Connection closed: %s (ended by %s)", session_id, ended_by)

    return app
