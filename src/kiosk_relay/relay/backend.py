"""Adapter around one live generative audio session.

The live backend speaks its own event vocabulary (server content with model
turn parts, output transcription, top-level tool calls, turn completion).
:class:`LiveSessionAdapter` turns that into a flat stream of relay events
and exposes the handful of commands the turn controller needs.

Outbound commands::

    begin_activity()        user utterance starts (manual activity framing)
    send_audio_chunk()      PCM16 mono chunk, tagged with its sample rate
    end_activity()          user utterance ends, backend starts its turn
    send_text()             complete user turn as text
    send_tool_result()      structured tool response
    send_fallback()         "can't answer" instruction
    interrupt()             cut the current generation
    resume()                replay stored history into a fresh session

Inbound events (arrival order)::

    AudioChunk, OutputTranscript, ToolCallRequested, TurnComplete,
    BackendError, BackendClosed
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from google import genai
from google.genai import types

from kiosk_relay.config import Settings
from kiosk_relay.models import Role, ToolCall, Turn
from kiosk_relay.prompt import FALLBACK_PROMPT, load_system_prompt
from kiosk_relay.relay.sessions import SessionStore
from kiosk_relay.relay.tools import declarations_for

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_RATE = 24000

# ---------------------------------------------------------------------------
# Output text hygiene
# ---------------------------------------------------------------------------

_CONTROL_TOKEN = re.compile(r"<?ctrl\s*\d+>?", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def scrub_control_tokens(text: str) -> str:
    """Remove control-code artifacts (``Ctrl46``, ``<ctrl46>``) from model text."""
    if not text:
        return text
    return _CONTROL_CHARS.sub("", _CONTROL_TOKEN.sub("", text))


# ---------------------------------------------------------------------------
# Relay events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AudioChunk:
    base64: str
    sample_rate_hz: int = DEFAULT_OUTPUT_RATE


@dataclass(frozen=True)
class OutputTranscript:
    text: str


@dataclass(frozen=True)
class ToolCallRequested:
    call: ToolCall


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class BackendError:
    message: str


@dataclass(frozen=True)
class BackendClosed:
    pass


RelayEvent = Union[
    AudioChunk, OutputTranscript, ToolCallRequested, TurnComplete, BackendError, BackendClosed
]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _get(obj: Any, *names: str) -> Any:
    """Read the first present field from a dict or an SDK object."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _parse_rate(mime_type: str) -> int:
    match = re.search(r"rate=(\d+)", mime_type or "")
    return int(match.group(1)) if match else DEFAULT_OUTPUT_RATE


def _to_base64(data: Union[bytes, bytearray, str]) -> str:
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(bytes(data)).decode("ascii")
    return data


def normalize_message(message: Any) -> list[RelayEvent]:
    """Translate one backend message into relay events.

    Accepts SDK message objects, decoded JSON dicts, or raw JSON text.
    Raises ``ValueError`` (including ``json.JSONDecodeError``) for frames
    that cannot be decoded.
    """
    if isinstance(message, (bytes, bytearray)):
        message = bytes(message).decode("utf-8")
    if isinstance(message, str):
        message = json.loads(message)
        if not isinstance(message, dict):
            raise ValueError(f"expected a JSON object, got {type(message).__name__}")

    events: list[RelayEvent] = []
    content = _get(message, "server_content", "serverContent")

    transcription = _get(content, "output_transcription", "outputTranscription")
    text = _get(transcription, "text")
    if text:
        cleaned = scrub_control_tokens(text)
        if cleaned:
            events.append(OutputTranscript(text=cleaned))

    model_turn = _get(content, "model_turn", "modelTurn")
    parts = _get(model_turn, "parts") or []
    found_audio = False
    for part in parts:
        inline = _get(part, "inline_data", "inlineData")
        mime = _get(inline, "mime_type", "mimeType") or ""
        data = _get(inline, "data")
        if data and mime.startswith("audio/"):
            events.append(AudioChunk(base64=_to_base64(data), sample_rate_hz=_parse_rate(mime)))
            found_audio = True
    # SDK objects derive ``data`` from the parts above; only raw frames carry it alone.
    if not found_audio and isinstance(message, dict) and message.get("data"):
        events.append(AudioChunk(base64=_to_base64(message["data"])))

    for call in _collect_tool_calls(message, parts):
        events.append(ToolCallRequested(call=call))

    if _get(content, "turn_complete", "turnComplete"):
        events.append(TurnComplete())
    return events


def _collect_tool_calls(message: Any, parts: list) -> list[ToolCall]:
    """Function calls from the top-level tool call and from content parts."""
    raw_calls = list(_get(_get(message, "tool_call", "toolCall"), "function_calls", "functionCalls") or [])
    for part in parts:
        fc = _get(part, "function_call", "functionCall")
        if fc is not None:
            raw_calls.append(fc)

    calls = []
    for fc in raw_calls:
        name = _get(fc, "name")
        if not name:
            logger.warning("Ignoring function call without a name")
            continue
        args = _get(fc, "args") or {}
        calls.append(ToolCall(id=_get(fc, "id"), name=name, args=dict(args)))
    return calls


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class LiveSessionAdapter:
    """Owns one backend live session for one client connection.

    ``session`` is a connected live session (``google.genai`` ``AsyncSession``
    or anything with the same ``send_*``/``receive`` coroutines).  Model
    transcript text is accumulated per backend turn and committed to the
    session store as a model turn on turn completion.
    """

    def __init__(
        self,
        session: Any,
        store: SessionStore,
        session_id: str,
        fallback_prompt: str = FALLBACK_PROMPT,
    ) -> None:
        self._session = session
        self._store = store
        self.session_id = session_id
        self._fallback_prompt = fallback_prompt
        self._transcript: list[str] = []
        self._activity_open = False
        # Opened by an interrupt and still without audio.
        self._barge_in_empty = False
        self._closed = False

    @property
    def activity_open(self) -> bool:
        return self._activity_open

    # -- outbound -----------------------------------------------------------

    async def begin_activity(self) -> None:
        self.commit_transcript()
        if self._activity_open:
            # Already opened by an interrupt; the utterance continues it.
            return
        await self._open_activity()

    async def _open_activity(self) -> None:
        await self._session.send_realtime_input(activity_start=types.ActivityStart())
        self._activity_open = True

    async def send_audio_chunk(self, data: bytes, sample_rate_hz: int) -> None:
        await self._session.send_realtime_input(
            audio=types.Blob(data=data, mime_type=f"audio/pcm;rate={sample_rate_hz}")
        )
        self._barge_in_empty = False

    async def end_activity(self) -> None:
        if not self._activity_open:
            logger.debug("[%s] activity end without an open activity", self.session_id)
            return
        await self._session.send_realtime_input(activity_end=types.ActivityEnd())
        self._activity_open = False
        self._barge_in_empty = False

    async def close_empty_activity(self) -> bool:
        """End an activity an interrupt opened that never carried audio.

        Returns True if one was closed; the backend may answer that empty
        turn before anything sent after it.
        """
        if not (self._activity_open and self._barge_in_empty):
            return False
        await self.end_activity()
        return True

    async def send_text(self, text: str) -> None:
        """Send a complete user turn as text and record it."""
        if self._activity_open:
            await self.end_activity()
        self._store.append_turn(self.session_id, Role.USER, text)
        await self._session.send_client_content(
            turns=types.Content(role=Role.USER.value, parts=[types.Part(text=text)]),
            turn_complete=True,
        )

    async def send_fallback(self) -> None:
        """Ask the backend to apologise for an unanswered request (not recorded)."""
        await self._session.send_client_content(
            turns=types.Content(
                role=Role.USER.value, parts=[types.Part(text=self._fallback_prompt)]
            ),
            turn_complete=True,
        )

    async def send_tool_result(
        self, call_id: Optional[str], name: str, response: dict[str, Any]
    ) -> None:
        await self._session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=call_id, name=name, response=response)
            ]
        )

    async def interrupt(self) -> None:
        """Stop the current generation.

        Keeps what the model already said, then opens a user activity, which
        the live backend treats as barge-in.
        """
        self.commit_transcript()
        if self._activity_open:
            return
        await self._open_activity()
        self._barge_in_empty = True

    async def resume(self, history: list[Turn]) -> Optional[bool]:
        """Replay ``history`` as context.

        Returns the ``turn_complete`` flag that was sent (True when the last
        turn is the user's and a reply is owed), or None if nothing was sent.
        """
        if not history:
            return None
        turn_complete = history[-1].role == Role.USER
        await self._session.send_client_content(
            turns=[
                types.Content(
                    role=turn.role.value,
                    parts=[types.Part(text=p) for p in turn.parts],
                )
                for turn in history
            ],
            turn_complete=turn_complete,
        )
        logger.info(
            "[%s] Resumed %d turns, last=%s turn_complete=%s",
            self.session_id, len(history), history[-1].role.value, turn_complete,
        )
        return turn_complete

    def commit_transcript(self) -> None:
        """Store accumulated model text as a model turn and reset it."""
        text = "".join(self._transcript).strip()
        self._transcript.clear()
        if text:
            self._store.append_turn(self.session_id, Role.MODEL, text)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.commit_transcript()
        close = getattr(self._session, "close", None)
        if close is not None:
            try:
                await close()
            except Exception:
                logger.debug("[%s] live session close failed", self.session_id, exc_info=True)

    # -- inbound ------------------------------------------------------------

    async def events(self) -> AsyncIterator[RelayEvent]:
        """Yield relay events until the backend stream ends.

        Always finishes with :class:`BackendClosed`, preceded by
        :class:`BackendError` if the stream failed.
        """
        try:
            while not self._closed:
                received = False
                # One receive() pass covers a single backend turn.
                async for message in self._session.receive():
                    received = True
                    for event in self._normalize(message):
                        if isinstance(event, OutputTranscript):
                            self._transcript.append(event.text)
                        elif isinstance(event, TurnComplete):
                            self.commit_transcript()
                        yield event
                if not received:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[%s] Live session stream failed", self.session_id)
            yield BackendError(message=str(exc))
        logger.info("[%s] Live session closed", self.session_id)
        yield BackendClosed()

    def _normalize(self, message: Any) -> list[RelayEvent]:
        try:
            return normalize_message(message)
        except (ValueError, TypeError, AttributeError, UnicodeDecodeError) as exc:
            logger.warning("[%s] Dropping malformed backend frame: %s", self.session_id, exc)
            return []


# ---------------------------------------------------------------------------
# Live session factory
# ---------------------------------------------------------------------------

def build_live_config(settings: Settings, system_prompt: str) -> types.LiveConnectConfig:
    """Audio-out session with output transcription and manual activity framing."""
    config_kwargs: dict[str, Any] = {
        "response_modalities": [types.Modality.AUDIO],
        "system_instruction": system_prompt,
        "output_audio_transcription": types.AudioTranscriptionConfig(),
        "realtime_input_config": types.RealtimeInputConfig(
            automatic_activity_detection=types.AutomaticActivityDetection(disabled=True),
        ),
        "temperature": settings.temperature,
    }
    declarations = declarations_for(settings.enabled_tools)
    if declarations:
        config_kwargs["tools"] = [types.Tool(function_declarations=declarations)]
    return types.LiveConnectConfig(**config_kwargs)


class GeminiLiveConnector:
    """Opens live sessions against the Gemini Live API.

    ``connect()`` returns an async context manager yielding a connected
    session, so the gateway owns the session lifetime with ``async with``.
    """

    def __init__(self, settings: Settings, system_prompt: Optional[str] = None) -> None:
        self.settings = settings
        self.model = settings.live_model
        self.config = build_live_config(
            settings, system_prompt or load_system_prompt(settings.system_prompt_path)
        )
        self._client: Optional[genai.Client] = None

    def connect(self):
        if self._client is None:
            if not self.settings.backend_available:
                logger.warning("GEMINI_API_KEY is not set; live sessions will fail")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client.aio.live.connect(model=self.model, config=self.config)
