"""Turn-taking and barge-in for one client connection.

States::

    IDLE → RECORDING → PROCESSING → PLAYING → IDLE
    IDLE → PROCESSING                          (text query)
    any  → IDLE                                (interrupt)

``ignore_incoming_audio`` is the mute flag.  It is raised whenever the user
cuts in (interrupt, or a new push-to-talk press) and lowered only when a
turn is judged valid: a recording at least ``min_turn_duration`` long, or a
text query.  While it is raised, every audio, transcript and tool-call event
from the backend is withheld from the client.

An interrupt opens an upstream activity that a later text query or fallback
has to close empty.  Whatever the backend says to that empty turn stays
muted until its turn completes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from kiosk_relay.relay.backend import (
    AudioChunk,
    OutputTranscript,
    RelayEvent,
    ToolCallRequested,
    TurnComplete,
)

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    PLAYING = "playing"


# Valid transitions (interrupt may always return to IDLE).
_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {TurnState.RECORDING, TurnState.PROCESSING},
    TurnState.RECORDING: {TurnState.PROCESSING, TurnState.IDLE},
    TurnState.PROCESSING: {TurnState.PLAYING, TurnState.RECORDING, TurnState.IDLE},
    TurnState.PLAYING: {TurnState.IDLE, TurnState.RECORDING},
}


class TurnController:
    """Gates client input and backend output for one connection.

    Parameters
    ----------
    adapter
        The connection's :class:`~kiosk_relay.relay.backend.LiveSessionAdapter`
        (or an object with the same coroutines).
    min_turn_duration : float
        Seconds; shorter recordings are accidental taps.
    processing_timeout : float
        Seconds to wait for the first backend output before sending the
        can't-answer fallback.
    flush_playback : callable, optional
        Drops audio queued for the client but not yet sent.
    clock : callable
        Monotonic time source.
    """

    def __init__(
        self,
        adapter: Any,
        min_turn_duration: float = 0.20,
        processing_timeout: float = 10.0,
        flush_playback: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapter = adapter
        self.min_turn_duration = min_turn_duration
        self.processing_timeout = processing_timeout
        self._flush_playback = flush_playback
        self._clock = clock

        self._state = TurnState.IDLE
        self.ignore_incoming_audio = False
        self.last_turn_valid: Optional[bool] = None
        self.playback_position_sec = 0.0
        self._recording_started_at = 0.0
        self._timeout_task: Optional[asyncio.Task] = None
        # Backend may still be generating for the last user turn.
        self._reply_pending = False
        self._stray_turns = 0
        self._mute_after_stray = False

    # -- state --------------------------------------------------------------

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == TurnState.RECORDING

    @property
    def is_processing(self) -> bool:
        return self._state == TurnState.PROCESSING

    @property
    def is_playing(self) -> bool:
        return self._state == TurnState.PLAYING

    def _transition(self, target: TurnState) -> bool:
        if target == self._state:
            return True
        if target not in _TRANSITIONS[self._state]:
            logger.debug("Rejected transition %s -> %s", self._state.value, target.value)
            return False
        logger.debug("Turn state %s -> %s", self._state.value, target.value)
        self._state = target
        return True

    # -- client-driven ------------------------------------------------------

    async def start_recording(self) -> bool:
        """Push-to-talk pressed. Any response in flight is cut off."""
        if self._state == TurnState.RECORDING:
            return False
        if self._state != TurnState.IDLE or self._reply_pending:
            await self.interrupt()
        # Muted until this turn proves valid.
        self.ignore_incoming_audio = True
        self._transition(TurnState.RECORDING)
        self._recording_started_at = self._clock()
        self.playback_position_sec = 0.0
        await self.adapter.begin_activity()
        return True

    async def forward_audio(self, data: bytes, sample_rate_hz: int) -> bool:
        """Pass one microphone chunk upstream while recording."""
        if self._state != TurnState.RECORDING:
            logger.debug("Dropping %d audio bytes outside a recording", len(data))
            return False
        await self.adapter.send_audio_chunk(data, sample_rate_hz)
        return True

    async def stop_recording(self) -> Optional[bool]:
        """Push-to-talk released.

        Returns whether the turn was valid, or None if nothing was recording.
        """
        if self._state != TurnState.RECORDING:
            return None

        # Classify before the backend can start answering.
        duration = self._clock() - self._recording_started_at
        valid = duration >= self.min_turn_duration
        self.last_turn_valid = valid
        if valid:
            self.ignore_incoming_audio = False
            self._transition(TurnState.PROCESSING)
            self._start_timeout()
            logger.info("Turn accepted (%.2fs)", duration)
        else:
            self._transition(TurnState.IDLE)
            logger.info("Short tap (%.2fs) - ignoring the response", duration)
        await self.adapter.end_activity()
        self._reply_pending = True
        return valid

    async def submit_text(self, text: str) -> bool:
        """Text query; only accepted while idle."""
        if self._state != TurnState.IDLE:
            logger.info("Text query rejected, controller is %s", self._state.value)
            return False
        await self._settle_barge_in(mute_after=False)
        self.last_turn_valid = True
        self.playback_position_sec = 0.0
        self._transition(TurnState.PROCESSING)
        self._start_timeout()
        await self.adapter.send_text(text)
        self._reply_pending = True
        return True

    async def interrupt(self) -> None:
        """Barge-in: mute, tell the backend to stop, drop pending audio."""
        self.ignore_incoming_audio = True
        self._cancel_timeout()
        self._stray_turns = 0
        if self._reply_pending or self._state in (TurnState.PROCESSING, TurnState.PLAYING):
            await self.adapter.interrupt()
        self._reply_pending = False
        dropped = self._flush_playback() if self._flush_playback else 0
        self.playback_position_sec = 0.0
        if self._state != TurnState.RECORDING:
            self._state = TurnState.IDLE
        logger.info("Interrupted (dropped %d queued audio frames)", dropped)

    async def cant_answer(self) -> None:
        """Send the fallback request upstream."""
        self._cancel_timeout()
        await self._settle_barge_in(mute_after=self.ignore_incoming_audio)
        await self.adapter.send_fallback()
        self._reply_pending = True

    async def _settle_barge_in(self, mute_after: bool) -> None:
        """Close an interrupt's empty activity and mute its reply."""
        if await self.adapter.close_empty_activity():
            self._stray_turns += 1
            self.ignore_incoming_audio = True
            self._mute_after_stray = mute_after
        elif self._stray_turns:
            self._mute_after_stray = mute_after
        else:
            self.ignore_incoming_audio = mute_after

    # -- backend-driven -----------------------------------------------------

    def admit(self, event: RelayEvent) -> bool:
        """Advance state for ``event``; True if it may reach the client."""
        if isinstance(event, (AudioChunk, OutputTranscript)):
            if self.ignore_incoming_audio:
                return False
            self._cancel_timeout()
            if self._state == TurnState.PROCESSING:
                self._transition(TurnState.PLAYING)
            if isinstance(event, AudioChunk):
                # base64 of PCM16 mono: 4 chars per 3 bytes, 2 bytes per sample
                n_bytes = len(event.base64) * 3 // 4
                self.playback_position_sec += n_bytes / 2 / max(event.sample_rate_hz, 1)
            return True
        if isinstance(event, ToolCallRequested):
            return not self.ignore_incoming_audio
        if isinstance(event, TurnComplete):
            if self._stray_turns:
                self._stray_turns -= 1
                if not self._stray_turns:
                    self.ignore_incoming_audio = self._mute_after_stray
                return False
            self._reply_pending = False
            # A silent turn leaves PROCESSING to the watchdog.
            if self._state == TurnState.PLAYING:
                self._cancel_timeout()
                self._transition(TurnState.IDLE)
            return not self.ignore_incoming_audio
        return True

    # -- processing timeout -------------------------------------------------

    def _start_timeout(self) -> None:
        self._cancel_timeout()
        self._timeout_task = asyncio.create_task(self._processing_watchdog())

    def _cancel_timeout(self) -> None:
        task, self._timeout_task = self._timeout_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _processing_watchdog(self) -> None:
        await asyncio.sleep(self.processing_timeout)
        self._timeout_task = None
        if self._state != TurnState.PROCESSING:
            return
        logger.warning("No backend output after %.1fs - sending fallback", self.processing_timeout)
        try:
            await self.adapter.send_fallback()
            self._reply_pending = True
        except Exception:
            logger.exception("Fallback request failed")

    async def close(self) -> None:
        self._cancel_timeout()
