"""In-memory conversation sessions keyed by client-supplied session id.

A session outlives the WebSocket that created it: a kiosk that drops its
connection reconnects with the same ``sessionId`` and the stored history is
replayed to the fresh backend session.  Nothing is persisted; sessions idle
longer than the timeout are removed by a periodic sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from kiosk_relay.models import Role, Turn

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """State for one logical conversation."""

    session_id: str
    history: list[Turn] = field(default_factory=list)
    last_active_at: float = 0.0


class SessionStore:
    """Owns every :class:`Session` and the adjacent-turn merge invariant.

    Parameters
    ----------
    idle_timeout : float
        Seconds without activity after which ``sweep`` drops a session.
    max_turns : int
        Per-session cap; the oldest turns are dropped past it.
    clock : callable
        Returns the current time in seconds.
    """

    def __init__(
        self,
        idle_timeout: float = 60 * 60 * 24,
        max_turns: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.idle_timeout = idle_timeout
        self.max_turns = max_turns
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    # -- lookup -------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        """Return the session, creating an empty one for an unseen id."""
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, last_active_at=self._clock())
            self._sessions[session_id] = session
            logger.info("Created session %s", session_id)
        return session

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_active_at = self._clock()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # -- history ------------------------------------------------------------

    def append_turn(self, session_id: str, role: Role | str, text: str) -> None:
        """Record ``text`` for ``role``, merging into the last turn if same role."""
        if not text or not text.strip():
            return
        role = Role(role)
        session = self.get(session_id)
        if session.history and session.history[-1].role == role:
            session.history[-1].parts.append(text)
        else:
            session.history.append(Turn(role=role, parts=[text]))
        self._trim(session)
        session.last_active_at = self._clock()

    def sanitized_history(self, session_id: str) -> list[Turn]:
        """Copy of the history with consecutive same-role turns merged."""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        merged: list[Turn] = []
        for turn in session.history:
            if merged and merged[-1].role == turn.role:
                merged[-1].parts.extend(turn.parts)
            else:
                merged.append(Turn(role=turn.role, parts=list(turn.parts)))
        return merged

    def _trim(self, session: Session) -> None:
        if len(session.history) <= self.max_turns:
            return
        session.history = session.history[-self.max_turns:]
        # A replay must open with the user.
        while session.history and session.history[0].role == Role.MODEL:
            session.history.pop(0)

    # -- expiry -------------------------------------------------------------

    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Remove sessions idle longer than the timeout. Returns removed ids."""
        now = self._clock() if now is None else now
        expired = [
            sid for sid, s in self._sessions.items()
            if now - s.last_active_at > self.idle_timeout
        ]
        for sid in expired:
            del self._sessions[sid]
            logger.info("Expired idle session %s", sid)
        return expired

    async def run_sweeper(self, interval: float = 60.0) -> None:
        """Sweep forever on a fixed interval. Cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()
