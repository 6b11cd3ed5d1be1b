"""
Session Store: one live WorldState per connection.

The store is bounded (max_sessions) and lifecycle-driven: the server opens
an entry when a connection arrives and discards it when the connection
closes or the character dies. Turns are guarded per session so a client
that pipelines a second action while the first is still being narrated is
rejected instead of mutating the same state twice.
"""
import logging
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional, Set

from config import settings
from models import WorldState

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """No live world state for this session id."""


class SessionBusyError(RuntimeError):
    """A turn for this session is already in flight."""


class SessionLimitError(RuntimeError):
    """The store already holds max_sessions live sessions."""


def new_session_id() -> str:
    return uuid.uuid4().hex[:9]


class SessionStore:
    def __init__(self, max_sessions: Optional[int] = None):
        self.max_sessions = max_sessions if max_sessions is not None else settings.max_sessions
        self._states: Dict[str, Optional[WorldState]] = {}
        self._in_flight: Set[str] = set()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._states

    def open(self) -> str:
        """Register a new connection and return its session id (no state yet)."""
        if len(self._states) >= self.max_sessions:
            raise SessionLimitError(f"Session limit reached ({self.max_sessions})")
        session_id = new_session_id()
        while session_id in self._states:
            session_id = new_session_id()
        self._states[session_id] = None
        logger.info(f"Session opened: {session_id} (active: {len(self._states)})")
        return session_id

    def set(self, session_id: str, state: WorldState) -> None:
        if session_id not in self._states and len(self._states) >= self.max_sessions:
            raise SessionLimitError(f"Session limit reached ({self.max_sessions})")
        self._states[session_id] = state

    def get(self, session_id: str) -> WorldState:
        state = self._states.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    def discard(self, session_id: str) -> None:
        self._states.pop(session_id, None)
        self._in_flight.discard(session_id)
        logger.info(f"Session closed: {session_id} (active: {len(self._states)})")

    def clear_state(self, session_id: str) -> None:
        """Forget the world state but keep the connection registered."""
        if session_id in self._states:
            self._states[session_id] = None

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._in_flight

    @contextmanager
    def turn(self, session_id: str) -> Iterator[WorldState]:
        """Hold the per-session turn guard for the duration of one action."""
        state = self.get(session_id)
        if session_id in self._in_flight:
            raise SessionBusyError("A turn is already being processed for this session")
        self._in_flight.add(session_id)
        try:
            yield state
        finally:
            self._in_flight.discard(session_id)
