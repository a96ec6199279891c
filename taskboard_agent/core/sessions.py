"""
Session arena - agent and voice sessions keyed by session id

Sessions are explicit values held here rather than ambient globals, so
several users (and several sessions per user) can run side by side.
"""

import threading
from typing import Dict, List, Optional

from taskboard_agent.models.session import AgentSession
from taskboard_agent.utils.exceptions import NotFoundError
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


class SessionArena:
    """
    Thread-safe store of live sessions.

    Each user has at most one current agent session; opening a new one
    drops the previous one. Voice sessions are tracked separately and are
    never replaced implicitly.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._agent_sessions: Dict[str, AgentSession] = {}
        self._current: Dict[str, str] = {}
        self._voice_sessions: Dict[str, object] = {}

    # Agent sessions

    def open(self, request: Optional[str] = None, user_id: Optional[str] = None,
             todo_list: Optional[List[str]] = None) -> AgentSession:
        """Create the user's new current session, resetting any previous one."""
        session = AgentSession(request=request, user_id=user_id, todo_list=list(todo_list or []))
        with self._lock:
            previous_id = self._current.get(user_id) if user_id is not None else None
            if previous_id is not None:
                previous = self._agent_sessions.pop(previous_id, None)
                if previous is not None:
                    # A still-running pipeline stops at its next stage boundary
                    previous.cancel_requested = True
                    logger.info(f"[SESSIONS] Reset session {previous_id} for user {user_id}")
            self._agent_sessions[session.session_id] = session
            if user_id is not None:
                self._current[user_id] = session.session_id
        logger.debug(f"[SESSIONS] Opened session {session.session_id}")
        return session

    def get(self, session_id: str, user_id: Optional[str] = None) -> AgentSession:
        """
        Raises:
            NotFoundError: unknown id, or the session belongs to another user
        """
        with self._lock:
            session = self._agent_sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise NotFoundError("Session", session_id)
        return session

    def current(self, user_id: str) -> Optional[AgentSession]:
        with self._lock:
            session_id = self._current.get(user_id)
            return self._agent_sessions.get(session_id) if session_id else None

    def cancel(self, session_id: str, user_id: Optional[str] = None) -> AgentSession:
        """Request cancellation; honoured at the next stage boundary."""
        session = self.get(session_id, user_id)
        session.cancel_requested = True
        logger.info(f"[SESSIONS] Cancellation requested for {session_id} (stage {session.stage.value})")
        return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            session = self._agent_sessions.pop(session_id, None)
            if session is not None and self._current.get(session.user_id) == session_id:
                del self._current[session.user_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._agent_sessions)

    # Voice sessions

    def add_voice(self, voice_session) -> None:
        with self._lock:
            self._voice_sessions[voice_session.session_id] = voice_session

    def get_voice(self, session_id: str):
        with self._lock:
            voice = self._voice_sessions.get(session_id)
        if voice is None:
            raise NotFoundError("Voice session", session_id)
        return voice

    def remove_voice(self, session_id: str) -> None:
        with self._lock:
            self._voice_sessions.pop(session_id, None)

    def voice_sessions(self) -> List[object]:
        with self._lock:
            return list(self._voice_sessions.values())
