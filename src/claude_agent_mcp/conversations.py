"""In-memory conversation sessions for multi-turn queries.

Sessions are held in memory only and do not survive a restart. A background
reaper drops sessions that have been idle longer than the session timeout,
independently of request traffic.
"""

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional

logger = logging.getLogger("claude-agent-mcp.conversations")

SESSION_ID_BYTES = 16
REAPER_INTERVAL = 60.0  # seconds

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role}")


@dataclass
class Session:
    id: str
    messages: list[Message] = field(default_factory=list)
    last_activity: float = 0.0

    def snapshot(self) -> "Session":
        return Session(id=self.id, messages=list(self.messages), last_activity=self.last_activity)


class ConversationStore:
    """Keyed table of sessions with bounded history and idle expiry.

    Every public operation holds the store lock for its whole duration, so
    the reaper never deletes a session in the middle of a read or append.
    """

    def __init__(
        self,
        session_timeout: float,
        max_history: int,
        clock: Callable[[], float] = time.monotonic,
        reaper_interval: float = REAPER_INTERVAL,
    ):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self._sessions: dict[str, Session] = {}
        self._session_timeout = session_timeout
        self._max_history = max_history
        self._clock = clock
        self._reaper_interval = reaper_interval
        self._lock = threading.Lock()
        self._reaper_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    @property
    def max_history(self) -> int:
        return self._max_history

    def _is_expired(self, session: Session, now: float) -> bool:
        return now - session.last_activity > self._session_timeout

    def _live_session(self, session_id: str, now: float) -> Optional[Session]:
        """Look up a session, dropping it if it expired but was not yet reaped."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session, now):
            del self._sessions[session_id]
            logger.info(f"Session {session_id} expired on access")
            return None
        return session

    def create(self) -> str:
        """Create an empty session and return its id."""
        with self._lock:
            session_id = secrets.token_hex(SESSION_ID_BYTES)
            while session_id in self._sessions:
                session_id = secrets.token_hex(SESSION_ID_BYTES)
            self._sessions[session_id] = Session(id=session_id, last_activity=self._clock())
        logger.info(f"Created new session: {session_id}")
        return session_id

    def get(self, session_id: str) -> Optional[Session]:
        """Return a snapshot of the session and extend its life.

        Unknown and expired ids return None; callers should start a new
        session rather than treat this as an error.
        """
        with self._lock:
            now = self._clock()
            session = self._live_session(session_id, now)
            if session is None:
                return None
            session.last_activity = now
            return session.snapshot()

    def append(self, session_id: str, message: Message) -> bool:
        """Append a message, keeping only the most recent ``max_history``.

        Returns False (and changes nothing) if the session does not exist.
        """
        with self._lock:
            now = self._clock()
            session = self._live_session(session_id, now)
            if session is None:
                return False
            session.messages.append(message)
            if len(session.messages) > self._max_history:
                del session.messages[: len(session.messages) - self._max_history]
            session.last_activity = now
        logger.info(f"Added message to session {session_id} (role={message.role})")
        return True

    def history(self, session_id: str) -> list[Message]:
        """Oldest-first copy of the session's messages; empty if unknown."""
        with self._lock:
            now = self._clock()
            session = self._live_session(session_id, now)
            if session is None:
                return []
            session.last_activity = now
            return list(session.messages)

    def reap_expired(self) -> int:
        """Delete every session idle for longer than the timeout."""
        with self._lock:
            now = self._clock()
            expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
            for session_id in expired:
                del self._sessions[session_id]

        for session_id in expired:
            logger.info(f"Cleaned up expired session: {session_id}")
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reaper_interval)
            try:
                self.reap_expired()
            except Exception as e:
                logger.error(f"Session reaper failed: {e}", exc_info=True)

    def start(self) -> None:
        """Schedule the background reaper on the running event loop."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.get_running_loop().create_task(self._reaper_loop())

    async def dispose(self) -> None:
        """Stop the reaper and forget every session."""
        task, self._reaper_task = self._reaper_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        with self._lock:
            self._sessions.clear()
