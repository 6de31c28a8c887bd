from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from . import codes
from .connection import Connection, notify
from .errors import AgentAlreadyConnected, SessionNotFound, UnauthorizedForRole
from .messages import event

logger = logging.getLogger(__name__)


class Role(str, Enum):
    PRESENTER = "presenter"
    AGENT = "agent"


@dataclass(frozen=True)
class Cursor:
    x: float
    y: float


@dataclass
class Session:
    code: str
    presenter: Connection
    presenter_addr: str
    created_at: float
    expires_at: float
    agent: Optional[Connection] = None
    agent_addr: Optional[str] = None
    agent_joined_at: Optional[float] = None
    page_snapshot: Optional[str] = None
    password_length: int = 0
    cursor: Optional[Cursor] = None

    def agent_is_open(self) -> bool:
        return self.agent is not None and self.agent.is_open

    def member_role(self, conn: Connection) -> Optional[Role]:
        if conn is self.presenter:
            return Role.PRESENTER
        if self.agent is not None and conn is self.agent:
            return Role.AGENT
        return None


_UNSET = object()


class SessionRegistry:
    """Owns every live session.

    Record changes happen under one lock with no awaits inside; peer
    notifications go out after the change is committed.
    """

    def __init__(
        self,
        *,
        session_timeout_sec: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_timeout_sec = session_timeout_sec
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, presenter: Connection, presenter_addr: str) -> str:
        async with self._lock:
            code = codes.allocate(self._sessions)
            now = self._clock()
            self._sessions[code] = Session(
                code=code,
                presenter=presenter,
                presenter_addr=presenter_addr,
                created_at=now,
                expires_at=now + self.session_timeout_sec,
            )
        logger.info("Session %s created for %s", code, presenter_addr)
        return code

    def lookup(self, code: Optional[str]) -> Optional[Session]:
        if not code:
            return None
        return self._sessions.get(code)

    async def join(self, code: Optional[str], agent: Connection, agent_addr: str) -> Session:
        async with self._lock:
            session = self.lookup(code)
            if session is None:
                raise SessionNotFound()
            if session.agent_is_open():
                raise AgentAlreadyConnected()
            session.agent = agent
            session.agent_addr = agent_addr
            session.agent_joined_at = self._clock()
        logger.info("Agent %s joined session %s", agent_addr, session.code)
        return session

    async def update(
        self,
        code: str,
        role: Role,
        *,
        page_snapshot=_UNSET,
        password_length=_UNSET,
        cursor=_UNSET,
    ) -> Optional[Session]:
        """Apply presenter-owned fields. Agents may write none of them."""
        if role is not Role.PRESENTER:
            raise UnauthorizedForRole(f"{role.value} may not update session state")
        async with self._lock:
            session = self.lookup(code)
            if session is None:
                return None
            if page_snapshot is not _UNSET:
                session.page_snapshot = page_snapshot
            if password_length is not _UNSET:
                session.password_length = password_length or 0
            if cursor is not _UNSET:
                session.cursor = cursor
            return session

    async def end(self, code: Optional[str], reason: Optional[str] = None) -> bool:
        async with self._lock:
            session = self._sessions.pop(code, None) if code else None
        if session is None:
            return False
        payload = event("session-ended") if reason is None else event("session-ended", reason=reason)
        await notify(session.presenter, payload)
        await notify(session.agent, payload)
        logger.info("Session %s ended", code)
        return True

    async def remove_expired(self, now: Optional[float] = None) -> List[Tuple[str, float]]:
        """Evict sessions past their expiry. Returns ``(code, age)`` pairs."""
        if now is None:
            now = self._clock()
        async with self._lock:
            expired = [s for s in self._sessions.values() if s.expires_at < now]
            for session in expired:
                del self._sessions[session.code]

        payload = event("session-ended", reason="expired")
        for session in expired:
            for conn in (session.presenter, session.agent):
                if conn is not None and conn.is_open:
                    await conn.send(payload)
                    await conn.close()
            logger.info("Session %s expired", session.code)
        return [(s.code, now - s.created_at) for s in expired]

    async def on_presenter_disconnect(self, code: Optional[str], presenter: Connection) -> bool:
        async with self._lock:
            session = self.lookup(code)
            if session is None or session.presenter is not presenter:
                return False
            del self._sessions[session.code]
        await notify(session.agent, event("client-disconnected"))
        logger.info("Presenter left, session %s removed", session.code)
        return True

    async def on_agent_disconnect(self, code: Optional[str], agent: Connection) -> bool:
        async with self._lock:
            session = self.lookup(code)
            if session is None or session.agent is not agent:
                return False
            session.agent = None
        await notify(session.presenter, event("agent-disconnected"))
        logger.info("Agent left session %s", session.code)
        return True
