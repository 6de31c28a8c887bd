from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .audit import AuditSink
from .connection import Connection, notify
from .credentials import CredentialValidator
from .errors import (
    AgentAlreadyConnected,
    InvalidCredential,
    MalformedMessage,
    RateLimited,
    SessionNotFound,
    UnauthorizedForRole,
)
from .messages import (
    AiResponse,
    CreateSession,
    CursorMove,
    EndSession,
    FullPage,
    InboundMessage,
    JoinSession,
    VoiceMessage,
    decode,
    event,
)
from .ratelimit import JoinRateLimiter
from .registry import Cursor, Role, Session, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """Per-connection state. Holds the session code only, never the session."""

    conn: Connection
    addr: str
    code: Optional[str] = None
    role: Optional[Role] = None

    def bind(self, code: str, role: Role) -> None:
        self.code = code
        self.role = role

    def unbind(self) -> None:
        self.code = None
        self.role = None


class MessageRouter:
    """Dispatches inbound frames for one relay process."""

    def __init__(
        self,
        registry: SessionRegistry,
        limiter: JoinRateLimiter,
        validator: CredentialValidator,
        audit: AuditSink,
    ) -> None:
        self.registry = registry
        self.limiter = limiter
        self.validator = validator
        self.audit = audit

    # --- Entry points ----------------------------------------------------

    async def handle(self, ctx: ConnectionContext, raw: Union[str, bytes]) -> None:
        try:
            message = decode(raw)
        except MalformedMessage as exc:
            logger.warning("Ignoring malformed frame from %s: %s", ctx.addr, exc)
            return

        try:
            await self.dispatch(ctx, message)
        except UnauthorizedForRole as exc:
            logger.debug("Dropped %s from %s: %s", message.type, ctx.addr, exc)
        except Exception as exc:
            logger.exception("Error processing %s from %s: %s", message.type, ctx.addr, exc)

    async def dispatch(self, ctx: ConnectionContext, message: InboundMessage) -> None:
        match message:
            case CreateSession():
                await self._create(ctx)
            case JoinSession():
                await self._join(ctx, message)
            case FullPage():
                await self._full_page(ctx, message)
            case CursorMove():
                await self._cursor_move(ctx, message)
            case VoiceMessage(text=text):
                session = self._require(ctx, Role.PRESENTER, message.type)
                if session is not None:
                    await notify(session.agent, event("voice-message", text=text))
            case AiResponse(text=text):
                session = self._require(ctx, Role.AGENT, message.type)
                if session is not None:
                    await notify(session.presenter, event("ai-response", text=text))
            case EndSession():
                await self._end(ctx)
            case _:
                raise MalformedMessage(f"unhandled message {message!r}")

    async def disconnect(self, ctx: ConnectionContext) -> None:
        code, role = ctx.code, ctx.role
        ctx.unbind()
        if code is None:
            return
        try:
            if role is Role.PRESENTER:
                if await self.registry.on_presenter_disconnect(code, ctx.conn):
                    await self.audit.record("PRESENTER_DISCONNECTED", {"code": code, "clientIP": ctx.addr})
            elif role is Role.AGENT:
                if await self.registry.on_agent_disconnect(code, ctx.conn):
                    await self.audit.record("AGENT_DISCONNECTED", {"code": code, "agentIP": ctx.addr})
        except Exception as exc:
            logger.exception("Disconnect cleanup failed for %s: %s", ctx.addr, exc)

    # --- Binding checks --------------------------------------------------

    def _resolve(self, ctx: ConnectionContext) -> Optional[Session]:
        if ctx.code is None:
            return None
        session = self.registry.lookup(ctx.code)
        if session is None or session.member_role(ctx.conn) is not ctx.role:
            logger.debug("Clearing stale binding %s for %s", ctx.code, ctx.addr)
            ctx.unbind()
            return None
        return session

    def _require(self, ctx: ConnectionContext, role: Role, kind: str) -> Optional[Session]:
        session = self._resolve(ctx)
        if session is None or ctx.role is not role:
            logger.debug("Dropped %s from %s: not bound as %s", kind, ctx.addr, role.value)
            return None
        return session

    # --- Handlers --------------------------------------------------------

    async def _create(self, ctx: ConnectionContext) -> None:
        if self._resolve(ctx) is not None:
            logger.debug("Dropped create-session from %s: already in %s", ctx.addr, ctx.code)
            return
        code = await self.registry.create(ctx.conn, ctx.addr)
        ctx.bind(code, Role.PRESENTER)
        await ctx.conn.send(event("session-created", code=code))
        await self.audit.record("SESSION_CREATED", {"code": code, "clientIP": ctx.addr})

    async def _admit(self, ctx: ConnectionContext, message: JoinSession) -> Session:
        # Rate limit first so failed guesses still spend an attempt.
        decision = self.limiter.check(ctx.addr)
        if not decision.allowed:
            await self.audit.record("RATE_LIMITED", {"clientIP": ctx.addr, "code": message.code})
            raise RateLimited(decision.retry_after or 1)

        if not self.validator.validate(message.agent_key):
            await self.audit.record(
                "AUTH_FAILED",
                {"clientIP": ctx.addr, "code": message.code, "reason": "invalid_agent_key"},
            )
            raise InvalidCredential()

        try:
            return await self.registry.join(message.code, ctx.conn, ctx.addr)
        except SessionNotFound:
            await self.audit.record(
                "JOIN_FAILED",
                {"clientIP": ctx.addr, "code": message.code, "reason": "session_not_found"},
            )
            raise
        except AgentAlreadyConnected:
            await self.audit.record(
                "JOIN_FAILED",
                {"clientIP": ctx.addr, "code": message.code, "reason": "agent_already_connected"},
            )
            raise

    async def _join(self, ctx: ConnectionContext, message: JoinSession) -> None:
        if self._resolve(ctx) is not None:
            logger.debug("Dropped join-session from %s: already in %s", ctx.addr, ctx.code)
            return
        try:
            session = await self._admit(ctx, message)
        except (RateLimited, InvalidCredential, SessionNotFound, AgentAlreadyConnected) as exc:
            await ctx.conn.send(event("error", message=exc.message))
            return

        ctx.bind(session.code, Role.AGENT)
        await ctx.conn.send(event("session-joined", code=session.code))
        if session.page_snapshot:
            await ctx.conn.send(
                event("full-page", html=session.page_snapshot, passwordLength=session.password_length)
            )
        await notify(session.presenter, event("agent-joined"))
        await self.audit.record(
            "AGENT_JOINED",
            {"code": session.code, "agentIP": ctx.addr, "clientIP": session.presenter_addr},
        )

    async def _full_page(self, ctx: ConnectionContext, message: FullPage) -> None:
        if self._resolve(ctx) is None:
            return
        session = await self.registry.update(
            ctx.code,
            ctx.role,
            page_snapshot=message.html,
            password_length=message.password_length,
        )
        if session is not None:
            await notify(
                session.agent,
                event("full-page", html=message.html, passwordLength=session.password_length),
            )

    async def _cursor_move(self, ctx: ConnectionContext, message: CursorMove) -> None:
        if self._resolve(ctx) is None:
            return
        session = await self.registry.update(ctx.code, ctx.role, cursor=Cursor(message.x, message.y))
        if session is not None:
            await notify(session.agent, event("cursor-move", x=message.x, y=message.y))

    async def _end(self, ctx: ConnectionContext) -> None:
        session = self._resolve(ctx)
        if session is None:
            return
        code, role = session.code, ctx.role
        ctx.unbind()
        if await self.registry.end(code):
            await self.audit.record("SESSION_ENDED", {"code": code, "by": role.value, "ip": ctx.addr})
