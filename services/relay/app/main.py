import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from pydantic import BaseModel

from .config import RelaySettings
from .engine import (
    AuditSink,
    ConnectionContext,
    CredentialValidator,
    JoinRateLimiter,
    LifecycleSweeper,
    MessageRouter,
    SessionRegistry,
)
from .engine.connection import WebSocketConnection
from .engine.credentials import check_operator_login

logger = logging.getLogger(__name__)

# Policy violation; sent before accept so the handshake is refused.
WS_POLICY_VIOLATION = 1008


@dataclass
class RelayEngine:
    registry: SessionRegistry
    limiter: JoinRateLimiter
    audit: AuditSink
    router: MessageRouter
    sweeper: LifecycleSweeper


def build_engine(settings: RelaySettings, audit: Optional[AuditSink] = None) -> RelayEngine:
    registry = SessionRegistry(session_timeout_sec=settings.session_timeout_sec)
    limiter = JoinRateLimiter(
        max_attempts=settings.max_join_attempts,
        window_sec=settings.rate_limit_window_sec,
    )
    if audit is None:
        audit = AuditSink.from_url(settings.audit_capacity, settings.audit_redis_url)
    router = MessageRouter(registry, limiter, CredentialValidator(settings.agent_secret_key), audit)
    sweeper = LifecycleSweeper(
        registry,
        limiter,
        audit,
        sweep_interval_sec=settings.sweep_interval_sec,
        gc_interval_sec=settings.rate_limit_gc_interval_sec,
    )
    return RelayEngine(registry=registry, limiter=limiter, audit=audit, router=router, sweeper=sweeper)


def origin_allowed(origin: Optional[str], allowed: Optional[Sequence[str]]) -> bool:
    if not allowed:
        return True
    if not origin:
        return False
    return any(origin == entry or origin.endswith(entry) for entry in allowed)


def client_address(connection: HTTPConnection, trust_proxy_headers: bool = False) -> str:
    if trust_proxy_headers:
        forwarded = connection.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = connection.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    if connection.client and connection.client.host:
        return connection.client.host
    return "unknown"


class OperatorLoginIn(BaseModel):
    username: str
    password: str


def _log_security_banner(settings: RelaySettings) -> None:
    if settings.uses_default_key:
        logger.warning("Using the default agent key; set AGENT_SECRET_KEY before exposing this relay")
    else:
        logger.info("Agent secret key configured")
    logger.info(
        "Session timeout %ss; join limit %s attempts per %ss; origins %s",
        settings.session_timeout_sec,
        settings.max_join_attempts,
        settings.rate_limit_window_sec,
        ",".join(settings.allowed_origins) if settings.allowed_origins else "any",
    )


def create_app(settings: Optional[RelaySettings] = None, audit: Optional[AuditSink] = None) -> FastAPI:
    settings = settings or RelaySettings.from_env()
    app = FastAPI(title="Co-browse Relay")
    app.state.settings = settings
    app.state.engine = build_engine(settings, audit)

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        _log_security_banner(settings)
        app.state.engine.sweeper.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.engine.sweeper.stop()
        await app.state.engine.audit.close()

    @app.get("/health")
    async def health():
        return {"ok": True, "sessions": len(app.state.engine.registry)}

    @app.post("/operator/login")
    async def operator_login(body: OperatorLoginIn, request: Request):
        engine: RelayEngine = app.state.engine
        # Shares the join limiter under a separate key space.
        decision = engine.limiter.check(f"operator-login:{client_address(request, settings.trust_proxy_headers)}")
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many attempts. Try again in {decision.retry_after} seconds.",
                headers={"Retry-After": str(decision.retry_after)},
            )
        ok = check_operator_login(
            body.username,
            body.password,
            expected_username=settings.agent_username,
            expected_password=settings.agent_password,
        )
        # Failed attempts may carry a password typed into the username field.
        details = {"username": body.username, "ok": True} if ok else {"ok": False}
        await engine.audit.record("OPERATOR_LOGIN", details)
        if not ok:
            raise HTTPException(status_code=401, detail="Invalid operator credentials")
        return {"ok": True}

    @app.websocket("/ws")
    async def relay_stream(websocket: WebSocket):
        engine: RelayEngine = app.state.engine
        addr = client_address(websocket, settings.trust_proxy_headers)
        origin = websocket.headers.get("origin")
        if not origin_allowed(origin, settings.allowed_origins):
            await engine.audit.record(
                "CONNECTION_REJECTED", {"ip": addr, "origin": origin, "reason": "invalid_origin"}
            )
            await websocket.close(code=WS_POLICY_VIOLATION)
            return

        await websocket.accept()
        conn = WebSocketConnection(websocket, addr)
        ctx = ConnectionContext(conn=conn, addr=addr)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await engine.router.handle(ctx, raw)
        except WebSocketDisconnect:
            pass
        finally:
            conn.mark_closed()
            await engine.router.disconnect(ctx)

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "services.relay.app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )
