"""Session relay engine package."""

from .audit import AuditSink
from .credentials import CredentialValidator
from .ratelimit import JoinRateLimiter
from .registry import Role, Session, SessionRegistry
from .router import ConnectionContext, MessageRouter
from .sweeper import LifecycleSweeper

__all__ = [
    "AuditSink",
    "ConnectionContext",
    "CredentialValidator",
    "JoinRateLimiter",
    "LifecycleSweeper",
    "MessageRouter",
    "Role",
    "Session",
    "SessionRegistry",
]
