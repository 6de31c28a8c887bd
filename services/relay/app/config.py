import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_AGENT_SECRET_KEY = "demo-secret-change-in-production"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_origins(name: str) -> Optional[Tuple[str, ...]]:
    raw = os.getenv(name)
    if not raw:
        return None
    tokens = tuple(token.strip() for token in raw.split(",") if token.strip())
    return tokens or None


@dataclass(frozen=True)
class RelaySettings:
    agent_secret_key: str = DEFAULT_AGENT_SECRET_KEY
    agent_username: str = "Ellaite"
    agent_password: str = "Ellaite"
    # None allows every origin.
    allowed_origins: Optional[Tuple[str, ...]] = None
    session_timeout_sec: int = 600
    max_join_attempts: int = 5
    rate_limit_window_sec: int = 60
    sweep_interval_sec: int = 60
    rate_limit_gc_interval_sec: int = 300
    audit_capacity: int = 1000
    audit_redis_url: Optional[str] = None
    # Only enable behind a proxy that overwrites X-Forwarded-For.
    trust_proxy_headers: bool = False
    log_level: str = "INFO"

    @property
    def uses_default_key(self) -> bool:
        return self.agent_secret_key == DEFAULT_AGENT_SECRET_KEY

    @classmethod
    def from_env(cls) -> "RelaySettings":
        return cls(
            agent_secret_key=os.getenv("AGENT_SECRET_KEY", DEFAULT_AGENT_SECRET_KEY),
            agent_username=os.getenv("AGENT_USERNAME", "Ellaite"),
            agent_password=os.getenv("AGENT_PASSWORD", "Ellaite"),
            allowed_origins=_env_origins("ALLOWED_ORIGINS"),
            session_timeout_sec=_env_int("SESSION_TIMEOUT_SEC", 600),
            max_join_attempts=_env_int("MAX_JOIN_ATTEMPTS", 5),
            rate_limit_window_sec=_env_int("RATE_LIMIT_WINDOW_SEC", 60),
            sweep_interval_sec=_env_int("SWEEP_INTERVAL_SEC", 60),
            rate_limit_gc_interval_sec=_env_int("RATE_LIMIT_GC_INTERVAL_SEC", 300),
            audit_capacity=_env_int("AUDIT_CAPACITY", 1000),
            audit_redis_url=os.getenv("AUDIT_REDIS_URL") or None,
            trust_proxy_headers=_env_bool("TRUST_PROXY_HEADERS", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
