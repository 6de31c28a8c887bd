from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

AUDIT_REDIS_KEY = "relay:audit"
MIRROR_TIMEOUT_SEC = 1.0


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    event: str
    details: Dict[str, Any] = field(default_factory=dict)


class AuditSink:
    """Bounded in-memory audit trail, optionally mirrored to a Redis list."""

    def __init__(
        self,
        capacity: int = 1000,
        redis: Optional[Any] = None,
        *,
        mirror_timeout_sec: float = MIRROR_TIMEOUT_SEC,
    ) -> None:
        self.capacity = capacity
        self.mirror_timeout_sec = mirror_timeout_sec
        self._entries: Deque[AuditEntry] = deque(maxlen=capacity)
        self._redis = redis

    @classmethod
    def from_url(cls, capacity: int, redis_url: Optional[str]) -> "AuditSink":
        redis = (
            aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=MIRROR_TIMEOUT_SEC,
                socket_connect_timeout=MIRROR_TIMEOUT_SEC,
            )
            if redis_url
            else None
        )
        return cls(capacity=capacity, redis=redis)

    async def record(self, event: str, details: Optional[Dict[str, Any]] = None) -> AuditEntry:
        entry = AuditEntry(
            timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
            event=event,
            details=dict(details or {}),
        )
        self._entries.append(entry)
        logger.info("[AUDIT] %s | %s | %s", entry.timestamp, event, json.dumps(entry.details, default=str))

        if self._redis is not None:
            try:
                await asyncio.wait_for(self._mirror(entry), timeout=self.mirror_timeout_sec)
            except asyncio.TimeoutError:
                logger.warning("Audit mirror to redis timed out after %ss", self.mirror_timeout_sec)
            except Exception as exc:
                logger.warning("Audit mirror to redis failed: %s", exc)
        return entry

    async def _mirror(self, entry: AuditEntry) -> None:
        await self._redis.lpush(AUDIT_REDIS_KEY, json.dumps(asdict(entry), default=str))
        await self._redis.ltrim(AUDIT_REDIS_KEY, 0, self.capacity - 1)

    def entries(self) -> List[AuditEntry]:
        return list(self._entries)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()

    def __len__(self) -> int:
        return len(self._entries)
