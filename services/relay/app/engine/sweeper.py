from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from .audit import AuditSink
from .ratelimit import JoinRateLimiter
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    """Runs session expiry and rate-limit cleanup on their own clocks."""

    def __init__(
        self,
        registry: SessionRegistry,
        limiter: JoinRateLimiter,
        audit: AuditSink,
        *,
        sweep_interval_sec: float = 60.0,
        gc_interval_sec: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.limiter = limiter
        self.audit = audit
        self.sweep_interval_sec = sweep_interval_sec
        self.gc_interval_sec = gc_interval_sec
        self._clock = clock
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("sweeper already running")
        self._tasks = [
            asyncio.create_task(self._every(self.sweep_interval_sec, self.sweep_once)),
            asyncio.create_task(self._every(self.gc_interval_sec, self.collect_once)),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def sweep_once(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self._clock()
        expired = await self.registry.remove_expired(now)
        for code, age in expired:
            await self.audit.record("SESSION_EXPIRED", {"code": code, "duration": round(age, 3)})
        return len(expired)

    async def collect_once(self, now: Optional[float] = None) -> int:
        return self.limiter.collect_garbage(self._clock() if now is None else now)

    async def _every(self, interval: float, tick: Callable[[], Awaitable[int]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Maintenance tick %s failed: %s", tick.__name__, exc)
