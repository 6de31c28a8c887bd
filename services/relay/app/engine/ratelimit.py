from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRecord:
    attempts: int
    window_start: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int = 0
    retry_after: Optional[int] = None


class JoinRateLimiter:
    """Fixed-window attempt counter keyed by client address."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_sec: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_sec = window_sec
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def check(self, origin_key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            record = self._records.get(origin_key)
            if record is None or now - record.window_start > self.window_sec:
                self._records[origin_key] = RateLimitRecord(attempts=1, window_start=now)
                return RateLimitDecision(allowed=True, remaining=self.max_attempts - 1)

            if record.attempts >= self.max_attempts:
                retry_after = math.ceil(record.window_start + self.window_sec - now)
                return RateLimitDecision(allowed=False, retry_after=max(retry_after, 1))

            record.attempts += 1
            return RateLimitDecision(allowed=True, remaining=self.max_attempts - record.attempts)

    def collect_garbage(self, now: Optional[float] = None) -> int:
        """Drop records whose window started more than two windows ago."""
        if now is None:
            now = self._clock()
        cutoff = self.window_sec * 2
        with self._lock:
            stale = [key for key, rec in self._records.items() if now - rec.window_start > cutoff]
            for key in stale:
                del self._records[key]
        if stale:
            logger.debug("Reclaimed %d rate-limit records", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)
