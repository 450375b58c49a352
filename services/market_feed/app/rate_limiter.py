"""
Request spacing and source-wide request budgets.

Two independent limits apply to every request:
- per-session spacing: a randomized minimum gap between consecutive requests
  issued by the same session;
- per-source budget: sliding-window caps on requests per minute and per hour.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, Optional

from shared.schemas import RateLimitConfig, RequestDelay

if TYPE_CHECKING:
    from .identity_pool import Session

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    """Spacing and budget enforcement for one source."""

    def __init__(
        self,
        request_delay: RequestDelay,
        rate_limit: Optional[RateLimitConfig] = None,
        source_id: str = "unknown",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.request_delay = request_delay
        self.rate_limit = rate_limit or RateLimitConfig()
        self.source_id = source_id
        self._clock = clock
        self._sleep = sleep
        self._minute_window: Deque[float] = deque()
        self._hour_window: Deque[float] = deque()
        self._budget_lock = asyncio.Lock()
        self._spacing_waits = 0
        self._budget_waits = 0
        self._total_wait_seconds = 0.0

    def _random_delay_seconds(self) -> float:
        return random.uniform(self.request_delay.min_ms, self.request_delay.max_ms) / 1000.0

    async def await_spacing(self, session: "Session") -> float:
        """
        Suspend until this session may issue its next request.

        Always stamps the session's last-request time and bumps its request
        counter, whether or not a delay was needed. Returns the seconds waited.
        """
        waited = 0.0
        if session.last_request_at is not None:
            elapsed = self._clock() - session.last_request_at
            delay = self._random_delay_seconds() - elapsed
            if delay > 0:
                logger.debug(
                    f"[{self.source_id}] {session.id} spacing {delay:.2f}s",
                    extra={"session_id": session.id},
                )
                await self._sleep(delay)
                waited = delay
                self._spacing_waits += 1
                self._total_wait_seconds += delay

        session.last_request_at = self._clock()
        session.request_count += 1
        return waited

    def _prune(self, now: float) -> None:
        while self._minute_window and now - self._minute_window[0] >= MINUTE:
            self._minute_window.popleft()
        while self._hour_window and now - self._hour_window[0] >= HOUR:
            self._hour_window.popleft()

    async def await_budget(self) -> float:
        """Wait until the source's per-minute and per-hour budgets allow one more request."""
        waited = 0.0
        async with self._budget_lock:
            while True:
                now = self._clock()
                self._prune(now)
                wait = 0.0
                if len(self._minute_window) >= self.rate_limit.requests_per_minute:
                    wait = max(wait, self._minute_window[0] + MINUTE - now)
                if len(self._hour_window) >= self.rate_limit.requests_per_hour:
                    wait = max(wait, self._hour_window[0] + HOUR - now)
                if wait <= 0:
                    self._minute_window.append(now)
                    self._hour_window.append(now)
                    return waited
                logger.info(f"[{self.source_id}] Request budget exhausted, waiting {wait:.1f}s")
                self._budget_waits += 1
                self._total_wait_seconds += wait
                waited += wait
                await self._sleep(wait)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune(now)
        return {
            "requests_last_minute": len(self._minute_window),
            "requests_last_hour": len(self._hour_window),
            "requests_per_minute_limit": self.rate_limit.requests_per_minute,
            "requests_per_hour_limit": self.rate_limit.requests_per_hour,
            "spacing_waits": self._spacing_waits,
            "budget_waits": self._budget_waits,
            "total_wait_seconds": round(self._total_wait_seconds, 3),
        }
