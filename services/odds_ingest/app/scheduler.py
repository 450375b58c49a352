"""
Timer-driven sync scheduler.

Runs aggregator cycles at randomized intervals so requests never follow a
fixed cadence. After a cycle in which a source had no unblocked sessions, the
next tick waits out the no-capacity cool-down and resets that source's
sessions before syncing again. Stopping only prevents new ticks; a cycle
already running is allowed to finish.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
from datetime import datetime
from typing import Any, Dict, Optional

from .aggregator import MarketAnalysisAggregator

logger = logging.getLogger(__name__)

# Randomized sync bounds (seconds)
SYNC_MIN_INTERVAL = float(os.getenv("SYNC_MIN_INTERVAL", "240"))
SYNC_MAX_INTERVAL = float(os.getenv("SYNC_MAX_INTERVAL", "360"))
SYNC_STAGGER_MAX = float(os.getenv("SYNC_STAGGER_MAX", "15"))
# Wait before retrying once every session of a source is blocked
NO_CAPACITY_COOLDOWN = float(os.getenv("NO_CAPACITY_COOLDOWN", "300"))

MAX_CONSECUTIVE_ERRORS = 10
BASE_ERROR_BACKOFF = 30.0  # seconds
MAX_ERROR_BACKOFF = 600.0


class SyncScheduler:
    """Periodic driver for MarketAnalysisAggregator.run_cycle()."""

    def __init__(
        self,
        aggregator: MarketAnalysisAggregator,
        min_interval: float = SYNC_MIN_INTERVAL,
        max_interval: float = SYNC_MAX_INTERVAL,
        stagger_max: float = SYNC_STAGGER_MAX,
        no_capacity_cooldown: float = NO_CAPACITY_COOLDOWN,
    ):
        if min_interval > max_interval:
            raise ValueError("min_interval must not exceed max_interval")
        self.aggregator = aggregator
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.stagger_max = stagger_max
        self.no_capacity_cooldown = no_capacity_cooldown
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._consecutive_errors = 0
        self.stats: Dict[str, Any] = {
            "started_at": None,
            "cycle_count": 0,
            "success_count": 0,
            "error_count": 0,
            "no_capacity_count": 0,
            "recovered_count": 0,
            "last_cycle_at": None,
            "last_error": None,
            "next_delay": None,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self, consecutive_errors: int, no_capacity: bool) -> float:
        """Seconds until the next tick."""
        if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
            delay = MAX_ERROR_BACKOFF
        elif consecutive_errors > 0:
            delay = min(BASE_ERROR_BACKOFF * (2 ** (consecutive_errors - 1)), MAX_ERROR_BACKOFF)
        else:
            delay = random.uniform(self.min_interval, self.max_interval)
        if no_capacity:
            delay = max(delay, self.no_capacity_cooldown)
        return delay

    async def _wait(self, seconds: float) -> None:
        """Sleep that ends early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self) -> bool:
        """Run one cycle; returns True when at least one source synced."""
        self.stats["cycle_count"] += 1
        self.stats["last_cycle_at"] = datetime.utcnow().isoformat()

        # Ticks after a no-capacity cycle only run once the cool-down has elapsed
        if self.aggregator.no_capacity_sources:
            recovered = self.aggregator.recover_sources(self.aggregator.no_capacity_sources)
            self.stats["recovered_count"] += len(recovered)

        response = await self.aggregator.run_cycle()
        if self.aggregator.no_capacity_sources:
            self.stats["no_capacity_count"] += 1

        if response.source_errors and not response.results:
            self._consecutive_errors += 1
            self.stats["error_count"] += 1
            self.stats["last_error"] = "; ".join(
                f"{k}: {v}" for k, v in response.source_errors.items()
            )[:200]
            logger.error(f"Sync cycle failed for every source ({self._consecutive_errors} in a row)")
            return False

        self._consecutive_errors = 0
        self.stats["success_count"] += 1
        return True

    async def _loop(self) -> None:
        self.stats["started_at"] = datetime.utcnow().isoformat()
        stagger = random.uniform(0, self.stagger_max) if self.stagger_max > 0 else 0.0
        logger.info(f"Sync scheduler starting in {stagger:.1f}s")
        await self._wait(stagger)

        while not self._stop.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Sync scheduler cancelled")
                raise
            except Exception as exc:
                self._consecutive_errors += 1
                self.stats["error_count"] += 1
                self.stats["last_error"] = str(exc)[:200]
                logger.error(f"Sync cycle error ({self._consecutive_errors}): {exc}")

            delay = self.next_delay(
                self._consecutive_errors,
                bool(self.aggregator.no_capacity_sources),
            )
            self.stats["next_delay"] = round(delay, 1)
            logger.info(f"Next sync in {delay:.0f}s")
            await self._wait(delay)

        logger.info("Sync scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="sync_scheduler")
        logger.info(
            f"Sync scheduler scheduled (interval {self.min_interval:.0f}-{self.max_interval:.0f}s randomized)"
        )

    async def stop(self) -> None:
        """Stop issuing ticks and wait for any in-flight cycle to finish."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "running": self.running, "consecutive_errors": self._consecutive_errors}
