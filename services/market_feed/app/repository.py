"""
Persistence contract for ingested odds and detector output.

The concrete stores (document DB, time-series DB, cache) live outside this
service. The pipeline only needs the OddsRepository protocol, and it never
lets a write failure abort ingestion: every call goes through safe_write().
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Deque, Dict, List, Optional, Protocol

from shared.schemas import ArbitrageOpportunity, MovementAlert, OddsSnapshot

logger = logging.getLogger(__name__)


class OddsRepository(Protocol):
    async def write_odds_snapshot(self, snapshot: OddsSnapshot) -> None: ...

    async def write_movement_alert(self, alert: MovementAlert) -> None: ...

    async def write_arbitrage_opportunity(self, opportunity: ArbitrageOpportunity) -> None: ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...


async def safe_write(operation: Awaitable[Any], description: str, source_id: str = "repository") -> bool:
    """Await a repository call, logging instead of raising on failure."""
    try:
        await operation
        return True
    except Exception as e:
        logger.error(f"[{source_id}] Repository write failed ({description}): {e}", extra={
            "event_type": "repository_write_failed",
            "source_id": source_id,
            "error_type": type(e).__name__,
        })
        return False


class InMemoryOddsRepository:
    """
    Process-local repository.

    Keeps a bounded history of snapshots per (fight, sportsbook) plus the most
    recent alerts and opportunities. Keys whose newest snapshot is older than
    the retention window are dropped on flush. Used when no external store is
    wired in, and by tests.
    """

    def __init__(
        self,
        history_size: int = 100,
        record_limit: int = 1000,
        retention: timedelta = timedelta(hours=48),
    ):
        self.history_size = history_size
        self.retention = retention
        self._snapshots: Dict[tuple, Deque[OddsSnapshot]] = defaultdict(
            lambda: deque(maxlen=self.history_size)
        )
        self.alerts: Deque[MovementAlert] = deque(maxlen=record_limit)
        self.opportunities: Deque[ArbitrageOpportunity] = deque(maxlen=record_limit)
        self._pending = 0
        self.closed = False

    async def write_odds_snapshot(self, snapshot: OddsSnapshot) -> None:
        self._snapshots[(snapshot.fight_id, snapshot.sportsbook)].append(snapshot)
        self._pending += 1

    async def write_movement_alert(self, alert: MovementAlert) -> None:
        self.alerts.append(alert)
        self._pending += 1

    async def write_arbitrage_opportunity(self, opportunity: ArbitrageOpportunity) -> None:
        self.opportunities.append(opportunity)
        self._pending += 1

    async def get_latest_odds(self, fight_id: Optional[str] = None) -> List[OddsSnapshot]:
        """Most recent snapshot per sportsbook, optionally for one fight."""
        return [
            history[-1]
            for (fid, _), history in self._snapshots.items()
            if history and (fight_id is None or fid == fight_id)
        ]

    def snapshot_count(self) -> int:
        return sum(len(h) for h in self._snapshots.values())

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop (fight, sportsbook) keys with no snapshot inside the retention window."""
        cutoff = (now or datetime.utcnow()) - self.retention
        stale = [key for key, history in self._snapshots.items() if not history or history[-1].timestamp < cutoff]
        for key in stale:
            del self._snapshots[key]
        return len(stale)

    async def flush(self) -> None:
        if self._pending:
            logger.debug(f"Flushed {self._pending} pending writes")
        self._pending = 0
        pruned = self.prune()
        if pruned:
            logger.info(f"Pruned {pruned} idle snapshot histories")

    async def close(self) -> None:
        await self.flush()
        self.closed = True
