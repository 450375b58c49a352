"""
Odds movement detection.

Compares each new snapshot against the last one seen for the same
(fight, sportsbook) pair and classifies the implied-probability change on the
leg that moved most:

    reverse      |change| >= reverse threshold, against the fight's trend
    significant  |change| >= significant threshold
    steam        |change| >= steam threshold, corroborated by other books
                 moving the same way within the steam window
    minor        |change| >= minor threshold (opt-in)

The first snapshot for a key is a baseline and never produces an alert.
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from shared.odds_math import implied_probability, percentage_change
from shared.schemas import MovementAlert, MovementType, OddsSnapshot

logger = logging.getLogger(__name__)

SnapshotKey = Tuple[str, str]

# Higher rank wins; used to keep classification monotonic in |change|
MOVEMENT_RANK: Dict[Optional[MovementType], int] = {
    None: 0,
    MovementType.MINOR: 1,
    MovementType.STEAM: 2,
    MovementType.SIGNIFICANT: 3,
    MovementType.REVERSE: 4,
}

MOVEMENT_PRIORITY: Dict[MovementType, str] = {
    MovementType.STEAM: "urgent",
    MovementType.REVERSE: "high",
    MovementType.SIGNIFICANT: "medium",
    MovementType.MINOR: "low",
}


class MovementThresholds(BaseModel):
    """Tunable detector settings. Percent values apply to implied probability."""
    significant: float = Field(default=5.0, gt=0)
    reverse: float = Field(default=10.0, gt=0)
    steam: float = Field(default=3.0, gt=0)
    minor: float = Field(default=2.0, gt=0)
    steam_window_seconds: float = Field(default=300.0, gt=0)
    steam_min_books: int = Field(default=2, ge=2)
    trend_min_observations: int = Field(default=2, ge=1)
    trend_lookback: int = Field(default=10, ge=1)
    minimum_alert_interval_seconds: float = Field(default=0.0, ge=0)
    minimum_odds_value: int = Field(default=100, ge=100)
    emit_minor: bool = False
    history_size: int = Field(default=100, ge=1)
    # Fights with no snapshot for this long are forgotten by prune()
    retention_hours: float = Field(default=48.0, gt=0)

    @model_validator(mode="after")
    def _check_order(self) -> "MovementThresholds":
        if not (self.minor <= self.steam <= self.significant <= self.reverse):
            raise ValueError("thresholds must satisfy minor <= steam <= significant <= reverse")
        return self


@dataclass
class LegMove:
    """A recorded price move, expressed in fighter1-probability direction."""
    timestamp: datetime
    sportsbook: str
    direction: int  # +1 fighter1 shortening, -1 fighter1 drifting
    magnitude: float


def classify_change(
    abs_change: float,
    thresholds: MovementThresholds,
    against_trend: bool = False,
    corroborated: bool = False,
) -> Optional[MovementType]:
    """Map a change magnitude and its market context onto a movement type."""
    if abs_change >= thresholds.reverse and against_trend:
        return MovementType.REVERSE
    if abs_change >= thresholds.significant:
        return MovementType.SIGNIFICANT
    if abs_change >= thresholds.steam and corroborated:
        return MovementType.STEAM
    if abs_change >= thresholds.minor:
        return MovementType.MINOR
    return None


class MovementDetector:
    """
    Tracks the latest snapshot per (fight, sportsbook) and emits MovementAlerts.

    One instance per process, in memory only. Each key has a single writer, so
    no cross-key locking is needed.
    """

    def __init__(self, thresholds: Optional[MovementThresholds] = None):
        self.thresholds = thresholds or MovementThresholds()
        self._latest: Dict[SnapshotKey, OddsSnapshot] = {}
        self._history: Dict[SnapshotKey, Deque[OddsSnapshot]] = {}
        self._moves: Dict[str, Deque[LegMove]] = defaultdict(lambda: deque(maxlen=200))
        self._last_alert_at: Dict[str, datetime] = {}
        self._alerts: Deque[MovementAlert] = deque(maxlen=1000)
        self._processed = 0
        self._rejected = 0
        self._suppressed = 0
        self._alert_counts: Dict[str, int] = {t.value: 0 for t in MovementType}

    # ─────────────────────────────────────────────────────────────────────────
    # Detection
    # ─────────────────────────────────────────────────────────────────────────

    def _is_valid(self, snapshot: OddsSnapshot) -> bool:
        floor = self.thresholds.minimum_odds_value
        ml = snapshot.moneyline
        return abs(ml.fighter1) >= floor and abs(ml.fighter2) >= floor

    def _primary_change(self, old: OddsSnapshot, new: OddsSnapshot) -> Tuple[str, float, int]:
        """
        Return (leg, signed change %, fighter1 direction) for the leg that moved most.
        """
        changes = {
            "fighter1": percentage_change(
                implied_probability(old.moneyline.fighter1),
                implied_probability(new.moneyline.fighter1),
            ),
            "fighter2": percentage_change(
                implied_probability(old.moneyline.fighter2),
                implied_probability(new.moneyline.fighter2),
            ),
        }
        leg = max(changes, key=lambda k: abs(changes[k]))
        change = changes[leg]
        sign = (change > 0) - (change < 0)
        direction = sign if leg == "fighter1" else -sign
        return leg, change, direction

    def _trend(self, fight_id: str) -> int:
        """Sign of recent fighter1 moves across books; 0 when not established."""
        moves = list(self._moves.get(fight_id, ()))[-self.thresholds.trend_lookback:]
        if len(moves) < self.thresholds.trend_min_observations:
            return 0
        total = sum(m.direction * m.magnitude for m in moves)
        return (total > 0) - (total < 0)

    def _corroborated(self, fight_id: str, sportsbook: str, direction: int, at: datetime) -> bool:
        window = timedelta(seconds=self.thresholds.steam_window_seconds)
        books = {
            m.sportsbook
            for m in self._moves.get(fight_id, ())
            if m.sportsbook != sportsbook
            and m.direction == direction
            and m.magnitude >= self.thresholds.steam
            and abs(at - m.timestamp) <= window
        }
        return len(books) >= self.thresholds.steam_min_books - 1

    def _remember(self, key: SnapshotKey, snapshot: OddsSnapshot) -> None:
        self._latest[key] = snapshot
        history = self._history.get(key)
        if history is None:
            history = deque(maxlen=self.thresholds.history_size)
            self._history[key] = history
        history.append(snapshot)

    def process(self, snapshot: OddsSnapshot) -> Optional[MovementAlert]:
        """Feed one snapshot; return an alert if it moved enough versus the prior one."""
        if not self._is_valid(snapshot):
            self._rejected += 1
            logger.warning(
                f"[{snapshot.sportsbook}] Ignoring snapshot for {snapshot.fight_id}: "
                f"moneyline below minimum odds value",
                extra={"fight_id": snapshot.fight_id, "sportsbook": snapshot.sportsbook},
            )
            return None

        self._processed += 1
        key = (snapshot.fight_id, snapshot.sportsbook)
        previous = self._latest.get(key)
        if previous is None:
            self._remember(key, snapshot)
            return None

        leg, change, direction = self._primary_change(previous, snapshot)
        magnitude = abs(change)

        trend = self._trend(snapshot.fight_id)
        against_trend = trend != 0 and direction == -trend
        corroborated = (
            direction != 0
            and self._corroborated(snapshot.fight_id, snapshot.sportsbook, direction, snapshot.timestamp)
        )
        movement_type = classify_change(magnitude, self.thresholds, against_trend, corroborated)

        if direction != 0 and magnitude >= self.thresholds.minor:
            self._moves[snapshot.fight_id].append(LegMove(
                timestamp=snapshot.timestamp,
                sportsbook=snapshot.sportsbook,
                direction=direction,
                magnitude=magnitude,
            ))
        self._remember(key, snapshot)

        if movement_type is None:
            return None
        if movement_type == MovementType.MINOR and not self.thresholds.emit_minor:
            return None
        if self._within_alert_interval(snapshot.fight_id, snapshot.timestamp):
            self._suppressed += 1
            return None

        alert = MovementAlert(
            fight_id=snapshot.fight_id,
            sportsbook=snapshot.sportsbook,
            movement_type=movement_type,
            old_snapshot=previous,
            new_snapshot=snapshot,
            percentage_change=round(change, 4),
            leg=leg,
            priority=MOVEMENT_PRIORITY[movement_type],
            timestamp=snapshot.timestamp,
        )
        self._last_alert_at[snapshot.fight_id] = snapshot.timestamp
        self._alerts.append(alert)
        self._alert_counts[movement_type.value] += 1

        logger.info(
            f"[{snapshot.sportsbook}] {movement_type.value} move on {snapshot.fight_id}: "
            f"{leg} {change:+.2f}%",
            extra={
                "event_type": "movement_alert",
                "fight_id": snapshot.fight_id,
                "sportsbook": snapshot.sportsbook,
            },
        )
        return alert

    def _within_alert_interval(self, fight_id: str, at: datetime) -> bool:
        interval = self.thresholds.minimum_alert_interval_seconds
        if interval <= 0:
            return False
        last = self._last_alert_at.get(fight_id)
        return last is not None and (at - last).total_seconds() < interval

    # ─────────────────────────────────────────────────────────────────────────
    # Queries and maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def latest_snapshots(self, fight_id: Optional[str] = None) -> List[OddsSnapshot]:
        return [
            snap for (fid, _), snap in self._latest.items()
            if fight_id is None or fid == fight_id
        ]

    def get_history(self, fight_id: str, sportsbook: str) -> List[OddsSnapshot]:
        return list(self._history.get((fight_id, sportsbook), ()))

    def get_recent_movements(self, fight_id: Optional[str] = None, minutes: float = 60) -> List[MovementAlert]:
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return [
            a for a in self._alerts
            if a.timestamp >= cutoff and (fight_id is None or a.fight_id == fight_id)
        ]

    def update_thresholds(self, **changes: Any) -> MovementThresholds:
        """Replace thresholds with a validated copy carrying `changes`."""
        self.thresholds = MovementThresholds(**{**self.thresholds.model_dump(), **changes})
        logger.info(f"Movement thresholds updated: {changes}")
        return self.thresholds

    def clear_history(self, fight_id: Optional[str] = None) -> None:
        if fight_id is None:
            self._latest.clear()
            self._history.clear()
            self._moves.clear()
            self._last_alert_at.clear()
            return
        for key in [k for k in self._latest if k[0] == fight_id]:
            self._latest.pop(key, None)
            self._history.pop(key, None)
        self._moves.pop(fight_id, None)
        self._last_alert_at.pop(fight_id, None)

    def prune(self, now: Optional[datetime] = None) -> List[str]:
        """Forget fights whose newest snapshot is older than the retention window."""
        cutoff = (now or datetime.utcnow()) - timedelta(hours=self.thresholds.retention_hours)
        newest: Dict[str, datetime] = {}
        for (fight_id, _), snapshot in self._latest.items():
            if fight_id not in newest or snapshot.timestamp > newest[fight_id]:
                newest[fight_id] = snapshot.timestamp

        stale = [fight_id for fight_id, seen in newest.items() if seen < cutoff]
        for fight_id in stale:
            self.clear_history(fight_id)
        if stale:
            logger.info(f"Pruned {len(stale)} fight(s) idle for over {self.thresholds.retention_hours:g}h")
        return stale

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked_pairs": len(self._latest),
            "tracked_fights": len({k[0] for k in self._latest}),
            "snapshots_processed": self._processed,
            "snapshots_rejected": self._rejected,
            "alerts_suppressed": self._suppressed,
            "alerts_by_type": dict(self._alert_counts),
            "thresholds": self.thresholds.model_dump(),
        }
