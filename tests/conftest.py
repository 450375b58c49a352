"""
Shared test helpers: snapshot factory, fake clock, and event payload builders.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from shared.schemas import MoneylineOdds, OddsSnapshot


def make_snapshot(
    f1: int = -200,
    f2: int = 170,
    sportsbook: str = "DraftKings",
    fight_id: str = "fight_1",
    timestamp: Optional[datetime] = None,
    **kwargs: Any,
) -> OddsSnapshot:
    return OddsSnapshot(
        fight_id=fight_id,
        sportsbook=sportsbook,
        timestamp=timestamp or datetime.utcnow(),
        moneyline=MoneylineOdds(fighter1=f1, fighter2=f2),
        **kwargs,
    )


def make_event(
    event_id: str = "evt_1",
    home: str = "Jon Jones",
    away: str = "Stipe Miocic",
    bookmakers: Optional[List[Dict[str, Any]]] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """The Odds API event-odds payload."""
    event = {
        "id": event_id,
        "sport_key": "mma_mixed_martial_arts",
        "sport_title": "MMA",
        "commence_time": "2024-12-01T20:00:00Z",
        "home_team": home,
        "away_team": away,
        "bookmakers": bookmakers if bookmakers is not None else [
            make_bookmaker("draftkings", "DraftKings", home, away, -200, 170),
        ],
    }
    event.update(overrides)
    return event


def make_bookmaker(
    key: str,
    title: str,
    home: str,
    away: str,
    home_price: int,
    away_price: int,
    extra_markets: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    return {
        "key": key,
        "title": title,
        "last_update": "2024-11-01T10:00:00Z",
        "markets": [
            {
                "key": "h2h",
                "outcomes": [
                    {"name": home, "price": home_price},
                    {"name": away, "price": away_price},
                ],
            },
            *(extra_markets or []),
        ],
    }


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
