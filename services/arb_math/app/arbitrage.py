"""
Arbitrage detection over fight odds snapshots.

Single-market: best moneyline price per fighter across books.
Cross-market: a fixed set of mutually exclusive, exhaustive partitions of the
fight's outcomes, each leg priced at the best book for that selection:

    method_h2h    ML(k) + other fighter by KO / SUB / DEC
    round_method  fight ends in round 1..N + goes to decision
    prop_h2h      ML(k) + other fighter inside distance / by decision
    multi_market  ML(k) + other fighter by decision (method) + inside distance (prop)

Opportunities are advisory. The detector keeps no state between calls.
"""
from __future__ import annotations

import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from shared.odds_math import allocate_stakes, implied_probability, profit_margin
from shared.schemas import (
    ArbitrageLeg,
    ArbitrageOpportunity,
    OddsSnapshot,
    OpportunityType,
)

logger = logging.getLogger(__name__)

MAX_TOTAL_STAKE = float(os.getenv("MAX_TOTAL_STAKE", "1000.0"))
MIN_ARB_PROFIT_PCT = float(os.getenv("MIN_ARB_PROFIT_PCT", "0.0"))
OPPORTUNITY_TTL_SECONDS = int(os.getenv("OPPORTUNITY_TTL_SECONDS", "1800"))

# Established, high-limit books
SHARP_BOOKS = {
    "pinnacle", "circa sports", "betcris", "bookmaker",
    "draftkings", "fanduel", "betmgm", "caesars",
}
# Low-volume books whose lines move or vanish quickly
THIN_BOOKS = {
    "mybookie", "bovada", "betus", "wynnbet", "twinspires", "betfred", "superbook",
}

FIGHTERS = ("fighter1", "fighter2")

STANDARD_ROUNDS = 3
CHAMPIONSHIP_ROUNDS = 5


class ArbitrageSettings(BaseModel):
    total_stake: float = Field(default=MAX_TOTAL_STAKE, gt=0)
    min_profit_margin: float = Field(default=MIN_ARB_PROFIT_PCT, ge=0)
    high_confidence_margin: float = Field(default=3.0, gt=0)
    ttl_seconds: int = Field(default=OPPORTUNITY_TTL_SECONDS, gt=0)
    allow_same_book: bool = False
    enable_cross_market: bool = True


@dataclass
class Candidate:
    """One priced selection at one book."""
    sportsbook: str
    market: str
    selection: str
    odds: int


def _other(fighter: str) -> str:
    return "fighter2" if fighter == "fighter1" else "fighter1"


def _best(candidates: Iterable[Candidate]) -> Optional[Candidate]:
    """Highest American price wins; first seen wins ties."""
    best: Optional[Candidate] = None
    for c in candidates:
        if best is None or c.odds > best.odds:
            best = c
    return best


def _best_per_book(
    snapshots: Sequence[OddsSnapshot],
    market: str,
    selection: str,
    price: Callable[[OddsSnapshot], Optional[int]],
) -> Optional[Candidate]:
    return _best(
        Candidate(s.sportsbook, market, selection, p)
        for s in snapshots
        for p in [price(s)]
        if p is not None and abs(p) >= 100
    )


def get_confidence(margin: float, sportsbooks: Iterable[str], high_margin: float = 3.0) -> str:
    books = {b.lower() for b in sportsbooks}
    if books & THIN_BOOKS:
        return "low"
    if margin >= high_margin and books and books <= SHARP_BOOKS:
        return "high"
    return "medium"


class ArbitrageDetector:
    """Stateless single- and cross-market arbitrage finder."""

    def __init__(self, settings: Optional[ArbitrageSettings] = None):
        self.settings = settings or ArbitrageSettings()

    # ─────────────────────────────────────────────────────────────────────────
    # Opportunity construction
    # ─────────────────────────────────────────────────────────────────────────

    def _build(
        self,
        fight_id: str,
        opportunity_type: OpportunityType,
        legs: Sequence[Optional[Candidate]],
    ) -> Optional[ArbitrageOpportunity]:
        if not legs or any(leg is None for leg in legs):
            return None

        probs = [implied_probability(leg.odds) for leg in legs]
        prob_sum = sum(probs)
        if prob_sum >= 1.0:
            return None

        margin = profit_margin(prob_sum)
        if margin < self.settings.min_profit_margin:
            return None

        books = list(dict.fromkeys(leg.sportsbook for leg in legs))
        if len(books) == 1 and not self.settings.allow_same_book:
            logger.debug(f"Skipping same-book {opportunity_type.value} arb on {fight_id} ({books[0]})")
            return None

        total = self.settings.total_stake
        stakes = allocate_stakes(probs, total)
        payout = total / prob_sum
        arb_legs = [
            ArbitrageLeg(
                sportsbook=leg.sportsbook,
                market=leg.market,
                selection=leg.selection,
                odds=leg.odds,
                implied_probability=round(p, 6),
                stake=round(stake, 2),
                payout=round(payout, 2),
            )
            for leg, p, stake in zip(legs, probs, stakes)
        ]

        now = datetime.utcnow()
        opportunity = ArbitrageOpportunity(
            fight_id=fight_id,
            opportunity_type=opportunity_type,
            sportsbooks=books,
            markets=list(dict.fromkeys(leg.market for leg in legs)),
            legs=arb_legs,
            implied_prob_sum=round(prob_sum, 6),
            profit_margin=round(margin, 4),
            total_stake=total,
            confidence=get_confidence(margin, books, self.settings.high_confidence_margin),
            detected_at=now,
            expires_at=now + timedelta(seconds=self.settings.ttl_seconds),
        )
        logger.info(
            f"Arbitrage {opportunity_type.value} on {fight_id}: {margin:.2f}% "
            f"across {', '.join(books)}",
            extra={"event_type": "arbitrage_found", "fight_id": fight_id},
        )
        return opportunity

    # ─────────────────────────────────────────────────────────────────────────
    # Single market
    # ─────────────────────────────────────────────────────────────────────────

    def _single_market_for_fight(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        legs = [
            _best_per_book(snapshots, "moneyline", fighter, lambda s, f=fighter: getattr(s.moneyline, f))
            for fighter in FIGHTERS
        ]
        opportunity = self._build(fight_id, OpportunityType.SINGLE_MARKET, legs)
        return [opportunity] if opportunity else []

    # ─────────────────────────────────────────────────────────────────────────
    # Cross market
    # ─────────────────────────────────────────────────────────────────────────

    def _moneyline(self, snapshots: Sequence[OddsSnapshot], fighter: str) -> Optional[Candidate]:
        return _best_per_book(snapshots, "moneyline", fighter, lambda s: getattr(s.moneyline, fighter))

    def _fighter_method(self, snapshots: Sequence[OddsSnapshot], fighter: str, method: str) -> Optional[Candidate]:
        def price(s: OddsSnapshot) -> Optional[int]:
            breakdown = getattr(s.method, fighter)
            return getattr(breakdown, method) if breakdown else None
        return _best_per_book(snapshots, "method", f"{fighter} by {method}", price)

    def _prop(self, snapshots: Sequence[OddsSnapshot], key: str) -> Optional[Candidate]:
        return _best_per_book(snapshots, "prop", key, lambda s: s.props.get(key))

    def _method_h2h(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        found = []
        for fighter in FIGHTERS:
            other = _other(fighter)
            legs = [self._moneyline(snapshots, fighter)] + [
                self._fighter_method(snapshots, other, method)
                for method in ("ko", "submission", "decision")
            ]
            opportunity = self._build(fight_id, OpportunityType.METHOD_H2H, legs)
            if opportunity:
                found.append(opportunity)
        return found

    def _round_method(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        priced = set().union(*(s.rounds.priced() for s in snapshots))
        if not priced:
            return []
        # Championship bouts are scheduled for five rounds, everything else three;
        # every scheduled round must be priced for the partition to be exhaustive
        scheduled = CHAMPIONSHIP_ROUNDS if priced & {4, 5} else STANDARD_ROUNDS
        legs: List[Optional[Candidate]] = [
            _best_per_book(
                snapshots, "round", f"round {n}",
                lambda s, n=n: s.rounds.priced().get(n),
            )
            for n in range(1, scheduled + 1)
        ]
        legs.append(_best_per_book(snapshots, "method", "decision", lambda s: s.method.decision))
        opportunity = self._build(fight_id, OpportunityType.ROUND_METHOD, legs)
        return [opportunity] if opportunity else []

    def _prop_h2h(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        found = []
        for fighter in FIGHTERS:
            other = _other(fighter)
            legs = [
                self._moneyline(snapshots, fighter),
                self._prop(snapshots, f"{other}_inside_distance"),
                self._prop(snapshots, f"{other}_by_decision"),
            ]
            opportunity = self._build(fight_id, OpportunityType.PROP_H2H, legs)
            if opportunity:
                found.append(opportunity)
        return found

    def _multi_market(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        found = []
        for fighter in FIGHTERS:
            other = _other(fighter)
            legs = [
                self._moneyline(snapshots, fighter),
                self._fighter_method(snapshots, other, "decision"),
                self._prop(snapshots, f"{other}_inside_distance"),
            ]
            opportunity = self._build(fight_id, OpportunityType.MULTI_MARKET, legs)
            if opportunity:
                found.append(opportunity)
        return found

    def _cross_market_for_fight(self, fight_id: str, snapshots: Sequence[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        found: List[ArbitrageOpportunity] = []
        for combination in (self._method_h2h, self._round_method, self._prop_h2h, self._multi_market):
            found.extend(combination(fight_id, snapshots))
        return found

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def _per_fight(
        self,
        snapshots: Iterable[OddsSnapshot],
        finder: Callable[[str, Sequence[OddsSnapshot]], List[ArbitrageOpportunity]],
    ) -> List[ArbitrageOpportunity]:
        """Run finder on each fight separately; one fight's failure never hides another's results."""
        by_fight: Dict[str, List[OddsSnapshot]] = defaultdict(list)
        for snapshot in snapshots:
            by_fight[snapshot.fight_id].append(snapshot)

        found: List[ArbitrageOpportunity] = []
        for fight_id, group in by_fight.items():
            try:
                found.extend(finder(fight_id, group))
            except Exception as e:
                logger.error(f"Arbitrage analysis failed for {fight_id}: {e}", extra={
                    "fight_id": fight_id,
                    "error_type": type(e).__name__,
                })
        return found

    def detect_single_market(self, snapshots: Iterable[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        return self._per_fight(snapshots, self._single_market_for_fight)

    def detect_cross_market(self, snapshots: Iterable[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        return self._per_fight(snapshots, self._cross_market_for_fight)

    def detect(self, snapshots: Iterable[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        """Single-market plus (when enabled) cross-market opportunities."""
        snapshots = list(snapshots)
        found = self.detect_single_market(snapshots)
        if self.settings.enable_cross_market:
            found.extend(self.detect_cross_market(snapshots))
        return found
