"""
Market analysis aggregator.

Drives sync cycles across every configured source connector, then condenses
the latest snapshots into one report: coverage per market type, per-market
analyses, cross-market arbitrage, an overall efficiency score and a handful
of plain-language recommendations.

A failing connector or analysis never sinks the report; its slot is left
empty and the failure is recorded.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from shared.odds_math import implied_probability
from shared.schemas import (
    ArbitrageOpportunity,
    IngestionResult,
    MarketAnalysisReport,
    MarketCoverage,
    MethodAnalysis,
    MoneylineAnalysis,
    OddsSnapshot,
    OpportunityType,
    PropAnalysis,
    RoundAnalysis,
    SyncResponse,
)
from services.arb_math.app.arbitrage import ArbitrageDetector
from services.arb_math.app.movement import MovementDetector
from services.market_feed.app.connectors.base import BaseSourceConnector
from services.market_feed.app.errors import NoCapacityError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WEIGHTS = {"moneyline": 0.4, "method": 0.25, "rounds": 0.2, "props": 0.15}


class AggregatorConfig(BaseModel):
    enable_method_analysis: bool = True
    enable_round_analysis: bool = True
    enable_prop_analysis: bool = True
    enable_cross_market_arbitrage: bool = True
    min_arbitrage_profit: float = Field(default=2.0, ge=0)
    limited_availability_pct: float = Field(default=50.0, ge=0, le=100)
    round_imbalance_threshold: float = Field(default=0.1, ge=0)
    low_efficiency_threshold: float = Field(default=0.5, ge=0, le=1)
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))


def _group_by_fight(snapshots: Sequence[OddsSnapshot]) -> Dict[str, List[OddsSnapshot]]:
    fights: Dict[str, List[OddsSnapshot]] = defaultdict(list)
    for snapshot in snapshots:
        fights[snapshot.fight_id].append(snapshot)
    return fights


def _has_method(snapshot: OddsSnapshot) -> bool:
    m = snapshot.method
    return m.has_any() or m.fighter1 is not None or m.fighter2 is not None


def favorite_bucket(fighter1: float, fighter2: float) -> str:
    """
    Classify a fight by its favorite's (most negative) moneyline.

    heavy -300 or shorter, moderate -150 to -299, slight -110 to -149,
    pick_em anything closer to even.
    """
    favorite = min(fighter1, fighter2)
    if favorite <= -300:
        return "heavy"
    if favorite <= -150:
        return "moderate"
    if favorite <= -110:
        return "slight"
    return "pick_em"


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MarketAnalysisAggregator:
    """Root coordinator of the ingestion and detection pipeline."""

    def __init__(
        self,
        connectors: Sequence[BaseSourceConnector],
        movement_detector: MovementDetector,
        arbitrage_detector: ArbitrageDetector,
        config: Optional[AggregatorConfig] = None,
    ):
        self.connectors = list(connectors)
        self.movement_detector = movement_detector
        self.arbitrage_detector = arbitrage_detector
        self.config = config or AggregatorConfig()
        self.last_results: List[IngestionResult] = []
        self.last_errors: Dict[str, str] = {}
        self.no_capacity_sources: List[str] = []

    def get_connector(self, source_id: str) -> Optional[BaseSourceConnector]:
        for connector in self.connectors:
            if connector.source_id == source_id:
                return connector
        return None

    def recover_sources(self, source_ids: Sequence[str]) -> List[str]:
        """Reset every session of the given sources; returns the ids reset."""
        recovered = []
        for source_id in source_ids:
            connector = self.get_connector(source_id)
            if connector is None:
                continue
            connector.pool.reset_all()
            recovered.append(source_id)
            logger.info(f"[{source_id}] Sessions reset after no-capacity cool-down", extra={
                "event_type": "capacity_recovered", "source_id": source_id,
            })
        return recovered

    # ─────────────────────────────────────────────────────────────────────────
    # Sync
    # ─────────────────────────────────────────────────────────────────────────

    async def run_cycle(self) -> SyncResponse:
        """Sync every connector concurrently; failures are recorded, not raised."""
        outcomes = await asyncio.gather(
            *(connector.sync() for connector in self.connectors),
            return_exceptions=True,
        )

        results: List[IngestionResult] = []
        errors: Dict[str, str] = {}
        no_capacity: List[str] = []
        for connector, outcome in zip(self.connectors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, NoCapacityError):
                no_capacity.append(connector.source_id)
                errors[connector.source_id] = f"no capacity: {outcome}"
                logger.warning(f"[{connector.source_id}] Cycle aborted, no sessions available", extra={
                    "event_type": "no_capacity", "source_id": connector.source_id,
                })
            elif isinstance(outcome, BaseException):
                errors[connector.source_id] = str(outcome) or type(outcome).__name__
                logger.error(f"[{connector.source_id}] Sync failed: {outcome}", extra={
                    "source_id": connector.source_id, "error_type": type(outcome).__name__,
                })
            else:
                results.append(outcome)

        self.last_results = results
        self.last_errors = errors
        self.no_capacity_sources = no_capacity
        self.movement_detector.prune()
        return SyncResponse(results=results, source_errors=errors)

    # ─────────────────────────────────────────────────────────────────────────
    # Market analyses
    # ─────────────────────────────────────────────────────────────────────────

    def analyze_coverage(self, fights: Dict[str, List[OddsSnapshot]]) -> MarketCoverage:
        total = len(fights)
        return MarketCoverage(
            moneyline=_pct(len(fights), total),
            method=_pct(sum(1 for g in fights.values() if any(_has_method(s) for s in g)), total),
            rounds=_pct(sum(1 for g in fights.values() if any(s.rounds.priced() for s in g)), total),
            props=_pct(sum(1 for g in fights.values() if any(s.props for s in g)), total),
        )

    def analyze_moneyline(self, fights: Dict[str, List[OddsSnapshot]]) -> MoneylineAnalysis:
        analysis = MoneylineAnalysis(total_fights=len(fights))
        spreads = []
        for group in fights.values():
            f1 = [s.moneyline.fighter1 for s in group]
            f2 = [s.moneyline.fighter2 for s in group]
            spreads.append(((max(f1) - min(f1)) + (max(f2) - min(f2))) / 2)
            analysis.favorite_distribution[favorite_bucket(_mean(f1), _mean(f2))] += 1

        analysis.average_spread = round(_mean(spreads), 2)
        analysis.efficiency = round(max(0.0, 1 - analysis.average_spread / 100), 4) if spreads else 0.0
        return analysis

    def analyze_method(
        self,
        fights: Dict[str, List[OddsSnapshot]],
        cross_market: Sequence[ArbitrageOpportunity],
    ) -> MethodAnalysis:
        offered = [g for g in fights.values() if any(_has_method(s) for s in g)]
        prices: Dict[str, List[float]] = defaultdict(list)
        for group in offered:
            for snapshot in group:
                for method in ("ko", "submission", "decision"):
                    value = getattr(snapshot.method, method)
                    if value is not None:
                        prices[method].append(value)

        availability = _pct(len(offered), len(fights))
        arb_count = sum(1 for o in cross_market if o.opportunity_type == OpportunityType.METHOD_H2H)
        return MethodAnalysis(
            availability=availability,
            average_odds={m: round(_mean(v), 1) for m, v in prices.items()},
            arbitrage_count=arb_count,
            efficiency=round(max(0.0, availability / 100 * (1 - 0.1 * arb_count)), 4),
        )

    def analyze_rounds(self, fights: Dict[str, List[OddsSnapshot]]) -> RoundAnalysis:
        offered = [g for g in fights.values() if any(s.rounds.priced() for s in g)]
        prices: Dict[int, List[float]] = defaultdict(list)
        early = late = 0.0
        for group in offered:
            for snapshot in group:
                for number, odds in snapshot.rounds.priced().items():
                    prices[number].append(odds)
                    if number <= 2:
                        early += implied_probability(odds)
                    else:
                        late += implied_probability(odds)

        availability = _pct(len(offered), len(fights))
        balance = (early - late) / (early + late) if early + late else 0.0
        return RoundAnalysis(
            availability=availability,
            average_odds={f"round{n}": round(_mean(v), 1) for n, v in sorted(prices.items())},
            early_late_balance=round(balance, 4),
            efficiency=round(max(0.0, availability / 100 * (1 - abs(balance))), 4),
        )

    def analyze_props(self, fights: Dict[str, List[OddsSnapshot]]) -> PropAnalysis:
        offered = [g for g in fights.values() if any(s.props for s in g)]
        types: Counter = Counter()
        for group in offered:
            for snapshot in group:
                for key in snapshot.props:
                    types[key.split("_", 1)[1] if key.startswith("fighter") and "_" in key else key] += 1

        availability = _pct(len(offered), len(fights))
        return PropAnalysis(
            availability=availability,
            prop_types=dict(types),
            efficiency=round(availability / 100 * min(1.0, len(types) / 10), 4),
        )

    def _isolated(self, name: str, build: Callable[[], T], empty: Callable[[], T], errors: Dict[str, str]) -> T:
        try:
            return build()
        except Exception as e:
            logger.error(f"{name} analysis failed: {e}", extra={"error_type": type(e).__name__})
            errors[f"analysis:{name}"] = str(e)
            return empty()

    # ─────────────────────────────────────────────────────────────────────────
    # Report
    # ─────────────────────────────────────────────────────────────────────────

    def market_efficiency_score(
        self,
        moneyline: MoneylineAnalysis,
        method: MethodAnalysis,
        rounds: RoundAnalysis,
        props: PropAnalysis,
    ) -> float:
        """Weighted mean of per-market efficiency, over markets that have data."""
        signals = {
            "moneyline": (moneyline.efficiency, moneyline.total_fights > 0),
            "method": (method.efficiency, method.availability > 0),
            "rounds": (rounds.efficiency, rounds.availability > 0),
            "props": (props.efficiency, props.availability > 0),
        }
        weighted = total_weight = 0.0
        for market, (efficiency, present) in signals.items():
            weight = self.config.weights.get(market, 0.0)
            if present and weight > 0:
                weighted += weight * min(1.0, max(0.0, efficiency))
                total_weight += weight
        return round(weighted / total_weight, 4) if total_weight else 0.0

    def recommendations(self, report: MarketAnalysisReport) -> List[str]:
        recs: List[str] = []
        if report.total_fights == 0:
            recs.append("No fight odds ingested yet - check source configuration and API keys")
            return recs

        if report.method_analysis.availability < self.config.limited_availability_pct:
            recs.append("Method markets have limited availability - consider focusing on moneyline betting")
        if report.round_analysis.availability > 0 and \
                abs(report.round_analysis.early_late_balance) > self.config.round_imbalance_threshold:
            recs.append("Round markets show significant early/late imbalance - potential value opportunity")
        if report.cross_market_arbitrage:
            recs.append(f"{len(report.cross_market_arbitrage)} cross-market arbitrage opportunities detected")
        if report.market_efficiency_score < self.config.low_efficiency_threshold:
            recs.append("Overall market efficiency is low - prices diverge across books")
        for source_id in self.no_capacity_sources:
            recs.append(f"{source_id} has no available sessions - rotate proxies or reset sessions")
        return recs

    def build_report(self, snapshots: Optional[Sequence[OddsSnapshot]] = None) -> MarketAnalysisReport:
        """Report over `snapshots`, or the latest snapshot per (fight, book) if omitted."""
        if snapshots is None:
            snapshots = self.movement_detector.latest_snapshots()
        fights = _group_by_fight(snapshots)
        errors: Dict[str, str] = dict(self.last_errors)
        cfg = self.config

        cross_market: List[ArbitrageOpportunity] = []
        if cfg.enable_cross_market_arbitrage:
            cross_market = self._isolated(
                "cross_market",
                lambda: [
                    o for o in self.arbitrage_detector.detect_cross_market(snapshots)
                    if o.profit_margin >= cfg.min_arbitrage_profit
                ],
                list,
                errors,
            )

        report = MarketAnalysisReport(
            total_fights=len(fights),
            total_sportsbooks=len({s.sportsbook for s in snapshots}),
            market_coverage=self._isolated("coverage", lambda: self.analyze_coverage(fights), MarketCoverage, errors),
            moneyline_analysis=self._isolated("moneyline", lambda: self.analyze_moneyline(fights), MoneylineAnalysis, errors),
            method_analysis=self._isolated(
                "method", lambda: self.analyze_method(fights, cross_market), MethodAnalysis, errors,
            ) if cfg.enable_method_analysis else MethodAnalysis(),
            round_analysis=self._isolated(
                "rounds", lambda: self.analyze_rounds(fights), RoundAnalysis, errors,
            ) if cfg.enable_round_analysis else RoundAnalysis(),
            prop_analysis=self._isolated(
                "props", lambda: self.analyze_props(fights), PropAnalysis, errors,
            ) if cfg.enable_prop_analysis else PropAnalysis(),
            cross_market_arbitrage=cross_market,
            ingestion_results=list(self.last_results),
        )
        report.market_efficiency_score = self.market_efficiency_score(
            report.moneyline_analysis,
            report.method_analysis,
            report.round_analysis,
            report.prop_analysis,
        )
        report.recommendations = self.recommendations(report)
        report.source_errors = errors
        return report

    async def run_and_report(self) -> MarketAnalysisReport:
        await self.run_cycle()
        return self.build_report()
