"""
Explicit wiring of the ingestion pipeline.

Everything is constructed here once at startup and passed by reference:
identity pools live inside their connectors, detectors are shared by all
connectors, and each event category has its own channel and consumer.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from services.arb_math.app.arbitrage import ArbitrageDetector, ArbitrageSettings
from services.arb_math.app.movement import MovementDetector, MovementThresholds
from services.market_feed.app.connectors import CONNECTORS, BaseSourceConnector, build_connector
from services.market_feed.app.events import EventChannel, PoolEvent
from services.market_feed.app.repository import InMemoryOddsRepository, OddsRepository
from services.market_feed.app.source_configs import SourceConfigRegistry, validate_source_config
from shared.schemas import ArbitrageOpportunity, MovementAlert, SourceConfig
from .aggregator import AggregatorConfig, MarketAnalysisAggregator
from .scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class Pipeline:
    """Owns every long-lived component; lifecycle is start() / stop()."""

    def __init__(
        self,
        registry: SourceConfigRegistry,
        enabled_sources: Optional[List[str]] = None,
        repository: Optional[OddsRepository] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        thresholds: Optional[MovementThresholds] = None,
        arbitrage_settings: Optional[ArbitrageSettings] = None,
        aggregator_config: Optional[AggregatorConfig] = None,
        scheduler_options: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry
        self.repository: OddsRepository = repository or InMemoryOddsRepository()
        self.movement_detector = MovementDetector(thresholds)
        self.arbitrage_detector = ArbitrageDetector(arbitrage_settings)
        self.alerts: EventChannel[MovementAlert] = EventChannel("movement_alerts")
        self.opportunities: EventChannel[ArbitrageOpportunity] = EventChannel("arbitrage_opportunities")
        self.pool_events: EventChannel[PoolEvent] = EventChannel("pool_events")

        self.connectors: List[BaseSourceConnector] = []
        for config in self._select_sources(enabled_sources):
            self.connectors.append(build_connector(
                config,
                repository=self.repository,
                movement_detector=self.movement_detector,
                arbitrage_detector=self.arbitrage_detector,
                alerts=self.alerts,
                opportunities=self.opportunities,
                pool_events=self.pool_events,
                transport=transport,
            ))

        self.aggregator = MarketAnalysisAggregator(
            self.connectors,
            self.movement_detector,
            self.arbitrage_detector,
            aggregator_config,
        )
        self.scheduler = SyncScheduler(self.aggregator, **(scheduler_options or {}))
        self._consumers: List[asyncio.Task] = []

    def _select_sources(self, enabled_sources: Optional[List[str]]) -> List[SourceConfig]:
        if enabled_sources is None:
            candidates = self.registry.enabled()
        else:
            candidates = [self.registry.get(source_id) for source_id in enabled_sources]

        selected = []
        for config in candidates:
            if config.source_id not in CONNECTORS:
                logger.warning(f"[{config.source_id}] No connector available, skipping")
                continue
            for problem in validate_source_config(config):
                logger.warning(f"[{config.source_id}] Config issue: {problem}")
            selected.append(config)
        return selected

    # ─────────────────────────────────────────────────────────────────────────
    # Event consumers (one per category keeps delivery in publish order)
    # ─────────────────────────────────────────────────────────────────────────

    async def _consume_alerts(self) -> None:
        while True:
            alert = await self.alerts.get()
            logger.info(
                f"[{alert.sportsbook}] {alert.priority.upper()} {alert.movement_type.value} "
                f"movement on {alert.fight_id}: {alert.percentage_change:+.2f}%",
                extra={"event_type": "movement_alert", "fight_id": alert.fight_id},
            )

    async def _consume_opportunities(self) -> None:
        while True:
            opportunity = await self.opportunities.get()
            logger.info(
                f"Arbitrage ({opportunity.confidence}) {opportunity.opportunity_type.value} on "
                f"{opportunity.fight_id}: {opportunity.profit_margin:.2f}% via "
                f"{', '.join(opportunity.sportsbooks)}",
                extra={"event_type": "arbitrage_found", "fight_id": opportunity.fight_id},
            )

    async def _consume_pool_events(self) -> None:
        while True:
            event = await self.pool_events.get()
            if event.kind == "no_capacity":
                logger.critical(
                    f"[{event.source_id}] No capacity: every session is blocked - "
                    f"rotate proxies or reset sessions",
                    extra={"event_type": "no_capacity", "source_id": event.source_id},
                )
            else:
                logger.info(f"[{event.source_id}] {event.kind} {event.session_id} {event.reason}".rstrip())

    def start(self, auto_sync: bool = True) -> None:
        self._consumers = [
            asyncio.create_task(self._consume_alerts(), name="consume_alerts"),
            asyncio.create_task(self._consume_opportunities(), name="consume_opportunities"),
            asyncio.create_task(self._consume_pool_events(), name="consume_pool_events"),
        ]
        if auto_sync and self.connectors:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        for connector in self.connectors:
            connector.pool.close()
        try:
            await self.repository.close()
        except Exception as e:
            logger.error(f"Repository close failed: {e}")


def build_pipeline(
    enabled_sources: Optional[List[str]] = None,
    registry: Optional[SourceConfigRegistry] = None,
    **kwargs: Any,
) -> Pipeline:
    return Pipeline(registry or SourceConfigRegistry.from_env(), enabled_sources, **kwargs)
