from __future__ import annotations

import logging
import os
from datetime import datetime

from fastapi import FastAPI

from shared.logging_config import setup_logging
from shared.schemas import (
    ArbitrageResponse,
    HealthResponse,
    MovementResponse,
    SnapshotBatch,
)
from .arbitrage import ArbitrageDetector, ArbitrageSettings
from .movement import MovementDetector, MovementThresholds

SERVICE_NAME = os.getenv("SERVICE_NAME", "arb_math")

logger = logging.getLogger(SERVICE_NAME)

app = FastAPI(title="Arbitrage Math", version="0.2.0")

# Owned by this app instance; the ingest pipeline builds its own
arbitrage_detector = ArbitrageDetector(ArbitrageSettings())
movement_detector = MovementDetector(MovementThresholds())


@app.on_event("startup")
async def startup_event():
    setup_logging(SERVICE_NAME)
    logger.info("Arbitrage Math service starting")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(service=SERVICE_NAME, time_utc=datetime.utcnow())


@app.post("/arbitrage", response_model=ArbitrageResponse)
def detect_arbitrage(req: SnapshotBatch) -> ArbitrageResponse:
    """Single-market moneyline arbitrage across the posted snapshots."""
    opportunities = arbitrage_detector.detect_single_market(req.snapshots)
    opportunities.sort(key=lambda o: o.profit_margin, reverse=True)
    return ArbitrageResponse(opportunities=opportunities)


@app.post("/cross-market", response_model=ArbitrageResponse)
def detect_cross_market(req: SnapshotBatch) -> ArbitrageResponse:
    """Cross-market arbitrage (method, round and prop combinations)."""
    opportunities = arbitrage_detector.detect_cross_market(req.snapshots)
    opportunities.sort(key=lambda o: o.profit_margin, reverse=True)
    return ArbitrageResponse(opportunities=opportunities)


@app.post("/movement", response_model=MovementResponse)
def detect_movement(req: SnapshotBatch) -> MovementResponse:
    """Feed snapshots through the movement detector, in order, returning any alerts."""
    alerts = []
    for snapshot in req.snapshots:
        alert = movement_detector.process(snapshot)
        if alert is not None:
            alerts.append(alert)
    return MovementResponse(alerts=alerts)


@app.get("/movement/stats")
def movement_stats() -> dict:
    return movement_detector.get_stats()
