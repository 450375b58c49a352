"""
Odds Ingest Service - scheduled odds sync and market analysis.

Runs sync cycles across the configured odds sources, feeds the movement and
arbitrage detectors, and serves the consolidated market analysis report.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException

from shared.logging_config import setup_logging
from shared.schemas import (
    HealthResponse,
    MarketAnalysisReport,
    PoolStatus,
    SyncResponse,
)
from .pipeline import Pipeline, build_pipeline

SERVICE_NAME = os.getenv("SERVICE_NAME", "odds_ingest")
ENABLED_SOURCES = [s.strip() for s in os.getenv("ENABLED_SOURCES", "the_odds_api").split(",") if s.strip()]
AUTO_SYNC = os.getenv("AUTO_SYNC", "true").lower() == "true"

logger = logging.getLogger(SERVICE_NAME)

app = FastAPI(title="Odds Ingest", version="0.2.0")

_pipeline: Optional[Pipeline] = None


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> Pipeline:
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return _pipeline


@app.on_event("startup")
async def startup_event():
    """Build the pipeline from environment and start the scheduler."""
    setup_logging(SERVICE_NAME)
    if _pipeline is None:
        set_pipeline(build_pipeline(ENABLED_SOURCES))
    get_pipeline().start(auto_sync=AUTO_SYNC)
    logger.info(f"Odds Ingest started with sources: {', '.join(ENABLED_SOURCES) or 'none'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop ticking, let the in-flight cycle finish, then tear down."""
    logger.info("Odds Ingest service shutting down...")
    if _pipeline is not None:
        await _pipeline.stop()


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(service=SERVICE_NAME, time_utc=datetime.utcnow())


@app.post("/sync", response_model=SyncResponse)
async def sync_now() -> SyncResponse:
    """Run one sync cycle across all sources immediately."""
    return await get_pipeline().aggregator.run_cycle()


@app.get("/report", response_model=MarketAnalysisReport)
def report() -> MarketAnalysisReport:
    return get_pipeline().aggregator.build_report()


@app.get("/sessions", response_model=List[PoolStatus])
def list_sessions() -> List[PoolStatus]:
    return [c.pool.get_status() for c in get_pipeline().connectors]


@app.post("/sessions/{source_id}/reset", response_model=PoolStatus)
def reset_sessions(source_id: str, session_id: Optional[str] = None) -> PoolStatus:
    """Operator recovery: unblock one session, or every session of a source."""
    connector = get_pipeline().aggregator.get_connector(source_id)
    if connector is None:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source_id}")

    if session_id is None:
        connector.pool.reset_all()
    else:
        session = connector.pool.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        connector.pool.reset_session(session)
    return connector.pool.get_status()


@app.get("/sources/{source_id}")
def source_status(source_id: str) -> dict:
    connector = get_pipeline().aggregator.get_connector(source_id)
    if connector is None:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source_id}")
    return connector.get_status()


@app.get("/scheduler")
def scheduler_status() -> dict:
    return get_pipeline().scheduler.get_stats()


@app.get("/movements")
def recent_movements(fight_id: Optional[str] = None, minutes: float = 60) -> dict:
    alerts = get_pipeline().movement_detector.get_recent_movements(fight_id, minutes)
    return {"alerts": [a.model_dump(mode="json") for a in alerts], "count": len(alerts)}
