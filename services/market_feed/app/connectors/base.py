"""
Base class for upstream odds source connectors.

A connector runs one full sync cycle for its source:

1. plan the batch of requests
2. for each item: acquire a session, await spacing, fetch, retrying with a
   fresh session on soft blocks and transport failures
3. validate each payload; "error" issues skip the record, "warnings" ride along
4. transform into OddsSnapshots, persist, feed the movement detector
5. after the batch, run arbitrage detection over everything ingested

Individual item failures never abort the cycle. Only NoCapacityError (every
session blocked) and SyncError (upstream unusable) propagate.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from shared.schemas import (
    ArbitrageOpportunity,
    IngestionResult,
    MovementAlert,
    OddsSnapshot,
    SourceConfig,
    ValidationIssue,
)
from ..errors import (
    FetchError,
    NoCapacityError,
    RetriesExhaustedError,
    SyncError,
    TransportFailure,
    UpstreamServerError,
)
from ..events import EventChannel
from ..fetcher import Fetcher, FetchResult
from ..identity_pool import IdentityPool
from ..repository import InMemoryOddsRepository, OddsRepository, safe_write

logger = logging.getLogger(__name__)

NEXT_SYNC_DELAY = timedelta(minutes=5)


@dataclass
class RequestItem:
    """One logical request in a sync batch."""
    key: str
    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemOutcome:
    processed: int = 0
    skipped: int = 0
    errors: List[ValidationIssue] = field(default_factory=list)
    snapshots: List[OddsSnapshot] = field(default_factory=list)


class BaseSourceConnector(ABC):
    """
    Abstract base class for source connectors.

    Subclasses supply plan_requests(), validate() and transform(); the base
    class owns retries, session blocking, persistence and detector fan-out.
    """

    def __init__(
        self,
        config: SourceConfig,
        pool: Optional[IdentityPool] = None,
        repository: Optional[OddsRepository] = None,
        movement_detector: Optional[Any] = None,
        arbitrage_detector: Optional[Any] = None,
        alerts: Optional[EventChannel] = None,
        opportunities: Optional[EventChannel] = None,
        pool_events: Optional[EventChannel] = None,
        fetcher: Optional[Fetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        concurrency: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.pool = pool or IdentityPool(config, events=pool_events)
        self.fetcher = fetcher or Fetcher(config, transport=transport)
        self.repository: OddsRepository = repository or InMemoryOddsRepository()
        self.movement_detector = movement_detector
        self.arbitrage_detector = arbitrage_detector
        self.alerts = alerts
        self.opportunities = opportunities
        self.concurrency = max(1, concurrency)
        self._sleep = sleep
        self._sync_count = 0
        self._error_count = 0
        self.last_result: Optional[IngestionResult] = None
        self.last_sync_at: Optional[datetime] = None

    @property
    def source_id(self) -> str:
        return self.config.source_id

    # ─────────────────────────────────────────────────────────────────────────
    # Source-specific hooks
    # ─────────────────────────────────────────────────────────────────────────

    @abstractmethod
    async def plan_requests(self) -> List[RequestItem]:
        """Build this cycle's batch. May issue requests itself via request()."""

    @abstractmethod
    def validate(self, payload: Any, item: RequestItem) -> List[ValidationIssue]:
        """Structural and cross-field checks on one raw payload."""

    @abstractmethod
    def transform(self, payload: Any, item: RequestItem) -> List[OddsSnapshot]:
        """Convert one validated payload into canonical snapshots."""

    # ─────────────────────────────────────────────────────────────────────────
    # Fetching with retries
    # ─────────────────────────────────────────────────────────────────────────

    def backoff_seconds(self, attempt: int) -> float:
        """base * multiplier^attempt plus up to 10% jitter, capped at max_backoff_ms."""
        retry = self.config.retry
        delay_ms = min(retry.base_backoff_ms * retry.backoff_multiplier ** attempt, retry.max_backoff_ms)
        jitter_ms = random.random() * 0.1 * delay_ms
        return min(delay_ms + jitter_ms, retry.max_backoff_ms) / 1000.0

    async def request(self, url: str, params: Optional[Dict[str, Any]] = None) -> FetchResult:
        """
        Fetch url, rotating sessions until success or max_retries is exhausted.

        Soft blocks and transport failures quarantine the session that saw
        them; 5xx responses back off and retry without blocking.
        """
        attempts = self.config.retry.max_retries + 1
        last_error = "no attempt made"

        for attempt in range(attempts):
            session = self.pool.acquire_session()
            backoff = 0.0
            async with session.lock:
                if session.blocked:
                    continue
                await self.pool.await_spacing(session)
                try:
                    result = await self.fetcher.fetch(session, url, params)
                except TransportFailure as e:
                    last_error = str(e)
                    self.pool.mark_blocked(session, f"transport failure: {e}")
                    continue
                except UpstreamServerError as e:
                    last_error = str(e)
                    backoff = self.backoff_seconds(attempt)
                else:
                    if result.ok:
                        return result
                    last_error = f"soft block (HTTP {result.status_code})"
                    self.pool.mark_blocked(session, last_error)
                    continue

            if backoff and attempt < attempts - 1:
                logger.info(f"[{self.source_id}] {last_error}; backing off {backoff:.2f}s")
                await self._sleep(backoff)

        raise RetriesExhaustedError(
            f"gave up after {attempts} attempt(s): {last_error}",
            attempts=attempts,
            url=url,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Per-item processing
    # ─────────────────────────────────────────────────────────────────────────

    def _skip(self, outcome: ItemOutcome, issues: List[ValidationIssue]) -> ItemOutcome:
        outcome.skipped += 1
        outcome.errors.extend(issues)
        return outcome

    async def _process_item(self, item: RequestItem) -> ItemOutcome:
        outcome = ItemOutcome()

        try:
            result = await self.request(item.url, item.params)
        except RetriesExhaustedError as e:
            return self._skip(outcome, [ValidationIssue(
                field="request", message=f"{item.key}: {e}", value=item.url, severity="error",
            )])

        try:
            payload = result.json()
        except ValueError as e:
            return self._skip(outcome, [ValidationIssue(
                field="body", message=f"{item.key}: response is not JSON: {e}", severity="error",
            )])

        try:
            issues = self.validate(payload, item)
        except Exception as e:
            logger.exception(f"[{self.source_id}] Validator crashed on {item.key}")
            return self._skip(outcome, [ValidationIssue(
                field="payload", message=f"{item.key}: validation failed: {e}", severity="error",
            )])

        if any(issue.severity == "error" for issue in issues):
            logger.warning(
                f"[{self.source_id}] Skipping {item.key}: "
                + "; ".join(f"{i.field}: {i.message}" for i in issues if i.severity == "error")
            )
            return self._skip(outcome, issues)
        outcome.errors.extend(issues)

        try:
            snapshots = self.transform(payload, item)
        except Exception as e:
            logger.warning(f"[{self.source_id}] Transform failed for {item.key}: {e}")
            return self._skip(outcome, [ValidationIssue(
                field="transform", message=f"{item.key}: {e}", severity="error",
            )])

        outcome.processed += 1
        for snapshot in snapshots:
            await self._ingest_snapshot(snapshot)
            outcome.snapshots.append(snapshot)
        return outcome

    async def _ingest_snapshot(self, snapshot: OddsSnapshot) -> None:
        await safe_write(
            self.repository.write_odds_snapshot(snapshot),
            f"snapshot {snapshot.fight_id}/{snapshot.sportsbook}",
            self.source_id,
        )
        if self.movement_detector is None:
            return

        try:
            alert: Optional[MovementAlert] = self.movement_detector.process(snapshot)
        except Exception as e:
            logger.error(f"[{self.source_id}] Movement detection failed for {snapshot.fight_id}: {e}", extra={
                "fight_id": snapshot.fight_id,
                "sportsbook": snapshot.sportsbook,
                "error_type": type(e).__name__,
            })
            return

        if alert is not None:
            await safe_write(self.repository.write_movement_alert(alert), "movement alert", self.source_id)
            if self.alerts is not None:
                self.alerts.publish(alert)

    async def _detect_arbitrage(self, snapshots: List[OddsSnapshot]) -> List[ArbitrageOpportunity]:
        if self.arbitrage_detector is None or not snapshots:
            return []

        if self.movement_detector is not None:
            # Arbitrage needs the freshest price from every book, not just this batch
            fight_ids = {s.fight_id for s in snapshots}
            candidates = [
                s for fight_id in fight_ids
                for s in self.movement_detector.latest_snapshots(fight_id)
            ]
        else:
            candidates = snapshots

        try:
            found: List[ArbitrageOpportunity] = self.arbitrage_detector.detect(candidates)
        except Exception as e:
            logger.error(f"[{self.source_id}] Arbitrage detection failed: {e}", extra={
                "error_type": type(e).__name__,
            })
            return []

        for opportunity in found:
            await safe_write(
                self.repository.write_arbitrage_opportunity(opportunity),
                "arbitrage opportunity",
                self.source_id,
            )
            if self.opportunities is not None:
                self.opportunities.publish(opportunity)
        return found

    # ─────────────────────────────────────────────────────────────────────────
    # Sync cycle
    # ─────────────────────────────────────────────────────────────────────────

    async def sync(self) -> IngestionResult:
        """Run one sync cycle and return its IngestionResult."""
        start = time.monotonic()
        self._sync_count += 1
        logger.info(f"[{self.source_id}] Sync cycle starting", extra={
            "event_type": "sync_start", "source_id": self.source_id,
        })

        try:
            items = await self.plan_requests()
        except NoCapacityError:
            self._error_count += 1
            raise
        except FetchError as e:
            self._error_count += 1
            raise SyncError(f"[{self.source_id}] could not plan sync batch: {e}") from e

        semaphore = asyncio.Semaphore(self.concurrency)
        no_capacity: List[NoCapacityError] = []

        async def run(item: RequestItem) -> ItemOutcome:
            async with semaphore:
                if no_capacity:
                    return ItemOutcome()
                try:
                    return await self._process_item(item)
                except NoCapacityError as e:
                    no_capacity.append(e)
                    return ItemOutcome()

        results = await asyncio.gather(*(run(item) for item in items), return_exceptions=True)

        if no_capacity:
            self._error_count += 1
            await safe_write(self.repository.flush(), "flush", self.source_id)
            raise no_capacity[0]

        processed = skipped = 0
        errors: List[ValidationIssue] = []
        snapshots: List[OddsSnapshot] = []
        for item, outcome in zip(items, results):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"[{self.source_id}] Unexpected failure on {item.key}: {outcome}")
                skipped += 1
                errors.append(ValidationIssue(
                    field="item", message=f"{item.key}: {outcome}", severity="error",
                ))
                continue
            processed += outcome.processed
            skipped += outcome.skipped
            errors.extend(outcome.errors)
            snapshots.extend(outcome.snapshots)

        opportunities = await self._detect_arbitrage(snapshots)
        await safe_write(self.repository.flush(), "flush", self.source_id)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        now = datetime.utcnow()
        result = IngestionResult(
            source_id=self.source_id,
            records_processed=processed,
            records_skipped=skipped,
            errors=errors,
            processing_time_ms=elapsed_ms,
            next_sync_time=now + NEXT_SYNC_DELAY,
        )
        self.last_result = result
        self.last_sync_at = now

        logger.info(
            f"[{self.source_id}] Sync complete: {processed} processed, {skipped} skipped, "
            f"{len(snapshots)} snapshots, {len(opportunities)} arbs in {elapsed_ms}ms",
            extra={
                "event_type": "sync_complete",
                "source_id": self.source_id,
                "duration_ms": elapsed_ms,
            },
        )
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "sync_count": self._sync_count,
            "error_count": self._error_count,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_result": self.last_result.model_dump(mode="json") if self.last_result else None,
            "pool": self.pool.get_status().model_dump(mode="json"),
            "fetcher": self.fetcher.get_stats(),
            "rate_limiter": self.pool.limiter.get_stats(),
        }

    async def close(self) -> None:
        self.pool.close()
        await safe_write(self.repository.close(), "close", self.source_id)
