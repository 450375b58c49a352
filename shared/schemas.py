from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    time_utc: datetime = Field(default_factory=datetime.utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# Source Configuration Schemas
# ─────────────────────────────────────────────────────────────────────────────


class ProxyConfig(BaseModel):
    """Proxy a session tunnels its requests through."""
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(gt=0, le=65535)
    username: Optional[str] = None
    password: Optional[str] = None
    protocol: str = Field(default="http", pattern="^(http|https|socks4|socks5)$")

    @property
    def key(self) -> str:
        """host:port, used to track blocked proxies."""
        return f"{self.host}:{self.port}"


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(default=60, gt=0)
    requests_per_hour: int = Field(default=1000, gt=0)


class RetryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    max_backoff_ms: int = Field(default=15000, gt=0)
    base_backoff_ms: int = Field(default=1000, gt=0)


class RequestDelay(BaseModel):
    """Randomized [min, max] window between requests from one session."""
    model_config = ConfigDict(frozen=True)

    min_ms: int = Field(default=1000, ge=0)
    max_ms: int = Field(default=3000, ge=0)

    @model_validator(mode="after")
    def _check_window(self) -> "RequestDelay":
        if self.min_ms > self.max_ms:
            raise ValueError("min_ms must not exceed max_ms")
        return self


class AntiDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    randomize_headers: bool = True
    rotate_proxies: bool = True
    respect_robots_txt: bool = True


class SourceConfig(BaseModel):
    """Configuration for one upstream odds source. Immutable after load."""
    model_config = ConfigDict(frozen=True)

    source_id: str
    name: str
    base_url: str
    auth_type: str = Field(default="none", pattern="^(none|apikey|bearer)$")
    api_key: Optional[str] = None
    api_key_param: str = "apiKey"  # query parameter used when auth_type == "apikey"
    endpoints: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    # Scraping-style sources only
    user_agents: List[str] = Field(default_factory=list)
    proxies: List[ProxyConfig] = Field(default_factory=list)
    request_delay: RequestDelay = Field(default_factory=RequestDelay)
    anti_detection: AntiDetection = Field(default_factory=AntiDetection)
    timeout_seconds: float = Field(default=30.0, gt=0)
    enabled: bool = True


# ─────────────────────────────────────────────────────────────────────────────
# Odds Snapshot Schemas
# ─────────────────────────────────────────────────────────────────────────────


class MoneylineOdds(BaseModel):
    """American moneyline pair; at most one leg may be the underdog (positive)."""
    model_config = ConfigDict(frozen=True)

    fighter1: int
    fighter2: int

    @model_validator(mode="after")
    def _check_prices(self) -> "MoneylineOdds":
        if abs(self.fighter1) < 100 or abs(self.fighter2) < 100:
            raise ValueError("American odds must satisfy |odds| >= 100")
        if self.fighter1 > 0 and self.fighter2 > 0:
            raise ValueError("Both fighters cannot have positive moneyline odds")
        return self


class FighterMethodOdds(BaseModel):
    """Method-of-victory prices for one specific fighter."""
    model_config = ConfigDict(frozen=True)

    ko: Optional[int] = None
    submission: Optional[int] = None
    decision: Optional[int] = None

    def is_complete(self) -> bool:
        return None not in (self.ko, self.submission, self.decision)


class MethodOdds(BaseModel):
    model_config = ConfigDict(frozen=True)

    ko: Optional[int] = None
    submission: Optional[int] = None
    decision: Optional[int] = None
    # Per-fighter breakdown when the book prices "Fighter X by KO" etc.
    fighter1: Optional[FighterMethodOdds] = None
    fighter2: Optional[FighterMethodOdds] = None

    def has_any(self) -> bool:
        return any(v is not None for v in (self.ko, self.submission, self.decision))


class RoundOdds(BaseModel):
    model_config = ConfigDict(frozen=True)

    round1: Optional[int] = None
    round2: Optional[int] = None
    round3: Optional[int] = None
    round4: Optional[int] = None
    round5: Optional[int] = None

    def priced(self) -> Dict[int, int]:
        """Round number -> odds for every round that carries a price."""
        values = [self.round1, self.round2, self.round3, self.round4, self.round5]
        return {i + 1: v for i, v in enumerate(values) if v is not None}


class OddsSnapshot(BaseModel):
    """One book's prices for one fight at one moment. Never mutated."""
    model_config = ConfigDict(frozen=True)

    fight_id: str
    sportsbook: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    moneyline: MoneylineOdds
    method: MethodOdds = Field(default_factory=MethodOdds)
    rounds: RoundOdds = Field(default_factory=RoundOdds)
    props: Dict[str, int] = Field(default_factory=dict)
    fighter1_name: Optional[str] = None
    fighter2_name: Optional[str] = None
    source_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        # All in-process timestamps are naive UTC (datetime.utcnow)
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def to_wire(self) -> Dict[str, Any]:
        """Canonical persisted shape consumed downstream."""
        rounds: Dict[str, Optional[int]] = {
            "round1": self.rounds.round1,
            "round2": self.rounds.round2,
            "round3": self.rounds.round3,
        }
        if self.rounds.round4 is not None:
            rounds["round4"] = self.rounds.round4
        if self.rounds.round5 is not None:
            rounds["round5"] = self.rounds.round5
        return {
            "fightId": self.fight_id,
            "sportsbook": self.sportsbook,
            "timestamp": self.timestamp.isoformat(),
            "moneyline": {
                "fighter1": self.moneyline.fighter1,
                "fighter2": self.moneyline.fighter2,
            },
            "method": {
                "ko": self.method.ko,
                "submission": self.method.submission,
                "decision": self.method.decision,
            },
            "rounds": rounds,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Detection Schemas
# ─────────────────────────────────────────────────────────────────────────────


class MovementType(str, Enum):
    SIGNIFICANT = "significant"
    REVERSE = "reverse"
    STEAM = "steam"
    MINOR = "minor"


class MovementAlert(BaseModel):
    model_config = ConfigDict(frozen=True)

    fight_id: str
    sportsbook: str
    movement_type: MovementType
    old_snapshot: OddsSnapshot
    new_snapshot: OddsSnapshot
    percentage_change: float  # signed, on the primary leg's implied probability
    leg: str = "fighter1"
    priority: str = "medium"  # urgent, high, medium, low
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class OpportunityType(str, Enum):
    SINGLE_MARKET = "single_market"
    METHOD_H2H = "method_h2h"
    ROUND_METHOD = "round_method"
    PROP_H2H = "prop_h2h"
    MULTI_MARKET = "multi_market"


class ArbitrageLeg(BaseModel):
    sportsbook: str
    market: str  # moneyline, method, round, prop
    selection: str
    odds: int
    implied_probability: float
    stake: float
    payout: float


class ArbitrageOpportunity(BaseModel):
    fight_id: str
    opportunity_type: OpportunityType
    sportsbooks: List[str]
    markets: List[str]
    legs: List[ArbitrageLeg]
    implied_prob_sum: float
    profit_margin: float  # percent
    total_stake: float
    confidence: str  # high, medium, low
    detected_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.utcnow() > self.expires_at


# ─────────────────────────────────────────────────────────────────────────────
# Ingestion Schemas
# ─────────────────────────────────────────────────────────────────────────────


class ValidationIssue(BaseModel):
    field: str
    message: str
    value: Any = None
    severity: str = Field(default="error", pattern="^(error|warning)$")


class IngestionResult(BaseModel):
    source_id: str
    records_processed: int = 0
    records_skipped: int = 0
    errors: List[ValidationIssue] = Field(default_factory=list)
    processing_time_ms: int = 0
    next_sync_time: datetime


class SessionStatus(BaseModel):
    """Operator view of one identity-pool session."""
    session_id: str
    proxy: Optional[str] = None
    user_agent: str
    request_count: int = 0
    blocked: bool = False
    blocked_reason: Optional[str] = None


class PoolStatus(BaseModel):
    source_id: str
    total_sessions: int
    available_sessions: int
    blocked_sessions: int
    blocked_proxies: List[str] = Field(default_factory=list)
    sessions: List[SessionStatus] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Market Analysis Schemas
# ─────────────────────────────────────────────────────────────────────────────


class MarketCoverage(BaseModel):
    """Percent of fights on which each market type is offered."""
    moneyline: float = 0.0
    method: float = 0.0
    rounds: float = 0.0
    props: float = 0.0


class MoneylineAnalysis(BaseModel):
    total_fights: int = 0
    average_spread: float = 0.0
    favorite_distribution: Dict[str, int] = Field(
        default_factory=lambda: {"heavy": 0, "moderate": 0, "slight": 0, "pick_em": 0}
    )
    efficiency: float = 0.0


class MethodAnalysis(BaseModel):
    availability: float = 0.0
    average_odds: Dict[str, float] = Field(default_factory=dict)
    arbitrage_count: int = 0
    efficiency: float = 0.0


class RoundAnalysis(BaseModel):
    availability: float = 0.0
    average_odds: Dict[str, float] = Field(default_factory=dict)
    early_late_balance: float = 0.0  # -1 all late, +1 all early
    efficiency: float = 0.0


class PropAnalysis(BaseModel):
    availability: float = 0.0
    prop_types: Dict[str, int] = Field(default_factory=dict)
    efficiency: float = 0.0


class MarketAnalysisReport(BaseModel):
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    total_fights: int = 0
    total_sportsbooks: int = 0
    market_coverage: MarketCoverage = Field(default_factory=MarketCoverage)
    moneyline_analysis: MoneylineAnalysis = Field(default_factory=MoneylineAnalysis)
    method_analysis: MethodAnalysis = Field(default_factory=MethodAnalysis)
    round_analysis: RoundAnalysis = Field(default_factory=RoundAnalysis)
    prop_analysis: PropAnalysis = Field(default_factory=PropAnalysis)
    cross_market_arbitrage: List[ArbitrageOpportunity] = Field(default_factory=list)
    market_efficiency_score: float = 0.0
    recommendations: List[str] = Field(default_factory=list)
    ingestion_results: List[IngestionResult] = Field(default_factory=list)
    source_errors: Dict[str, str] = Field(default_factory=dict)


class SyncResponse(BaseModel):
    results: List[IngestionResult]
    source_errors: Dict[str, str] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=datetime.utcnow)


class SnapshotBatch(BaseModel):
    snapshots: List[OddsSnapshot]


class ArbitrageResponse(BaseModel):
    opportunities: List[ArbitrageOpportunity]
    evaluated_at: datetime = Field(default_factory=datetime.utcnow)


class MovementResponse(BaseModel):
    alerts: List[MovementAlert]
    evaluated_at: datetime = Field(default_factory=datetime.utcnow)
