from .schemas import (
    ArbitrageLeg,
    ArbitrageOpportunity,
    HealthResponse,
    IngestionResult,
    MarketAnalysisReport,
    MethodOdds,
    MoneylineOdds,
    MovementAlert,
    MovementType,
    OddsSnapshot,
    OpportunityType,
    ProxyConfig,
    RoundOdds,
    SourceConfig,
    ValidationIssue,
)

__all__ = [
    "ArbitrageLeg",
    "ArbitrageOpportunity",
    "HealthResponse",
    "IngestionResult",
    "MarketAnalysisReport",
    "MethodOdds",
    "MoneylineOdds",
    "MovementAlert",
    "MovementType",
    "OddsSnapshot",
    "OpportunityType",
    "ProxyConfig",
    "RoundOdds",
    "SourceConfig",
    "ValidationIssue",
]
