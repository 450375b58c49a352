"""market_feed source connectors.

Each upstream source gets one connector class, registered here by source id.
"""

from __future__ import annotations

from typing import Any, Dict, List, Type

from shared.schemas import SourceConfig
from .base import BaseSourceConnector, ItemOutcome, RequestItem
from .odds_api import OddsApiConnector, generate_fight_id, normalize_sportsbook_name

CONNECTORS: Dict[str, Type[BaseSourceConnector]] = {
    "the_odds_api": OddsApiConnector,
}

__all__: List[str] = [
    "BaseSourceConnector",
    "CONNECTORS",
    "ItemOutcome",
    "OddsApiConnector",
    "RequestItem",
    "build_connector",
    "generate_fight_id",
    "normalize_sportsbook_name",
]


def build_connector(config: SourceConfig, **kwargs: Any) -> BaseSourceConnector:
    """Instantiate the connector registered for config.source_id."""
    try:
        connector_cls = CONNECTORS[config.source_id]
    except KeyError:
        raise KeyError(f"No connector registered for source: {config.source_id}") from None
    return connector_cls(config, **kwargs)
