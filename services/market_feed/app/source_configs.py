"""
Upstream source configurations.

Built-in defaults for each supported odds source, overridable through the
SOURCE_CONFIGS environment variable (JSON list of partial configs keyed by
source_id). API keys always come from the environment.

Only the_odds_api has a connector. The sportsdata_io, espn_api and ufc_stats
entries are placeholders that record each upstream's endpoints, limits and
retry policy; they ship disabled, and the pipeline skips any source without a
registered connector even when it is enabled.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from shared.schemas import (
    RateLimitConfig,
    RequestDelay,
    RetryConfig,
    SourceConfig,
)
from .errors import ConfigError

logger = logging.getLogger(__name__)

SOURCE_CONFIGS_JSON = os.getenv("SOURCE_CONFIGS", "[]")

MMA_SPORT_KEY = "mma_mixed_martial_arts"

# API key environment variables per source
API_KEY_ENV = {
    "the_odds_api": "ODDS_API_KEY",
    "sportsdata_io": "SPORTSDATA_API_KEY",
}

DEFAULT_SOURCES: Dict[str, Dict[str, Any]] = {
    "the_odds_api": {
        "source_id": "the_odds_api",
        "name": "The Odds API",
        "base_url": "https://api.the-odds-api.com/v4",
        "auth_type": "apikey",
        "api_key_param": "apiKey",
        "endpoints": {
            "odds": f"/sports/{MMA_SPORT_KEY}/odds",
            "events": f"/sports/{MMA_SPORT_KEY}/events",
            "eventOdds": f"/sports/{MMA_SPORT_KEY}/events/{{eventId}}/odds",
        },
        "rate_limit": {"requests_per_minute": 50, "requests_per_hour": 500},
        "retry": {"max_retries": 3, "backoff_multiplier": 2.0, "max_backoff_ms": 15000},
        "request_delay": {"min_ms": 250, "max_ms": 750},
    },
    "sportsdata_io": {
        "source_id": "sportsdata_io",
        "name": "SportsData.io MMA",
        "base_url": "https://api.sportsdata.io/v3/mma",
        "auth_type": "apikey",
        "api_key_param": "key",
        "endpoints": {
            "events": "/scores/json/Schedule/UFC/{season}",
            "fights": "/scores/json/Event/{eventId}",
            "odds": "/odds/json/EventOdds/{eventId}",
        },
        "rate_limit": {"requests_per_minute": 60, "requests_per_hour": 1000},
        "retry": {"max_retries": 3, "backoff_multiplier": 2.0, "max_backoff_ms": 10000},
        "request_delay": {"min_ms": 250, "max_ms": 750},
        "enabled": False,
    },
    "espn_api": {
        "source_id": "espn_api",
        "name": "ESPN MMA",
        "base_url": "https://site.api.espn.com/apis/site/v2/sports/mma",
        "auth_type": "none",
        "endpoints": {
            "scoreboard": "/ufc/scoreboard",
            "event": "/ufc/summary?event={eventId}",
        },
        "rate_limit": {"requests_per_minute": 100, "requests_per_hour": 2000},
        "retry": {"max_retries": 2, "backoff_multiplier": 1.5, "max_backoff_ms": 5000},
        "request_delay": {"min_ms": 500, "max_ms": 1500},
        "enabled": False,
    },
    "ufc_stats": {
        "source_id": "ufc_stats",
        "name": "UFCStats.com",
        "base_url": "http://ufcstats.com",
        "auth_type": "none",
        "endpoints": {
            "events": "/statistics/events/completed",
            "event": "/event-details/{eventId}",
            "fighter": "/fighter-details/{fighterId}",
        },
        "rate_limit": {"requests_per_minute": 30, "requests_per_hour": 500},
        "retry": {"max_retries": 5, "backoff_multiplier": 2.0, "max_backoff_ms": 60000},
        "request_delay": {"min_ms": 1000, "max_ms": 3000},
        "anti_detection": {
            "randomize_headers": True,
            "rotate_proxies": True,
            "respect_robots_txt": True,
        },
        "enabled": False,
    },
}


def validate_source_config(config: SourceConfig) -> List[str]:
    """
    Semantic checks pydantic field constraints cannot express.

    Returns a list of problems; empty means the config is usable.
    """
    problems: List[str] = []
    if not config.base_url.startswith(("http://", "https://")):
        problems.append(f"base_url must be http(s): {config.base_url}")
    if config.auth_type != "none" and not config.api_key:
        problems.append(f"auth_type {config.auth_type} requires an api_key")
    if config.rate_limit.requests_per_minute > config.rate_limit.requests_per_hour:
        problems.append("requests_per_minute exceeds requests_per_hour")
    if config.retry.base_backoff_ms > config.retry.max_backoff_ms:
        problems.append("base_backoff_ms exceeds max_backoff_ms")
    return problems


def get_endpoint_url(config: SourceConfig, endpoint: str, **params: Any) -> str:
    """Resolve a named endpoint against base_url, substituting {param} placeholders."""
    template = config.endpoints.get(endpoint)
    if template is None:
        raise ConfigError(f"[{config.source_id}] unknown endpoint: {endpoint}")

    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in params:
            raise ConfigError(f"[{config.source_id}] missing endpoint parameter: {key}")
        return str(params[key])

    path = re.sub(r"\{(\w+)\}", _sub, template)
    return config.base_url.rstrip("/") + path


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_source_configs(
    overrides_json: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> Dict[str, SourceConfig]:
    """Load source configurations from defaults, SOURCE_CONFIGS and API-key env vars."""
    env = env if env is not None else dict(os.environ)
    raw = {source_id: dict(cfg) for source_id, cfg in DEFAULT_SOURCES.items()}

    try:
        overrides = json.loads(overrides_json if overrides_json is not None else SOURCE_CONFIGS_JSON)
    except json.JSONDecodeError as e:
        raise ConfigError(f"SOURCE_CONFIGS is not valid JSON: {e}") from e
    if not isinstance(overrides, list):
        raise ConfigError("SOURCE_CONFIGS must be a JSON list")

    for override in overrides:
        source_id = override.get("source_id") if isinstance(override, dict) else None
        if not source_id:
            raise ConfigError("SOURCE_CONFIGS entry missing source_id")
        raw[source_id] = _merge(raw.get(source_id, {}), override)

    configs: Dict[str, SourceConfig] = {}
    for source_id, data in raw.items():
        key_env = API_KEY_ENV.get(source_id)
        if key_env and env.get(key_env):
            data = {**data, "api_key": env[key_env]}
        try:
            configs[source_id] = SourceConfig(**data)
        except ValueError as e:
            raise ConfigError(f"[{source_id}] invalid source config: {e}") from e

    logger.info(f"Loaded {len(configs)} source configs: {', '.join(sorted(configs))}")
    return configs


class SourceConfigRegistry:
    """Immutable lookup of source configs by id, built once at startup."""

    def __init__(self, configs: Dict[str, SourceConfig]):
        self._configs = dict(configs)

    @classmethod
    def from_env(cls) -> "SourceConfigRegistry":
        return cls(load_source_configs())

    def get(self, source_id: str) -> SourceConfig:
        try:
            return self._configs[source_id]
        except KeyError:
            raise KeyError(f"Unknown source: {source_id}") from None

    def source_ids(self) -> List[str]:
        return sorted(self._configs)

    def enabled(self) -> List[SourceConfig]:
        return [c for _, c in sorted(self._configs.items()) if c.enabled]

    def validate(self, source_id: str) -> List[str]:
        return validate_source_config(self.get(source_id))
