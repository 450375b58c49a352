"""
The Odds API connector for MMA fight odds.

This connector fetches odds from The Odds API (https://the-odds-api.com/),
which aggregates prices from the major US sportsbooks.

Each sync cycle lists upcoming MMA events, then requests odds for each event
separately. One event fans out into one OddsSnapshot per bookmaker that
prices the fight's moneyline.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from shared.schemas import (
    FighterMethodOdds,
    MethodOdds,
    MoneylineOdds,
    OddsSnapshot,
    RoundOdds,
    ValidationIssue,
)
from ..errors import RetriesExhaustedError, SyncError
from ..source_configs import MMA_SPORT_KEY, get_endpoint_url
from .base import BaseSourceConnector, RequestItem

logger = logging.getLogger(__name__)

SPORTSBOOK_NAMES = {
    "draftkings": "DraftKings",
    "fanduel": "FanDuel",
    "betmgm": "BetMGM",
    "caesars": "Caesars",
    "pointsbet": "PointsBet",
    "betrivers": "BetRivers",
    "unibet": "Unibet",
    "williamhill_us": "William Hill",
    "bovada": "Bovada",
    "mybookie": "MyBookie",
    "hardrockbet": "Hard Rock Bet",
    "espnbet": "ESPN BET",
    "betway": "Betway",
    "wynnbet": "WynnBET",
    "barstool": "Barstool",
    "superbook": "SuperBook",
    "twinspires": "TwinSpires",
    "foxbet": "FOX Bet",
    "tipico": "Tipico",
    "betfred": "Betfred",
    "pinnacle": "Pinnacle",
    "betonlineag": "BetOnline",
    "betus": "BetUS",
}

METHOD_PATTERNS = {
    "ko": re.compile(r"\b(ko|tko|knockout)\b", re.IGNORECASE),
    "submission": re.compile(r"\b(submission|sub)\b", re.IGNORECASE),
    "decision": re.compile(r"\b(decision|points)\b", re.IGNORECASE),
}
ROUND_PATTERNS = (
    re.compile(r"\bround\s*([1-5])\b", re.IGNORECASE),
    re.compile(r"\b([1-5])(?:st|nd|rd|th)\b", re.IGNORECASE),
)

METHOD_MARKETS = ("fight_result_method", "method_of_victory")
ROUND_MARKETS = ("fight_result_round", "round_betting")

# Requested per event unless the connector is built with its own list
DEFAULT_MARKETS = ("h2h", "fight_result_method", "fight_result_round")


def normalize_sportsbook_name(key: str) -> str:
    """Map an API bookmaker key to its display name."""
    return SPORTSBOOK_NAMES.get(key.lower(), key)


def generate_fight_id(home_team: str, away_team: str, commence_time: str) -> str:
    """Stable fight id: sorted fighters plus UTC fight date, non-alphanumerics as '_'."""
    fighters = sorted([home_team, away_team])
    commence = _parse_time(commence_time)
    if commence.tzinfo is not None:
        commence = commence.astimezone(timezone.utc)
    date_str = commence.date().isoformat()
    raw = f"odds_api_{'_vs_'.join(fighters)}_{date_str}"
    return re.sub(r"[^a-zA-Z0-9_]", "_", raw)


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def _as_odds(price: Any) -> Optional[int]:
    """American price as int, or None when it is not a usable number."""
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    value = int(round(price))
    return value if abs(value) >= 100 else None


class OddsApiConnector(BaseSourceConnector):
    """
    Connector for The Odds API.

    Fetches MMA odds per event; no browser automation or login required.
    """

    def __init__(self, *args: Any, markets: Optional[List[str]] = None, regions: str = "us", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.markets = list(markets or DEFAULT_MARKETS)
        self.regions = regions

    # ─────────────────────────────────────────────────────────────────────────
    # Planning
    # ─────────────────────────────────────────────────────────────────────────

    async def plan_requests(self) -> List[RequestItem]:
        url = get_endpoint_url(self.config, "events")
        try:
            result = await self.request(url)
        except RetriesExhaustedError as e:
            raise SyncError(f"[{self.source_id}] event listing failed: {e}") from e

        try:
            events = result.json()
        except ValueError as e:
            raise SyncError(f"[{self.source_id}] event listing is not JSON: {e}") from e
        if not isinstance(events, list):
            raise SyncError(f"[{self.source_id}] event listing is not a list")

        params = {
            "regions": self.regions,
            "markets": ",".join(self.markets),
            "oddsFormat": "american",
        }
        items = []
        for event in events:
            event_id = event.get("id") if isinstance(event, dict) else None
            if not event_id:
                logger.warning(f"[{self.source_id}] Event listing entry without id: {event!r:.120}")
                continue
            items.append(RequestItem(
                key=str(event_id),
                url=get_endpoint_url(self.config, "eventOdds", eventId=event_id),
                params=dict(params),
            ))

        logger.info(
            f"[{self.source_id}] Planned {len(items)} event odds requests "
            f"(requests remaining: {self.fetcher.requests_remaining})"
        )
        return items

    # ─────────────────────────────────────────────────────────────────────────
    # Validation
    # ─────────────────────────────────────────────────────────────────────────

    def validate(self, payload: Any, item: RequestItem) -> List[ValidationIssue]:
        if not isinstance(payload, dict):
            return [ValidationIssue(
                field="payload", message="event payload must be an object",
                value=type(payload).__name__, severity="error",
            )]

        issues: List[ValidationIssue] = []

        def error(field: str, message: str, value: Any = None) -> None:
            issues.append(ValidationIssue(field=field, message=message, value=value, severity="error"))

        def warning(field: str, message: str, value: Any = None) -> None:
            issues.append(ValidationIssue(field=field, message=message, value=value, severity="warning"))

        if not payload.get("id"):
            error("id", "Event ID is required")

        sport_key = payload.get("sport_key")
        if sport_key and sport_key != MMA_SPORT_KEY:
            warning("sport_key", "Expected MMA sport key", sport_key)

        commence_time = payload.get("commence_time")
        if not commence_time:
            error("commence_time", "Commence time is required")
        else:
            try:
                _parse_time(str(commence_time))
            except ValueError:
                error("commence_time", "Invalid commence time format", commence_time)

        for team in ("home_team", "away_team"):
            if not payload.get(team):
                error(team, "Both fighters are required")

        bookmakers = payload.get("bookmakers", [])
        if not isinstance(bookmakers, list):
            error("bookmakers", "Bookmakers must be a list", type(bookmakers).__name__)
            return issues

        for i, bookmaker in enumerate(bookmakers):
            prefix = f"bookmakers[{i}]"
            if not isinstance(bookmaker, dict):
                error(prefix, "Bookmaker entry must be an object")
                continue
            if not bookmaker.get("key"):
                error(f"{prefix}.key", "Bookmaker key is required")
            if not bookmaker.get("title"):
                error(f"{prefix}.title", "Bookmaker title is required")
            markets = bookmaker.get("markets") or []
            if not markets:
                warning(f"{prefix}.markets", "No markets available for bookmaker", bookmaker.get("key"))
                continue
            for j, market in enumerate(markets):
                self._validate_market(market, f"{prefix}.markets[{j}]", issues)

        return issues

    def _validate_market(self, market: Any, prefix: str, issues: List[ValidationIssue]) -> None:
        if not isinstance(market, dict) or not isinstance(market.get("outcomes"), list):
            issues.append(ValidationIssue(
                field=f"{prefix}.outcomes", message="Market outcomes must be a list", severity="error",
            ))
            return

        prices = []
        for k, outcome in enumerate(market["outcomes"]):
            price = outcome.get("price") if isinstance(outcome, dict) else None
            odds = _as_odds(price)
            if odds is None:
                issues.append(ValidationIssue(
                    field=f"{prefix}.outcomes[{k}].price",
                    message="American odds must be numeric with |odds| >= 100",
                    value=price,
                    severity="error",
                ))
            prices.append(odds)

        if market.get("key") == "h2h" and len(prices) == 2 and None not in prices:
            if prices[0] > 0 and prices[1] > 0:
                issues.append(ValidationIssue(
                    field=f"{prefix}.h2h",
                    message="Both fighters cannot have positive moneyline odds",
                    value=prices,
                    severity="error",
                ))

    # ─────────────────────────────────────────────────────────────────────────
    # Transformation
    # ─────────────────────────────────────────────────────────────────────────

    def transform(self, payload: Any, item: RequestItem) -> List[OddsSnapshot]:
        home, away = payload["home_team"], payload["away_team"]
        fight_id = generate_fight_id(home, away, payload["commence_time"])
        now = datetime.utcnow()

        snapshots = []
        for bookmaker in payload.get("bookmakers", []):
            snapshot = self._snapshot_for(bookmaker, fight_id, home, away, now)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def _fighter_of(self, outcome: Dict[str, Any], home: str, away: str) -> Tuple[Optional[str], str]:
        """Return (fighter1/fighter2/None, outcome text with the fighter's name removed)."""
        name = str(outcome.get("name", ""))
        description = str(outcome.get("description", ""))
        for fighter, full_name in (("fighter1", home), ("fighter2", away)):
            if description.lower() == full_name.lower():
                return fighter, name
            if full_name.lower() in name.lower():
                rest = re.sub(re.escape(full_name), "", name, flags=re.IGNORECASE)
                return fighter, rest
        return None, name

    def _snapshot_for(
        self,
        bookmaker: Dict[str, Any],
        fight_id: str,
        home: str,
        away: str,
        timestamp: datetime,
    ) -> Optional[OddsSnapshot]:
        markets = {m.get("key"): m for m in bookmaker.get("markets", [])}
        h2h = markets.get("h2h")
        if not h2h or len(h2h.get("outcomes", [])) != 2:
            return None

        prices = {o.get("name"): _as_odds(o.get("price")) for o in h2h["outcomes"]}
        if home not in prices or away not in prices:
            raise ValueError(f"h2h outcomes do not name both fighters ({home}, {away})")

        generic_method: Dict[str, int] = {}
        per_fighter: Dict[str, Dict[str, int]] = {"fighter1": {}, "fighter2": {}}
        rounds: Dict[str, int] = {}
        props: Dict[str, int] = {}

        for key, market in markets.items():
            if key == "h2h":
                continue
            for outcome in market.get("outcomes", []):
                odds = _as_odds(outcome.get("price"))
                if odds is None:
                    continue
                fighter, text = self._fighter_of(outcome, home, away)

                if key in METHOD_MARKETS:
                    method = next((m for m, p in METHOD_PATTERNS.items() if p.search(text)), None)
                    if method is None:
                        continue
                    if fighter:
                        per_fighter[fighter].setdefault(method, odds)
                    else:
                        generic_method.setdefault(method, odds)
                elif key in ROUND_MARKETS:
                    number = next((m.group(1) for p in ROUND_PATTERNS for m in [p.search(text)] if m), None)
                    if number is None:
                        continue
                    if fighter:
                        props.setdefault(f"{fighter}_round_{number}", odds)
                    else:
                        rounds.setdefault(f"round{number}", odds)
                else:
                    prefix = fighter or _slug(key)
                    props.setdefault(f"{prefix}_{_slug(text) or 'yes'}", odds)

        return OddsSnapshot(
            fight_id=fight_id,
            sportsbook=normalize_sportsbook_name(bookmaker.get("key", "")),
            timestamp=timestamp,
            moneyline=MoneylineOdds(fighter1=prices[home], fighter2=prices[away]),
            method=MethodOdds(
                **generic_method,
                fighter1=FighterMethodOdds(**per_fighter["fighter1"]) if per_fighter["fighter1"] else None,
                fighter2=FighterMethodOdds(**per_fighter["fighter2"]) if per_fighter["fighter2"] else None,
            ),
            rounds=RoundOdds(**rounds),
            props=props,
            fighter1_name=home,
            fighter2_name=away,
            source_id=self.source_id,
        )
