"""
Tests for The Odds API connector: validation, transformation and full sync
cycles against a mocked upstream.
"""
from typing import Dict, List

import httpx
import pytest

from services.arb_math.app.arbitrage import ArbitrageDetector
from services.arb_math.app.movement import MovementDetector
from services.market_feed.app.connectors import OddsApiConnector, RequestItem, build_connector
from services.market_feed.app.connectors.odds_api import generate_fight_id, normalize_sportsbook_name
from services.market_feed.app.errors import NoCapacityError, SyncError
from services.market_feed.app.events import EventChannel
from services.market_feed.app.repository import InMemoryOddsRepository
from services.market_feed.app.source_configs import DEFAULT_SOURCES
from shared.schemas import MovementType, ProxyConfig, RequestDelay, RetryConfig, SourceConfig

from conftest import make_bookmaker, make_event

EVENTS_PATH = "/v4/sports/mma_mixed_martial_arts/events"


def _config(proxies: int = 0, max_retries: int = 2) -> SourceConfig:
    return SourceConfig(
        source_id="the_odds_api",
        name="The Odds API",
        base_url="https://api.test/v4",
        auth_type="apikey",
        api_key="test-key",
        endpoints=dict(DEFAULT_SOURCES["the_odds_api"]["endpoints"]),
        request_delay=RequestDelay(min_ms=0, max_ms=0),
        retry=RetryConfig(max_retries=max_retries, base_backoff_ms=1000, backoff_multiplier=2.0),
        proxies=[ProxyConfig(host=f"10.0.0.{i + 1}", port=3128) for i in range(proxies)],
    )


def _odds_path(event_id: str) -> str:
    return f"{EVENTS_PATH}/{event_id}/odds"


class FakeOddsApi:
    """Routes event-list and event-odds requests; queued statuses are served first."""

    def __init__(self, events: List[dict]):
        self.events: Dict[str, dict] = {e["id"]: e for e in events}
        self.queued: Dict[str, List[int]] = {}
        self.calls: List[str] = []
        self.params: List[Dict[str, str]] = []

    def fail(self, path: str, *statuses: int) -> None:
        self.queued.setdefault(path, []).extend(statuses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        self.params.append(dict(request.url.params))
        queued = self.queued.get(path)
        if queued:
            return httpx.Response(queued.pop(0), text="blocked")
        if path == EVENTS_PATH:
            return httpx.Response(200, json=[{"id": event_id} for event_id in self.events])
        event_id = path.split("/")[-2]
        return httpx.Response(200, json=self.events[event_id])


def _connector(api: FakeOddsApi, clock=None, **kwargs) -> OddsApiConnector:
    config = kwargs.pop("config", None) or _config()
    if clock is not None:
        kwargs["sleep"] = clock.sleep
    return OddsApiConnector(config, transport=httpx.MockTransport(api), **kwargs)


class TestHelpers:
    """Fight ids and sportsbook names."""

    def test_fight_id_is_order_insensitive(self):
        a = generate_fight_id("Jon Jones", "Stipe Miocic", "2024-12-01T20:00:00Z")
        b = generate_fight_id("Stipe Miocic", "Jon Jones", "2024-12-01T23:30:00Z")
        assert a == b == "odds_api_Jon_Jones_vs_Stipe_Miocic_2024_12_01"

    def test_fight_id_differs_by_date(self):
        a = generate_fight_id("A", "B", "2024-12-01T20:00:00Z")
        b = generate_fight_id("A", "B", "2025-03-01T20:00:00Z")
        assert a != b

    def test_fight_id_date_is_utc(self):
        """22:00 in New York on Dec 1 is already Dec 2 in UTC."""
        local = generate_fight_id("Jon Jones", "Stipe Miocic", "2024-12-01T22:00:00-05:00")
        utc = generate_fight_id("Jon Jones", "Stipe Miocic", "2024-12-02T03:00:00Z")
        assert local == utc == "odds_api_Jon_Jones_vs_Stipe_Miocic_2024_12_02"

    def test_sportsbook_names(self):
        assert normalize_sportsbook_name("draftkings") == "DraftKings"
        assert normalize_sportsbook_name("williamhill_us") == "William Hill"
        assert normalize_sportsbook_name("somebook") == "somebook"

    def test_build_connector_by_source_id(self):
        connector = build_connector(_config())
        assert isinstance(connector, OddsApiConnector)

    def test_build_connector_unknown_source(self):
        config = SourceConfig(source_id="nope", name="Nope", base_url="https://x.test")
        with pytest.raises(KeyError):
            build_connector(config)


class TestValidation:
    """Structural and cross-field checks on event payloads."""

    def setup_method(self):
        self.connector = _connector(FakeOddsApi([]))
        self.item = RequestItem(key="evt_1", url="https://api.test/v4/x")

    def _errors(self, payload) -> List[str]:
        return [i.field for i in self.connector.validate(payload, self.item) if i.severity == "error"]

    def test_valid_event_has_no_issues(self):
        assert self.connector.validate(make_event(), self.item) == []

    def test_non_object_payload(self):
        assert self._errors(["not", "an", "event"]) == ["payload"]

    def test_missing_fighter(self):
        event = make_event()
        del event["away_team"]
        assert self._errors(event) == ["away_team"]

    def test_missing_id_and_bad_time(self):
        event = make_event(id="", commence_time="next tuesday")
        assert set(self._errors(event)) == {"id", "commence_time"}

    def test_both_positive_moneyline_rejected(self):
        event = make_event(bookmakers=[make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", 110, 120)])
        assert self._errors(event) == ["bookmakers[0].markets[0].h2h"]

    def test_unrealistic_price_rejected(self):
        event = make_event(bookmakers=[make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", 50, -200)])
        assert self._errors(event) == ["bookmakers[0].markets[0].outcomes[0].price"]

    def test_missing_bookmaker_title(self):
        bookmaker = make_bookmaker("fanduel", "", "Jon Jones", "Stipe Miocic", -150, 130)
        assert self._errors(make_event(bookmakers=[bookmaker])) == ["bookmakers[0].title"]

    def test_wrong_sport_and_empty_markets_are_warnings(self):
        bookmaker = {"key": "betmgm", "title": "BetMGM", "markets": []}
        issues = self.connector.validate(make_event(sport_key="boxing_boxing", bookmakers=[bookmaker]), self.item)
        assert {i.field for i in issues} == {"sport_key", "bookmakers[0].markets"}
        assert all(i.severity == "warning" for i in issues)


class TestTransform:
    """Event payload -> one snapshot per bookmaker."""

    def setup_method(self):
        self.connector = _connector(FakeOddsApi([]))
        self.item = RequestItem(key="evt_1", url="https://api.test/v4/x")

    def test_one_snapshot_per_bookmaker(self):
        event = make_event(bookmakers=[
            make_bookmaker("draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -200, 170),
            make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", -190, 160),
        ])
        snapshots = self.connector.transform(event, self.item)

        assert [s.sportsbook for s in snapshots] == ["DraftKings", "FanDuel"]
        first = snapshots[0]
        assert first.fight_id == "odds_api_Jon_Jones_vs_Stipe_Miocic_2024_12_01"
        assert (first.moneyline.fighter1, first.moneyline.fighter2) == (-200, 170)
        assert (first.fighter1_name, first.fighter2_name) == ("Jon Jones", "Stipe Miocic")
        assert first.source_id == "the_odds_api"

    def test_bookmaker_without_h2h_is_skipped(self):
        bookmaker = {"key": "betmgm", "title": "BetMGM", "markets": [
            {"key": "method_of_victory", "outcomes": [{"name": "Jon Jones by KO", "price": 150}]},
        ]}
        assert self.connector.transform(make_event(bookmakers=[bookmaker]), self.item) == []

    def test_method_round_and_prop_markets(self):
        bookmaker = make_bookmaker(
            "draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -200, 170,
            extra_markets=[
                {"key": "method_of_victory", "outcomes": [
                    {"name": "Jon Jones by KO/TKO", "price": 150},
                    {"name": "Jon Jones by Submission", "price": 400},
                    {"name": "Jon Jones by Decision", "price": 250},
                    {"name": "Stipe Miocic by KO/TKO", "price": 300},
                    {"name": "Fight ends by Decision", "price": 180},
                ]},
                {"key": "round_betting", "outcomes": [
                    {"name": "Round 1", "price": 350},
                    {"name": "Jon Jones Round 2", "price": 800},
                ]},
                {"key": "fight_to_go_the_distance", "outcomes": [
                    {"name": "Yes", "price": 200},
                    {"name": "No", "price": -250},
                ]},
            ],
        )
        snapshot = self.connector.transform(make_event(bookmakers=[bookmaker]), self.item)[0]

        assert snapshot.method.decision == 180
        assert snapshot.method.fighter1.ko == 150
        assert snapshot.method.fighter1.submission == 400
        assert snapshot.method.fighter1.decision == 250
        assert snapshot.method.fighter1.is_complete()
        assert snapshot.method.fighter2.ko == 300
        assert not snapshot.method.fighter2.is_complete()
        assert snapshot.rounds.round1 == 350
        assert snapshot.props["fighter1_round_2"] == 800
        assert snapshot.props["fight_to_go_the_distance_yes"] == 200
        assert snapshot.props["fight_to_go_the_distance_no"] == -250

    def test_wire_shape(self):
        bookmaker = make_bookmaker(
            "draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -200, 170,
            extra_markets=[{"key": "round_betting", "outcomes": [{"name": "Round 5", "price": 1200}]}],
        )
        wire = self.connector.transform(make_event(bookmakers=[bookmaker]), self.item)[0].to_wire()

        assert wire["fightId"] == "odds_api_Jon_Jones_vs_Stipe_Miocic_2024_12_01"
        assert wire["moneyline"] == {"fighter1": -200, "fighter2": 170}
        assert wire["method"] == {"ko": None, "submission": None, "decision": None}
        assert wire["rounds"] == {"round1": None, "round2": None, "round3": None, "round5": 1200}
        assert "round4" not in wire["rounds"]


class TestSyncCycle:
    """Full sync cycles through the retry loop."""

    @pytest.mark.asyncio
    async def test_malformed_event_is_skipped(self, fake_clock):
        bad = make_event("evt_bad")
        del bad["away_team"]
        api = FakeOddsApi([make_event("evt_1"), bad, make_event("evt_2", home="Alex Pereira", away="Jiri Prochazka")])
        connector = _connector(api, fake_clock)

        result = await connector.sync()

        assert result.records_processed == 2
        assert result.records_skipped == 1
        assert any(e.field == "away_team" for e in result.errors)
        assert result.next_sync_time > connector.last_sync_at

    @pytest.mark.asyncio
    async def test_snapshots_are_persisted(self, fake_clock):
        repository = InMemoryOddsRepository()
        api = FakeOddsApi([make_event("evt_1", bookmakers=[
            make_bookmaker("draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -200, 170),
            make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", -190, 160),
        ])])
        connector = _connector(api, fake_clock, repository=repository)

        await connector.sync()

        assert repository.snapshot_count() == 2
        latest = await repository.get_latest_odds()
        assert {s.sportsbook for s in latest} == {"DraftKings", "FanDuel"}

    @pytest.mark.asyncio
    async def test_event_odds_request_method_and_round_markets(self, fake_clock):
        api = FakeOddsApi([make_event("evt_1")])
        connector = build_connector(_config(), transport=httpx.MockTransport(api), sleep=fake_clock.sleep)

        await connector.sync()

        odds_params = api.params[api.calls.index(_odds_path("evt_1"))]
        assert odds_params["markets"] == "h2h,fight_result_method,fight_result_round"
        assert odds_params["oddsFormat"] == "american"
        assert odds_params["regions"] == "us"

    @pytest.mark.asyncio
    async def test_soft_block_rotates_to_next_session(self, fake_clock):
        pool_events = EventChannel("pool")
        api = FakeOddsApi([make_event("evt_1")])
        api.fail(EVENTS_PATH, 403)
        connector = _connector(api, fake_clock, config=_config(proxies=2), pool_events=pool_events)

        result = await connector.sync()

        assert result.records_processed == 1
        first, second = connector.pool.sessions
        assert first.blocked and first.blocked_reason == "soft block (HTTP 403)"
        assert not second.blocked
        assert connector.pool.blocked_proxies == {"10.0.0.1:3128"}
        assert [e.kind for e in pool_events.drain()] == ["session_blocked"]

    @pytest.mark.asyncio
    async def test_all_sessions_blocked_raises_no_capacity(self, fake_clock):
        api = FakeOddsApi([make_event("evt_1")])
        api.fail(EVENTS_PATH, 429)
        connector = _connector(api, fake_clock)

        with pytest.raises(NoCapacityError):
            await connector.sync()

        assert connector.pool.available_count() == 0

    @pytest.mark.asyncio
    async def test_item_retries_exhausted_is_skipped(self, fake_clock):
        api = FakeOddsApi([make_event("evt_1"), make_event("evt_2")])
        api.fail(_odds_path("evt_1"), 503, 503, 503)
        connector = _connector(api, fake_clock)

        result = await connector.sync()

        assert result.records_processed == 1
        assert result.records_skipped == 1
        assert result.errors[0].field == "request"
        # 5xx never blocks the session
        assert connector.pool.available_count() == 1

    @pytest.mark.asyncio
    async def test_server_error_backs_off_then_succeeds(self, fake_clock):
        api = FakeOddsApi([make_event("evt_1")])
        api.fail(EVENTS_PATH, 500)
        connector = _connector(api, fake_clock)

        result = await connector.sync()

        assert result.records_processed == 1
        backoffs = [s for s in fake_clock.sleeps if s >= 1.0]
        assert len(backoffs) == 1
        assert 1.0 <= backoffs[0] <= 1.1

    @pytest.mark.asyncio
    async def test_event_listing_failure_aborts_cycle(self, fake_clock):
        api = FakeOddsApi([make_event("evt_1")])
        api.fail(EVENTS_PATH, 500, 500, 500)
        connector = _connector(api, fake_clock)

        with pytest.raises(SyncError):
            await connector.sync()

        assert api.calls == [EVENTS_PATH] * 3

    def test_backoff_is_capped(self):
        connector = _connector(FakeOddsApi([]))
        assert connector.backoff_seconds(0) <= 1.1
        assert connector.backoff_seconds(10) == pytest.approx(15.0)


class TestDetectorFanOut:
    """Ingested snapshots flow into movement and arbitrage detection."""

    @pytest.mark.asyncio
    async def test_arbitrage_published_after_batch(self, fake_clock):
        opportunities = EventChannel("opportunities")
        repository = InMemoryOddsRepository()
        api = FakeOddsApi([make_event("evt_1", bookmakers=[
            make_bookmaker("draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -150, 200),
            make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", 180, -140),
        ])])
        connector = _connector(
            api, fake_clock,
            repository=repository,
            movement_detector=MovementDetector(),
            arbitrage_detector=ArbitrageDetector(),
            opportunities=opportunities,
        )

        await connector.sync()

        published = opportunities.drain()
        assert len(published) == 1
        assert published[0].profit_margin == pytest.approx(30.95, abs=0.01)
        assert list(repository.opportunities) == published

    @pytest.mark.asyncio
    async def test_movement_alert_on_second_cycle(self, fake_clock):
        alerts = EventChannel("alerts")
        api = FakeOddsApi([make_event("evt_1")])
        connector = _connector(api, fake_clock, movement_detector=MovementDetector(), alerts=alerts)

        await connector.sync()
        assert len(alerts) == 0

        api.events["evt_1"] = make_event("evt_1", bookmakers=[
            make_bookmaker("draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -150, 130),
        ])
        await connector.sync()

        published = alerts.drain()
        assert len(published) == 1
        assert published[0].movement_type == MovementType.SIGNIFICANT
        assert published[0].leg == "fighter2"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
