"""
API tests for the arb_math and odds_ingest services.

The ingest pipeline is wired against a mocked upstream; startup hooks are not
run, so no scheduler or log files are created.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from services.arb_math.app import main as arb_main
from services.market_feed.app.source_configs import DEFAULT_SOURCES, SourceConfigRegistry
from services.odds_ingest.app import main as ingest_main
from services.odds_ingest.app.pipeline import build_pipeline
from shared.schemas import RequestDelay, SourceConfig

from conftest import make_bookmaker, make_event, make_snapshot


def _wire(*snapshots):
    return {"snapshots": [s.model_dump(mode="json") for s in snapshots]}


@pytest.fixture
def arb_client():
    return TestClient(arb_main.app)


def _upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/events"):
        return httpx.Response(200, json=[{"id": "evt_1"}])
    return httpx.Response(200, json=make_event("evt_1", bookmakers=[
        make_bookmaker("draftkings", "DraftKings", "Jon Jones", "Stipe Miocic", -150, 200),
        make_bookmaker("fanduel", "FanDuel", "Jon Jones", "Stipe Miocic", 180, -140),
    ]))


def _odds_api_config() -> SourceConfig:
    return SourceConfig(
        source_id="the_odds_api",
        name="The Odds API",
        base_url="https://api.test/v4",
        auth_type="apikey",
        api_key="test-key",
        endpoints=dict(DEFAULT_SOURCES["the_odds_api"]["endpoints"]),
        request_delay=RequestDelay(min_ms=0, max_ms=0),
    )


@pytest.fixture
def ingest_client():
    pipeline = build_pipeline(
        ["the_odds_api"],
        registry=SourceConfigRegistry({"the_odds_api": _odds_api_config()}),
        transport=httpx.MockTransport(_upstream),
    )
    ingest_main.set_pipeline(pipeline)
    yield TestClient(ingest_main.app)
    ingest_main.set_pipeline(None)


class TestArbMathService:
    """Stateless detection endpoints."""

    def test_health(self, arb_client):
        response = arb_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["service"] == "arb_math"

    def test_arbitrage(self, arb_client):
        response = arb_client.post("/arbitrage", json=_wire(
            make_snapshot(-150, 200, sportsbook="DraftKings"),
            make_snapshot(180, -140, sportsbook="FanDuel"),
        ))

        assert response.status_code == 200
        opportunities = response.json()["opportunities"]
        assert len(opportunities) == 1
        assert opportunities[0]["opportunity_type"] == "single_market"
        assert opportunities[0]["confidence"] == "high"

    def test_no_arbitrage(self, arb_client):
        response = arb_client.post("/arbitrage", json=_wire(
            make_snapshot(-200, 170, sportsbook="DraftKings"),
            make_snapshot(-195, 165, sportsbook="FanDuel"),
        ))
        assert response.json()["opportunities"] == []

    def test_cross_market(self, arb_client):
        response = arb_client.post("/cross-market", json=_wire(
            make_snapshot(-200, 170, sportsbook="DraftKings", rounds={"round1": 300, "round2": 500, "round3": 700}),
            make_snapshot(-200, 170, sportsbook="FanDuel", method={"decision": 200}),
        ))

        opportunities = response.json()["opportunities"]
        assert [o["opportunity_type"] for o in opportunities] == ["round_method"]

    def test_movement(self, arb_client):
        response = arb_client.post("/movement", json=_wire(
            make_snapshot(-200, 170, fight_id="api_movement_fight"),
            make_snapshot(-150, 130, fight_id="api_movement_fight"),
        ))

        alerts = response.json()["alerts"]
        assert len(alerts) == 1
        assert alerts[0]["movement_type"] == "significant"

        stats = arb_client.get("/movement/stats").json()
        assert stats["alerts_by_type"]["significant"] >= 1

    def test_invalid_payload(self, arb_client):
        response = arb_client.post("/arbitrage", json={"snapshots": [{"fight_id": "x"}]})
        assert response.status_code == 422

    @pytest.mark.parametrize("path", ["/arbitrage", "/movement"])
    def test_both_positive_moneyline_rejected(self, arb_client, path):
        snapshot = make_snapshot().model_dump(mode="json")
        snapshot["moneyline"] = {"fighter1": 150, "fighter2": 140}
        response = arb_client.post(path, json={"snapshots": [snapshot]})
        assert response.status_code == 422


class TestOddsIngestService:
    """Sync, report and operator endpoints."""

    def test_health(self, ingest_client):
        assert ingest_client.get("/health").json()["service"] == "odds_ingest"

    def test_sync_then_report(self, ingest_client):
        sync = ingest_client.post("/sync")
        assert sync.status_code == 200
        results = sync.json()["results"]
        assert len(results) == 1
        assert results[0]["records_processed"] == 1
        assert sync.json()["source_errors"] == {}

        report = ingest_client.get("/report").json()
        assert report["total_fights"] == 1
        assert report["total_sportsbooks"] == 2
        assert report["market_coverage"]["moneyline"] == 100.0

    def test_sessions(self, ingest_client):
        sessions = ingest_client.get("/sessions").json()
        assert len(sessions) == 1
        assert sessions[0]["source_id"] == "the_odds_api"
        assert sessions[0]["available_sessions"] == 1

    def test_reset_sessions(self, ingest_client):
        connector = ingest_main.get_pipeline().aggregator.get_connector("the_odds_api")
        connector.pool.mark_blocked(connector.pool.sessions[0], "403")

        response = ingest_client.post("/sessions/the_odds_api/reset", params={"session_id": "session_0"})

        assert response.status_code == 200
        assert response.json()["blocked_sessions"] == 0

    def test_reset_unknown_targets(self, ingest_client):
        assert ingest_client.post("/sessions/nope/reset").status_code == 404
        response = ingest_client.post("/sessions/the_odds_api/reset", params={"session_id": "session_9"})
        assert response.status_code == 404

    def test_source_status(self, ingest_client):
        ingest_client.post("/sync")
        status = ingest_client.get("/sources/the_odds_api").json()
        assert status["sync_count"] == 1
        assert status["last_result"]["records_processed"] == 1
        assert ingest_client.get("/sources/nope").status_code == 404

    def test_scheduler_and_movements(self, ingest_client):
        assert ingest_client.get("/scheduler").json()["running"] is False
        assert ingest_client.get("/movements").json() == {"alerts": [], "count": 0}

    def test_pipeline_not_initialized(self):
        ingest_main.set_pipeline(None)
        client = TestClient(ingest_main.app)
        assert client.post("/sync").status_code == 503


class TestPipelineWiring:
    """Connector selection at startup."""

    def test_sources_without_connector_are_skipped(self):
        registry = SourceConfigRegistry({
            "the_odds_api": _odds_api_config(),
            "ufc_stats": SourceConfig(source_id="ufc_stats", name="UFCStats.com", base_url="http://ufcstats.com"),
        })

        pipeline = build_pipeline(["the_odds_api", "ufc_stats"], registry=registry)

        assert [c.source_id for c in pipeline.connectors] == ["the_odds_api"]

    def test_odds_api_connector_requests_method_and_round_markets(self):
        registry = SourceConfigRegistry({"the_odds_api": _odds_api_config()})
        pipeline = build_pipeline(["the_odds_api"], registry=registry)
        assert pipeline.connectors[0].markets == ["h2h", "fight_result_method", "fight_result_round"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
