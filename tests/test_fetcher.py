"""
Tests for the single-exchange fetcher using httpx.MockTransport.
"""
import httpx
import pytest

from services.market_feed.app.errors import TransportFailure, UpstreamServerError
from services.market_feed.app.fetcher import Fetcher, FetchOutcome
from services.market_feed.app.identity_pool import Session
from shared.schemas import SourceConfig


def _config(**kwargs) -> SourceConfig:
    return SourceConfig(
        source_id="test_source",
        name="Test Source",
        base_url="https://odds.example.com",
        **kwargs,
    )


def _session() -> Session:
    return Session(id="session_0", user_agent="TestAgent/1.0")


class TestFetchSuccess:
    """2xx responses."""

    @pytest.mark.asyncio
    async def test_success_returns_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
        fetcher = Fetcher(_config(), transport=transport)

        result = await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert result.ok
        assert result.outcome == FetchOutcome.SUCCESS
        assert result.status_code == 200
        assert result.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_session_identity_is_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["user_agent"] = request.headers.get("user-agent")
            seen["cookie"] = request.headers.get("cookie")
            return httpx.Response(200, text="[]")

        session = _session()
        session.cookies["sid"] = "abc123"
        fetcher = Fetcher(_config(), transport=httpx.MockTransport(handler))

        await fetcher.fetch(session, "https://odds.example.com/events")

        assert seen["user_agent"] == "TestAgent/1.0"
        assert "sid=abc123" in seen["cookie"]

    @pytest.mark.asyncio
    async def test_response_cookies_are_merged_into_session(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(
            200, text="{}", headers={"set-cookie": "visitor=xyz; Path=/"},
        ))
        session = _session()
        fetcher = Fetcher(_config(), transport=transport)

        await fetcher.fetch(session, "https://odds.example.com/events")

        assert session.cookies["visitor"] == "xyz"

    @pytest.mark.asyncio
    async def test_api_key_is_added_to_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, text="{}")

        config = _config(auth_type="apikey", api_key="secret", api_key_param="apiKey")
        fetcher = Fetcher(config, transport=httpx.MockTransport(handler))

        await fetcher.fetch(_session(), "https://odds.example.com/events", params={"regions": "us"})

        assert seen["params"] == {"regions": "us", "apiKey": "secret"}

    @pytest.mark.asyncio
    async def test_bearer_token_is_sent_as_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text="{}")

        fetcher = Fetcher(_config(auth_type="bearer", api_key="tok"), transport=httpx.MockTransport(handler))

        await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert seen["auth"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_tracks_remaining_quota(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(
            200, text="{}", headers={"x-requests-remaining": "487"},
        ))
        fetcher = Fetcher(_config(), transport=transport)

        await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert fetcher.get_stats()["requests_remaining"] == 487


class TestFetchFailures:
    """Blocks, server errors and transport failures."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 404, 429])
    async def test_client_errors_are_soft_blocks(self, status):
        transport = httpx.MockTransport(lambda request: httpx.Response(status, text="denied"))
        fetcher = Fetcher(_config(), transport=transport)

        result = await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert result.outcome == FetchOutcome.SOFT_BLOCK
        assert not result.ok
        assert result.status_code == status
        assert fetcher.get_stats()["soft_block_count"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503])
    async def test_server_errors_raise(self, status):
        transport = httpx.MockTransport(lambda request: httpx.Response(status))
        fetcher = Fetcher(_config(), transport=transport)

        with pytest.raises(UpstreamServerError) as exc_info:
            await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        fetcher = Fetcher(_config(), transport=httpx.MockTransport(handler))

        with pytest.raises(TransportFailure):
            await fetcher.fetch(_session(), "https://odds.example.com/events")

    @pytest.mark.asyncio
    async def test_timeout_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        fetcher = Fetcher(_config(), transport=httpx.MockTransport(handler))

        with pytest.raises(TransportFailure) as exc_info:
            await fetcher.fetch(_session(), "https://odds.example.com/events")

        assert "timeout" in str(exc_info.value)
        assert fetcher.get_stats()["error_count"] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
