"""
Tests for the source adapter contract, the registry and the HTTP client.
"""

import aiohttp
import pytest

from comic_aggregator.sources import HttpSourceClient, SourceAdapter, SourceRegistry, detect_block
from comic_aggregator.utils.exceptions import (
    NetworkError,
    NotFoundError,
    ParsingError,
    UnsupportedOperationError,
)
from tests.fakes import FakeAdapter


# ========== HTTP doubles ==========


class FakeResponse:
    """Minimal aiohttp response stand-in usable as an async context manager."""

    def __init__(self, status: int = 200, body: str = "", headers: dict = None):
        self.status = status
        self.body = body
        self.headers = headers or {"Content-Type": "text/html; charset=utf-8"}

    async def text(self) -> str:
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Records requests and replays canned responses in order."""

    closed = False

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None, headers=None):
        self.requests.append({"url": url, "params": params, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


CHALLENGE_PAGE = """
<html><head><title>Just a moment...</title></head>
<body><div id="cf-browser-verification">Checking your browser. Ray ID: 1234</div></body></html>
"""


# ========== Adapter contract ==========


class TestSourceAdapter:
    """Test the adapter base class."""

    def test_supported_operations(self):
        adapter = FakeAdapter("aqua")

        assert adapter.supports("latest") is True
        assert adapter.supports("search") is False
        assert adapter.supports("teleport") is False
        assert adapter.supported_operations() == ["latest", "popular", "genre"]

    @pytest.mark.asyncio
    async def test_unimplemented_operation_raises(self):
        with pytest.raises(UnsupportedOperationError) as exc_info:
            await FakeAdapter("aqua").search("naruto")

        assert exc_info.value.operation == "search"
        assert exc_info.value.source == "aqua"


class TestSourceRegistry:
    """Test adapter registration and dispatch."""

    def test_register_and_lookup(self, aqua, dex):
        registry = SourceRegistry([aqua])
        registry.register(dex)

        assert registry.list_sources() == ["aqua", "dex"]
        assert registry.get("dex") is dex
        assert "aqua" in registry
        assert len(registry) == 2

    def test_register_requires_source_id(self):
        with pytest.raises(ValueError):
            SourceRegistry([SourceAdapter()])

    def test_unknown_source(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("mirror")

    def test_unregister(self, registry):
        assert registry.unregister("dex") is True
        assert registry.unregister("dex") is False
        assert registry.list_sources() == ["aqua"]

    @pytest.mark.asyncio
    async def test_execute_dispatches_to_adapter(self, registry, aqua):
        """Test execute() maps the operation name to the adapter method."""
        result = await registry.execute("aqua", "latest", 1)

        assert result == aqua.pages[1]
        assert aqua.calls == [("latest", 1)]

    @pytest.mark.asyncio
    async def test_execute_unknown_operation(self, registry):
        with pytest.raises(UnsupportedOperationError):
            await registry.execute("aqua", "teleport")


# ========== Block detection ==========


class TestDetectBlock:
    """Test Cloudflare-style block scoring."""

    def test_challenge_page_is_blocked(self):
        detection = detect_block(
            503,
            {"Server": "cloudflare", "Content-Type": "text/html", "CF-RAY": "1234"},
            CHALLENGE_PAGE,
        )

        assert detection.blocked is True
        assert detection.block_type == "challenge"
        assert detection.details["matched_title"] == "just a moment..."

    def test_captcha_detected(self):
        detection = detect_block(403, {"content-type": "text/html"}, "<div class='g-recaptcha'></div>")

        assert detection.blocked is True
        assert detection.block_type == "captcha"

    def test_plain_forbidden_below_threshold(self):
        """Test a bare 403 without other signals is not a block."""
        detection = detect_block(403, {"content-type": "text/html"}, "<h1>Forbidden</h1>")

        assert detection.blocked is False
        assert detection.confidence == 30

    def test_cloudflare_forbidden(self):
        detection = detect_block(403, {"server": "cloudflare"}, None)

        assert detection.blocked is True
        assert detection.block_type == "forbidden"

    def test_normal_page(self):
        detection = detect_block(200, {"content-type": "text/html"}, "<title>Latest Updates</title>")
        assert detection.blocked is False
        assert detection.confidence == 0

    def test_json_body_not_scanned(self):
        detection = detect_block(200, {"content-type": "application/json"}, '{"note": "captcha"}')
        assert detection.confidence == 0


# ========== HTTP client ==========


class TestHttpSourceClient:
    """Test request handling and error mapping."""

    @pytest.mark.asyncio
    async def test_fetch_text(self):
        session = FakeSession(FakeResponse(200, "<html>latest</html>"))
        client = HttpSourceClient(base_url="https://aquareader.net/", session=session)

        body = await client.fetch_text("/manga/?page=1")

        assert body == "<html>latest</html>"
        assert session.requests[0]["url"] == "https://aquareader.net/manga/?page=1"
        assert client.get_stats()["successful_requests"] == 1

    @pytest.mark.asyncio
    async def test_absolute_urls_bypass_base(self):
        session = FakeSession(FakeResponse(200, "ok"))
        client = HttpSourceClient(base_url="https://aquareader.net", session=session)

        await client.fetch_text("https://cdn.example.com/feed")

        assert session.requests[0]["url"] == "https://cdn.example.com/feed"

    @pytest.mark.asyncio
    async def test_user_agents_rotate(self):
        session = FakeSession(FakeResponse(200, "a"), FakeResponse(200, "b"), FakeResponse(200, "c"))
        client = HttpSourceClient(session=session, user_agents=["ua-1", "ua-2"])

        for _ in range(3):
            await client.fetch_text("https://example.com")

        agents = [request["headers"]["User-Agent"] for request in session.requests]
        assert agents == ["ua-1", "ua-2", "ua-1"]

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = HttpSourceClient(session=FakeSession(FakeResponse(404, "missing")))

        with pytest.raises(NotFoundError):
            await client.fetch_text("https://example.com/manga/none")

        assert client.get_stats()["not_found"] == 1

    @pytest.mark.asyncio
    async def test_server_error(self):
        client = HttpSourceClient(session=FakeSession(FakeResponse(500, "oops")))

        with pytest.raises(NetworkError) as exc_info:
            await client.fetch_text("https://example.com")

        assert exc_info.value.status_code == 500
        assert exc_info.value.blocked is False

    @pytest.mark.asyncio
    async def test_blocked_response(self):
        """Test a challenge page raises a blocked NetworkError."""
        response = FakeResponse(503, CHALLENGE_PAGE, {"Server": "cloudflare", "Content-Type": "text/html"})
        client = HttpSourceClient(session=FakeSession(response))

        with pytest.raises(NetworkError) as exc_info:
            await client.fetch_text("https://example.com")

        assert exc_info.value.blocked is True
        stats = client.get_stats()
        assert stats["blocked_requests"] == 1
        assert stats["block_rate"] == 1.0
        assert stats["last_blocked_at"] is not None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        client = HttpSourceClient(session=FakeSession(aiohttp.ClientConnectionError("reset")))

        with pytest.raises(NetworkError):
            await client.fetch_text("https://example.com")

        assert client.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_fetch_json(self):
        response = FakeResponse(200, '{"data": [{"title": "Bleach"}]}', {"Content-Type": "application/json"})
        session = FakeSession(response)
        client = HttpSourceClient(session=session)

        data = await client.fetch_json("https://api.example.com/manga", params={"limit": 20})

        assert data == {"data": [{"title": "Bleach"}]}
        assert session.requests[0]["params"] == {"limit": 20}
        assert session.requests[0]["headers"]["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_fetch_json_invalid(self):
        client = HttpSourceClient(session=FakeSession(FakeResponse(200, "<html>not json</html>")))

        with pytest.raises(ParsingError):
            await client.fetch_json("https://api.example.com/manga")

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        session = FakeSession()

        async with HttpSourceClient(session=session):
            pass

        assert session.closed is False
