"""Unit tests for offerbot/api/webhook_tools.py -- WebhookRegistry and WebhookTools.

No database required: the registry's Database is mocked and HTTP goes
through httpx.MockTransport.
"""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from offerbot.api.models import ToolInvocation
from offerbot.api.tools import ToolDispatcher
from offerbot.api.webhook_tools import WebhookRegistry, WebhookTools, register_webhook_tools
from offerbot.errors import ToolExecutionError


def _make_settings(**overrides) -> MagicMock:
    """Mock Settings with webhook defaults.

    Uses MagicMock instead of real Settings to avoid pydantic-settings
    env file/alias complications in unit tests.
    """
    defaults = {
        "tool_webhook_key": "n8n_mcp_server",
        "tool_webhook_url": "https://fallback.test/mcp",
        "tool_timeout": 5.0,
    }
    defaults.update(overrides)
    mock = MagicMock()
    for key, value in defaults.items():
        setattr(mock, key, value)
    return mock


def _mock_database(row) -> MagicMock:
    """Database whose session().execute() yields the given webhook row."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)

    @asynccontextmanager
    async def _session():
        yield session

    database = MagicMock()
    database.session = _session
    database.execute_mock = session.execute
    return database


def _row(url: str = "https://n8n.test/mcp", is_active: bool = True) -> MagicMock:
    row = MagicMock()
    row.url = url
    row.is_active = is_active
    return row


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class StaticRegistry:
    """Registry double returning a fixed URL."""

    def __init__(self, url: str | None) -> None:
        self.url = url

    async def get_url(self, key: str) -> str | None:
        return self.url


# ---------------------------------------------------------------------------
# WebhookRegistry
# ---------------------------------------------------------------------------


class TestWebhookRegistry:
    @pytest.mark.asyncio
    async def test_active_row_resolved_and_cached(self):
        database = _mock_database(_row())
        registry = WebhookRegistry(database, ttl=60.0)

        assert await registry.get_url("n8n_mcp_server") == "https://n8n.test/mcp"
        assert await registry.get_url("n8n_mcp_server") == "https://n8n.test/mcp"
        assert database.execute_mock.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self):
        database = _mock_database(_row())
        registry = WebhookRegistry(database, ttl=0.0)

        await registry.get_url("n8n_mcp_server")
        await registry.get_url("n8n_mcp_server")
        assert database.execute_mock.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate(self):
        database = _mock_database(_row())
        registry = WebhookRegistry(database)

        await registry.get_url("n8n_mcp_server")
        registry.invalidate("n8n_mcp_server")
        await registry.get_url("n8n_mcp_server")
        assert database.execute_mock.await_count == 2

    @pytest.mark.asyncio
    async def test_inactive_row_gives_none(self):
        registry = WebhookRegistry(_mock_database(_row(is_active=False)))
        assert await registry.get_url("n8n_mcp_server") is None

    @pytest.mark.asyncio
    async def test_missing_row_not_cached(self):
        database = _mock_database(None)
        registry = WebhookRegistry(database)

        assert await registry.get_url("missing") is None
        assert await registry.get_url("missing") is None
        assert database.execute_mock.await_count == 2

    @pytest.mark.asyncio
    async def test_no_database(self):
        assert await WebhookRegistry(None).get_url("n8n_mcp_server") is None


# ---------------------------------------------------------------------------
# WebhookTools
# ---------------------------------------------------------------------------


class TestWebhookTools:
    @pytest.mark.asyncio
    async def test_call_posts_tool_envelope(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 42, "product_code": "HNVN13.18.0"})

        async with _client(handler) as http:
            tools = WebhookTools(_make_settings(), http, StaticRegistry("https://n8n.test/mcp"))
            result = await tools.get_products("HNVN13.18.0")

        assert str(seen[0].url) == "https://n8n.test/mcp"
        assert json.loads(seen[0].content) == {
            "tool": "get_products",
            "input": {"product_code": "HNVN13.18.0"},
        }
        assert json.loads(result) == {"id": 42, "product_code": "HNVN13.18.0"}

    @pytest.mark.asyncio
    async def test_fallback_url(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"multiplier": 1.1})

        async with _client(handler) as http:
            tools = WebhookTools(_make_settings(), http, StaticRegistry(None))
            await tools.get_multiplier()

        assert seen == ["https://fallback.test/mcp"]

    @pytest.mark.asyncio
    async def test_no_url_configured(self):
        async with _client(lambda r: httpx.Response(200, json={})) as http:
            tools = WebhookTools(_make_settings(tool_webhook_url=""), http, StaticRegistry(None))
            with pytest.raises(ToolExecutionError, match="No URL configured"):
                await tools.get_multiplier()

    @pytest.mark.asyncio
    async def test_error_status(self):
        async with _client(lambda r: httpx.Response(502, text="Bad gateway")) as http:
            tools = WebhookTools(_make_settings(), http, StaticRegistry("https://n8n.test/mcp"))
            with pytest.raises(ToolExecutionError, match="502"):
                await tools.get_prices(42)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as http:
            tools = WebhookTools(_make_settings(), http, StaticRegistry("https://n8n.test/mcp"))
            with pytest.raises(ToolExecutionError, match="Request to tool server failed"):
                await tools.get_prices(42)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async with _client(lambda r: httpx.Response(200, text="<html>")) as http:
            tools = WebhookTools(_make_settings(), http, StaticRegistry("https://n8n.test/mcp"))
            with pytest.raises(ToolExecutionError, match="invalid JSON"):
                await tools.get_prices(42)


class TestRegisterWebhookTools:
    @pytest.mark.asyncio
    async def test_registered_and_failure_isolated(self):
        """Webhook failures reach the model as failure envelopes."""
        dispatcher = ToolDispatcher()
        async with _client(lambda r: httpx.Response(500, text="boom")) as http:
            register_webhook_tools(dispatcher, _make_settings(), http, StaticRegistry("https://n8n.test/mcp"))
            assert {"get_products", "get_prices", "get_multiplier"} <= {d["name"] for d in dispatcher.tool_definitions()}

            result = await dispatcher.dispatch(ToolInvocation(id="t1", name="get_prices", input={"id": 1}))

        assert result.is_error is True
        payload = result.payload()
        assert payload["success"] is False
        assert payload["tool_name"] == "get_prices"
        assert "500" in payload["error"]
