"""Product and pricing tools backed by the n8n MCP webhook.

The n8n workflow receives {"tool": name, "input": {...}}, queries the
product tables and answers with JSON that is passed back to the model
unchanged. Webhook URLs live in the webhooks table and are cached for a
short TTL; Settings.tool_webhook_url is the fallback when no active row
exists.

Uses a separate httpx client (NOT the orchestration loop's, which carries
API credentials).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
from sqlalchemy import select

from offerbot.api.tools import ToolDispatcher
from offerbot.config import Settings
from offerbot.errors import ToolExecutionError
from offerbot.storage.database import Database
from offerbot.storage.models import Webhook

logger = logging.getLogger(__name__)


class WebhookRegistry:
    """Resolves webhook keys to URLs with a TTL cache."""

    def __init__(self, database: Database | None, ttl: float = 60.0) -> None:
        self._database = database
        self._ttl = ttl
        self._cache: dict[str, tuple[str, float]] = {}

    async def get_url(self, key: str) -> str | None:
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[1] < self._ttl:
            return cached[0]

        url = await self._fetch(key)
        if url:
            self._cache[key] = (url, time.monotonic())
        return url

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def _fetch(self, key: str) -> str | None:
        if self._database is None:
            return None
        async with self._database.session() as session:
            row = (
                await session.execute(select(Webhook).where(Webhook.webhook_key == key))
            ).scalar_one_or_none()
        if row is None:
            logger.warning("No webhook row for key %r", key)
            return None
        if not row.is_active:
            logger.warning("Webhook %r exists but is inactive", key)
            return None
        return row.url


class WebhookTools:
    """Tool handlers that forward calls to the n8n MCP server."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient, registry: WebhookRegistry) -> None:
        self._settings = settings
        self._http = http
        self._registry = registry

    async def _server_url(self) -> str:
        url = await self._registry.get_url(self._settings.tool_webhook_key)
        url = url or self._settings.tool_webhook_url
        if not url:
            raise ToolExecutionError(
                f"No URL configured for webhook {self._settings.tool_webhook_key!r}"
            )
        return url

    async def call(self, tool_name: str, tool_input: dict[str, Any]) -> str:
        """POST a tool call to the MCP server and return its JSON as text.

        Network failures and non-2xx answers raise ToolExecutionError.
        """
        url = await self._server_url()
        logger.info("Calling webhook tool %s", tool_name)
        try:
            response = await self._http.post(
                url,
                json={"tool": tool_name, "input": tool_input},
                timeout=self._settings.tool_timeout,
            )
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Request to tool server failed: {e}") from e

        if response.status_code >= 400:
            raise ToolExecutionError(
                f"Tool server returned {response.status_code}: {response.text[:500]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise ToolExecutionError(f"Tool server returned invalid JSON: {e}") from e
        return json.dumps(result, ensure_ascii=False, indent=2)

    async def get_products(self, product_code: str) -> str:
        return await self.call("get_products", {"product_code": product_code})

    async def get_prices(self, id: int) -> str:
        return await self.call("get_prices", {"id": id})

    async def get_multiplier(self) -> str:
        return await self.call("get_multiplier", {})


def register_webhook_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    http: httpx.AsyncClient,
    registry: WebhookRegistry,
) -> WebhookTools:
    """Register the product/pricing tools with the dispatcher."""
    tools = WebhookTools(settings, http, registry)

    dispatcher.register("get_products", tools.get_products, {
        "type": "object",
        "description": "Search products table by product code. Returns product details including ID.",
        "properties": {
            "product_code": {
                "type": "string",
                "description": 'Product code (e.g., "HNVN13.18.0")',
            },
        },
        "required": ["product_code"],
    })
    dispatcher.register("get_prices", tools.get_prices, {
        "type": "object",
        "description": "Get pricing for a product by its ID (from get_products).",
        "properties": {
            "id": {"type": "number", "description": "Product ID (numeric)"},
        },
        "required": ["id"],
    })
    dispatcher.register("get_multiplier", tools.get_multiplier, {
        "type": "object",
        "description": "Get the latest price multiplier. No parameters needed.",
        "properties": {},
        "required": [],
    })

    logger.info("Registered webhook tools: get_products, get_prices, get_multiplier")
    return tools
