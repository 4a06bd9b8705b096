"""offerbot entry point.

Initializes all components and starts the server:
  Settings -> Database -> EventBus -> ToolDispatcher -> OrchestrationLoop -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from offerbot.api.runner import OrchestrationLoop
from offerbot.api.tools import ToolDispatcher
from offerbot.api.webhook_tools import WebhookRegistry, register_webhook_tools
from offerbot.config import Settings
from offerbot.events import EventBus, application_log_persister
from offerbot.prompts import SystemPromptBuilder
from offerbot.storage.database import Database
from offerbot.storage.migrator import run_migrations
from offerbot.storage.repository import ConversationStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    store = ConversationStore(database, default_title=settings.default_conversation_title)

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        bus.set_db_persister(application_log_persister(database))
        await bus.start()

    # Tool webhooks client (separate from the loop's -- no API auth headers)
    tool_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.tool_timeout, write=10, pool=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    dispatcher = ToolDispatcher()
    registry = WebhookRegistry(database, ttl=settings.webhook_cache_ttl)
    register_webhook_tools(dispatcher, settings, tool_http, registry)

    loop = OrchestrationLoop(
        settings,
        dispatcher,
        store,
        SystemPromptBuilder(database),
        bus=bus,
    )
    await loop.start()

    return {
        "database": database,
        "store": store,
        "bus": bus,
        "dispatcher": dispatcher,
        "tool_http": tool_http,
        "loop": loop,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down offerbot...")

    loop = components.get("loop")
    if loop:
        await loop.close()

    tool_http = components.get("tool_http")
    if tool_http:
        await tool_http.aclose()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("offerbot shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app. Components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Loop: model=%s, max_rounds=%d, round_timeout=%.0fs",
            settings.model,
            settings.max_rounds,
            settings.round_timeout,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from offerbot.api.rest import create_app

    return create_app(
        loop=_lazy_component(components, "loop"),
        store=_lazy_component(components, "store"),
        database=_lazy_component(components, "database"),
        settings=settings,
        bus=_lazy_component(components, "bus") if settings.event_bus_enabled else None,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them. All attribute access is forwarded to the actual
    component once it's available.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Create a lazy proxy for a component that will be initialized in lifespan."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting offerbot")
    logger.info("Model: %s (thinking %s)", settings.model, "on" if settings.thinking_enabled else "off")
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "message endpoints will fail"
        )
    if not settings.tool_webhook_url:
        logger.info("N8N_MCP_SERVER_URL not set -- tool URLs come from the webhooks table only")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
