"""chatrelay entry point.

Initializes all components and starts the server:
  Settings -> Database -> HistoryStore -> Adapters -> ContextBuilder -> Orchestrator -> App -> Uvicorn

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

from chatrelay.backends import LocalModelAdapter, OpenAICompatAdapter, ToolAugmentedAdapter
from chatrelay.backends.base import BackendError
from chatrelay.chat.cancellation import CancellationRegistry
from chatrelay.chat.capabilities import ModelCapabilities, ModelCatalog
from chatrelay.chat.context import ContextBuilder
from chatrelay.chat.orchestrator import TurnOrchestrator
from chatrelay.config import Settings
from chatrelay.i18n import Translator
from chatrelay.services.agents import FileAgentConfigStore
from chatrelay.services.attachments import FileAttachmentReader
from chatrelay.services.base import NullRetrievalService
from chatrelay.services.web_search import BraveWebSearch
from chatrelay.storage.database import Database
from chatrelay.storage.history import SqlHistoryStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    store = SqlHistoryStore(database)

    timeout = httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=settings.api_timeout_connect,
        pool=settings.api_timeout_connect,
    )
    # Local backend client is bound to the Ollama base URL
    local_http = httpx.AsyncClient(base_url=settings.ollama_base_url, timeout=timeout)
    # Provider client carries per-request credentials, web client none
    provider_http = httpx.AsyncClient(timeout=timeout)
    web_http = httpx.AsyncClient(timeout=httpx.Timeout(10.0), follow_redirects=True)

    translate = Translator(settings.locale)
    capabilities = ModelCapabilities(settings)
    catalog = ModelCatalog(settings)
    registry = CancellationRegistry()
    local = LocalModelAdapter(local_http, capabilities)
    await load_model_catalog(catalog, local)

    builder = ContextBuilder(
        capabilities,
        retrieval=NullRetrievalService(),
        web_search=BraveWebSearch(settings, web_http, translate),
        agents=FileAgentConfigStore(settings.agents_dir),
        translate=translate,
        attachments=FileAttachmentReader(),
    )

    orchestrator = TurnOrchestrator(
        settings=settings,
        store=store,
        builder=builder,
        capabilities=capabilities,
        catalog=catalog,
        registry=registry,
        local=local,
        compat=OpenAICompatAdapter(provider_http, capabilities, settings),
        tools=ToolAugmentedAdapter(provider_http, capabilities, settings),
        translate=translate,
    )

    return {
        "database": database,
        "store": store,
        "catalog": catalog,
        "orchestrator": orchestrator,
        "local_http": local_http,
        "provider_http": provider_http,
        "web_http": web_http,
    }


async def load_model_catalog(catalog: ModelCatalog, local: LocalModelAdapter) -> None:
    """Fill the catalog from the local backend; an unreachable backend leaves it empty."""
    try:
        models = await local.list_models()
    except BackendError as e:
        logger.warning("Local model list unavailable, using context-length table: %s", e)
        return
    catalog.load_local(models)
    logger.info("Loaded %d local models", len(models))


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down chatrelay...")

    orchestrator = components.get("orchestrator")
    if orchestrator:
        await orchestrator.aclose()

    catalog = components.get("catalog")
    if catalog:
        catalog.clear()

    for key in ("web_http", "provider_http", "local_http"):
        client = components.get(key)
        if client:
            await client.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("chatrelay shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        # Store on app.state for access in tests
        app.state.components = components
        logger.info("chatrelay started (locale=%s, suppliers=%s)", settings.locale, ", ".join(settings.suppliers) or "-")
        yield
        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from chatrelay.api.rest import create_app

    return create_app(
        orchestrator=_lazy_component(components, "orchestrator"),
        store=_lazy_component(components, "store"),
        catalog=_lazy_component(components, "catalog"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting chatrelay on %s:%d", settings.host, settings.port)
    logger.info("Local backend: %s at %s", settings.local_supplier, settings.ollama_base_url)
    if settings.database_url:
        logger.info("Database: %s", settings.database_url.split("://", 1)[0])
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY not set, web search injection will be skipped")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
