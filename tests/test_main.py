"""Tests for app wiring: lifespan-managed components behind lazy proxies."""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chatrelay.backends import LocalModelAdapter
from chatrelay.chat.capabilities import ModelCapabilities, ModelCatalog
from chatrelay.main import _lazy_component, build_app, load_model_catalog


def test_lazy_component_before_startup():
    proxy = _lazy_component({}, "store")
    with pytest.raises(RuntimeError, match="not yet initialized"):
        proxy.list_turns


@pytest.mark.asyncio
async def test_lifespan_wires_components(make_settings):
    # Nothing listens on the discard port, so the model list is unavailable
    app = build_app(make_settings(ollama_base_url="http://127.0.0.1:9"))

    async with app.router.lifespan_context(app):
        components = app.state.components
        assert set(components) >= {"database", "store", "catalog", "orchestrator"}
        assert components["catalog"].get("llama:3b").context_length == 4096

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            health = await client.get("/health")
            turns = await client.get("/chat/none/turns")
            stop = await client.post("/chat/stop", json={"context_id": "none"})

        assert health.json() == {"status": "healthy"}
        assert turns.json() == {"turns": []}
        assert stop.json()["status"] == "idle"

    assert components["local_http"].is_closed
    assert components["provider_http"].is_closed


@pytest.mark.asyncio
async def test_catalog_loaded_from_local_backend(settings):
    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama:3b", "size": 2019393189}]})
        return httpx.Response(200, json={"model_info": {"llama.context_length": 131072}})

    catalog = ModelCatalog(settings)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://ollama") as http:
        await load_model_catalog(catalog, LocalModelAdapter(http, ModelCapabilities(settings)))

    assert catalog.get("llama:3b").context_length == 131072
    assert catalog.get("llama:3b").size == 2019393189


@pytest.mark.asyncio
async def test_catalog_left_empty_on_backend_error(settings):
    def handler(request):
        return httpx.Response(500, text="internal error")

    catalog = ModelCatalog(settings)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://ollama") as http:
        await load_model_catalog(catalog, LocalModelAdapter(http, ModelCapabilities(settings)))

    assert catalog.get("llama:3b").context_length == 4096
