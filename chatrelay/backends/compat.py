"""OpenAI-compatible backend (/chat/completions with SSE streaming)."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from chatrelay.backends.base import (
    BackendAdapter,
    BackendConnectionError,
    ChatOptions,
    DeltaStream,
    open_stream,
)
from chatrelay.backends.deltas import CompatDelta, parse_compat_chunk
from chatrelay.chat.capabilities import ModelCapabilities
from chatrelay.chat.schemas import ModelSelector
from chatrelay.config import Settings, SupplierConfig

logger = logging.getLogger(__name__)


async def iter_sse_payloads(response: httpx.Response) -> AsyncGenerator[dict[str, Any], None]:
    """Decoded JSON payloads of ``data:`` lines until ``[DONE]``.

    Other SSE fields (event:, id:, comments) are skipped.
    """
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE payload: %s", data[:200])


class OpenAICompatAdapter(BackendAdapter):
    """Streams chat completions from any configured OpenAI-compatible supplier."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        capabilities: ModelCapabilities,
        settings: Settings,
    ) -> None:
        self._http = http
        self._capabilities = capabilities
        self._settings = settings

    def supplier_config(self, supplier: str) -> SupplierConfig:
        if supplier == self._settings.local_supplier:
            # Tool turns on a local model go through its OpenAI-compatible endpoint
            return SupplierConfig(base_url=f"{self._settings.ollama_base_url.rstrip('/')}/v1")
        config = self._settings.suppliers.get(supplier)
        if config is None:
            raise BackendConnectionError(f"supplier '{supplier}' is not configured")
        return config

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
    ) -> dict[str, Any]:
        # No context window: the provider manages it
        payload: dict[str, Any] = {
            "model": selector.model_key,
            "messages": messages,
            "stream": True,
        }
        if self._capabilities.is_reasoning(selector.model):
            payload["temperature"] = self._capabilities.reasoning_temperature
        return payload

    def request_target(self, supplier: str) -> tuple[str, dict[str, str]]:
        """Completions URL and auth headers for a supplier."""
        config = self.supplier_config(supplier)
        headers: dict[str, str] = {}
        if config.api_key:
            headers["authorization"] = f"Bearer {config.api_key}"
        return f"{config.base_url.rstrip('/')}/chat/completions", headers

    async def open(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        options: ChatOptions,
    ) -> DeltaStream:
        url, headers = self.request_target(selector.supplier)
        payload = self.build_payload(messages, selector)
        logger.debug("Compat request: supplier=%s model=%s", selector.supplier, payload["model"])
        response = await open_stream(self._http, url, payload, headers=headers)
        return DeltaStream(self._iter_deltas(response), on_abort=response.aclose)

    async def _iter_deltas(self, response: httpx.Response) -> AsyncGenerator[CompatDelta, None]:
        try:
            async for data in iter_sse_payloads(response):
                delta = parse_compat_chunk(data)
                if delta is not None:
                    yield delta
        finally:
            await response.aclose()
