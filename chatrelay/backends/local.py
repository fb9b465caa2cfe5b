"""Local model backend speaking the Ollama /api/chat protocol."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from chatrelay.backends.base import (
    BackendAdapter,
    BackendConnectionError,
    ChatOptions,
    DeltaStream,
    ProviderError,
    open_stream,
)
from chatrelay.backends.deltas import LocalDelta, parse_local_chunk
from chatrelay.chat.capabilities import ModelCapabilities
from chatrelay.chat.schemas import ModelSelector

logger = logging.getLogger(__name__)

MIN_CTX = 2048
MAX_CTX = 4096
SMALL_MODEL_MAX_CTX = 8192
# Parameter counts at or below this (in billions) get the larger window
SMALL_MODEL_PARAMS = 4.0


def parameter_count(parameters: str | None) -> float:
    """Billions of parameters from a size token like "3b" or "1.5b".

    Unparseable or zero tokens count as a small model.
    """
    if not parameters:
        return SMALL_MODEL_PARAMS
    try:
        value = float(parameters.lower().replace("b", ""))
    except ValueError:
        return SMALL_MODEL_PARAMS
    if math.isnan(value) or value == 0:
        return SMALL_MODEL_PARAMS
    return value


def message_length(messages: list[dict[str, Any]]) -> int:
    """Summed character length of all message contents."""
    total = 0
    for message in messages:
        content = message.get("content") or ""
        if isinstance(content, str):
            total += len(content)
        else:
            total += sum(len(part.get("text", "")) for part in content if isinstance(part, dict))
    return total


def context_window(messages: list[dict[str, Any]], parameters: str | None) -> int:
    """num_ctx for a request: half the character length, clamped, in 2048 steps."""
    max_ctx = MAX_CTX
    if parameter_count(parameters) <= SMALL_MODEL_PARAMS:
        max_ctx = SMALL_MODEL_MAX_CTX
    num_ctx = max(MIN_CTX, min(max_ctx, message_length(messages) / 2))
    return math.ceil(num_ctx / MIN_CTX) * MIN_CTX


class LocalModelAdapter(BackendAdapter):
    """Streams chat completions from a local Ollama server."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        capabilities: ModelCapabilities,
    ) -> None:
        self._http = http
        self._capabilities = capabilities

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": context_window(messages, selector.parameters),
        }
        if self._capabilities.is_reasoning(selector.model):
            options["temperature"] = self._capabilities.reasoning_temperature
        return {
            "model": selector.model_key,
            "messages": messages,
            "stream": True,
            "options": options,
        }

    async def open(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        options: ChatOptions,
    ) -> DeltaStream:
        payload = self.build_payload(messages, selector)
        logger.debug(
            "Local request: model=%s num_ctx=%s",
            payload["model"],
            payload["options"]["num_ctx"],
        )
        response = await open_stream(self._http, "/api/chat", payload)
        return DeltaStream(self._iter_deltas(response), on_abort=response.aclose)

    async def _iter_deltas(self, response: httpx.Response) -> AsyncGenerator[LocalDelta, None]:
        try:
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                yield parse_local_chunk(json.loads(line))
        finally:
            await response.aclose()

    async def list_models(self) -> list[dict[str, Any]]:
        """Installed models from /api/tags, each with the context length /api/show reports.

        A context length of 0 means the server did not report one.
        """
        try:
            response = await self._http.get("/api/tags")
        except httpx.HTTPError as e:
            raise BackendConnectionError(str(e) or type(e).__name__) from e
        if response.status_code != 200:
            raise ProviderError(f"HTTP {response.status_code} listing local models")
        try:
            items = response.json().get("models") or []
        except ValueError as e:
            raise ProviderError(f"malformed model list: {e}") from e

        models = []
        for item in items:
            name = item.get("name") or item.get("model")
            if not name:
                continue
            models.append({
                "name": name,
                "size": item.get("size") or 0,
                "context_length": await self._context_length(name),
            })
        return models

    async def _context_length(self, name: str) -> int:
        try:
            response = await self._http.post("/api/show", json={"model": name})
            if response.status_code != 200:
                return 0
            info = response.json().get("model_info") or {}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("No model details for %s: %s", name, e)
            return 0
        # Keys are namespaced by architecture, e.g. "llama.context_length"
        for key, value in info.items():
            if key.endswith(".context_length") and isinstance(value, int):
                return value
        return 0
