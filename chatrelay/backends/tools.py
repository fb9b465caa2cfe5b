"""Tool-augmented backend: OpenAI-compatible completions with MCP tools.

Runs the function-calling loop against an OpenAI-compatible supplier.
Rounds that end in tool calls are executed against the connected tool
servers; their output goes to the side channel wrapped in a
``<mcptool>`` marker. Only the answer text of each round reaches the
primary delta stream.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx

from chatrelay.backends.base import (
    BackendAdapter,
    BackendConnectionError,
    ChatOptions,
    DeltaStream,
    open_stream,
)
from chatrelay.backends.compat import OpenAICompatAdapter, iter_sse_payloads
from chatrelay.backends.deltas import CompatDelta, parse_compat_chunk
from chatrelay.backends.mcp_client import McpToolSession, resolve_servers
from chatrelay.chat.capabilities import ModelCapabilities
from chatrelay.chat.schemas import ModelSelector
from chatrelay.config import McpServerConfig, Settings

logger = logging.getLogger(__name__)

TOOL_MARKER = "<mcptool>"
TOOL_MARKER_END = "</mcptool>"


def format_tool_output(name: str, arguments: dict[str, Any], result: str, is_error: bool) -> str:
    """Side-channel message recording one tool invocation."""
    body = json.dumps(
        {"name": name, "arguments": arguments, "result": result, "is_error": is_error},
        ensure_ascii=False,
    )
    return f"\n{TOOL_MARKER}\n{body}\n{TOOL_MARKER_END}\n"


def accumulate_tool_calls(accumulators: dict[int, dict[str, Any]], fragments: list[dict[str, Any]]) -> None:
    """Merge streamed tool_call fragments into per-index accumulators."""
    for fragment in fragments:
        index = fragment.get("index", 0)
        acc = accumulators.setdefault(index, {"id": "", "name": "", "argument_parts": []})
        if fragment.get("id"):
            acc["id"] = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            acc["name"] = function["name"]
        if function.get("arguments"):
            acc["argument_parts"].append(function["arguments"])


def finish_tool_calls(accumulators: dict[int, dict[str, Any]]) -> list[dict[str, Any]]:
    """Completed calls in index order with parsed arguments."""
    calls = []
    for index in sorted(accumulators):
        acc = accumulators[index]
        raw = "".join(acc["argument_parts"])
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append({"id": acc["id"] or f"call_{index}", "name": acc["name"], "arguments": arguments, "raw": raw})
    return calls


class ToolAugmentedAdapter(BackendAdapter):
    """Drives an OpenAI-compatible supplier through a tool-calling loop."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        capabilities: ModelCapabilities,
        settings: Settings,
        session_factory: Callable[[dict[str, McpServerConfig]], McpToolSession] = McpToolSession,
    ) -> None:
        self._compat = OpenAICompatAdapter(http, capabilities, settings)
        self._http = http
        self._settings = settings
        self._session_factory = session_factory

    async def open(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        options: ChatOptions,
    ) -> DeltaStream:
        url, headers = self._compat.request_target(selector.supplier)
        servers = resolve_servers(self._settings.mcp_servers, options.tool_servers)
        if not servers:
            raise BackendConnectionError(
                f"no active tool servers among: {', '.join(options.tool_servers)}"
            )

        session = self._session_factory(servers)
        try:
            await session.connect()
        except Exception as e:
            await session.close()
            raise BackendConnectionError(f"tool server connection failed: {e}") from e

        tools = session.openai_tools()
        payload = self._payload(messages, selector, tools)
        try:
            response = await open_stream(self._http, url, payload, headers=headers)
        except Exception:
            await session.close()
            raise

        deltas = self._run_loop(response, list(messages), selector, session, tools, url, headers, options.on_side_output)
        return DeltaStream(deltas, on_abort=session.close)

    def _payload(
        self,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        tools: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        payload = self._compat.build_payload(messages, selector)
        if tools:
            payload["tools"] = tools
        return payload

    async def _run_loop(
        self,
        response: httpx.Response,
        messages: list[dict[str, Any]],
        selector: ModelSelector,
        session: McpToolSession,
        tools: list[dict[str, Any]],
        url: str,
        headers: dict[str, str],
        on_side_output: Callable[[str], None] | None,
    ) -> AsyncGenerator[CompatDelta, None]:
        max_rounds = self._settings.max_tool_rounds
        try:
            for round_index in range(max_rounds + 1):
                accumulators: dict[int, dict[str, Any]] = {}
                text_parts: list[str] = []
                try:
                    async for data in iter_sse_payloads(response):
                        delta = parse_compat_chunk(data)
                        if delta is None:
                            continue
                        if delta.tool_calls:
                            accumulate_tool_calls(accumulators, delta.tool_calls)
                        # Rounds that collected calls end in tool execution, whatever their finish_reason
                        if delta.finish_reason == "tool_calls" or (accumulators and (delta.tool_calls or delta.is_terminal)):
                            if delta.content or delta.reasoning:
                                text_parts.append(delta.content)
                                yield CompatDelta(content=delta.content, reasoning=delta.reasoning, created=delta.created)
                            continue
                        text_parts.append(delta.content)
                        yield delta
                finally:
                    await response.aclose()

                calls = finish_tool_calls(accumulators)
                if not calls:
                    return

                messages.append({
                    "role": "assistant",
                    "content": "".join(text_parts) or None,
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {"name": call["name"], "arguments": call["raw"] or "{}"},
                        }
                        for call in calls
                    ],
                })
                for call in calls:
                    result_text, is_error = await session.call_tool(call["name"], call["arguments"])
                    if on_side_output is not None:
                        on_side_output(format_tool_output(call["name"], call["arguments"], result_text, is_error))
                    messages.append({"role": "tool", "tool_call_id": call["id"], "content": result_text})

                if round_index >= max_rounds:
                    logger.warning("Tool loop reached max_tool_rounds=%d", max_rounds)
                    return
                # Last round runs without tools so the model has to answer
                next_tools = tools if round_index + 1 < max_rounds else None
                payload = self._payload(messages, selector, next_tools)
                response = await open_stream(self._http, url, payload, headers=headers)
        finally:
            await session.close()
