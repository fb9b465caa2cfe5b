"""Client sessions to MCP tool servers.

MCP transports are anyio task groups that must be entered and exited by
the same task, while a turn's tool calls happen in the streaming task.
McpToolSession therefore owns all server connections inside one worker
task and serves tool calls to other tasks through a queue.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from chatrelay.config import McpServerConfig

logger = logging.getLogger(__name__)


def resolve_servers(
    configured: dict[str, McpServerConfig],
    names: list[str],
) -> dict[str, McpServerConfig]:
    """Active server configs for the requested names, in request order."""
    active: dict[str, McpServerConfig] = {}
    for name in names:
        config = configured.get(name)
        if config is None:
            logger.warning("Unknown tool server requested: %s", name)
            continue
        if not config.active:
            logger.info("Skipping inactive tool server: %s", name)
            continue
        active[name] = config
    return active


def _result_text(result: Any) -> str:
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{getattr(item, 'type', 'content')}]")
    return "\n".join(parts)


class McpToolSession:
    """Connections to a set of tool servers for the lifetime of one turn."""

    def __init__(self, servers: dict[str, McpServerConfig]) -> None:
        self._servers = servers
        self._tools: dict[str, tuple[str, Any]] = {}
        self._sessions: dict[str, ClientSession] = {}
        self._requests: asyncio.Queue[tuple[str, dict[str, Any], asyncio.Future] | None] = asyncio.Queue()
        self._ready: asyncio.Future[None] | None = None
        self._task: asyncio.Task | None = None

    async def connect(self) -> None:
        """Connect to every server and list its tools; raises if any fails."""
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = asyncio.create_task(self._run())
        await self._ready

    def openai_tools(self) -> list[dict[str, Any]]:
        """Tool definitions in the OpenAI function-calling format."""
        tools = []
        for name, (_server, tool) in self._tools.items():
            tools.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.description or "",
                    "parameters": tool.inputSchema or {"type": "object", "properties": {}},
                },
            })
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> tuple[str, bool]:
        """Run a tool and return (result_text, is_error)."""
        if name not in self._tools:
            return f"Unknown tool: {name}", True
        if self._task is None or self._task.done():
            return "Tool session is closed", True
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._requests.put((name, arguments, future))
        return await future

    async def close(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            await self._requests.put(None)
            try:
                await self._task
            except Exception as e:
                logger.warning("Tool session shutdown failed: %s", e)
        self._task = None

    async def _enter(self, stack: AsyncExitStack, config: McpServerConfig) -> ClientSession:
        if config.url:
            read, write, _session_id = await stack.enter_async_context(streamablehttp_client(config.url))
        else:
            params = StdioServerParameters(command=config.command or "", args=config.args, env=config.env)
            read, write = await stack.enter_async_context(stdio_client(params))
        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def _run(self) -> None:
        assert self._ready is not None
        try:
            async with AsyncExitStack() as stack:
                for server_name, config in self._servers.items():
                    session = await self._enter(stack, config)
                    self._sessions[server_name] = session
                    listed = await session.list_tools()
                    for tool in listed.tools:
                        if tool.name in self._tools:
                            logger.warning(
                                "Tool %s from %s shadowed by %s",
                                tool.name, server_name, self._tools[tool.name][0],
                            )
                            continue
                        self._tools[tool.name] = (server_name, tool)
                    logger.info("Connected tool server %s (%d tools)", server_name, len(listed.tools))
                self._ready.set_result(None)

                while True:
                    request = await self._requests.get()
                    if request is None:
                        break
                    name, arguments, future = request
                    server_name, _tool = self._tools[name]
                    try:
                        result = await self._sessions[server_name].call_tool(name, arguments)
                        future.set_result((_result_text(result), bool(getattr(result, "isError", False))))
                    except Exception as e:
                        logger.error("Tool %s failed: %s", name, e)
                        future.set_result((str(e), True))
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                logger.error("Tool session failed: %s", e)
        finally:
            if not self._ready.done():
                self._ready.set_exception(RuntimeError("tool session closed during connect"))
            while not self._requests.empty():
                pending = self._requests.get_nowait()
                if pending is not None and not pending[2].done():
                    pending[2].set_result(("Tool session is closed", True))
