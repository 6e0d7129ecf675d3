"""MCP client pool: connect an agent's tool servers and dispatch tool calls.

Tools are exposed to the model as ``<server>__<tool>``. Tool failures never
raise into the agent loop; they come back as a JSON error payload the model
can read and react to.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from flotilla.schemas import ToolServerConfig

logger = logging.getLogger(__name__)

SEPARATOR = "__"


def tool_error(message: str) -> str:
    return json.dumps({"error": message})


@dataclass
class ToolBinding:
    server: str
    tool: str
    description: str
    input_schema: dict[str, Any]
    session: ClientSession

    @property
    def qualified_name(self) -> str:
        return f"{self.server}{SEPARATOR}{self.tool}"

    def definition(self) -> dict[str, Any]:
        """Function-calling schema in OpenAI format."""
        return {
            "type": "function",
            "function": {
                "name": self.qualified_name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


class ToolServerPool:
    def __init__(self) -> None:
        self._stacks: list[AsyncExitStack] = []
        self._tools: dict[str, ToolBinding] = {}

    async def __aenter__(self) -> ToolServerPool:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def connect_all(self, configs: list[ToolServerConfig]) -> None:
        """Connect every server; one failing server is logged and skipped."""
        for config in configs:
            try:
                await self.connect(config)
            except Exception as e:
                logger.warning("Failed to connect tool server %s: %s", config.name, e)

    async def connect(self, config: ToolServerConfig) -> int:
        stack = AsyncExitStack()
        try:
            streams = await stack.enter_async_context(self._transport(config))
            read_stream, write_stream = streams[0], streams[1]
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
            listed = await session.list_tools()
        except BaseException:
            await stack.aclose()
            raise
        self._stacks.append(stack)

        for tool in listed.tools:
            binding = ToolBinding(
                server=config.name,
                tool=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema,
                session=session,
            )
            self._tools[binding.qualified_name] = binding
        logger.info("Connected tool server %s (%d tools)", config.name, len(listed.tools))
        return len(listed.tools)

    def _transport(self, config: ToolServerConfig):
        if config.transport == "stdio":
            if not config.command:
                raise ValueError(f"stdio tool server {config.name} has no command")
            params = StdioServerParameters(
                command=config.command,
                args=config.args,
                env={**os.environ, **config.env},
            )
            return stdio_client(params)
        if not config.url:
            raise ValueError(f"{config.transport} tool server {config.name} has no url")
        if config.transport == "sse":
            return sse_client(config.url)
        return streamablehttp_client(config.url)

    def definitions(self) -> list[dict[str, Any]]:
        return [binding.definition() for binding in self._tools.values()]

    async def call(self, name: str, arguments: dict[str, Any]) -> str:
        binding = self._tools.get(name)
        if binding is None:
            return tool_error(f"Unknown tool: {name}")

        try:
            result = await binding.session.call_tool(binding.tool, arguments)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return tool_error(f"Tool call failed: {e}")

        texts = [item.text for item in result.content if getattr(item, "type", None) == "text"]
        if result.isError:
            logger.info("Tool %s returned an error", name)
            return tool_error("\n".join(texts) or "Tool call failed")
        if texts:
            return "\n".join(texts)
        return result.model_dump_json(exclude_none=True)

    async def close(self) -> None:
        while self._stacks:
            stack = self._stacks.pop()
            try:
                await stack.aclose()
            except Exception as e:
                logger.debug("Error closing tool server connection: %s", e)
        self._tools.clear()
