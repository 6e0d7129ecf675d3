"""Memory tool server (MCP over stdio) running inside every agent container.

Gives the agent long-term memory in the shared database, scoped to its own
agent id: ``remember`` and ``recall`` over agent_memories (pgvector
similarity when an embedding can be made, keyword match otherwise), plus
``get_conversation_history`` and ``clear_conversation`` over the agent's
active conversation.

Launched by the agent's tool pool as::

    python -m flotilla.agent.memory_server

with FLOTILLA_AGENT_ID, DATABASE_URL and OPENROUTER_API_KEY set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool
from sqlalchemy.exc import SQLAlchemyError

from flotilla.agent.ipc_server import ToolError
from flotilla.config import Settings
from flotilla.embeddings import EmbeddingProvider
from flotilla.storage.database import Database
from flotilla.storage.models import as_utc
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)

MEMORY_TYPES = ["fact", "preference", "decision", "conversation_summary", "note"]
MAX_RECALL = 20
MAX_HISTORY = 100
HISTORY_CLIP = 500

TOOL_SPECS: dict[str, tuple[str, dict[str, Any]]] = {
    "remember": (
        "Store something in your long-term memory. It persists across conversations and "
        "container restarts. Write clear, descriptive content; memories are searched by meaning.",
        {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "What to remember. Be specific."},
                "memory_type": {"type": "string", "enum": MEMORY_TYPES, "default": "note"},
            },
            "required": ["content"],
        },
    ),
    "recall": (
        "Search your long-term memory. Returns the memories most similar to the query.",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for"},
                "limit": {"type": "integer", "minimum": 1, "maximum": MAX_RECALL, "default": 5},
            },
            "required": ["query"],
        },
    ),
    "get_conversation_history": (
        "Read the messages of your current conversation from the database.",
        {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "minimum": 1, "maximum": MAX_HISTORY, "default": 20},
            },
            "required": [],
        },
    ),
    "clear_conversation": (
        "Summarize and close the current conversation, keep the summary as a memory "
        "and start a fresh conversation.",
        {
            "type": "object",
            "properties": {
                "summary": {"type": "string", "description": "Concise summary of the conversation"},
            },
            "required": ["summary"],
        },
    ),
}


def _clip(content: Any) -> str:
    text = content if isinstance(content, str) else json.dumps(content)
    return text[:HISTORY_CLIP]


class MemoryTools:
    """Tool implementations over the store, independent of the MCP transport."""

    def __init__(self, store: Store, agent_id: str, embedder: EmbeddingProvider | None = None) -> None:
        self._store = store
        self._agent_id = agent_id
        self._embedder = embedder

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> str:
        if name not in TOOL_SPECS:
            raise ToolError(f"Unknown tool: {name}")
        if not self._agent_id:
            raise ToolError("Memory is unavailable: no agent id configured.")
        handler = getattr(self, f"_tool_{name}")
        try:
            return await handler(**arguments)
        except SQLAlchemyError as e:
            logger.warning("Memory tool %s failed: %s", name, e)
            raise ToolError(f"Memory database error: {e}") from e

    async def _embed(self, text: str) -> list[float] | None:
        if self._embedder is None:
            return None
        return await self._embedder.embed(text)

    async def _tool_remember(self, content: str, memory_type: str = "note") -> str:
        if not content.strip():
            raise ToolError("Nothing to remember.")
        if memory_type not in MEMORY_TYPES:
            raise ToolError(f"Unknown memory type {memory_type!r}; use one of {', '.join(MEMORY_TYPES)}")
        embedding = await self._embed(content)
        await self._store.memories.store(
            self._agent_id,
            content,
            embedding=embedding,
            memory_type=memory_type,
            metadata={"stored_at": datetime.now(UTC).isoformat()},
        )
        if embedding is None:
            return "Memory stored (without embedding, recall will match it by keyword)."
        return "Memory stored successfully."

    async def _tool_recall(self, query: str, limit: int = 5) -> str:
        limit = max(1, min(int(limit), MAX_RECALL))
        embedding = await self._embed(query)
        if embedding is not None:
            hits = await self._store.memories.search(embedding, limit=limit, agent_id=self._agent_id)
        else:
            matches = await self._store.memories.matching(query, limit=limit, agent_id=self._agent_id)
            hits = [(memory, None) for memory in matches]
        if not hits:
            return "No relevant memories found."

        entries = []
        for i, (memory, similarity) in enumerate(hits, 1):
            date = as_utc(memory.created_at).date().isoformat()
            score = f"{similarity * 100:.1f}% match, " if similarity is not None else ""
            entries.append(f"{i}. [{memory.memory_type}] ({score}{date})\n   {memory.content}")
        return f"Found {len(hits)} memories:\n\n" + "\n\n".join(entries)

    async def _tool_get_conversation_history(self, limit: int = 20) -> str:
        limit = max(1, min(int(limit), MAX_HISTORY))
        conversation = await self._store.conversations.get_active(self._agent_id)
        if conversation is None:
            return "No active conversation found."
        turns = list(conversation.messages)
        recent = turns[-limit:]
        formatted = "\n\n".join(f"[{turn.get('role')}]: {_clip(turn.get('content'))}" for turn in recent)
        return f"Conversation ({len(turns)} total messages, showing last {len(recent)}):\n\n{formatted}"

    async def _tool_clear_conversation(self, summary: str) -> str:
        metadata = {"cleared_at": datetime.now(UTC).isoformat()}
        conversation = await self._store.conversations.get_active(self._agent_id)
        if conversation is not None:
            await self._store.conversations.summarize(conversation.id, summary)
            metadata["conversation_id"] = str(conversation.id)

        await self._store.memories.store(
            self._agent_id,
            summary,
            embedding=await self._embed(summary),
            memory_type="conversation_summary",
            metadata=metadata,
        )
        await self._store.conversations.create(self._agent_id)
        return "Conversation cleared. Summary stored in long-term memory. Fresh conversation started."


def create_memory_server(tools: MemoryTools) -> Server:
    server = Server("flotilla-memory")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=name, description=description, inputSchema=schema)
            for name, (description, schema) in TOOL_SPECS.items()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        try:
            text = await tools.dispatch(name, arguments or {})
        except ToolError as e:
            logger.info("Tool %s rejected: %s", name, e)
            raise
        return [TextContent(type="text", text=text)]

    return server


def embedder_from_env(settings: Settings) -> EmbeddingProvider | None:
    """Embeddings use the dedicated key when set, else the OpenRouter key."""
    api_key = settings.embedding_api_key or settings.openrouter_api_key
    if not api_key:
        logger.warning("No API key for embeddings, recall falls back to keyword search")
        return None
    return EmbeddingProvider(
        api_key=api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        base_url=settings.embedding_base_url,
    )


async def serve(settings: Settings) -> None:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, using DB_* settings")
    database = Database(settings)
    embedder = embedder_from_env(settings)
    tools = MemoryTools(
        Store(database, timezone=settings.timezone),
        os.environ.get("FLOTILLA_AGENT_ID", ""),
        embedder,
    )
    server = create_memory_server(tools)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if embedder is not None:
            await embedder.close()
        await database.disconnect()


def main() -> None:
    settings = Settings()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
