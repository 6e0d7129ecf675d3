"""Tool-server registry: which tool servers an agent's container gets.

Order: built-in IPC server, built-in memory server, enabled global servers
from the database, then the agent's own servers. Names are unique; the
first occurrence wins.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from flotilla.schemas import ToolServerConfig
from flotilla.storage.models import Agent
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)

IPC_SERVER_NAME = "flotilla_ipc"
MEMORY_SERVER_NAME = "flotilla_memory"


def builtin_servers(agent: Agent, is_orchestrator: bool | None = None) -> list[ToolServerConfig]:
    if is_orchestrator is None:
        is_orchestrator = agent.is_orchestrator
    return [
        ToolServerConfig(
            name=IPC_SERVER_NAME,
            transport="stdio",
            command="python",
            args=["-m", "flotilla.agent.ipc_server"],
            env={
                "FLOTILLA_AGENT_ID": str(agent.id),
                "FLOTILLA_AGENT_NAME": agent.name,
                "FLOTILLA_IS_ORCHESTRATOR": "1" if is_orchestrator else "0",
            },
        ),
        # DATABASE_URL and the API key are added inside the container from its secrets
        ToolServerConfig(
            name=MEMORY_SERVER_NAME,
            transport="stdio",
            command="python",
            args=["-m", "flotilla.agent.memory_server"],
            env={"FLOTILLA_AGENT_ID": str(agent.id)},
        ),
    ]


class ToolServerRegistry:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def servers_for(self, agent: Agent, is_orchestrator: bool | None = None) -> list[ToolServerConfig]:
        servers = builtin_servers(agent, is_orchestrator)

        try:
            for row in await self._store.tool_servers.list(scope="global"):
                servers.append(
                    ToolServerConfig(
                        name=row.name,
                        transport=row.transport,
                        command=row.command,
                        args=row.args or [],
                        url=row.url,
                        env=row.env or {},
                    )
                )
        except Exception:
            logger.warning("Failed to load global tool servers", exc_info=True)

        for raw in agent.tool_servers or []:
            try:
                servers.append(ToolServerConfig.model_validate(raw))
            except ValidationError as e:
                logger.warning("Skipping invalid tool server on agent %s: %s", agent.name, e)

        seen: set[str] = set()
        unique: list[ToolServerConfig] = []
        for server in servers:
            if server.name in seen:
                logger.debug("Duplicate tool server %s for %s ignored", server.name, agent.name)
                continue
            seen.add(server.name)
            unique.append(server)
        return unique
