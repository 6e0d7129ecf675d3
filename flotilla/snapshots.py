"""Read-only JSON snapshots of agents and tasks for containers.

The in-container ``list_agents`` / ``list_tasks`` tools cannot reach the
database, so the host mirrors the current state into the agent's IPC root
before spawns and after every mutation.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from flotilla import ipc
from flotilla.storage.models import Agent, ScheduledTask, as_utc
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def agent_entry(agent: Agent) -> dict:
    return {
        "name": agent.name,
        "model": agent.model,
        "system_prompt": agent.system_prompt,
        "tool_servers": [server.get("name") for server in agent.tool_servers or []],
        "created_at": _iso(agent.created_at),
        "updated_at": _iso(agent.updated_at),
    }


def task_entry(task: ScheduledTask, agent_names: dict) -> dict:
    return {
        "id": str(task.id),
        "agent": agent_names.get(task.agent_id, str(task.agent_id)),
        "prompt": task.prompt,
        "schedule_type": task.schedule_type,
        "schedule_value": task.schedule_value,
        "status": task.status,
        "next_run": _iso(task.next_run),
        "last_run": _iso(task.last_run),
        "last_result": task.last_result,
    }


class SnapshotWriter:
    def __init__(self, store: Store, ipc_root: Path) -> None:
        self._store = store
        self._ipc_root = ipc_root

    def _paths(self, agent: Agent) -> ipc.AgentIpcPaths:
        return ipc.AgentIpcPaths.for_agent(self._ipc_root, str(agent.id))

    async def write_agents(self) -> None:
        """Specialist roster into the orchestrator's IPC root."""
        orchestrator = await self._store.agents.get_orchestrator()
        if orchestrator is None:
            return
        specialists = await self._store.agents.list_specialists()
        ipc.write_json_atomic(
            self._paths(orchestrator).root / ipc.AGENTS_SNAPSHOT,
            {
                "agents": [agent_entry(agent) for agent in specialists],
                "last_sync": datetime.now(UTC).isoformat(),
            },
            indent=2,
        )
        logger.debug("Agents snapshot written (%d specialists)", len(specialists))

    async def write_tasks(self, agent: Agent) -> None:
        """All tasks for the orchestrator, only its own for a specialist."""
        agents = await self._store.agents.list_all()
        names = {a.id: a.name for a in agents}
        if agent.is_orchestrator:
            tasks = await self._store.tasks.list_all()
        else:
            tasks = await self._store.tasks.list_all(agent_id=agent.id)
        ipc.write_json_atomic(
            self._paths(agent).root / ipc.TASKS_SNAPSHOT,
            {
                "tasks": [task_entry(task, names) for task in tasks],
                "last_sync": datetime.now(UTC).isoformat(),
            },
            indent=2,
        )

    async def refresh_tasks(self, *agents: Agent | None) -> None:
        """Rewrite the orchestrator's task snapshot plus any given agents'."""
        orchestrator = await self._store.agents.get_orchestrator()
        targets = {a.id: a for a in (orchestrator, *agents) if a is not None}
        for target in targets.values():
            await self.write_tasks(target)
