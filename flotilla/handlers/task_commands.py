"""Task and agent commands arriving on an agent's ``tasks/`` IPC channel.

Schedule commands act on the scheduled_tasks table; agent commands act on
the agents table and may never touch the orchestrator. Every accepted
mutation rewrites the snapshots containers read through list_agents and
list_tasks. Invalid commands are logged and dropped (the file is still
deleted); only unexpected exceptions propagate so the watcher quarantines
the file.
"""

from __future__ import annotations

import logging

from flotilla.schemas import (
    CancelTaskEnvelope,
    CreateAgentEnvelope,
    DeleteAgentEnvelope,
    Envelope,
    PauseTaskEnvelope,
    ResumeTaskEnvelope,
    ScheduleTaskEnvelope,
    UpdateAgentEnvelope,
)
from flotilla.snapshots import SnapshotWriter
from flotilla.storage.models import Agent
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)


class TaskCommandProcessor:
    def __init__(self, store: Store, snapshots: SnapshotWriter) -> None:
        self._store = store
        self._snapshots = snapshots

    async def handle(self, envelope: Envelope, source_agent_id: str) -> None:
        if isinstance(envelope, ScheduleTaskEnvelope):
            await self.schedule_task(envelope, source_agent_id)
        elif isinstance(envelope, PauseTaskEnvelope):
            await self._set_status(envelope.task_id, "paused", source_agent_id)
        elif isinstance(envelope, ResumeTaskEnvelope):
            await self._set_status(envelope.task_id, "active", source_agent_id)
        elif isinstance(envelope, CancelTaskEnvelope):
            await self.cancel_task(envelope.task_id, source_agent_id)
        elif isinstance(envelope, CreateAgentEnvelope):
            await self.create_agent(envelope)
        elif isinstance(envelope, UpdateAgentEnvelope):
            await self.update_agent(envelope)
        elif isinstance(envelope, DeleteAgentEnvelope):
            await self.delete_agent(envelope.name)
        else:
            logger.warning("Unknown IPC task type %s from %s", envelope.type, source_agent_id)

    # ------------------------------------------------------------------
    # Scheduled tasks
    # ------------------------------------------------------------------

    async def schedule_task(self, envelope: ScheduleTaskEnvelope, source_agent_id: str) -> None:
        if envelope.target_agent:
            target = await self._store.agents.get_by_name(envelope.target_agent)
        else:
            target = await self._store.agents.get(source_agent_id)
        if target is None:
            logger.warning(
                "Cannot schedule task: agent %s not found",
                envelope.target_agent or source_agent_id,
            )
            return

        try:
            task = await self._store.tasks.create(
                target.id, envelope.prompt, envelope.schedule_type, envelope.schedule_value,
            )
        except ValueError as e:
            logger.warning("Invalid schedule_task from %s: %s", source_agent_id, e)
            return

        logger.info(
            "Task %s created via IPC for %s (%s %s)",
            task.id.hex[:8], target.name, envelope.schedule_type, envelope.schedule_value,
        )
        await self._refresh_tasks(source_agent_id, target)

    async def _set_status(self, task_id: str, status: str, source_agent_id: str) -> None:
        task = await self._store.tasks.set_status(task_id, status)
        if task is None:
            logger.warning("Cannot set task %s to %s: not found", task_id, status)
            return
        await self._refresh_tasks(source_agent_id, await self._store.agents.get(task.agent_id))

    async def cancel_task(self, task_id: str, source_agent_id: str) -> None:
        task = await self._store.tasks.get(task_id)
        if task is None or not await self._store.tasks.delete(task_id):
            logger.warning("Cannot cancel task %s: not found", task_id)
            return
        logger.info("Task %s cancelled via IPC", task_id)
        await self._refresh_tasks(source_agent_id, await self._store.agents.get(task.agent_id))

    async def _refresh_tasks(self, source_agent_id: str, *agents: Agent | None) -> None:
        source = await self._store.agents.get(source_agent_id)
        await self._snapshots.refresh_tasks(source, *agents)

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def create_agent(self, envelope: CreateAgentEnvelope) -> None:
        tool_servers = [server.model_dump(exclude_none=True) for server in envelope.tool_servers]
        existing = await self._store.agents.get_by_name(envelope.name)
        if existing is not None:
            if existing.is_orchestrator:
                logger.warning("Cannot overwrite orchestrator agent %s", envelope.name)
                return
            await self._store.agents.update(
                existing.id,
                system_prompt=envelope.system_prompt,
                model=envelope.model,
                tool_servers=tool_servers,
            )
            logger.info("Specialist agent %s replaced via IPC", envelope.name)
        else:
            await self._store.agents.create(
                envelope.name, envelope.system_prompt, envelope.model, tool_servers=tool_servers,
            )
            logger.info("Specialist agent %s created via IPC (%s)", envelope.name, envelope.model)
        await self._snapshots.write_agents()

    async def update_agent(self, envelope: UpdateAgentEnvelope) -> None:
        agent = await self._store.agents.get_by_name(envelope.name)
        if agent is None:
            logger.warning("Cannot update agent %s: not found", envelope.name)
            return
        if agent.is_orchestrator:
            logger.warning("Cannot modify orchestrator agent %s via IPC", envelope.name)
            return

        fields: dict = {}
        if envelope.system_prompt is not None:
            fields["system_prompt"] = envelope.system_prompt
        if envelope.model is not None:
            fields["model"] = envelope.model
        if envelope.tool_servers is not None:
            fields["tool_servers"] = [s.model_dump(exclude_none=True) for s in envelope.tool_servers]
        if not fields:
            logger.debug("update_agent for %s carried no changes", envelope.name)
            return

        await self._store.agents.update(agent.id, **fields)
        logger.info("Specialist agent %s updated via IPC (%s)", envelope.name, ", ".join(sorted(fields)))
        await self._snapshots.write_agents()

    async def delete_agent(self, name: str) -> None:
        agent = await self._store.agents.get_by_name(name)
        if agent is None:
            logger.warning("Cannot delete agent %s: not found", name)
            return
        if agent.is_orchestrator:
            logger.warning("Cannot delete orchestrator agent %s", name)
            return
        await self._store.agents.delete(agent.id)
        logger.info("Specialist agent %s deleted via IPC", name)
        await self._snapshots.write_agents()
        await self._snapshots.refresh_tasks()
