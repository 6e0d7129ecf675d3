"""IPC tool server (MCP over stdio) running inside every agent container.

Tools turn into envelope files under ``/workspace/ipc``: user-facing output
goes to ``messages/``, scheduling and agent management to ``tasks/``. The
host watcher picks them up. Roster and task listings come from the
snapshot files the host writes before each spawn.

Launched by the agent's tool pool as::

    python -m flotilla.agent.ipc_server

with FLOTILLA_AGENT_ID / FLOTILLA_AGENT_NAME / FLOTILLA_IS_ORCHESTRATOR set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from flotilla import ipc
from flotilla.config import Settings
from flotilla.schemas import (
    CancelTaskEnvelope,
    CreateAgentEnvelope,
    DelegateEnvelope,
    DeleteAgentEnvelope,
    ImageEnvelope,
    MessageEnvelope,
    PauseTaskEnvelope,
    ResumeTaskEnvelope,
    ScheduleTaskEnvelope,
    ToolServerConfig,
    UpdateAgentEnvelope,
)
from flotilla.storage.tasks import compute_next_run

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Reported back to the model as an error tool result."""


def _schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required or []}


_STR = {"type": "string"}

# name -> (description, input schema, orchestrator only)
TOOL_SPECS: dict[str, tuple[str, dict[str, Any], bool]] = {
    "send_message": (
        "Send a message to the user immediately, e.g. progress updates while you keep working.",
        _schema({"text": {**_STR, "description": "Message text"}}, ["text"]),
        False,
    ),
    "ask_user": (
        "Ask the user a clarifying question. Their answer arrives as your next message.",
        _schema({"question": {**_STR, "description": "The question to ask"}}, ["question"]),
        False,
    ),
    "send_image": (
        "Send an image file to the user. The path must exist inside /workspace.",
        _schema(
            {
                "path": {**_STR, "description": "Absolute path of the image file"},
                "caption": {**_STR, "description": "Optional caption"},
            },
            ["path"],
        ),
        False,
    ),
    "delegate_to_agent": (
        "Hand a task to a specialist agent. With wait_for_result the specialist's answer "
        "comes back as a [SPECIALIST RESULT from <name>] message.",
        _schema(
            {
                "agent_name": {**_STR, "description": "Name of the specialist"},
                "task": {**_STR, "description": "What the specialist should do, with all needed context"},
                "wait_for_result": {"type": "boolean", "description": "Relay the result back (default true)"},
            },
            ["agent_name", "task"],
        ),
        True,
    ),
    "schedule_task": (
        "Schedule a recurring or one-time task. cron: standard 5-field expression; "
        "interval: milliseconds; once: ISO 8601 timestamp.",
        _schema(
            {
                "prompt": {**_STR, "description": "What the agent should do when the task fires"},
                "schedule_type": {"type": "string", "enum": ["cron", "interval", "once"]},
                "schedule_value": _STR,
                "target_agent": {**_STR, "description": "Agent that runs the task (default: you)"},
            },
            ["prompt", "schedule_type", "schedule_value"],
        ),
        False,
    ),
    "list_tasks": ("List scheduled tasks.", _schema({}), False),
    "pause_task": ("Pause a scheduled task.", _schema({"task_id": _STR}, ["task_id"]), False),
    "resume_task": ("Resume a paused task.", _schema({"task_id": _STR}, ["task_id"]), False),
    "cancel_task": ("Cancel and delete a scheduled task.", _schema({"task_id": _STR}, ["task_id"]), False),
    "create_agent": (
        "Create a specialist agent. Always ask the user which model to use first.",
        _schema(
            {
                "name": {**_STR, "description": "Unique agent name"},
                "system_prompt": {**_STR, "description": "The specialist's instructions"},
                "model": {**_STR, "description": "Model id chosen by the user"},
                "tool_servers": {
                    "type": "array",
                    "items": {"type": "object"},
                    "description": "Optional extra tool servers (name, transport, command, args, url, env)",
                },
            },
            ["name", "system_prompt", "model"],
        ),
        True,
    ),
    "update_agent": (
        "Update a specialist's prompt, model or tool servers.",
        _schema(
            {
                "name": _STR,
                "system_prompt": _STR,
                "model": _STR,
                "tool_servers": {"type": "array", "items": {"type": "object"}},
            },
            ["name"],
        ),
        True,
    ),
    "delete_agent": ("Delete a specialist agent.", _schema({"name": _STR}, ["name"]), True),
    "list_agents": ("List the available specialist agents.", _schema({}), False),
}


class IpcTools:
    """Tool implementations, independent of the MCP transport."""

    def __init__(
        self,
        paths: ipc.AgentIpcPaths,
        agent_id: str,
        agent_name: str,
        is_orchestrator: bool,
        timezone: str = "UTC",
    ) -> None:
        self._paths = paths
        self._agent_id = agent_id
        self._agent_name = agent_name
        self._is_orchestrator = is_orchestrator
        self._tz = timezone

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> str:
        spec = TOOL_SPECS.get(name)
        if spec is None:
            raise ToolError(f"Unknown tool: {name}")
        if spec[2] and not self._is_orchestrator:
            raise ToolError(f"Only the orchestrator can use {name}.")
        handler = getattr(self, f"_tool_{name}")
        return await handler(**arguments)

    def _write(self, directory: Path, envelope) -> None:
        envelope.agent_id = self._agent_id
        envelope.agent_name = self._agent_name
        ipc.write_envelope(directory, envelope)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _tool_send_message(self, text: str) -> str:
        self._write(self._paths.messages_dir, MessageEnvelope(text=text))
        return "Message sent."

    async def _tool_ask_user(self, question: str) -> str:
        self._write(self._paths.messages_dir, MessageEnvelope(text=question, is_question=True))
        return "Question sent to the user. Their reply will arrive as your next message."

    async def _tool_send_image(self, path: str, caption: str | None = None) -> str:
        source = Path(path)
        if not source.is_file():
            raise ToolError(f"Image not found: {path}")
        # The host can only resolve files under the IPC mount
        if not source.resolve().is_relative_to(self._paths.root.resolve()):
            self._paths.media_dir.mkdir(parents=True, exist_ok=True)
            target = self._paths.media_dir / f"{int(datetime.now(UTC).timestamp() * 1000)}-{source.name}"
            shutil.copyfile(source, target)
            source = target
        self._write(self._paths.messages_dir, ImageEnvelope(path=str(source), caption=caption))
        return "Image sent."

    async def _tool_delegate_to_agent(self, agent_name: str, task: str, wait_for_result: bool = True) -> str:
        self._write(
            self._paths.messages_dir,
            DelegateEnvelope(target_agent=agent_name, task=task, wait_for_result=wait_for_result),
        )
        if wait_for_result:
            return f"Task delegated to {agent_name}. The result will arrive as a follow-up message."
        return f"Task delegated to {agent_name}."

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _tool_schedule_task(
        self,
        prompt: str,
        schedule_type: str,
        schedule_value: str,
        target_agent: str | None = None,
    ) -> str:
        if target_agent and target_agent != self._agent_name and not self._is_orchestrator:
            raise ToolError("Only the orchestrator can schedule tasks for other agents.")
        try:
            next_run = compute_next_run(schedule_type, schedule_value, datetime.now(UTC), self._tz, first=True)
        except ValueError as e:
            raise ToolError(str(e)) from e
        self._write(
            self._paths.tasks_dir,
            ScheduleTaskEnvelope(
                prompt=prompt,
                schedule_type=schedule_type,
                schedule_value=schedule_value,
                target_agent=target_agent,
            ),
        )
        when = next_run.isoformat() if next_run else "never"
        return f"Task scheduled ({schedule_type}: {schedule_value}). First run: {when}"

    async def _tool_list_tasks(self) -> str:
        snapshot = self._read_snapshot(ipc.TASKS_SNAPSHOT)
        tasks = snapshot.get("tasks", []) if snapshot else []
        if not tasks:
            return "No scheduled tasks found."
        lines = [
            f"- [{t['id']}] {t['prompt'][:80]} ({t['schedule_type']}: {t['schedule_value']}) "
            f"agent={t.get('agent')} status={t['status']} next={t.get('next_run') or 'n/a'}"
            for t in tasks
        ]
        return "Scheduled tasks:\n" + "\n".join(lines)

    async def _tool_pause_task(self, task_id: str) -> str:
        self._write(self._paths.tasks_dir, PauseTaskEnvelope(task_id=task_id))
        return f"Task {task_id} pause requested."

    async def _tool_resume_task(self, task_id: str) -> str:
        self._write(self._paths.tasks_dir, ResumeTaskEnvelope(task_id=task_id))
        return f"Task {task_id} resume requested."

    async def _tool_cancel_task(self, task_id: str) -> str:
        self._write(self._paths.tasks_dir, CancelTaskEnvelope(task_id=task_id))
        return f"Task {task_id} cancellation requested."

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def _tool_create_agent(
        self,
        name: str,
        system_prompt: str,
        model: str,
        tool_servers: list[dict] | None = None,
    ) -> str:
        servers = [ToolServerConfig.model_validate(s) for s in tool_servers or []]
        self._write(
            self._paths.tasks_dir,
            CreateAgentEnvelope(name=name, system_prompt=system_prompt, model=model, tool_servers=servers),
        )
        return f'Agent "{name}" creation requested (model: {model}).'

    async def _tool_update_agent(
        self,
        name: str,
        system_prompt: str | None = None,
        model: str | None = None,
        tool_servers: list[dict] | None = None,
    ) -> str:
        servers = None
        if tool_servers is not None:
            servers = [ToolServerConfig.model_validate(s) for s in tool_servers]
        self._write(
            self._paths.tasks_dir,
            UpdateAgentEnvelope(name=name, system_prompt=system_prompt, model=model, tool_servers=servers),
        )
        return f'Agent "{name}" update requested.'

    async def _tool_delete_agent(self, name: str) -> str:
        self._write(self._paths.tasks_dir, DeleteAgentEnvelope(name=name))
        return f'Agent "{name}" deletion requested.'

    async def _tool_list_agents(self) -> str:
        snapshot = self._read_snapshot(ipc.AGENTS_SNAPSHOT)
        agents = snapshot.get("agents", []) if snapshot else []
        if not agents:
            return "No specialist agents configured."
        lines = [f"- {a['name']} (model: {a['model']}): {a['system_prompt'][:100]}" for a in agents]
        return "Specialist agents:\n" + "\n".join(lines)

    def _read_snapshot(self, filename: str) -> dict | None:
        path = self._paths.root / filename
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning("Unreadable snapshot %s", path)
            return None


def create_ipc_server(tools: IpcTools) -> Server:
    server = Server("flotilla-ipc")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=name, description=description, inputSchema=schema)
            for name, (description, schema, _) in TOOL_SPECS.items()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        # Raised errors become isError tool results
        try:
            text = await tools.dispatch(name, arguments or {})
        except ToolError as e:
            logger.info("Tool %s rejected: %s", name, e)
            raise
        return [TextContent(type="text", text=text)]

    return server


def tools_from_env(settings: Settings) -> IpcTools:
    return IpcTools(
        paths=ipc.AgentIpcPaths(Path(settings.container_ipc_dir)),
        agent_id=os.environ.get("FLOTILLA_AGENT_ID", ""),
        agent_name=os.environ.get("FLOTILLA_AGENT_NAME", ""),
        is_orchestrator=os.environ.get("FLOTILLA_IS_ORCHESTRATOR") == "1",
        timezone=settings.timezone,
    )


async def serve(settings: Settings) -> None:
    server = create_ipc_server(tools_from_env(settings))
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


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
