"""Slash commands answered on the host without waking the orchestrator.

``/clear`` is owned by the orchestrator (it has to close the container and
roll the conversation); everything else lives here. A command either
produces a reply, or rewrites the text and lets it continue to the
orchestrator (``/delegate``). Unknown ``/x`` is not a command and falls
through as ordinary text.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from flotilla.config import Settings
from flotilla.formatting import excerpt
from flotilla.storage.models import Agent, as_utc
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)

HISTORY_DEFAULT = 20
HISTORY_MAX = 50
MEMORY_LIMIT = 20


@dataclass
class CommandResult:
    text: str
    # Replacement text to hand to the orchestrator; None means fully handled
    forward: str | None = None


@dataclass
class CommandContext:
    chat_id: str
    orchestrator: Agent
    container_active: bool
    conversation_id: str | None = None


Handler = Callable[[CommandContext, str], Awaitable[CommandResult]]


def parse_command(text: str) -> tuple[str, str] | None:
    """``("/name", "args")`` for slash-prefixed text, else None."""
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    name, _, args = stripped.partition(" ")
    return name.lower(), args.strip()


class CommandRouter:
    def __init__(self, store: Store, settings: Settings) -> None:
        self._store = store
        self._settings = settings
        self._handlers: dict[str, Handler] = {
            "/status": self._status,
            "/agents": self._agents,
            "/model": self._model,
            "/memory": self._memory,
            "/forget": self._forget,
            "/history": self._history,
            "/delegate": self._delegate,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def handle(self, ctx: CommandContext, text: str) -> CommandResult | None:
        """Run the matching handler; None if ``text`` is not a known command."""
        parsed = parse_command(text)
        if parsed is None:
            return None
        name, args = parsed
        handler = self._handlers.get(name)
        if handler is None:
            return None

        try:
            return await handler(ctx, args)
        except Exception:
            logger.exception("Command %s failed", name)
            return CommandResult(f"Error executing {name}. Please try again.")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _status(self, ctx: CommandContext, args: str) -> CommandResult:
        agent = ctx.orchestrator
        specialists = await self._store.agents.list_specialists()
        memories = await self._store.memories.count()
        conversations = await self._store.conversations.count(agent.id)
        lines = [
            f"*{self._settings.assistant_name} Status*",
            "",
            f"*Container:* {'Active' if ctx.container_active else 'Idle'}",
            f"*Orchestrator Model:* `{agent.model}`",
            f"*Embedding Model:* `{self._settings.embedding_model}`",
            f"*Specialist Agents:* {len(specialists)}",
            f"*Memories:* {memories}",
            f"*Conversations:* {conversations}",
            f"*Conversation:* {'Active' if ctx.conversation_id else 'None'}",
        ]
        return CommandResult("\n".join(lines))

    async def _agents(self, ctx: CommandContext, args: str) -> CommandResult:
        specialists = await self._store.agents.list_specialists()
        if not specialists:
            return CommandResult(
                "No specialist agents configured yet.\n\n"
                'Tell me to create one, e.g. "Create a coding agent".'
            )
        lines = [f"*Specialist Agents* ({len(specialists)})", ""]
        for agent in specialists:
            lines.append(f"*{agent.name}*")
            lines.append(f"  Model: `{agent.model}`")
            lines.append(f"  {excerpt(agent.system_prompt, 100)}")
            lines.append("")
        return CommandResult("\n".join(lines).rstrip())

    async def _model(self, ctx: CommandContext, args: str) -> CommandResult:
        agent = ctx.orchestrator
        if not args:
            return CommandResult(
                "\n".join([
                    f"*Current Model:* `{agent.model}`",
                    "",
                    "Usage: `/model <model-name>`",
                    "",
                    "Examples:",
                    "`/model anthropic/claude-sonnet-4`",
                    "`/model openai/gpt-4o`",
                    "`/model deepseek/deepseek-chat`",
                ])
            )
        previous = agent.model
        await self._store.agents.update(agent.id, model=args)
        agent.model = args
        logger.info("Orchestrator model switched from %s to %s", previous, args)
        return CommandResult(
            f"Model switched from `{previous}` to `{args}`.\n\n"
            "Note: The change takes effect on the next container spawn."
        )

    async def _memory(self, ctx: CommandContext, args: str) -> CommandResult:
        memories = await self._store.memories.recent(MEMORY_LIMIT)
        if not memories:
            return CommandResult("I don't have any memories stored yet.")
        lines = [f"*{self._settings.assistant_name}'s Memories* ({len(memories)} most recent)", ""]
        for memory in memories:
            created = as_utc(memory.created_at)
            date = created.strftime("%b %d") if created else "?"
            lines.append(f"`{date}` [{memory.memory_type}] {excerpt(memory.content, 150)}")
        return CommandResult("\n".join(lines))

    async def _forget(self, ctx: CommandContext, args: str) -> CommandResult:
        if not args:
            return CommandResult(
                "Usage: `/forget <topic>`\n\n"
                "Example: `/forget my address`\n\n"
                "This removes all memories matching the topic."
            )
        deleted = await self._store.memories.delete_matching(args)
        if deleted == 0:
            return CommandResult(f'No memories found matching "{args}".')
        noun = "memory" if deleted == 1 else "memories"
        return CommandResult(f'Removed {deleted} {noun} matching "{args}".')

    async def _history(self, ctx: CommandContext, args: str) -> CommandResult:
        try:
            count = int(args) if args else HISTORY_DEFAULT
        except ValueError:
            count = HISTORY_DEFAULT
        if count < 1:
            count = HISTORY_DEFAULT
        count = min(count, HISTORY_MAX)

        messages = await self._store.messages.recent(ctx.chat_id, count)
        if not messages:
            return CommandResult("No message history found.")

        lines = [f"*Recent Messages* (last {len(messages)})", ""]
        for message in messages:
            created = as_utc(message.created_at)
            time = created.strftime("%H:%M") if created else "--:--"
            arrow = "→" if message.direction == "inbound" else "←"
            lines.append(f"`{time}` {arrow} *{message.sender}*: {excerpt(message.content, 120)}")
        return CommandResult("\n".join(lines))

    async def _delegate(self, ctx: CommandContext, args: str) -> CommandResult:
        specialists = await self._store.agents.list_specialists()
        names = ", ".join(f"`{agent.name}`" for agent in specialists) or "(none)"
        if not args:
            return CommandResult(
                "Usage: `/delegate <agent> <task>`\n\n"
                f"Available agents: {names}\n\n"
                "Example: `/delegate coder Write a Python script to sort a list`"
            )

        agent_name, _, task = args.partition(" ")
        task = task.strip()
        if not task:
            return CommandResult(
                "Please provide both an agent name and a task.\n\n"
                "Usage: `/delegate <agent> <task>`"
            )

        target = next((a for a in specialists if a.name.lower() == agent_name.lower()), None)
        if target is None:
            return CommandResult(f'Agent "{agent_name}" not found.\n\nAvailable agents: {names}')

        return CommandResult(
            f"Delegating to *{target.name}*: {task}",
            forward=f"Please delegate this to {target.name}: {task}",
        )
