"""Orchestrator -- the one long-lived conversational agent.

The session is Idle (no container) or Running (exactly one container for
the orchestrator agent). Inbound user text either spawns a container or is
forwarded to the running one as a follow-up turn. Streamed results go to
the chat and into the active conversation. Two timers wind the container
down cooperatively through the close sentinel: an idle timer reset on
every output, and a hard recycle timer set at spawn.

Each spawn gets a run token; only the run holding the current token may
move the session back to Idle, so a run that was closed by /clear and is
still draining can never clobber its successor. A new run waits for the
previous one to exit; until its container can receive input, follow-ups
are held in the session so a draining container never answers them.

Delegation spawns an independent specialist container through the same
queue and relays its result into the orchestrator's input channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from flotilla import ipc
from flotilla.agent_queue import ContainerQueue
from flotilla.commands import CommandContext, CommandRouter
from flotilla.config import Settings
from flotilla.embeddings import EmbeddingProvider
from flotilla.errors import FlotillaError
from flotilla.formatting import excerpt, format_outbound
from flotilla.prompts import render_orchestrator_prompt
from flotilla.registry import ToolServerRegistry
from flotilla.runtime.runner import ContainerRunner
from flotilla.schemas import (
    ContainerInput,
    ContainerOutput,
    DelegateEnvelope,
    Envelope,
    ImageEnvelope,
    MediaRef,
    MessageEnvelope,
)
from flotilla.snapshots import SnapshotWriter
from flotilla.storage.conversations import make_turn
from flotilla.storage.models import Agent
from flotilla.storage.store import Store

logger = logging.getLogger(__name__)

ERROR_NOTICE = "Sorry, I encountered an error. Please try again."
CLEARED_NOTICE = "Conversation cleared. Starting fresh."
CHAT_STATE_KEY = "orchestrator.chat_id"


class Channel(Protocol):
    async def send_message(self, chat_id: str, text: str) -> None: ...

    async def send_photo(self, chat_id: str, path: str, caption: str | None = None) -> None: ...

    async def set_typing(self, chat_id: str, on: bool) -> None: ...


@dataclass
class OrchestratorSession:
    agent: Agent
    # Run token of the live orchestrator container, None while Idle
    active_container: str | None = None
    chat_id: str | None = None
    conversation_id: str | None = None
    last_activity: float = 0.0
    idle_timer: asyncio.TimerHandle | None = None
    recycle_timer: asyncio.TimerHandle | None = None
    # False until the current run's container owns the input channel
    started: bool = False
    pending: list[MessageEnvelope] = field(default_factory=list)
    # Set when the most recent run has fully exited
    run_done: asyncio.Event | None = None
    # Input files left by a cleared conversation are dropped at the next start
    discard_input: bool = False

    @property
    def running(self) -> bool:
        return self.active_container is not None


def not_found_message(name: str, specialists: list[Agent]) -> str:
    available = ", ".join(agent.name for agent in specialists)
    return f'Agent "{name}" not found. Available agents: {available}'


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        runner: ContainerRunner,
        queue: ContainerQueue,
        registry: ToolServerRegistry,
        snapshots: SnapshotWriter,
        channel: Channel,
        embedder: EmbeddingProvider | None = None,
        commands: CommandRouter | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._runner = runner
        self._queue = queue
        self._registry = registry
        self._snapshots = snapshots
        self._channel = channel
        self._embedder = embedder
        self._commands = commands or CommandRouter(store, settings)
        self._lock = asyncio.Lock()
        self.session: OrchestratorSession | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        agent = await self._store.agents.get_orchestrator()
        if agent is None:
            raise FlotillaError("No orchestrator agent defined")
        self.session = OrchestratorSession(agent=agent, last_activity=time.monotonic())
        chat_id = await self._store.state.get(CHAT_STATE_KEY)
        if chat_id:
            self.session.chat_id = str(chat_id)
        logger.info("Orchestrator initialized (agent=%s, model=%s)", agent.name, agent.model)

    async def shutdown(self) -> None:
        """Close the container and summarize the open conversation."""
        session = self._session
        async with self._lock:
            self._clear_timers()
            if session.running:
                self._runner.request_close(self.agent_id)
                session.active_container = None
            stamp = datetime.now(UTC).isoformat()
            await self._summarize(f"Conversation ended due to system shutdown on {stamp}")
        logger.info("Orchestrator shut down")

    @property
    def _session(self) -> OrchestratorSession:
        if self.session is None:
            raise FlotillaError("Orchestrator not started")
        return self.session

    @property
    def agent_id(self) -> str:
        return str(self._session.agent.id)

    # ------------------------------------------------------------------
    # Inbound user messages
    # ------------------------------------------------------------------

    async def handle_message(
        self,
        chat_id: str,
        sender_name: str,
        text: str,
        media: list[MediaRef] | None = None,
    ) -> None:
        async with self._lock:
            await self._handle_message_locked(chat_id, sender_name, text, media or [])

    async def _handle_message_locked(
        self,
        chat_id: str,
        sender_name: str,
        text: str,
        media: list[MediaRef],
    ) -> None:
        session = self._session
        await self._remember_chat(chat_id)

        if text.strip().lower() == "/clear":
            await self._clear_locked(chat_id)
            return

        result = await self._commands.handle(
            CommandContext(
                chat_id=chat_id,
                orchestrator=session.agent,
                container_active=session.running,
                conversation_id=session.conversation_id,
            ),
            text,
        )
        if result is not None:
            await self._channel.send_message(chat_id, result.text)
            if result.forward is None:
                return
            text = result.forward

        session.last_activity = time.monotonic()
        await self._store.messages.log(chat_id, sender_name, text, "inbound", agent_id=session.agent.id)
        conversation_id = await self._ensure_conversation()
        turn = make_turn("user", text)
        turn["sender"] = sender_name
        await self._store.conversations.append_turns(conversation_id, [turn])

        if session.running:
            staged = self._stage_media(self.agent_id, media)
            if self._forward(text, staged):
                logger.debug("Forwarded message to running orchestrator (media=%d)", len(staged))
                await self._channel.set_typing(chat_id, True)
                self._reset_idle_timer()
                return
            logger.warning("Follow-up failed, spawning a new orchestrator container")
            self._runner.request_close(self.agent_id)
            session.active_container = None
            self._clear_timers()

        await self._spawn(chat_id, text, media)

    async def _remember_chat(self, chat_id: str) -> None:
        session = self._session
        if session.chat_id == chat_id:
            return
        session.chat_id = chat_id
        try:
            await self._store.state.set(CHAT_STATE_KEY, chat_id)
        except Exception:
            logger.warning("Failed to persist chat id", exc_info=True)

    async def _ensure_conversation(self) -> str:
        session = self._session
        if session.conversation_id is None:
            conversation = await self._store.conversations.get_active(session.agent.id)
            if conversation is None:
                conversation = await self._store.conversations.create(session.agent.id)
                logger.info("Started conversation %s", conversation.id)
            session.conversation_id = str(conversation.id)
        return session.conversation_id

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def _spawn(self, chat_id: str, prompt: str, media: list[MediaRef]) -> None:
        session = self._session
        # Pick up /model switches and prompt edits made since the last spawn
        agent = await self._store.agents.get(session.agent.id) or session.agent
        session.agent = agent

        await self._channel.set_typing(chat_id, True)
        await self._snapshots.write_agents()
        await self._snapshots.write_tasks(agent)
        specialists = await self._store.agents.list_specialists()

        container_input = ContainerInput(
            prompt=prompt,
            agent_id=str(agent.id),
            agent_name=agent.name,
            model=agent.model,
            system_prompt=render_orchestrator_prompt(
                agent.system_prompt, self._settings.assistant_name, specialists,
            ),
            is_orchestrator=True,
            conversation_id=session.conversation_id,
            media=self._stage_media(str(agent.id), media),
            tool_servers=await self._registry.servers_for(agent),
        )

        token = uuid.uuid4().hex
        session.active_container = token
        session.started = False
        previous, done = session.run_done, asyncio.Event()
        session.run_done = done
        self._start_timers()
        conversation_id = session.conversation_id

        enqueued = self._queue.enqueue(
            f"agent:{agent.id}",
            lambda: self._run_orchestrator(token, chat_id, conversation_id, container_input, previous, done),
        )
        if not enqueued:
            logger.error("Could not queue orchestrator container")
            session.active_container = None
            session.pending.clear()
            done.set()
            self._clear_timers()
            await self._channel.set_typing(chat_id, False)
            await self._channel.send_message(chat_id, ERROR_NOTICE)

    async def _run_orchestrator(
        self,
        token: str,
        chat_id: str,
        conversation_id: str | None,
        container_input: ContainerInput,
        previous: asyncio.Event | None = None,
        done: asyncio.Event | None = None,
    ) -> None:
        agent_id = container_input.agent_id

        async def on_output(output: ContainerOutput) -> None:
            if output.status == "error":
                logger.error("Orchestrator container error: %s", output.error)
            if not output.result:
                return
            if self._is_current(token):
                self._reset_idle_timer()
            text = format_outbound(output.result)
            if not text:
                return
            await self._channel.set_typing(chat_id, False)
            await self._channel.send_message(chat_id, text)
            await self._store.messages.log(
                chat_id, self._settings.assistant_name, text, "outbound", agent_id=agent_id,
            )
            if conversation_id:
                await self._store.conversations.append_turns(
                    conversation_id, [make_turn("assistant", text)],
                )

        output: ContainerOutput | None = None
        try:
            if previous is not None:
                await previous.wait()
            if not self._is_current(token):
                logger.info("Orchestrator run superseded before it started, skipped")
                return
            self._flush_pending()
            output = await self._runner.run_agent(container_input, on_output)
        finally:
            if done is not None:
                done.set()
            if self._is_current(token):
                self._session.active_container = None
                self._clear_timers()
            with contextlib.suppress(Exception):
                await self._channel.set_typing(chat_id, False)

        if output.status == "error":
            logger.error("Orchestrator container failed: %s", output.error)
            await self._channel.send_message(chat_id, ERROR_NOTICE)

    def _is_current(self, token: str) -> bool:
        return self.session is not None and self.session.active_container == token

    def _forward(self, text: str, media: list[MediaRef] | None = None) -> bool:
        """Send a follow-up to the current run, holding it until that run has started."""
        session = self._session
        if not session.started:
            session.pending.append(MessageEnvelope(text=text, media=media or []))
            return True
        return self._runner.send_follow_up(self.agent_id, text, media)

    def _flush_pending(self) -> None:
        session = self._session
        if session.discard_input:
            session.discard_input = False
            paths = self._runner.ipc_paths(self.agent_id)
            stale = ipc.drain_messages(paths.input_dir, errors_dir=paths.errors_dir)
            if stale:
                logger.info("Dropped %d follow-up(s) left from the cleared conversation", len(stale))
        session.started = True
        pending, session.pending = session.pending, []
        for envelope in pending:
            self._runner.send_follow_up(self.agent_id, envelope.text, envelope.media)
        if pending:
            logger.debug("Flushed %d held follow-up(s) to the new orchestrator run", len(pending))

    def _stage_media(self, agent_id: str, media: list[MediaRef]) -> list[MediaRef]:
        """Copy host files into the agent's IPC media dir; return container paths."""
        if not media:
            return []
        paths = self._runner.ipc_paths(agent_id)
        ipc.prepare(paths)
        staged: list[MediaRef] = []
        for ref in media:
            source = Path(ref.path)
            filename = Path(ipc.new_filename()).stem + (source.suffix or ".jpg")
            target = paths.media_dir / filename
            try:
                shutil.copyfile(source, target)
            except OSError as e:
                logger.warning("Could not stage media %s: %s", source, e)
                continue
            with contextlib.suppress(OSError):
                os.chmod(target, 0o666)
            staged.append(MediaRef(
                type=ref.type,
                path=f"{self._settings.container_ipc_dir}/media/{filename}",
                mime_type=ref.mime_type,
            ))
        return staged

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _start_timers(self) -> None:
        session = self._session
        self._clear_timers()
        loop = asyncio.get_running_loop()
        session.recycle_timer = loop.call_later(
            self._settings.orchestrator_ttl_ms / 1000, self._wind_down, "recycle",
        )
        self._reset_idle_timer()

    def _reset_idle_timer(self) -> None:
        session = self._session
        if session.idle_timer is not None:
            session.idle_timer.cancel()
        session.idle_timer = asyncio.get_running_loop().call_later(
            self._settings.idle_timeout_ms / 1000, self._wind_down, "idle",
        )

    def _clear_timers(self) -> None:
        session = self._session
        for handle in (session.idle_timer, session.recycle_timer):
            if handle is not None:
                handle.cancel()
        session.idle_timer = None
        session.recycle_timer = None

    def _wind_down(self, reason: str) -> None:
        if self.session is None or not self.session.running:
            return
        logger.info("Orchestrator %s timeout, closing container", reason)
        self._runner.request_close(self.agent_id)

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear(self, chat_id: str) -> None:
        async with self._lock:
            await self._clear_locked(chat_id)

    async def _clear_locked(self, chat_id: str) -> None:
        session = self._session
        if session.running:
            self._runner.request_close(self.agent_id)
            session.active_container = None
        # Held and unread follow-ups belong to the conversation being cleared
        session.pending.clear()
        session.discard_input = True
        self._clear_timers()

        await self._summarize(f"Conversation cleared by user on {datetime.now(UTC).isoformat()}")

        conversation = await self._store.conversations.create(session.agent.id)
        session.conversation_id = str(conversation.id)
        await self._channel.send_message(chat_id, CLEARED_NOTICE)
        logger.info("Conversation cleared by user (chat=%s)", chat_id)

    async def _summarize(self, summary: str) -> None:
        """Mark the active conversation summarized and keep the summary as a memory."""
        session = self._session
        conversation_id = session.conversation_id
        if conversation_id is None:
            conversation = await self._store.conversations.get_active(session.agent.id)
            if conversation is None:
                return
            conversation_id = str(conversation.id)

        try:
            await self._store.conversations.summarize(conversation_id, summary)
        except Exception:
            logger.exception("Failed to summarize conversation %s", conversation_id)
            return
        session.conversation_id = None

        try:
            embedding = await self._embedder.embed(summary) if self._embedder else None
            await self._store.memories.store(
                session.agent.id,
                summary,
                embedding=embedding,
                memory_type="conversation_summary",
                metadata={"conversation_id": conversation_id},
            )
        except Exception:
            logger.exception("Failed to store summary memory for %s", conversation_id)

    # ------------------------------------------------------------------
    # Envelopes from agent containers
    # ------------------------------------------------------------------

    async def handle_ipc_envelope(self, envelope: Envelope, source_agent_id: str) -> None:
        if isinstance(envelope, MessageEnvelope):
            await self._deliver_message(envelope, source_agent_id)
        elif isinstance(envelope, ImageEnvelope):
            await self._deliver_image(envelope, source_agent_id)
        elif isinstance(envelope, DelegateEnvelope):
            await self.delegate(envelope.target_agent, envelope.task, envelope.wait_for_result)
        else:
            logger.debug("Orchestrator ignoring %s envelope", envelope.type)

    async def notify(self, text: str, sender: str | None = None, agent_id: str | None = None) -> bool:
        """Send text to the current chat. False when no chat is known yet."""
        chat_id = self._session.chat_id
        if chat_id is None:
            logger.warning("No chat to deliver message from %s", sender or "agent")
            return False
        text = format_outbound(text)
        if not text:
            return False
        await self._channel.send_message(chat_id, text)
        await self._store.messages.log(
            chat_id, sender or self._settings.assistant_name, text, "outbound", agent_id=agent_id,
        )
        return True

    async def _deliver_message(self, envelope: MessageEnvelope, source_agent_id: str) -> None:
        sent = await self.notify(envelope.text, envelope.agent_name, source_agent_id)
        session = self._session
        if sent and source_agent_id == self.agent_id and session.conversation_id:
            await self._store.conversations.append_turns(
                session.conversation_id, [make_turn("assistant", format_outbound(envelope.text))],
            )

    async def _deliver_image(self, envelope: ImageEnvelope, source_agent_id: str) -> None:
        chat_id = self._session.chat_id
        if chat_id is None:
            logger.warning("No chat to deliver image from %s", source_agent_id)
            return

        host_path = self._host_path(envelope.path, source_agent_id)
        if host_path is None or not host_path.is_file():
            logger.error("Image file not found for IPC image message: %s", envelope.path)
            return

        caption = format_outbound(envelope.caption) if envelope.caption else None
        try:
            await self._channel.send_photo(chat_id, str(host_path), caption or None)
        except Exception as e:
            logger.warning("send_photo failed (%s), falling back to text", e)
            await self._channel.send_message(chat_id, caption or "[Image generated]")
        await self._store.messages.log(
            chat_id,
            envelope.agent_name or self._settings.assistant_name,
            f"[Image: {caption or 'sent'}]",
            "outbound",
            agent_id=source_agent_id,
        )

    def _host_path(self, container_path: str, agent_id: str) -> Path | None:
        """Map ``/workspace/ipc/...`` to the agent's host IPC dir; None if outside it."""
        prefix = self._settings.container_ipc_dir.rstrip("/") + "/"
        if not container_path.startswith(prefix):
            return None
        root = self._runner.ipc_paths(agent_id).root.resolve()
        candidate = (root / container_path[len(prefix):]).resolve()
        if not candidate.is_relative_to(root):
            return None
        return candidate

    # ------------------------------------------------------------------
    # Delegation
    # ------------------------------------------------------------------

    async def delegate(self, target_name: str, task: str, wait_for_result: bool = True) -> bool:
        """Spawn a specialist for ``task``. False (and a relayed notice) if it does not exist."""
        target = await self._store.agents.get_by_name(target_name)
        if target is None or target.is_orchestrator:
            specialists = await self._store.agents.list_specialists()
            logger.warning("Delegation target %s not found", target_name)
            self._relay(not_found_message(target_name, specialists))
            return False

        logger.info("Delegating to %s: %s", target.name, excerpt(task, 100))
        await self._snapshots.write_tasks(target)
        container_input = ContainerInput(
            prompt=task,
            agent_id=str(target.id),
            agent_name=target.name,
            model=target.model,
            system_prompt=target.system_prompt,
            is_orchestrator=False,
            tool_servers=await self._registry.servers_for(target),
        )
        enqueued = self._queue.enqueue(
            f"agent:{target.id}",
            lambda: self._run_specialist(container_input, wait_for_result),
        )
        if not enqueued:
            self._relay(
                f"[SPECIALIST ERROR from {target.name}] Agent is already queued with another task."
            )
        return enqueued

    async def _run_specialist(self, container_input: ContainerInput, wait_for_result: bool) -> None:
        name = container_input.agent_name
        answered = False

        async def on_output(output: ContainerOutput) -> None:
            nonlocal answered
            if output.result and wait_for_result:
                self._relay(f"[SPECIALIST RESULT from {name}]\n{output.result}")
            if not answered:
                answered = True
                # Specialists do one task; let the container exit after it
                self._runner.request_close(container_input.agent_id)

        output = await self._runner.run_agent(container_input, on_output)
        if output.status == "error":
            logger.error("Specialist %s failed: %s", name, output.error)
            self._relay(f"[SPECIALIST ERROR from {name}] {output.error}")

    def _relay(self, text: str) -> None:
        """Feed text to the orchestrator container as its next turn, if it is running."""
        if self.session is None or not self.session.running:
            logger.info("Orchestrator not running, dropping relay: %s", excerpt(text, 80))
            return
        self._forward(text)
