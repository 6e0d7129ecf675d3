"""IPC watcher -- drains every agent's outbound IPC channels.

Each tick walks ``<data>/ipc/<agent_id>/`` (skipping the shared ``errors``
quarantine), handling ``messages/`` before ``tasks/``. Chat-facing
envelopes go to the orchestrator, everything else to the task command
processor. A file whose decode or handler fails lands in
``<data>/ipc/errors/<agent_id>-<file>`` and the batch continues.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from flotilla import ipc
from flotilla.config import Settings
from flotilla.handlers.task_commands import TaskCommandProcessor
from flotilla.orchestrator import Orchestrator
from flotilla.schemas import DelegateEnvelope, Envelope, ImageEnvelope, MessageEnvelope

logger = logging.getLogger(__name__)

_CHAT_ENVELOPES = (MessageEnvelope, ImageEnvelope, DelegateEnvelope)


class IpcWatcher:
    def __init__(
        self,
        settings: Settings,
        orchestrator: Orchestrator,
        task_commands: TaskCommandProcessor,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._task_commands = task_commands
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        self._settings.ipc_root.mkdir(parents=True, exist_ok=True)
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="ipc-watcher")
        logger.info("IPC watcher started (interval=%dms)", self._settings.ipc_poll_interval_ms)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("IPC watcher stopped")

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        interval = self._settings.ipc_poll_interval_ms / 1000
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("IPC poll failed")
            await asyncio.sleep(interval)

    def agent_dirs(self) -> list[Path]:
        root = self._settings.ipc_root
        try:
            return sorted(
                p for p in root.iterdir()
                if p.is_dir() and p.name != ipc.ERRORS_DIR
            )
        except FileNotFoundError:
            return []

    async def poll_once(self) -> int:
        """One pass over all agent directories; returns files handled."""
        errors_dir = self._settings.ipc_root / ipc.ERRORS_DIR
        handled = 0
        for agent_dir in self.agent_dirs():
            source_agent_id = agent_dir.name
            paths = ipc.AgentIpcPaths(agent_dir)

            async def handle(envelope: Envelope, source: str = source_agent_id) -> None:
                await self.route(envelope, source)

            for directory in (paths.messages_dir, paths.tasks_dir):
                handled += await ipc.consume(
                    directory, handle, errors_dir=errors_dir, label=source_agent_id,
                )
        return handled

    async def route(self, envelope: Envelope, source_agent_id: str) -> None:
        if isinstance(envelope, _CHAT_ENVELOPES):
            await self._orchestrator.handle_ipc_envelope(envelope, source_agent_id)
        else:
            await self._task_commands.handle(envelope, source_agent_id)
