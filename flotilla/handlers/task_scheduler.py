"""Task Scheduler -- fires due scheduled tasks as agent container runs.

Runs a periodic check loop that:
1. Queries active tasks whose next_run <= now
2. Re-reads each one and enqueues a run on the container queue (``task:<id>``)
3. After the run, records last_run/last_result and advances next_run;
   tasks without a next run (``once``) become ``completed``

Every streamed result of a run is forwarded to the current chat. A task
still running from an earlier tick is not fired again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

from flotilla.agent_queue import ContainerQueue
from flotilla.config import Settings
from flotilla.orchestrator import Orchestrator
from flotilla.registry import ToolServerRegistry
from flotilla.runtime.runner import ContainerRunner
from flotilla.schemas import ContainerInput, ContainerOutput
from flotilla.snapshots import SnapshotWriter
from flotilla.storage.models import ScheduledTask
from flotilla.storage.store import Store
from flotilla.storage.tasks import compute_next_run, summarize_result

logger = logging.getLogger(__name__)

SCHEDULED_PREFIX = "[SCHEDULED TASK]\n\n"


class TaskScheduler:
    """Background scheduler that checks for due tasks and enqueues them."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        runner: ContainerRunner,
        queue: ContainerQueue,
        registry: ToolServerRegistry,
        snapshots: SnapshotWriter,
        orchestrator: Orchestrator,
    ) -> None:
        self._settings = settings
        self._store = store
        self._runner = runner
        self._queue = queue
        self._registry = registry
        self._snapshots = snapshots
        self._orchestrator = orchestrator
        self._in_flight: set[str] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Start the scheduler check loop."""
        self._running = True
        self._task = asyncio.create_task(self._check_loop(), name="task-scheduler")
        logger.info(
            "Task scheduler started (check_interval=%dms)",
            self._settings.scheduler_poll_interval_ms,
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task scheduler stopped")

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    # ------------------------------------------------------------------
    # Check loop
    # ------------------------------------------------------------------

    async def _check_loop(self) -> None:
        """Periodic loop: check due tasks -> sleep -> repeat."""
        while self._running:
            try:
                fired = await self.fire_due_tasks()
                if fired:
                    logger.info("Fired %d due task(s)", fired)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Task check failed")
            await asyncio.sleep(self._settings.scheduler_poll_interval_ms / 1000)

    async def fire_due_tasks(self, now: datetime | None = None) -> int:
        """Enqueue every due task; returns the number enqueued."""
        due = await self._store.tasks.get_due(now or datetime.now(UTC))
        fired = 0
        for task in due:
            key = str(task.id)
            if key in self._in_flight:
                continue
            current = await self._store.tasks.get(task.id)
            if current is None or current.status != "active":
                continue

            self._in_flight.add(key)
            enqueued = self._queue.enqueue(f"task:{key}", lambda t=current: self._run_tracked(t))
            if not enqueued:
                self._in_flight.discard(key)
                logger.warning("Could not enqueue task %s", key[:8])
                continue
            fired += 1
        return fired

    async def _run_tracked(self, task: ScheduledTask) -> None:
        try:
            await self.run_task(task)
        finally:
            self._in_flight.discard(str(task.id))

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def run_task(self, task: ScheduledTask) -> None:
        started = time.monotonic()
        logger.info("Running scheduled task %s", task.id.hex[:8])

        agent = await self._store.agents.get(task.agent_id)
        if agent is None:
            logger.error("Agent not found for task %s", task.id.hex[:8])
            await self._store.tasks.update(
                task.id,
                status="completed",
                last_result="Agent not found",
                last_run=datetime.now(UTC),
                next_run=None,
            )
            return

        await self._snapshots.write_tasks(agent)
        container_input = ContainerInput(
            prompt=f"{SCHEDULED_PREFIX}{task.prompt}",
            agent_id=str(agent.id),
            agent_name=agent.name,
            model=agent.model,
            system_prompt=agent.system_prompt,
            # Scheduled runs are one-off tasks even for the orchestrator agent
            is_orchestrator=False,
            tool_servers=await self._registry.servers_for(agent, is_orchestrator=False),
        )

        result: str | None = None
        error: str | None = None

        async def on_output(output: ContainerOutput) -> None:
            nonlocal result, error
            if output.result:
                result = output.result
                await self._orchestrator.notify(output.result, agent.name, str(agent.id))
            if output.status == "error":
                error = output.error or "Unknown error"
            # A scheduled run is a single task
            self._runner.request_close(str(agent.id))

        try:
            output = await self._runner.run_agent(container_input, on_output)
            if output.status == "error":
                error = output.error or "Unknown error"
            elif output.result:
                result = output.result
        except Exception as e:
            error = str(e)
            logger.exception("Task %s failed", task.id.hex[:8])

        await self._record(task, "error" if error else "success", result, error)
        logger.info(
            "Task %s finished in %dms (%s)",
            task.id.hex[:8], int((time.monotonic() - started) * 1000), "error" if error else "success",
        )

    async def _record(self, task: ScheduledTask, status: str, result: str | None, error: str | None) -> None:
        current = await self._store.tasks.get(task.id)
        if current is None:
            logger.info("Task %s was cancelled while running", task.id.hex[:8])
            return

        now = datetime.now(UTC)
        try:
            next_run = compute_next_run(current.schedule_type, current.schedule_value, now, self._settings.timezone)
        except ValueError as e:
            logger.error("Cannot compute next run for task %s: %s", task.id.hex[:8], e)
            next_run = None

        await self._store.tasks.update(
            task.id,
            last_run=now,
            last_result=summarize_result(status, result, error),
            next_run=next_run,
            status="completed" if next_run is None else current.status,
        )
        agent = await self._store.agents.get(current.agent_id)
        await self._snapshots.refresh_tasks(agent)
