"""Bounded-concurrency run queue for container spawns.

At most ``limit`` runs are in flight. Extra work waits in FIFO order and is
deduplicated by id while pending (an id that is already running may be
queued once more). Runs are asyncio tasks; an exception from one run is
logged and never affects the accounting of others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

RunFn = Callable[[], Awaitable[None]]


class ContainerQueue:
    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._active = 0
        self._pending: deque[tuple[str, RunFn]] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._shutting_down = False

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_ids(self) -> list[str]:
        return [task_id for task_id, _ in self._pending]

    def enqueue(self, task_id: str, fn: RunFn) -> bool:
        """Run ``fn`` now if a slot is free, otherwise queue it.

        Returns False when the queue is shutting down or ``task_id`` is
        already waiting.
        """
        if self._shutting_down:
            logger.debug("Queue shutting down, dropping %s", task_id)
            return False
        if any(pending_id == task_id for pending_id, _ in self._pending):
            logger.debug("Task %s already queued, skipping", task_id)
            return False

        if self._active >= self._limit:
            self._pending.append((task_id, fn))
            logger.debug(
                "At concurrency limit (%d/%d), queued %s (%d waiting)",
                self._active, self._limit, task_id, len(self._pending),
            )
            return True

        self._start(task_id, fn)
        return True

    def _start(self, task_id: str, fn: RunFn) -> None:
        self._active += 1
        task = asyncio.create_task(self._run(task_id, fn), name=f"queue:{task_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, task_id: str, fn: RunFn) -> None:
        try:
            await fn()
        except Exception:
            logger.exception("Queued run %s failed", task_id)
        finally:
            self._active -= 1
            self._drain()

    def _drain(self) -> None:
        if self._shutting_down:
            return
        while self._pending and self._active < self._limit:
            task_id, fn = self._pending.popleft()
            self._start(task_id, fn)

    async def join(self) -> None:
        """Wait until nothing is running or queued."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, grace_s: float = 0) -> None:
        """Stop accepting work; give in-flight runs up to ``grace_s`` to finish.

        Containers are not killed here: they are auto-removed when they
        exit and leftovers are reaped by orphan cleanup on next start.
        """
        self._shutting_down = True
        dropped = len(self._pending)
        self._pending.clear()
        logger.info(
            "Container queue shutting down (%d active, %d pending dropped)",
            self._active, dropped,
        )
        if grace_s > 0 and self._tasks:
            await asyncio.wait(list(self._tasks), timeout=grace_s)
