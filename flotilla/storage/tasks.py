"""Scheduled task manager -- CRUD, due-task queries and next-run computation."""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter
from sqlalchemy import delete, select

from flotilla.storage.database import Database
from flotilla.storage.models import ScheduledTask, as_utc, as_uuid

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset({"next_run", "last_run", "last_result", "status", "prompt"})


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    now: datetime,
    tz: str = "UTC",
    *,
    first: bool = False,
) -> datetime | None:
    """Next fire time in UTC, or None when the task is finished.

    cron      -- next match after ``now`` evaluated in ``tz``
    interval  -- ``now`` plus the value in milliseconds
    once      -- the ISO timestamp on creation (``first=True``), None after firing

    Raises ValueError for an unknown type or unparseable value.
    """
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value}")
        local_now = now.astimezone(ZoneInfo(tz))
        return croniter(schedule_value, local_now).get_next(datetime).astimezone(UTC)

    if schedule_type == "interval":
        try:
            ms = int(schedule_value)
        except ValueError as e:
            raise ValueError(f"Invalid interval: {schedule_value}") from e
        if ms <= 0:
            raise ValueError(f"Interval must be positive: {schedule_value}")
        return now + timedelta(milliseconds=ms)

    if schedule_type == "once":
        if not first:
            return None
        try:
            run_at = datetime.fromisoformat(schedule_value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid timestamp: {schedule_value}") from e
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=ZoneInfo(tz))
        return run_at.astimezone(UTC)

    raise ValueError(f"Unknown schedule type: {schedule_type}")


def summarize_result(status: str, result: str | None, error: str | None) -> str:
    """Value stored in last_result after a run."""
    if status == "error":
        return f"Error: {error}"
    if result:
        return result[:200]
    return "Completed"


class TaskManager:
    def __init__(self, database: Database, timezone: str = "UTC") -> None:
        self._db = database
        self._tz = timezone

    async def create(
        self,
        agent_id: uuid.UUID | str,
        prompt: str,
        schedule_type: str,
        schedule_value: str,
    ) -> ScheduledTask:
        """Create an active task; raises ValueError for a bad schedule."""
        next_run = compute_next_run(schedule_type, schedule_value, datetime.now(UTC), self._tz, first=True)
        async with self._db.session() as session:
            task = ScheduledTask(
                agent_id=as_uuid(agent_id),
                prompt=prompt,
                schedule_type=schedule_type,
                schedule_value=schedule_value,
                next_run=next_run,
                status="active",
            )
            session.add(task)
            await session.commit()
            await session.refresh(task)
            logger.info(
                "Created %s task %s: %s (next: %s)",
                schedule_type, task.id.hex[:8], prompt[:80], next_run,
            )
            return task

    async def get(self, task_id: uuid.UUID | str) -> ScheduledTask | None:
        try:
            key = as_uuid(task_id)
        except ValueError:
            return None
        async with self._db.session() as session:
            return await session.get(ScheduledTask, key)

    async def get_due(self, now: datetime) -> list[ScheduledTask]:
        """Active tasks whose next_run <= now, earliest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ScheduledTask)
                .where(ScheduledTask.status == "active")
                .where(ScheduledTask.next_run.is_not(None))
                .where(ScheduledTask.next_run <= now)
                .order_by(ScheduledTask.next_run)
            )
            return list(result.scalars().all())

    async def update(self, task_id: uuid.UUID | str, **fields) -> ScheduledTask | None:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        async with self._db.session() as session:
            task = await session.get(ScheduledTask, as_uuid(task_id))
            if task is None:
                return None
            for key, value in fields.items():
                setattr(task, key, value)
            await session.commit()
            await session.refresh(task)
            return task

    async def set_status(self, task_id: uuid.UUID | str, status: str) -> ScheduledTask | None:
        """Pause/resume. Resuming a task with a past next_run recomputes it."""
        task = await self.get(task_id)
        if task is None:
            return None
        fields: dict = {"status": status}
        next_run = as_utc(task.next_run)
        now = datetime.now(UTC)
        if status == "active" and task.schedule_type != "once" and (next_run is None or next_run < now):
            fields["next_run"] = compute_next_run(task.schedule_type, task.schedule_value, now, self._tz)
        updated = await self.update(task.id, **fields)
        logger.info("Task %s -> %s", task.id.hex[:8], status)
        return updated

    async def delete(self, task_id: uuid.UUID | str) -> bool:
        try:
            key = as_uuid(task_id)
        except ValueError:
            return False
        async with self._db.session() as session:
            result = await session.execute(delete(ScheduledTask).where(ScheduledTask.id == key))
            await session.commit()
            return result.rowcount > 0

    async def list_all(self, agent_id: uuid.UUID | str | None = None) -> list[ScheduledTask]:
        async with self._db.session() as session:
            q = select(ScheduledTask).order_by(ScheduledTask.created_at.desc())
            if agent_id is not None:
                q = q.where(ScheduledTask.agent_id == as_uuid(agent_id))
            result = await session.execute(q)
            return list(result.scalars().all())
