"""Agent manager -- CRUD for orchestrator and specialist definitions."""

import logging
import uuid

from sqlalchemy import delete, select

from flotilla.storage.database import Database
from flotilla.storage.models import Agent, as_uuid

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset({"system_prompt", "model", "tool_servers", "container_config"})


class AgentManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(
        self,
        name: str,
        system_prompt: str,
        model: str,
        tool_servers: list[dict] | None = None,
        is_orchestrator: bool = False,
    ) -> Agent:
        async with self._db.session() as session:
            agent = Agent(
                name=name,
                system_prompt=system_prompt,
                model=model,
                tool_servers=tool_servers or [],
                container_config={},
                is_orchestrator=is_orchestrator,
            )
            session.add(agent)
            await session.commit()
            await session.refresh(agent)
            logger.info("Created agent %s (%s, orchestrator=%s)", name, model, is_orchestrator)
            return agent

    async def get(self, agent_id: uuid.UUID | str) -> Agent | None:
        try:
            key = as_uuid(agent_id)
        except ValueError:
            return None
        async with self._db.session() as session:
            return await session.get(Agent, key)

    async def get_by_name(self, name: str) -> Agent | None:
        async with self._db.session() as session:
            result = await session.execute(select(Agent).where(Agent.name == name))
            return result.scalar_one_or_none()

    async def get_orchestrator(self) -> Agent | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Agent).where(Agent.is_orchestrator.is_(True)).order_by(Agent.created_at).limit(1)
            )
            return result.scalar_one_or_none()

    async def list_all(self) -> list[Agent]:
        """Orchestrator first, then specialists by name."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Agent).order_by(Agent.is_orchestrator.desc(), Agent.name)
            )
            return list(result.scalars().all())

    async def list_specialists(self) -> list[Agent]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Agent).where(Agent.is_orchestrator.is_(False)).order_by(Agent.name)
            )
            return list(result.scalars().all())

    async def update(self, agent_id: uuid.UUID | str, **fields) -> Agent | None:
        """Update the given fields; None values are left unchanged."""
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update agent fields: {sorted(unknown)}")

        async with self._db.session() as session:
            agent = await session.get(Agent, as_uuid(agent_id))
            if agent is None:
                return None
            for key, value in fields.items():
                if value is not None:
                    setattr(agent, key, value)
            await session.commit()
            await session.refresh(agent)
            logger.info("Updated agent %s (%s)", agent.name, ", ".join(k for k, v in fields.items() if v is not None))
            return agent

    async def delete(self, agent_id: uuid.UUID | str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(Agent).where(Agent.id == as_uuid(agent_id)))
            await session.commit()
            return result.rowcount > 0

    async def ensure_orchestrator(self, name: str, system_prompt: str, model: str) -> Agent:
        """Return the orchestrator agent, seeding it on first start."""
        existing = await self.get_orchestrator()
        if existing is not None:
            logger.debug("Orchestrator agent already exists")
            return existing
        logger.info("Seeding orchestrator agent...")
        return await self.create(name, system_prompt, model, is_orchestrator=True)
