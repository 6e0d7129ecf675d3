"""Memory manager -- long-term memories with optional pgvector embeddings."""

import logging
import uuid

from sqlalchemy import delete, func, select

from flotilla.storage.database import Database
from flotilla.storage.models import AgentMemory, as_uuid

logger = logging.getLogger(__name__)


class MemoryManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def store(
        self,
        agent_id: uuid.UUID | str | None,
        content: str,
        embedding: list[float] | None = None,
        memory_type: str = "conversation_summary",
        metadata: dict | None = None,
    ) -> AgentMemory:
        async with self._db.session() as session:
            memory = AgentMemory(
                agent_id=as_uuid(agent_id) if agent_id is not None else None,
                content=content,
                embedding=embedding,
                memory_type=memory_type,
                metadata_=metadata or {},
            )
            session.add(memory)
            await session.commit()
            await session.refresh(memory)
            logger.info("Stored %s memory %s (%d chars)", memory_type, memory.id.hex[:8], len(content))
            return memory

    async def recent(self, limit: int = 20, agent_id: uuid.UUID | str | None = None) -> list[AgentMemory]:
        async with self._db.session() as session:
            q = select(AgentMemory).order_by(AgentMemory.created_at.desc()).limit(limit)
            if agent_id is not None:
                q = q.where(AgentMemory.agent_id == as_uuid(agent_id))
            result = await session.execute(q)
            return list(result.scalars().all())

    async def search(
        self,
        embedding: list[float],
        limit: int = 5,
        agent_id: uuid.UUID | str | None = None,
    ) -> list[tuple[AgentMemory, float]]:
        """Nearest memories by cosine similarity (Postgres only)."""
        distance = AgentMemory.embedding.cosine_distance(embedding)
        async with self._db.session() as session:
            q = (
                select(AgentMemory, distance.label("distance"))
                .where(AgentMemory.embedding.is_not(None))
                .order_by(distance)
                .limit(limit)
            )
            if agent_id is not None:
                q = q.where(AgentMemory.agent_id == as_uuid(agent_id))
            result = await session.execute(q)
            return [(memory, 1.0 - float(dist)) for memory, dist in result.all()]

    async def matching(
        self,
        topic: str,
        limit: int = 5,
        agent_id: uuid.UUID | str | None = None,
    ) -> list[AgentMemory]:
        """Newest memories containing ``topic``; the fallback when no embedding is available."""
        async with self._db.session() as session:
            q = (
                select(AgentMemory)
                .where(AgentMemory.content.ilike(f"%{topic}%"))
                .order_by(AgentMemory.created_at.desc())
                .limit(limit)
            )
            if agent_id is not None:
                q = q.where(AgentMemory.agent_id == as_uuid(agent_id))
            result = await session.execute(q)
            return list(result.scalars().all())

    async def count(self) -> int:
        async with self._db.session() as session:
            result = await session.execute(select(func.count()).select_from(AgentMemory))
            return int(result.scalar_one())

    async def delete_matching(self, topic: str) -> int:
        """Delete memories whose content contains ``topic`` (case-insensitive)."""
        async with self._db.session() as session:
            result = await session.execute(
                delete(AgentMemory).where(AgentMemory.content.ilike(f"%{topic}%"))
            )
            await session.commit()
            logger.info("Deleted %d memories matching %r", result.rowcount, topic)
            return result.rowcount
