"""Conversation manager -- per-agent turn history and lifecycle."""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import func, select

from flotilla.storage.database import Database
from flotilla.storage.models import Conversation, as_uuid

logger = logging.getLogger(__name__)


def make_turn(role: str, content: str) -> dict:
    return {"role": role, "content": content, "timestamp": datetime.now(UTC).isoformat()}


class ConversationManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def create(self, agent_id: uuid.UUID | str) -> Conversation:
        async with self._db.session() as session:
            conversation = Conversation(agent_id=as_uuid(agent_id), messages=[], status="active")
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)
            logger.debug("Created conversation %s", conversation.id.hex[:8])
            return conversation

    async def get(self, conversation_id: uuid.UUID | str) -> Conversation | None:
        async with self._db.session() as session:
            return await session.get(Conversation, as_uuid(conversation_id))

    async def get_active(self, agent_id: uuid.UUID | str) -> Conversation | None:
        """Most recently active conversation still open for this agent."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Conversation)
                .where(Conversation.agent_id == as_uuid(agent_id))
                .where(Conversation.status == "active")
                .order_by(Conversation.last_active.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def append_turns(self, conversation_id: uuid.UUID | str, turns: list[dict]) -> None:
        async with self._db.session() as session:
            conversation = await session.get(Conversation, as_uuid(conversation_id))
            if conversation is None:
                logger.warning("Cannot append to missing conversation %s", conversation_id)
                return
            # JSON columns are not mutation-tracked; assign a new list
            conversation.messages = [*conversation.messages, *turns]
            conversation.last_active = datetime.now(UTC)
            await session.commit()

    async def get_turns(self, conversation_id: uuid.UUID | str, limit: int | None = None) -> list[dict]:
        conversation = await self.get(conversation_id)
        if conversation is None:
            return []
        turns = list(conversation.messages)
        return turns[-limit:] if limit else turns

    async def summarize(self, conversation_id: uuid.UUID | str, summary: str) -> None:
        await self._set_status(conversation_id, "summarized", summary=summary)

    async def archive(self, conversation_id: uuid.UUID | str) -> None:
        await self._set_status(conversation_id, "archived")

    async def _set_status(self, conversation_id: uuid.UUID | str, status: str, summary: str | None = None) -> None:
        async with self._db.session() as session:
            conversation = await session.get(Conversation, as_uuid(conversation_id))
            if conversation is None:
                return
            conversation.status = status
            if summary is not None:
                conversation.summary = summary
            await session.commit()
            logger.info("Conversation %s -> %s", conversation.id.hex[:8], status)

    async def count(self, agent_id: uuid.UUID | str | None = None) -> int:
        async with self._db.session() as session:
            q = select(func.count()).select_from(Conversation)
            if agent_id is not None:
                q = q.where(Conversation.agent_id == as_uuid(agent_id))
            result = await session.execute(q)
            return int(result.scalar_one())
