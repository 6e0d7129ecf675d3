"""Message log -- audit trail of chat traffic in both directions."""

import logging
import uuid
from typing import Literal

from sqlalchemy import select

from flotilla.storage.database import Database
from flotilla.storage.models import MessageLog, as_uuid

logger = logging.getLogger(__name__)

Direction = Literal["inbound", "outbound"]


class MessageLogManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def log(
        self,
        chat_id: str,
        sender: str,
        content: str,
        direction: Direction,
        agent_id: uuid.UUID | str | None = None,
    ) -> None:
        async with self._db.session() as session:
            session.add(
                MessageLog(
                    chat_id=chat_id,
                    sender=sender,
                    content=content,
                    direction=direction,
                    agent_id=as_uuid(agent_id) if agent_id is not None else None,
                )
            )
            await session.commit()

    async def recent(self, chat_id: str, limit: int = 20) -> list[MessageLog]:
        """Last ``limit`` messages for a chat, oldest first."""
        async with self._db.session() as session:
            result = await session.execute(
                select(MessageLog)
                .where(MessageLog.chat_id == chat_id)
                .order_by(MessageLog.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))
