"""Orchestrator key/value state and the tool-server registry table."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select

from flotilla.storage.database import Database
from flotilla.storage.models import OrchestratorState, ToolServer

logger = logging.getLogger(__name__)


class StateManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._db.session() as session:
            row = await session.get(OrchestratorState, key)
            return row.value if row is not None else default

    async def set(self, key: str, value: Any) -> None:
        async with self._db.session() as session:
            row = await session.get(OrchestratorState, key)
            if row is None:
                session.add(OrchestratorState(key=key, value=value))
            else:
                row.value = value
            await session.commit()


class ToolServerManager:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def list(self, scope: str | None = None, enabled_only: bool = True) -> list[ToolServer]:
        async with self._db.session() as session:
            q = select(ToolServer).order_by(ToolServer.name)
            if scope is not None:
                q = q.where(ToolServer.scope == scope)
            if enabled_only:
                q = q.where(ToolServer.enabled.is_(True))
            result = await session.execute(q)
            return list(result.scalars().all())

    async def upsert(
        self,
        name: str,
        transport: str,
        command: str | None = None,
        args: list[str] | None = None,
        url: str | None = None,
        env: dict[str, str] | None = None,
        scope: str = "global",
        enabled: bool = True,
    ) -> ToolServer:
        async with self._db.session() as session:
            result = await session.execute(select(ToolServer).where(ToolServer.name == name))
            server = result.scalar_one_or_none()
            if server is None:
                server = ToolServer(name=name)
                session.add(server)
            server.transport = transport
            server.command = command
            server.args = args or []
            server.url = url
            server.env = env or {}
            server.scope = scope
            server.enabled = enabled
            await session.commit()
            await session.refresh(server)
            logger.info("Tool server %s registered (scope=%s)", name, scope)
            return server

    async def delete(self, name: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(ToolServer).where(ToolServer.name == name))
            await session.commit()
            return result.rowcount > 0
