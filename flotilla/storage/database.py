"""Async engine and sessions.

Postgres through asyncpg in production. sqlite through aiosqlite for tests
and local runs, where pool sizing does not apply and tables come from the
ORM metadata instead of the SQL migrations.
"""

import logging

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flotilla.config import Settings
from flotilla.storage.migrator import run_migrations
from flotilla.storage.models import Base

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, settings: Settings) -> None:
        self.url = make_url(settings.db_url)
        options: dict = {"echo": settings.log_level == "debug"}
        if self.is_postgres:
            options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
            )
        self.engine = create_async_engine(self.url, **options)
        self._sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @property
    def is_postgres(self) -> bool:
        return self.url.get_backend_name() == "postgresql"

    async def connect(self) -> None:
        """Fail fast when the database is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connected: %s", self.url.render_as_string(hide_password=True))

    async def prepare_schema(self) -> None:
        if self.is_postgres:
            await run_migrations(self.engine)
        else:
            await self.create_all()

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def session(self) -> AsyncSession:
        """New session; use as ``async with db.session() as session``."""
        return self._sessions()

    async def disconnect(self) -> None:
        await self.engine.dispose()
