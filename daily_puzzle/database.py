"""
Database connection and initialization
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .models import Base
from . import config

_LOGGER = logging.getLogger(__name__)


class Database:
    """Process-wide engine and session factory.

    Built once at application start and disposed at shutdown; the driver
    pools connections, so sessions are cheap to open per request.
    """

    def __init__(self, url: str | None = None, echo: bool = False) -> None:
        self.url = url or config.DATABASE_URL
        self.engine = create_async_engine(
            self.url,
            echo=echo,
            pool_pre_ping=True,
            connect_args={"timeout": config.DB_CONNECT_TIMEOUT},
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def init(self) -> None:
        """Create tables (and the SQLite data directory) if missing."""
        url = make_url(self.url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            directory = os.path.dirname(url.database)
            if directory:
                os.makedirs(directory, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def health_check(self, retries: int | None = None, delay: float = 0.5) -> dict:
        """Ping the database, retrying a few times before reporting unhealthy."""
        retries = retries or config.DB_HEALTH_RETRIES
        last_error = None

        for attempt in range(1, retries + 1):
            try:
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                return {"healthy": True, "attempts": attempt}
            except Exception as e:
                last_error = e
                _LOGGER.warning("Database health check failed (attempt %d/%d): %s", attempt, retries, e)
                if attempt < retries:
                    await asyncio.sleep(delay * attempt)

        return {"healthy": False, "attempts": retries, "error": str(last_error)}


def get_database(request: Request) -> Database:
    """The Database attached to the running application."""
    return request.app.state.database


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Get database session (dependency injection for FastAPI)"""
    async with get_database(request).session() as session:
        yield session
