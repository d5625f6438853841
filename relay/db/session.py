import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from relay.domain.errors import StorageError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    # WAL lets the API process read while the scheduler writes (and vice versa)
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Store:
    """
    Owns the database engine and hands out transactional sessions.

    Every caller goes through transaction(), which commits on success and
    turns driver failures into StorageError.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = make_url(url)

        if self.url.get_backend_name() == "sqlite":
            database = self.url.database
            if database and database != ":memory:":
                try:
                    os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
                except OSError as e:
                    raise StorageError(f"Cannot create database directory for {database}: {e}") from e

        self.engine = create_async_engine(url, echo=echo, pool_pre_ping=True)

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragmas)

        self.sessionmaker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        # Tables are registered on Base.metadata at import time
        from relay.db import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialise schema: {e}") from e
        logger.info("Store ready at %s", self.url.render_as_string(hide_password=True))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.sessionmaker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise StorageError(f"Store operation failed: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()
