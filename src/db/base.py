"""Async SQLAlchemy engine, session factory and declarative base."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def create_engine(database_url: str) -> AsyncEngine:
    # Strip credentials for logging (everything before @ if present)
    safe_url = database_url.split("@")[-1] if "@" in database_url else database_url
    logger.info("connecting to database", extra={"database_url": safe_url})
    kwargs: dict = {"echo": False, "future": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_recycle=1800)
    return create_async_engine(database_url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_tables(engine: AsyncEngine) -> None:
    # Import for the side effect of registering every table on Base.metadata
    from src.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
