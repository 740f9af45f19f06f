"""Async database engine and session factory for the metadata store."""

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from abrworker.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


def create_engine(url: str = "") -> AsyncEngine:
    """Create an async engine for the given URL (settings.DATABASE_URL by default)."""
    return create_async_engine(url or settings.DATABASE_URL, pool_pre_ping=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
