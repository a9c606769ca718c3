from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


def create_session_factory(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine + session factory bound to the current event loop.

    Worker tasks run under asyncio.run(), so each task builds its own and
    disposes the engine when done.
    """
    engine = create_async_engine(database_url, future=True, echo=False)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
