"""
Devoluções Console Database Session Management

Async SQLAlchemy engine and session factory.
Workers build short-lived engines through create_session_factory().
"""

from contextlib import asynccontextmanager

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def create_session_factory(database_url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine + session factory for worker processes (caller disposes the engine)."""
    worker_engine = create_async_engine(database_url)
    return worker_engine, async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def worker_session(database_url: str):
    """Yield a session bound to a throwaway engine, disposing it afterwards."""
    worker_engine, factory = create_session_factory(database_url)
    try:
        async with factory() as db:
            yield db
    finally:
        await worker_engine.dispose()
