"""
Async SQLAlchemy session factories.

Celery workers call ``asyncio.run()`` once per task, so each task gets a
FRESH engine (``worker_session()``) instead of sharing a pooled engine
bound to a dead event loop.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from paystub.core.config import settings


def make_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    """Build an async engine (defaults to the configured Postgres URL)."""
    kwargs.setdefault("echo", False)
    if url is None:
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url or settings.DATABASE_URL, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """
    Session on a fresh engine for one Celery task.

    The caller owns commits; anything left uncommitted when an
    exception escapes is rolled back.
    """
    engine = make_engine()
    factory = make_session_factory(engine)
    try:
        async with factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()
