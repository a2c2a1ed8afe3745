"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import typing as typ

import dramatiq
import pytest_asyncio
from dramatiq.brokers.stub import StubBroker
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from cairn.bronze import init_bronze_storage
from cairn.gold import init_gold_storage
from cairn.silver import init_silver_storage

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

type SessionFactoryBuilder = cabc.Callable[
    [str], cabc.Awaitable[async_sessionmaker[AsyncSession]]
]

# Actor modules declare their actors at import time.
dramatiq.set_broker(StubBroker())


async def _init_all_storage(engine: AsyncEngine) -> None:
    """Initialise bronze, silver, and gold storage layers."""
    await init_bronze_storage(engine)
    await init_silver_storage(engine)
    await init_gold_storage(engine)


@pytest_asyncio.fixture
async def make_session_factory(
    tmp_path: Path,
) -> typ.AsyncIterator[SessionFactoryBuilder]:
    """Yield a builder for named, initialised SQLite databases.

    ``NullPool`` keeps connections out of the pool so feature steps can drive
    the same database from their own ``asyncio.run`` loops.
    """
    engines: list[AsyncEngine] = []

    async def build(name: str) -> async_sessionmaker[AsyncSession]:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / f'{name}.db'}", poolclass=NullPool
        )
        engines.append(engine)
        await _init_all_storage(engine)
        return async_sessionmaker(engine, expire_on_commit=False)

    try:
        yield build
    finally:
        for engine in engines:
            await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(
    make_session_factory: SessionFactoryBuilder,
) -> async_sessionmaker[AsyncSession]:
    """Return a fresh async session factory backed by a temporary SQLite file."""
    return await make_session_factory("cairn_test")
