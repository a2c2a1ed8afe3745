"""Dramatiq actors that trigger pipeline runs.

Usage
-----
Queue a full ingest, aggregate and refresh cycle:

>>> run_cycle_job.send(database_url="postgresql+asyncpg://...")

Queue a refresh of derived views only:

>>> refresh_views_job.send(database_url="postgresql+asyncpg://...")

Both actors return the cycle result as plain builtins so it can travel
through a result backend.
"""

from __future__ import annotations

import asyncio
import threading
import typing as typ

import dramatiq
import msgspec
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cairn.pipeline._broker import ensure_broker_configured
from cairn.pipeline.factory import build_pipeline

if typ.TYPE_CHECKING:
    from cairn.pipeline.service import CycleResult, EngagementPipeline

type SessionFactory = async_sessionmaker[AsyncSession]

# Reused across actor invocations within a worker process.
_ENGINE_CACHE: dict[str, AsyncEngine] = {}
_SESSION_FACTORY_CACHE: dict[str, SessionFactory] = {}
_PIPELINE_CACHE: dict[str, EngagementPipeline] = {}
_CACHE_LOCK = threading.Lock()


def _ensure_session_factory_locked(database_url: str) -> SessionFactory:
    """Return the cached session factory for *database_url*, creating it if absent.

    Precondition: the caller **must** hold ``_CACHE_LOCK``.
    """
    if database_url not in _SESSION_FACTORY_CACHE:
        if database_url not in _ENGINE_CACHE:
            _ENGINE_CACHE[database_url] = create_async_engine(database_url)
        _SESSION_FACTORY_CACHE[database_url] = async_sessionmaker(
            _ENGINE_CACHE[database_url], expire_on_commit=False
        )
    return _SESSION_FACTORY_CACHE[database_url]


def _get_or_create_pipeline(database_url: str) -> EngagementPipeline:
    """Get or create the pipeline bound to *database_url*.

    Thread-safe: Dramatiq runs actors on several worker threads.
    """
    with _CACHE_LOCK:
        if database_url not in _PIPELINE_CACHE:
            session_factory = _ensure_session_factory_locked(database_url)
            _PIPELINE_CACHE[database_url] = build_pipeline(session_factory)
        return _PIPELINE_CACHE[database_url]


def _to_payload(result: CycleResult) -> dict[str, typ.Any]:
    return msgspec.to_builtins(result)


def _run_actor_async(
    database_url: str,
    async_fn: typ.Callable[[EngagementPipeline], typ.Awaitable[CycleResult]],
) -> dict[str, typ.Any]:
    """Run ``async_fn`` against the cached pipeline and serialise its result."""
    ensure_broker_configured()
    pipeline = _get_or_create_pipeline(database_url)
    return _to_payload(asyncio.run(async_fn(pipeline)))


@dramatiq.actor
def run_cycle_job(
    database_url: str,
    *,
    force_full_resync: bool = False,
) -> dict[str, typ.Any]:
    """Run one ingest, aggregate and refresh cycle.

    Parameters
    ----------
    database_url
        SQLAlchemy URL for the database.
    force_full_resync
        Re-fetch the whole backfill window and recompute aggregates with
        ``REPLACE`` regardless of the watermark.

    Returns
    -------
    dict[str, Any]
        The :class:`~cairn.pipeline.service.CycleResult` as builtins.

    """

    async def execute(pipeline: EngagementPipeline) -> CycleResult:
        return await pipeline.run_cycle(force_full_resync=force_full_resync)

    return _run_actor_async(database_url, execute)


@dramatiq.actor
def refresh_views_job(database_url: str) -> dict[str, typ.Any]:
    """Refresh every derived view without ingesting new events."""

    async def execute(pipeline: EngagementPipeline) -> CycleResult:
        return await pipeline.refresh_only()

    return _run_actor_async(database_url, execute)
