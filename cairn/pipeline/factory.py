"""Build pipelines and event sources from environment configuration.

Shared by the Dramatiq actors and the runtime, which both start from a
session factory and ``CAIRN_*`` variables.
"""

from __future__ import annotations

import typing as typ

from .config import PipelineConfig
from .service import EngagementPipeline, PipelineDependencies
from .sources import IterableEventSource, JsonLinesEventSource

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from .sources import EventSource

__all__ = ["build_event_source", "build_pipeline"]


def build_event_source(config: PipelineConfig) -> EventSource:
    """Return the event source described by ``config``.

    An export file is read when ``events_path`` is set. Otherwise the source
    is empty, so a cycle only re-aggregates stored events and refreshes views.
    """
    if config.events_path is not None:
        return JsonLinesEventSource(config.events_path)
    return IterableEventSource()


def build_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig | None = None,
    *,
    source: EventSource | None = None,
) -> EngagementPipeline:
    """Assemble an :class:`EngagementPipeline` for ``session_factory``.

    Parameters
    ----------
    session_factory
        Async session factory for database access.
    config
        Pipeline settings; read from the environment when omitted.
    source
        Event source override; derived from ``config`` when omitted.

    """
    config = config or PipelineConfig.from_env()
    dependencies = PipelineDependencies(
        session_factory=session_factory,
        source=source or build_event_source(config),
    )
    return EngagementPipeline(dependencies, config)
