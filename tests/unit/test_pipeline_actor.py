"""Unit tests for the Dramatiq pipeline actors."""

from __future__ import annotations

import typing as typ

import pytest

from cairn.pipeline import (
    EngagementPipeline,
    IterableEventSource,
    PipelineDependencies,
    actor,
)
from tests.helpers.event_builders import MutableClock, days_ago, portfolio_view

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

DATABASE_URL = "sqlite+aiosqlite:///actor-test.db"


@pytest.fixture
def cached_pipeline(
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> EngagementPipeline:
    """Place a test pipeline in the actor cache for ``DATABASE_URL``."""
    pipeline = EngagementPipeline(
        PipelineDependencies(
            session_factory,
            IterableEventSource([portfolio_view("u1", "ABC", "c1", days_ago(3))]),
        ),
        clock=MutableClock(),
    )
    monkeypatch.setitem(actor._PIPELINE_CACHE, DATABASE_URL, pipeline)
    return pipeline


def test_run_cycle_job_returns_builtins(cached_pipeline: EngagementPipeline) -> None:
    """The full-cycle actor returns a serialisable result."""
    del cached_pipeline

    payload = actor.run_cycle_job(DATABASE_URL)

    assert payload["status"] == "success"
    assert payload["merge_mode"] == "replace"
    assert payload["events_processed"] == 1
    assert isinstance(payload["views"], list)
    assert isinstance(payload["window_start"], str)


def test_forced_resync_uses_replace(cached_pipeline: EngagementPipeline) -> None:
    """A forced resync recomputes even after a successful cycle."""
    del cached_pipeline
    actor.run_cycle_job(DATABASE_URL)

    incremental = actor.run_cycle_job(DATABASE_URL)
    forced = actor.run_cycle_job(DATABASE_URL, force_full_resync=True)

    assert incremental["merge_mode"] == "add"
    assert forced["merge_mode"] == "replace"


def test_refresh_views_job(cached_pipeline: EngagementPipeline) -> None:
    """The refresh-only actor skips ingestion."""
    del cached_pipeline

    payload = actor.refresh_views_job(DATABASE_URL)

    assert payload["status"] == "success"
    assert payload["merge_mode"] is None
    assert payload["events_fetched"] == 0
    assert len(payload["views"]) == 6


def test_pipeline_is_built_once_per_url(
    monkeypatch: pytest.MonkeyPatch,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Session factories and pipelines are cached per database URL."""
    monkeypatch.setitem(actor._SESSION_FACTORY_CACHE, DATABASE_URL, session_factory)
    monkeypatch.setattr(actor, "_PIPELINE_CACHE", {})

    first = actor._get_or_create_pipeline(DATABASE_URL)
    second = actor._get_or_create_pipeline(DATABASE_URL)

    assert first is second
