"""Unit tests for dependency-ordered view refresh."""

from __future__ import annotations

import asyncio
import datetime as dt
import typing as typ

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cairn.gold import (
    CopyEngagementSummary,
    CreatorBreakdown,
    CreatorEngagementMetrics,
    DerivedViewNode,
    RefreshLogEntry,
    RefreshMode,
    RefreshOrchestrator,
    RefreshStatus,
    ViewRegistry,
)
from cairn.gold.observability import RefreshEventType
from tests.helpers.event_builders import MutableClock
from tests.helpers.femtologging_capture import capture_femto_logs

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.bronze import Base
    from cairn.gold.orchestrator import ViewRefreshResult


def _rows(*rows: dict[str, typ.Any]) -> typ.Callable[..., typ.Awaitable[list]]:
    async def compute(session: AsyncSession) -> list[dict[str, typ.Any]]:
        del session
        return [dict(row) for row in rows]

    return compute


async def _boom(session: AsyncSession) -> list[dict[str, typ.Any]]:
    del session
    msg = "upstream table missing"
    raise RuntimeError(msg)


def _node(  # noqa: PLR0913
    name: str,
    table: type[Base],
    compute: typ.Callable[..., typ.Awaitable[list]],
    *dependencies: str,
    unique_key: tuple[str, ...] = (),
    refresh_mode: RefreshMode = RefreshMode.NON_BLOCKING,
) -> DerivedViewNode:
    return DerivedViewNode(
        name=name,
        dependencies=frozenset(dependencies),
        compute=compute,
        table=table,
        unique_key=unique_key,
        refresh_mode=refresh_mode,
    )


def _chain(mid_compute: typ.Callable[..., typ.Awaitable[list]]) -> ViewRegistry:
    return ViewRegistry(
        [
            _node(
                "base",
                CreatorBreakdown,
                _rows({"creator_id": "c1", "portfolio_count": 2}),
                unique_key=("creator_id",),
            ),
            _node(
                "mid",
                CreatorEngagementMetrics,
                mid_compute,
                "base",
                unique_key=("creator_id",),
            ),
            _node(
                "top",
                CopyEngagementSummary,
                _rows({"did_copy": True, "total_users": 1}),
                "mid",
                unique_key=("did_copy",),
            ),
        ]
    )


async def _log_entries(
    session_factory: async_sessionmaker[AsyncSession],
) -> list[RefreshLogEntry]:
    async with session_factory() as session:
        rows = await session.scalars(select(RefreshLogEntry).order_by(RefreshLogEntry.id))
        return list(rows.all())


@pytest.mark.asyncio
async def test_refresh_all_runs_every_view(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A healthy graph refreshes every view and logs one entry each."""
    orchestrator = RefreshOrchestrator(
        session_factory, _chain(_rows({"creator_id": "c1", "total_profile_views": 4}))
    )

    result = await orchestrator.refresh_all()

    assert result.succeeded == ("base", "mid", "top")
    assert result.failed == ()
    entries = await _log_entries(session_factory)
    assert [entry.view_name for entry in entries] == ["base", "mid", "top"]
    assert {entry.run_id for entry in entries} == {result.run_id}
    async with session_factory() as session:
        creator = await session.scalar(select(CreatorEngagementMetrics))
    assert creator is not None
    assert creator.total_profile_views == 4


@pytest.mark.asyncio
async def test_failure_skips_dependents_only(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A failed view skips its dependents while upstream stays refreshed."""
    orchestrator = RefreshOrchestrator(session_factory, _chain(_boom))

    result = await orchestrator.refresh_all()

    assert result.view("base").status is RefreshStatus.SUCCESS
    assert result.view("mid").status is RefreshStatus.ERROR
    assert "upstream table missing" in (result.view("mid").error or "")
    assert result.view("top").status is RefreshStatus.SKIPPED
    assert "'mid'" in (result.view("top").error or "")

    statuses = {e.view_name: e.status for e in await _log_entries(session_factory)}
    assert statuses == {"base": "success", "mid": "error", "top": "skipped"}
    async with session_factory() as session:
        assert await session.scalar(select(CopyEngagementSummary)) is None


@pytest.mark.asyncio
async def test_independent_views_still_run(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A failure does not stop views outside its subtree."""
    registry = ViewRegistry(
        [
            _node("broken", CreatorBreakdown, _boom, unique_key=("creator_id",)),
            _node(
                "healthy",
                CopyEngagementSummary,
                _rows({"did_copy": False, "total_users": 3}),
                unique_key=("did_copy",),
            ),
        ]
    )

    result = await RefreshOrchestrator(session_factory, registry).refresh_all()

    assert result.failed == ("broken",)
    assert result.succeeded == ("healthy",)


@pytest.mark.asyncio
async def test_slow_view_times_out(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A view exceeding its time budget is recorded as an error."""

    async def slow(session: AsyncSession) -> list[dict[str, typ.Any]]:
        del session
        await asyncio.sleep(5)
        return []

    registry = ViewRegistry(
        [_node("slow", CreatorBreakdown, slow, unique_key=("creator_id",))]
    )
    orchestrator = RefreshOrchestrator(
        session_factory, registry, view_timeout=dt.timedelta(milliseconds=50)
    )

    result = await orchestrator.refresh_all()

    assert result.view("slow").status is RefreshStatus.ERROR
    assert "timed out" in (result.view("slow").error or "")


@pytest.mark.asyncio
async def test_timeout_raised_by_view_is_an_ordinary_failure(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A TimeoutError from the view itself keeps its own message."""

    async def remote_call(session: AsyncSession) -> list[dict[str, typ.Any]]:
        del session
        msg = "warehouse query exceeded 30s"
        raise TimeoutError(msg)

    registry = ViewRegistry(
        [_node("remote", CreatorBreakdown, remote_call, unique_key=("creator_id",))]
    )
    unbounded = RefreshOrchestrator(session_factory, registry)
    bounded = RefreshOrchestrator(
        session_factory, registry, view_timeout=dt.timedelta(seconds=30)
    )

    for orchestrator in (unbounded, bounded):
        error = (await orchestrator.refresh_all()).view("remote").error or ""
        assert error == "TimeoutError: warehouse query exceeded 30s"
        assert "timed out" not in error


@pytest.mark.asyncio
async def test_non_blocking_refresh_only_touches_changes(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Re-running an unchanged keyed view affects no rows."""
    registry = ViewRegistry(
        [
            _node(
                "creators",
                CreatorBreakdown,
                _rows({"creator_id": "c1"}, {"creator_id": "c2"}),
                unique_key=("creator_id",),
            )
        ]
    )
    orchestrator = RefreshOrchestrator(session_factory, registry)

    first = await orchestrator.refresh_all()
    second = await orchestrator.refresh_all()

    assert first.view("creators").rows_affected == 2
    assert second.view("creators").rows_affected == 0
    assert second.view("creators").refresh_mode is RefreshMode.NON_BLOCKING


@pytest.mark.asyncio
async def test_keyless_view_refreshes_exclusively(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Views without a unique key replace their contents and log the fallback."""
    registry = ViewRegistry(
        [_node("summary", CopyEngagementSummary, _rows({"did_copy": True}))]
    )
    orchestrator = RefreshOrchestrator(session_factory, registry)

    with capture_femto_logs("cairn.gold.observability") as capture:
        result = await orchestrator.refresh_all()
        capture.wait_for_count(3)

    assert result.view("summary").refresh_mode is RefreshMode.EXCLUSIVE
    assert result.view("summary").rows_affected == 1
    assert any(RefreshEventType.MODE_FALLBACK in m for m in capture.messages)


@pytest.mark.asyncio
async def test_skipped_view_is_logged_as_warning(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Skips are reported with the upstream reason."""
    orchestrator = RefreshOrchestrator(session_factory, _chain(_boom))

    with capture_femto_logs("cairn.gold.observability") as capture:
        await orchestrator.refresh_all()
        capture.wait_for_count(5)

    skipped = [r for r in capture.records if RefreshEventType.VIEW_SKIPPED in r.message]
    assert len(skipped) == 1
    assert "view=top" in skipped[0].message


@pytest.mark.asyncio
async def test_log_entries_use_the_clock(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Refresh log timestamps come from the injected clock."""
    clock = MutableClock()
    registry = ViewRegistry(
        [_node("summary", CopyEngagementSummary, _rows({"did_copy": True}))]
    )

    result = await RefreshOrchestrator(session_factory, registry, clock=clock).refresh_all()

    entries = await _log_entries(session_factory)
    assert entries[0].run_at == clock.now
    assert result.started_at == clock.now


@pytest.mark.asyncio
async def test_failed_log_write_does_not_abort_run(
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A refresh log entry that cannot be stored is reported and skipped."""
    orchestrator = RefreshOrchestrator(
        session_factory, _chain(_rows({"creator_id": "c1", "total_profile_views": 1}))
    )
    append_log = orchestrator._append_log  # noqa: SLF001

    async def flaky_append(
        run_id: str, result: ViewRefreshResult, *, started_at: dt.datetime
    ) -> None:
        if result.name == "mid":
            raise OperationalError(
                "INSERT INTO refresh_log", {}, Exception("database is locked")
            )
        await append_log(run_id, result, started_at=started_at)

    monkeypatch.setattr(orchestrator, "_append_log", flaky_append)

    with capture_femto_logs("cairn.gold.observability") as capture:
        result = await orchestrator.refresh_all()
        capture.wait_for_count(6)

    assert result.succeeded == ("base", "mid", "top")
    entries = await _log_entries(session_factory)
    assert [entry.view_name for entry in entries] == ["base", "top"]
    failed = [r for r in capture.records if RefreshEventType.AUDIT_FAILED in r.message]
    assert len(failed) == 1
    assert "view=mid" in failed[0].message
    assert "error_type=OperationalError" in failed[0].message
