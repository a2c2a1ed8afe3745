"""Unit tests for the run audit trail, lag metrics and divergence."""

from __future__ import annotations

import datetime as dt
import typing as typ

import pytest

from cairn.bronze import RunStatus, WatermarkTracker
from cairn.pipeline import (
    IngestionHealthConfig,
    IngestionHealthService,
    IngestionRunRecorder,
    RunRecord,
    WatermarkDivergenceError,
)
from cairn.pipeline.lag import runs_diverged
from cairn.silver import MergeMode
from tests.helpers.event_builders import NOW, MutableClock, days_ago

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _record(  # noqa: PLR0913
    *,
    status: RunStatus = RunStatus.SUCCESS,
    started_at: dt.datetime = NOW,
    merge_mode: MergeMode = MergeMode.ADD,
    inserted: int = 5,
    updated: int = 2,
    error_category: str | None = None,
) -> RunRecord:
    return RunRecord(
        source_name="mixpanel",
        status=status,
        started_at=started_at,
        merge_mode=merge_mode.value,
        events_fetched=inserted,
        events_inserted=inserted,
        entities_updated=updated,
        error_category=error_category,
    )


@pytest.mark.asyncio
async def test_recent_runs_newest_first(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Runs come back newest first and can be limited to successes."""
    recorder = IngestionRunRecorder(session_factory)
    await recorder.record(_record(started_at=days_ago(3)))
    await recorder.record(_record(started_at=days_ago(1), status=RunStatus.FAILED))
    await recorder.record(_record(started_at=days_ago(2)))

    runs = await recorder.recent_runs("mixpanel")
    successes = await recorder.recent_runs("mixpanel", successful_only=True)
    last = await recorder.last_run("mixpanel")

    assert [run.started_at for run in runs] == [days_ago(1), days_ago(2), days_ago(3)]
    assert [run.started_at for run in successes] == [days_ago(2), days_ago(3)]
    assert last is not None
    assert last.status == RunStatus.FAILED.value
    assert await recorder.last_run("other") is None


class TestRunsDiverged:
    """Tests for the divergence rule."""

    def test_requires_enough_runs(self) -> None:
        """Fewer runs than required never diverge."""
        assert not runs_diverged([], 3)

    def test_empty_incremental_windows_diverge(self) -> None:
        """Consecutive incremental passes with nothing new are flagged."""

        class _Run:
            def __init__(self, mode: MergeMode, inserted: int) -> None:
                self.merge_mode = mode.value
                self.events_inserted = inserted

        add, replace = MergeMode.ADD, MergeMode.REPLACE
        stuck = [_Run(add, 0), _Run(add, 0), _Run(add, 0)]
        recovering = [_Run(add, 0), _Run(add, 4), _Run(add, 0)]
        after_backfill = [_Run(add, 0), _Run(add, 0), _Run(replace, 0)]
        busy = [_Run(add, 4), _Run(add, 2), _Run(add, 1)]

        assert runs_diverged(typ.cast("list", stuck), 3)
        assert not runs_diverged(typ.cast("list", recovering), 3)
        assert not runs_diverged(typ.cast("list", after_backfill), 3)
        assert not runs_diverged(typ.cast("list", busy), 3)


@pytest.mark.asyncio
async def test_unknown_source_has_no_lag(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Sources with no watermark and no run are unknown."""
    service = IngestionHealthService(session_factory)

    assert await service.get_lag_for_source("mixpanel") is None
    assert await service.get_all_source_lags() == []


@pytest.mark.asyncio
async def test_failing_source_without_watermark_is_stalled(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A source that only ever failed is known and stalled."""
    await IngestionRunRecorder(session_factory).record(
        _record(status=RunStatus.FAILED, error_category="transient")
    )
    service = IngestionHealthService(session_factory, clock=MutableClock())

    lag = await service.get_lag_for_source("mixpanel")

    assert lag is not None
    assert lag.is_stalled
    assert lag.last_event_time is None
    assert lag.last_run_status == RunStatus.FAILED.value
    assert lag.last_error_category == "transient"


@pytest.mark.asyncio
async def test_lag_measures_watermark_and_success_age(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Watermark age and time since success come from the clock."""
    await WatermarkTracker(session_factory).advance_watermark(
        "mixpanel", days_ago(2), 12
    )
    clock = MutableClock(dt.datetime.now(dt.UTC))
    service = IngestionHealthService(
        session_factory,
        config=IngestionHealthConfig(stalled_threshold=dt.timedelta(hours=26)),
        clock=clock,
    )

    fresh = await service.get_lag_for_source("mixpanel")
    clock.advance(dt.timedelta(hours=27))
    stalled = await service.get_stalled_sources()

    assert fresh is not None
    assert fresh.events_processed == 12
    assert fresh.last_event_time == days_ago(2)
    assert not fresh.is_stalled
    assert [lag.source_name for lag in stalled] == ["mixpanel"]


@pytest.mark.asyncio
async def test_divergence_detected_from_run_history(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Three successful incremental runs without new events diverge."""
    recorder = IngestionRunRecorder(session_factory)
    service = IngestionHealthService(
        session_factory, config=IngestionHealthConfig(divergence_runs=3)
    )
    await recorder.record(
        _record(started_at=days_ago(5), merge_mode=MergeMode.REPLACE)
    )
    for days in (3, 2):
        await recorder.record(_record(started_at=days_ago(days), inserted=0))
    await recorder.record(
        _record(started_at=days_ago(1.5), status=RunStatus.FAILED, inserted=0)
    )
    await service.ensure_not_diverged("mixpanel")

    await recorder.record(_record(started_at=days_ago(1), inserted=0))

    assert await service.is_diverged("mixpanel")
    with pytest.raises(WatermarkDivergenceError) as excinfo:
        await service.ensure_not_diverged("mixpanel")
    assert excinfo.value.runs == 3
    lag = await service.get_lag_for_source("mixpanel")
    assert lag is not None
    assert lag.is_diverged
