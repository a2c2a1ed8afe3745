"""Unit tests for watermarks and fetch windows."""

from __future__ import annotations

import datetime as dt
import typing as typ

import pytest

from cairn.bronze import (
    FetchWindowPolicy,
    RunStatus,
    TimezoneAwareRequiredError,
    WatermarkTracker,
    compute_fetch_window,
)
from tests.helpers.event_builders import NOW, days_ago

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class TestComputeFetchWindow:
    """Tests for compute_fetch_window."""

    def test_first_run_uses_backfill_lookback(self) -> None:
        """Without a watermark the window reaches back the full lookback."""
        window = compute_fetch_window(None, NOW)

        assert window.is_backfill
        assert window.start == NOW - dt.timedelta(days=60)
        assert window.end == NOW - dt.timedelta(days=1)

    def test_incremental_window_starts_before_watermark(self) -> None:
        """Later runs re-fetch the overlap before the watermark."""
        watermark = days_ago(5)
        window = compute_fetch_window(watermark, NOW)

        assert not window.is_backfill
        assert window.start == watermark - dt.timedelta(hours=2)
        assert window.end == NOW - dt.timedelta(days=1)

    def test_custom_policy(self) -> None:
        """Policy values drive both ends of the window."""
        policy = FetchWindowPolicy(
            overlap=dt.timedelta(hours=6),
            safety_lag=dt.timedelta(hours=1),
            backfill_lookback=dt.timedelta(days=30),
        )
        first = compute_fetch_window(None, NOW, policy)
        later = compute_fetch_window(days_ago(2), NOW, policy)

        assert first.start == NOW - dt.timedelta(days=30)
        assert later.start == days_ago(2) - dt.timedelta(hours=6)
        assert later.end == NOW - dt.timedelta(hours=1)

    def test_watermark_inside_safety_lag_gives_empty_window(self) -> None:
        """A watermark newer than the safe end clamps to an empty window."""
        window = compute_fetch_window(NOW - dt.timedelta(minutes=5), NOW)

        assert window.is_empty
        assert window.start == window.end

    def test_window_is_half_open(self) -> None:
        """The start is included and the end excluded."""
        window = compute_fetch_window(None, NOW)

        assert window.contains(window.start)
        assert not window.contains(window.end)

    def test_naive_now_rejected(self) -> None:
        """``now`` must be timezone aware."""
        with pytest.raises(TimezoneAwareRequiredError):
            compute_fetch_window(None, dt.datetime(2024, 7, 1))  # noqa: DTZ001 - intentional naive value


@pytest.mark.asyncio
async def test_missing_watermark_is_none(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A source that never succeeded has no watermark."""
    tracker = WatermarkTracker(session_factory)
    assert await tracker.get_watermark("mixpanel") is None


@pytest.mark.asyncio
async def test_advance_creates_watermark(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """The first successful pass creates the row."""
    tracker = WatermarkTracker(session_factory)
    row = await tracker.advance_watermark("mixpanel", days_ago(2), 10)

    assert row is not None
    assert row.last_event_time == days_ago(2)
    assert row.events_processed == 10
    assert row.last_run_status == RunStatus.SUCCESS.value


@pytest.mark.asyncio
async def test_watermark_never_moves_backwards(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """An older time leaves the stored watermark in place."""
    tracker = WatermarkTracker(session_factory)
    await tracker.advance_watermark("mixpanel", days_ago(2), 5)
    row = await tracker.advance_watermark("mixpanel", days_ago(10), 3)

    assert row is not None
    assert row.last_event_time == days_ago(2)
    assert row.events_processed == 8


@pytest.mark.asyncio
async def test_watermark_moves_forward(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A newer time replaces the stored watermark."""
    tracker = WatermarkTracker(session_factory)
    await tracker.advance_watermark("mixpanel", days_ago(5), 1)
    await tracker.advance_watermark("mixpanel", days_ago(2), 1)

    row = await tracker.get_watermark("mixpanel")
    assert row is not None
    assert row.last_event_time == days_ago(2)


@pytest.mark.asyncio
async def test_empty_pass_without_watermark_creates_nothing(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A pass that saw no events cannot invent a watermark."""
    tracker = WatermarkTracker(session_factory)

    assert await tracker.advance_watermark("mixpanel", None, 0) is None
    assert await tracker.list_watermarks() == []


@pytest.mark.asyncio
async def test_empty_pass_keeps_existing_time(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """A pass with no events keeps the time but records the success."""
    tracker = WatermarkTracker(session_factory)
    await tracker.advance_watermark("mixpanel", days_ago(3), 4)
    row = await tracker.advance_watermark("mixpanel", None, 0)

    assert row is not None
    assert row.last_event_time == days_ago(3)
    assert row.events_processed == 4


@pytest.mark.asyncio
async def test_watermarks_are_per_source(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Each source owns exactly one watermark row."""
    tracker = WatermarkTracker(session_factory)
    await tracker.advance_watermark("mixpanel", days_ago(3), 1)
    await tracker.advance_watermark("amplitude", days_ago(4), 1)
    await tracker.advance_watermark("mixpanel", days_ago(2), 1)

    rows = await tracker.list_watermarks()
    assert [row.source_name for row in rows] == ["amplitude", "mixpanel"]
