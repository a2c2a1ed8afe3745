"""Unit tests for the chunked upsert merger."""

from __future__ import annotations

import logging
import typing as typ

import pytest
from sqlalchemy import select

from cairn.silver import ChunkedUpsertMerger, EntityAggregate, MergeProgress
from cairn.silver.merger import MergeEventType, in_batches

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _writer(fail_on: str | None = None) -> typ.Callable[..., typ.Awaitable[int]]:
    async def work(session: AsyncSession, chunk: list[str]) -> int:
        for key in chunk:
            session.add(
                EntityAggregate(
                    metric_set="test", entity_id=key, subject_id=key, metrics={}
                )
            )
            if key == fail_on:
                msg = f"boom at {key}"
                raise RuntimeError(msg)
        return len(chunk)

    return work


async def _stored_keys(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    async with session_factory() as session:
        rows = await session.scalars(
            select(EntityAggregate.entity_id).order_by(EntityAggregate.entity_id)
        )
        return list(rows.all())


def test_in_batches_splits_sequences() -> None:
    """Slices never exceed the batch size."""
    assert list(in_batches([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(in_batches([], 2)) == []


def test_plan_sorts_and_deduplicates() -> None:
    """Chunks hold sorted, unique keys."""
    merger = ChunkedUpsertMerger(typ.cast("typ.Any", None), chunk_size=2)
    assert merger.plan(["c", "a", "b", "a"]) == [["a", "b"], ["c"]]


def test_chunk_size_must_be_positive() -> None:
    """A zero chunk size is rejected."""
    with pytest.raises(ValueError, match="chunk_size"):
        ChunkedUpsertMerger(typ.cast("typ.Any", None), chunk_size=0)


@pytest.mark.asyncio
async def test_run_commits_every_chunk(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Every key is written and the totals are reported."""
    merger = ChunkedUpsertMerger(session_factory, chunk_size=2)

    progress = await merger.run(["k3", "k1", "k2"], _writer(), label="test")

    assert progress.chunks_total == 2
    assert progress.chunks_committed == 2
    assert progress.rows_written == 3
    assert await _stored_keys(session_factory) == ["k1", "k2", "k3"]


@pytest.mark.asyncio
async def test_failing_chunk_rolls_back_alone(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Earlier chunks stay committed when a later one fails."""
    merger = ChunkedUpsertMerger(session_factory, chunk_size=2)
    progress = MergeProgress()

    with pytest.raises(RuntimeError, match="boom at k3"):
        await merger.run(
            ["k1", "k2", "k3", "k4"],
            _writer(fail_on="k3"),
            label="test",
            progress=progress,
        )

    assert progress.chunks_committed == 1
    assert progress.rows_written == 2
    assert await _stored_keys(session_factory) == ["k1", "k2"]


@pytest.mark.asyncio
async def test_chunk_events_are_logged(
    session_factory: async_sessionmaker[AsyncSession],
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Committed and failed chunks are logged with their event type."""
    merger = ChunkedUpsertMerger(session_factory, chunk_size=1)

    with (
        caplog.at_level(logging.INFO, logger="cairn.silver.merger"),
        pytest.raises(RuntimeError),
    ):
        await merger.run(["a", "b"], _writer(fail_on="b"), label="demo")

    messages = [record.getMessage() for record in caplog.records]
    assert any(MergeEventType.CHUNK_COMMITTED in message for message in messages)
    failed = [r for r in caplog.records if MergeEventType.CHUNK_FAILED in r.getMessage()]
    assert len(failed) == 1
    assert failed[0].levelno == logging.ERROR
    assert "first_key=b" in failed[0].getMessage()
