"""Unit tests for the de-duplicating raw event writer."""

from __future__ import annotations

import datetime as dt
import typing as typ

import pytest
from sqlalchemy import func, select

from cairn.bronze import (
    RawEvent,
    RawEventState,
    RawEventWriter,
    TimezoneAwareRequiredError,
    UnsupportedAttributeTypeError,
    make_dedupe_key,
)
from tests.helpers.event_builders import days_ago, envelope

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


async def _count_rows(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count()).select_from(RawEvent)))


class TestDedupeKey:
    """Tests for make_dedupe_key."""

    def test_same_event_same_key(self) -> None:
        """Identical envelopes share a key."""
        first = envelope("u1", "view", days_ago(3), discriminator="ins-1")
        second = envelope("u1", "view", days_ago(3), discriminator="ins-1")
        assert make_dedupe_key(first) == make_dedupe_key(second)

    def test_discriminator_separates_events(self) -> None:
        """Two events at the same instant differ by discriminator."""
        first = envelope("u1", "view", days_ago(3), discriminator="ins-1")
        second = envelope("u1", "view", days_ago(3), discriminator="ins-2")
        assert make_dedupe_key(first) != make_dedupe_key(second)

    def test_equivalent_offsets_share_a_key(self) -> None:
        """The same instant expressed in another offset is the same event."""
        moment = dt.datetime(2024, 7, 1, 12, 0, tzinfo=dt.UTC)
        shifted = moment.astimezone(dt.timezone(dt.timedelta(hours=2)))
        first = envelope("u1", "view", moment, discriminator="x")
        second = envelope("u1", "view", shifted, discriminator="x")
        assert make_dedupe_key(first) == make_dedupe_key(second)

    def test_attributes_used_without_discriminator(self) -> None:
        """Without a discriminator, attribute content distinguishes events."""
        first = envelope("u1", "view", days_ago(3), portfolioTicker="ABC")
        second = envelope("u1", "view", days_ago(3), portfolioTicker="XYZ")
        assert make_dedupe_key(first) != make_dedupe_key(second)

    def test_attribute_order_does_not_matter(self) -> None:
        """The attribute hash is canonical."""
        first = envelope("u1", "view", days_ago(3), a=1, b=2)
        second = envelope("u1", "view", days_ago(3), b=2, a=1)
        assert make_dedupe_key(first) == make_dedupe_key(second)

    def test_naive_event_time_rejected(self) -> None:
        """Naive event times cannot be keyed."""
        naive = dt.datetime(2024, 7, 1, 12, 0)  # noqa: DTZ001 - intentional naive value
        with pytest.raises(TimezoneAwareRequiredError):
            make_dedupe_key(envelope("u1", "view", naive))


@pytest.mark.asyncio
async def test_ingest_batch_inserts_new_events(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """New events are stored pending aggregation."""
    writer = RawEventWriter(session_factory)
    result = await writer.ingest_batch(
        [
            envelope("u1", "view", days_ago(3), discriminator="a"),
            envelope("u1", "view", days_ago(2), discriminator="b"),
        ]
    )

    assert result.received == 2
    assert result.inserted == 2
    assert result.duplicates == 0
    async with session_factory() as session:
        states = (await session.scalars(select(RawEvent.aggregation_state))).all()
    assert set(states) == {RawEventState.PENDING.value}


@pytest.mark.asyncio
async def test_reingesting_the_same_batch_inserts_nothing(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """An overlapping re-fetch leaves the store unchanged."""
    writer = RawEventWriter(session_factory)
    batch = [
        envelope("u1", "view", days_ago(3), discriminator="a"),
        envelope("u2", "copy", days_ago(2), discriminator="b"),
    ]
    await writer.ingest_batch(batch)
    again = await writer.ingest_batch(batch)

    assert again.inserted == 0
    assert again.duplicates == 2
    assert await _count_rows(session_factory) == 2


@pytest.mark.asyncio
async def test_duplicates_inside_one_batch_are_collapsed(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Repeated events inside the input are stored once."""
    writer = RawEventWriter(session_factory)
    event = envelope("u1", "view", days_ago(3), discriminator="a")
    result = await writer.ingest_batch([event, event, event])

    assert result.received == 3
    assert result.inserted == 1


@pytest.mark.asyncio
async def test_small_batches_commit_independently(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Batches smaller than the input still store every event."""
    writer = RawEventWriter(session_factory, batch_size=2)
    events = [
        envelope("u1", "view", days_ago(3), discriminator=str(index))
        for index in range(5)
    ]
    result = await writer.ingest_batch(events)

    assert result.inserted == 5
    assert await _count_rows(session_factory) == 5


@pytest.mark.asyncio
async def test_attribute_datetimes_are_stored_as_iso_strings(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Aware datetimes inside attributes are normalised to UTC strings."""
    writer = RawEventWriter(session_factory)
    seen_at = dt.datetime(2024, 7, 1, 14, 0, tzinfo=dt.timezone(dt.timedelta(hours=2)))
    await writer.ingest_batch(
        [envelope("u1", "view", days_ago(3), discriminator="a", seen_at=seen_at)]
    )

    async with session_factory() as session:
        stored = await session.scalar(select(RawEvent))
    assert stored is not None
    assert stored.attributes["seen_at"] == "2024-07-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_unsupported_attribute_type_rejected(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Attributes must be JSON-safe."""
    writer = RawEventWriter(session_factory)
    with pytest.raises(UnsupportedAttributeTypeError):
        await writer.ingest_batch(
            [envelope("u1", "view", days_ago(3), payload={1, 2})]
        )


def test_batch_size_must_be_positive() -> None:
    """A zero batch size is a configuration error."""
    with pytest.raises(ValueError, match="batch_size"):
        RawEventWriter(typ.cast("typ.Any", None), batch_size=0)
