"""Per-source watermarks and the fetch-window policy they drive."""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy import select

from cairn.bronze.errors import TimezoneAwareRequiredError
from cairn.bronze.storage import RunStatus, Watermark
from cairn.common.time import utcnow

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

DEFAULT_ROLLING_WINDOW = dt.timedelta(days=60)


@dataclasses.dataclass(frozen=True, slots=True)
class FetchWindowPolicy:
    """Bounds applied when turning a watermark into a fetch window.

    Attributes
    ----------
    overlap
        Re-fetched span before the watermark, absorbing late-arriving events.
    safety_lag
        Span before ``now`` that is never fetched because the source may still
        be filling it in.
    backfill_lookback
        How far back the first pass for a source reaches.

    """

    overlap: dt.timedelta = dt.timedelta(hours=2)
    safety_lag: dt.timedelta = dt.timedelta(days=1)
    backfill_lookback: dt.timedelta = DEFAULT_ROLLING_WINDOW


@dataclasses.dataclass(frozen=True, slots=True)
class FetchWindow:
    """Half-open ``[start, end)`` range of event times to request.

    Only fetching uses this shape. Aggregation counts events in the closed
    range ``[as_of - window, as_of]``.
    """

    start: dt.datetime
    end: dt.datetime
    is_backfill: bool

    @property
    def is_empty(self) -> bool:
        """Return True when the window covers no time at all."""
        return self.start >= self.end

    def contains(self, moment: dt.datetime) -> bool:
        """Return True when ``moment`` falls inside the window."""
        return self.start <= moment < self.end


def compute_fetch_window(
    watermark_time: dt.datetime | None,
    now: dt.datetime,
    policy: FetchWindowPolicy | None = None,
) -> FetchWindow:
    """Derive the next fetch window for a source.

    Without a watermark the window starts ``backfill_lookback`` before ``now``
    and the pass is flagged as a backfill. Otherwise it starts ``overlap``
    before the watermark. The end is always ``now - safety_lag``; an inverted
    window is clamped to empty rather than raising.
    """
    if now.tzinfo is None:
        raise TimezoneAwareRequiredError.for_event_time()
    policy = policy or FetchWindowPolicy()
    end = now - policy.safety_lag
    if watermark_time is None:
        start = now - policy.backfill_lookback
        is_backfill = True
    else:
        start = watermark_time - policy.overlap
        is_backfill = False
    return FetchWindow(start=min(start, end), end=end, is_backfill=is_backfill)


class WatermarkTracker:
    """Read and advance per-source watermarks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Store the session factory used for watermark access."""
        self._session_factory = session_factory

    async def get_watermark(self, source_name: str) -> Watermark | None:
        """Return the watermark row, or None if the source never succeeded."""
        async with self._session_factory() as session:
            return await session.scalar(
                select(Watermark).where(Watermark.source_name == source_name)
            )

    async def list_watermarks(self) -> list[Watermark]:
        """Return every watermark ordered by source name."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(Watermark).order_by(Watermark.source_name)
            )
            return list(rows.all())

    async def advance_watermark(
        self,
        source_name: str,
        new_time: dt.datetime | None,
        events_count: int,
    ) -> Watermark | None:
        """Record a successful pass and move the watermark forward.

        The stored time becomes ``max(stored, new_time)`` so retries or
        out-of-order calls can never move it backwards. ``new_time`` is None
        when the pass saw no events: an existing row only has its status and
        ``updated_at`` touched, and a missing row stays missing.
        """
        if new_time is not None and new_time.tzinfo is None:
            raise TimezoneAwareRequiredError.for_event_time()

        async with self._session_factory() as session, session.begin():
            row = await session.scalar(
                select(Watermark)
                .where(Watermark.source_name == source_name)
                .with_for_update()
            )
            if row is None:
                if new_time is None:
                    return None
                row = Watermark(
                    source_name=source_name,
                    last_event_time=new_time,
                    events_processed=events_count,
                )
                session.add(row)
            else:
                if new_time is not None and new_time > row.last_event_time:
                    row.last_event_time = new_time
                row.events_processed += events_count
            row.last_run_status = RunStatus.SUCCESS.value
            row.updated_at = utcnow()
            await session.flush()
            await session.refresh(row)
        return row
