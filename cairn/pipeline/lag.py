"""Ingestion lag and health query services.

Answers "how far behind is source Y?" from watermarks and the ingestion run
audit trail, and flags stalled or diverging sources.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import typing as typ

from sqlalchemy import select

from cairn.bronze.storage import IngestionRun, RunStatus, Watermark
from cairn.common.time import utcnow
from cairn.silver.aggregation import MergeMode

from .errors import WatermarkDivergenceError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.common.time import Clock


@dataclasses.dataclass(frozen=True, slots=True)
class IngestionHealthConfig:
    """Thresholds for ingestion health."""

    stalled_threshold: dt.timedelta = dataclasses.field(
        default_factory=lambda: dt.timedelta(hours=26)
    )
    divergence_runs: int = 3


@dataclasses.dataclass(frozen=True, slots=True)
class IngestionLagMetrics:
    """Computed lag metrics for one source."""

    source_name: str
    last_event_time: dt.datetime | None
    watermark_age_seconds: float | None
    seconds_since_last_success: float | None
    events_processed: int
    last_run_status: str | None
    last_error_category: str | None
    is_stalled: bool
    is_diverged: bool


def runs_diverged(runs: cabc.Sequence[IngestionRun], required: int) -> bool:
    """Return True when the newest ``required`` runs were empty incremental passes.

    ``runs`` are successful runs, newest first. A backfill or forced resync
    in the streak resets it, as does any incremental pass that stored new
    events. Events re-read from the overlap are duplicates and do not count.
    """
    if required < 1 or len(runs) < required:
        return False
    return all(
        run.merge_mode == MergeMode.ADD.value and run.events_inserted == 0
        for run in runs[:required]
    )


def _compute_lag_metrics(
    source_name: str,
    watermark: Watermark | None,
    last_run: IngestionRun | None,
    *,
    diverged: bool,
    now: dt.datetime,
    stalled_threshold: dt.timedelta,
) -> IngestionLagMetrics:
    if watermark is None:
        last_event_time = None
        watermark_age = None
        since_success = None
        events_processed = 0
        # Never succeeded: treat as stalled.
        is_stalled = True
    else:
        last_event_time = watermark.last_event_time
        watermark_age = (now - watermark.last_event_time).total_seconds()
        since_success = (now - watermark.updated_at).total_seconds()
        events_processed = watermark.events_processed
        is_stalled = since_success > stalled_threshold.total_seconds()

    return IngestionLagMetrics(
        source_name=source_name,
        last_event_time=last_event_time,
        watermark_age_seconds=watermark_age,
        seconds_since_last_success=since_success,
        events_processed=events_processed,
        last_run_status=last_run.status if last_run else None,
        last_error_category=last_run.error_category if last_run else None,
        is_stalled=is_stalled,
        is_diverged=diverged,
    )


class IngestionHealthService:
    """Query ingestion lag and health per source.

    Sources are known either through a watermark or through at least one
    recorded run, so a source that has only ever failed still shows up.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: IngestionHealthConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Create a health service bound to a database session factory."""
        self._session_factory = session_factory
        self._config = config or IngestionHealthConfig()
        self._clock = clock

    async def _known_sources(self, session: AsyncSession) -> list[str]:
        watermarked = await session.scalars(select(Watermark.source_name))
        audited = await session.scalars(select(IngestionRun.source_name).distinct())
        return sorted(set(watermarked.all()) | set(audited.all()))

    async def _recent_runs(
        self,
        session: AsyncSession,
        source_name: str,
        *,
        limit: int,
        successful_only: bool,
    ) -> list[IngestionRun]:
        stmt = select(IngestionRun).where(IngestionRun.source_name == source_name)
        if successful_only:
            stmt = stmt.where(IngestionRun.status == RunStatus.SUCCESS.value)
        stmt = stmt.order_by(IngestionRun.started_at.desc(), IngestionRun.id.desc())
        return list((await session.scalars(stmt.limit(limit))).all())

    async def _diverged(self, session: AsyncSession, source_name: str) -> bool:
        required = self._config.divergence_runs
        runs = await self._recent_runs(
            session, source_name, limit=required, successful_only=True
        )
        return runs_diverged(runs, required)

    async def _lag_for(
        self, session: AsyncSession, source_name: str, now: dt.datetime
    ) -> IngestionLagMetrics:
        watermark = await session.scalar(
            select(Watermark).where(Watermark.source_name == source_name)
        )
        last_runs = await self._recent_runs(
            session, source_name, limit=1, successful_only=False
        )
        return _compute_lag_metrics(
            source_name,
            watermark,
            last_runs[0] if last_runs else None,
            diverged=await self._diverged(session, source_name),
            now=now,
            stalled_threshold=self._config.stalled_threshold,
        )

    async def get_lag_for_source(self, source_name: str) -> IngestionLagMetrics | None:
        """Compute lag metrics for a single source.

        Returns None if the source has neither a watermark nor a recorded run.
        """
        async with self._session_factory() as session:
            if source_name not in await self._known_sources(session):
                return None
            return await self._lag_for(session, source_name, self._clock())

    async def get_all_source_lags(self) -> list[IngestionLagMetrics]:
        """Compute lag metrics for every known source, ordered by name."""
        now = self._clock()
        async with self._session_factory() as session:
            return [
                await self._lag_for(session, name, now)
                for name in await self._known_sources(session)
            ]

    async def get_stalled_sources(self) -> list[IngestionLagMetrics]:
        """Return sources with no successful run inside the stalled threshold."""
        return [lag for lag in await self.get_all_source_lags() if lag.is_stalled]

    async def is_diverged(self, source_name: str) -> bool:
        """Return True when recent incremental runs found no new events."""
        async with self._session_factory() as session:
            return await self._diverged(session, source_name)

    async def ensure_not_diverged(self, source_name: str) -> None:
        """Raise if the source's watermark appears to have diverged.

        Raises
        ------
        WatermarkDivergenceError
            When the last ``divergence_runs`` successful runs were all
            incremental passes whose fetch window held no new events.

        """
        if await self.is_diverged(source_name):
            raise WatermarkDivergenceError(source_name, self._config.divergence_runs)
