"""Ingest, aggregate and refresh cycle for one event source.

Usage
-----
Run one cycle against an in-memory source:

>>> from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
>>> from cairn.pipeline import (
...     EngagementPipeline,
...     IterableEventSource,
...     PipelineDependencies,
... )
>>>
>>> engine = create_async_engine("sqlite+aiosqlite:///cairn.db")
>>> session_factory = async_sessionmaker(engine, expire_on_commit=False)
>>> pipeline = EngagementPipeline(
...     PipelineDependencies(session_factory, IterableEventSource(events)),
... )
>>> result = await pipeline.run_cycle()

"""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import enum
import time
import typing as typ

from cairn.bronze.services import RawEventEnvelope, RawEventWriter
from cairn.bronze.storage import RunStatus
from cairn.bronze.watermarks import WatermarkTracker, compute_fetch_window
from cairn.common.time import utcnow
from cairn.gold.graph import build_default_registry
from cairn.gold.orchestrator import RefreshOrchestrator
from cairn.gold.storage import RefreshStatus
from cairn.silver.aggregation import AggregationEngine, MergeMode
from cairn.silver.catalog import build_engagement_catalog
from cairn.silver.merger import MergeProgress

from .config import PipelineConfig
from .lag import IngestionHealthConfig, IngestionHealthService
from .observability import PipelineEventLogger, categorize_error
from .runs import IngestionRunRecorder, RunRecord

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.bronze.watermarks import FetchWindow
    from cairn.common.time import Clock
    from cairn.gold.orchestrator import RefreshRunResult, ViewRefreshResult
    from cairn.gold.registry import ViewRegistry
    from cairn.silver.metrics import MetricCatalog

    from .sources import EventSource, SourceEvent


class CycleStatus(enum.StrEnum):
    """Overall outcome of a trigger invocation."""

    SUCCESS = "success"
    # Ingestion succeeded but at least one view errored or was skipped.
    PARTIAL = "partial"
    FAILED = "failed"


@dc.dataclass(frozen=True, slots=True)
class PipelineDependencies:
    """Mandatory collaborators of :class:`EngagementPipeline`.

    Attributes
    ----------
    session_factory
        Async session factory for database access.
    source
        Event source read by each cycle.

    """

    session_factory: async_sessionmaker[AsyncSession]
    source: EventSource


@dc.dataclass(frozen=True, slots=True)
class CycleResult:
    """Structured outcome of a full cycle or a refresh-only run."""

    status: CycleStatus
    source_name: str
    events_processed: int = 0
    entities_updated: int = 0
    events_fetched: int = 0
    chunks_committed: int = 0
    merge_mode: MergeMode | None = None
    window_start: dt.datetime | None = None
    window_end: dt.datetime | None = None
    watermark: dt.datetime | None = None
    diverged: bool = False
    refresh_run_id: str | None = None
    views: tuple[ViewRefreshResult, ...] = ()
    error_category: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        """Return True when ingestion and every view succeeded."""
        return self.status is CycleStatus.SUCCESS


def _refresh_status(refresh: RefreshRunResult) -> CycleStatus:
    if all(view.status is RefreshStatus.SUCCESS for view in refresh.views):
        return CycleStatus.SUCCESS
    return CycleStatus.PARTIAL


def _elapsed(perf_started: float) -> dt.timedelta:
    return dt.timedelta(seconds=time.perf_counter() - perf_started)


@dc.dataclass(slots=True)
class _Fetched:
    envelopes: list[RawEventEnvelope] = dc.field(default_factory=list)
    latest: dt.datetime | None = None


class EngagementPipeline:
    """Run ingest, aggregate and refresh for one source, one cycle at a time.

    Ingestion, aggregation and watermark failures abort the cycle: the
    watermark stays put, no views are refreshed and the failure is recorded
    in the run audit trail. Once the watermark has advanced, later failures
    only mark the cycle partial. No step raises out of a trigger; every
    outcome is a :class:`CycleResult`.
    """

    def __init__(  # noqa: PLR0913
        self,
        dependencies: PipelineDependencies,
        config: PipelineConfig | None = None,
        *,
        catalog: MetricCatalog | None = None,
        registry: ViewRegistry | None = None,
        event_logger: PipelineEventLogger | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Wire the pipeline stages together.

        Parameters
        ----------
        dependencies
            Session factory and event source.
        config
            Pipeline settings; defaults to :class:`PipelineConfig`.
        catalog
            Metric sets to maintain; defaults to the engagement catalog.
        registry
            Derived views to refresh; defaults to the shipped view graph.
        event_logger
            Structured logger for cycle events.
        clock
            Source of the current time.

        """
        session_factory = dependencies.session_factory
        self._config = config or PipelineConfig()
        self._source = dependencies.source
        self._clock = clock
        self._events = event_logger or PipelineEventLogger()
        self._writer = RawEventWriter(
            session_factory, batch_size=self._config.insert_batch_size
        )
        self._watermarks = WatermarkTracker(session_factory)
        self._engine = AggregationEngine(
            session_factory,
            catalog or build_engagement_catalog(),
            window=self._config.rolling_window,
            chunk_size=self._config.chunk_size,
            clock=clock,
        )
        self._orchestrator = RefreshOrchestrator(
            session_factory,
            registry or build_default_registry(),
            view_timeout=self._config.view_timeout,
            clock=clock,
        )
        self._runs = IngestionRunRecorder(session_factory)
        self._health = IngestionHealthService(
            session_factory,
            config=IngestionHealthConfig(
                divergence_runs=self._config.divergence_runs
            ),
            clock=clock,
        )

    @property
    def config(self) -> PipelineConfig:
        """Return the pipeline settings."""
        return self._config

    @property
    def orchestrator(self) -> RefreshOrchestrator:
        """Return the refresh orchestrator used by both triggers."""
        return self._orchestrator

    def _envelope(self, event: SourceEvent) -> RawEventEnvelope:
        discriminator = event.attributes.get(self._config.discriminator_attribute)
        return RawEventEnvelope(
            source_name=self._config.source_name,
            entity_id=event.entity_id,
            event_name=event.event_name,
            event_time=event.event_time,
            attributes=event.attributes,
            discriminator=None if discriminator is None else str(discriminator),
        )

    async def _fetch(self, window: FetchWindow) -> _Fetched:
        fetched = _Fetched()
        if window.is_empty:
            return fetched
        async for event in self._source.fetch(
            self._config.source_name, window.start, window.end
        ):
            fetched.envelopes.append(self._envelope(event))
            if fetched.latest is None or event.event_time > fetched.latest:
                fetched.latest = event.event_time
        return fetched

    async def run_cycle(self, *, force_full_resync: bool = False) -> CycleResult:
        """Run one ingest, aggregate and refresh cycle.

        The first pass for a source, or a forced resync, fetches the whole
        backfill window and recomputes aggregates with ``REPLACE``. Later
        passes fetch from the watermark minus the overlap and fold only new
        events with ``ADD``.
        """
        source_name = self._config.source_name
        started_at = self._clock()
        perf_started = time.perf_counter()

        try:
            watermark = await self._watermarks.get_watermark(source_name)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(
                RunRecord(
                    source_name=source_name,
                    status=RunStatus.FAILED,
                    started_at=started_at,
                ),
                exc,
                perf_started,
            )
        previous = None if watermark is None else watermark.last_event_time
        window = compute_fetch_window(
            None if force_full_resync else previous,
            started_at,
            self._config.fetch_policy(),
        )
        mode = (
            MergeMode.REPLACE
            if previous is None or force_full_resync
            else MergeMode.ADD
        )
        self._events.log_run_started(source_name, window, mode=mode)

        progress = MergeProgress()
        fetched = _Fetched()
        inserted = 0
        try:
            fetched = await self._fetch(window)
            ingest = await self._writer.ingest_batch(fetched.envelopes)
            inserted = ingest.inserted
            aggregation = await self._engine.aggregate(
                source_name, mode, as_of=started_at, progress=progress
            )
            advanced = await self._watermarks.advance_watermark(
                source_name, fetched.latest, inserted
            )
        except Exception as exc:  # noqa: BLE001
            return await self._fail(
                RunRecord(
                    source_name=source_name,
                    status=RunStatus.FAILED,
                    started_at=started_at,
                    window=window,
                    merge_mode=mode.value,
                    events_fetched=len(fetched.envelopes),
                    events_inserted=inserted,
                    entities_updated=progress.rows_written,
                    chunks_committed=progress.chunks_committed,
                ),
                exc,
                perf_started,
            )

        current = None if advanced is None else advanced.last_event_time
        self._events.log_watermark_advanced(source_name, previous, current)

        # The watermark is committed; later failures degrade the cycle only.
        error: Exception | None = None
        diverged = False
        try:
            await self._runs.record(
                RunRecord(
                    source_name=source_name,
                    status=RunStatus.SUCCESS,
                    started_at=started_at,
                    window=window,
                    merge_mode=mode.value,
                    events_fetched=len(fetched.envelopes),
                    events_inserted=inserted,
                    entities_updated=aggregation.entities_updated,
                    chunks_committed=aggregation.chunks_committed,
                ),
                finished_at=self._clock(),
            )
            diverged = await self._health.is_diverged(source_name)
        except Exception as exc:  # noqa: BLE001
            error = exc
            self._events.log_step_failed(source_name, "run_audit", exc)
        self._events.log_run_completed(
            source_name,
            duration=_elapsed(perf_started),
            events_fetched=len(fetched.envelopes),
            events_inserted=inserted,
            entities_updated=aggregation.entities_updated,
            chunks_committed=aggregation.chunks_committed,
        )
        if diverged:
            self._events.log_divergence(source_name, self._config.divergence_runs)

        refresh, refresh_error = await self._refresh()
        error = error or refresh_error
        return CycleResult(
            status=(
                CycleStatus.PARTIAL
                if error is not None or refresh is None
                else _refresh_status(refresh)
            ),
            source_name=source_name,
            events_processed=inserted,
            entities_updated=aggregation.entities_updated,
            events_fetched=len(fetched.envelopes),
            chunks_committed=aggregation.chunks_committed,
            merge_mode=mode,
            window_start=window.start,
            window_end=window.end,
            watermark=current,
            diverged=diverged,
            refresh_run_id=None if refresh is None else refresh.run_id,
            views=() if refresh is None else refresh.views,
            error_category=None if error is None else categorize_error(error).value,
            error_message=None if error is None else str(error),
        )

    async def _refresh(self) -> tuple[RefreshRunResult | None, Exception | None]:
        try:
            return await self._orchestrator.refresh_all(), None
        except Exception as exc:  # noqa: BLE001
            self._events.log_step_failed(self._config.source_name, "refresh", exc)
            return None, exc

    async def _fail(
        self, record: RunRecord, error: Exception, perf_started: float
    ) -> CycleResult:
        category = categorize_error(error)
        failed = dc.replace(
            record, error_category=category.value, error_message=str(error)
        )
        try:
            await self._runs.record(failed, finished_at=self._clock())
        except Exception as exc:  # noqa: BLE001
            self._events.log_step_failed(record.source_name, "run_audit", exc)
        self._events.log_run_failed(
            record.source_name, error, _elapsed(perf_started)
        )
        window = record.window
        return CycleResult(
            status=CycleStatus.FAILED,
            source_name=record.source_name,
            events_processed=record.events_inserted,
            entities_updated=record.entities_updated,
            events_fetched=record.events_fetched,
            chunks_committed=record.chunks_committed,
            merge_mode=MergeMode(record.merge_mode) if record.merge_mode else None,
            window_start=window.start if window else None,
            window_end=window.end if window else None,
            error_category=category.value,
            error_message=str(error),
        )

    async def refresh_only(self) -> CycleResult:
        """Re-run the refresh orchestrator without ingesting anything."""
        refresh, error = await self._refresh()
        if refresh is None:
            return CycleResult(
                status=CycleStatus.FAILED,
                source_name=self._config.source_name,
                error_category=categorize_error(error).value if error else None,
                error_message=str(error) if error else None,
            )
        return CycleResult(
            status=_refresh_status(refresh),
            source_name=self._config.source_name,
            refresh_run_id=refresh.run_id,
            views=refresh.views,
        )
