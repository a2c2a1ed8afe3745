"""Fold raw events into entity aggregates under a merge mode.

Two merge modes exist and each has its own function:

``MergeMode.REPLACE``
    Recompute every touched entity from all raw events inside the rolling
    window and overwrite its counts. Used for the first pass of a source and
    for forced resyncs; it corrects any drift accumulated by ADD passes.
``MergeMode.ADD``
    Fold only events that have never been aggregated into the stored values.
    Events leave the pending state in the same transaction that applies them,
    so re-applying a batch adds nothing.

Flags merge with logical OR in both modes: once a user has copied, they stay
a copier even after the copy event ages out of the window.
"""

from __future__ import annotations

import collections.abc as cabc
import dataclasses as dc
import datetime as dt
import enum
import logging
import typing as typ

from sqlalchemy import distinct, select, update

from cairn.bronze.storage import RawEvent, RawEventState
from cairn.bronze.watermarks import DEFAULT_ROLLING_WINDOW
from cairn.common.time import utcnow
from cairn.silver.errors import (
    AggregationConflictError,
    AggregationConflictReason,
    MetricValueError,
)
from cairn.silver.merger import (
    DEFAULT_CHUNK_SIZE,
    ChunkedUpsertMerger,
    MergeEventType,
    MergeProgress,
    in_batches,
)
from cairn.silver.metrics import (
    MetricKind,
    MetricMap,
    MetricSetSpec,
    MetricValue,
    normalize_metrics,
)
from cairn.silver.storage import EntityAggregate

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from cairn.common.time import Clock
    from cairn.silver.metrics import MetricCatalog, MetricSpec

logger = logging.getLogger(__name__)


class MergeMode(enum.StrEnum):
    """How a batch of events is merged into stored aggregates."""

    REPLACE = "replace"
    ADD = "add"


class EventLike(typ.Protocol):
    """Fields of a raw event that aggregation reads."""

    entity_id: str
    event_name: str
    event_time: dt.datetime
    attributes: dict[str, typ.Any]


@dc.dataclass(frozen=True, slots=True)
class AggregateRow:
    """In-memory form of one entity aggregate."""

    metric_set: str
    entity_id: str
    subject_id: str
    dimensions: dict[str, str]
    metrics: MetricMap
    events_processed: int = 0
    first_event_time: dt.datetime | None = None
    last_event_time: dt.datetime | None = None

    @classmethod
    def from_model(
        cls, metric_set: MetricSetSpec, model: EntityAggregate
    ) -> AggregateRow:
        """Build a row from a stored aggregate, normalising its metrics."""
        return cls(
            metric_set=model.metric_set,
            entity_id=model.entity_id,
            subject_id=model.subject_id,
            dimensions=dict(model.dimensions or {}),
            metrics=normalize_metrics(
                metric_set,
                {
                    name: value
                    for name, value in (model.metrics or {}).items()
                    if name in metric_set.metric_names
                },
            ),
            events_processed=model.events_processed or 0,
            first_event_time=model.first_event_time,
            last_event_time=model.last_event_time,
        )

    def emptied(self, metric_set: MetricSetSpec) -> AggregateRow:
        """Return this entity with no in-window events."""
        return dc.replace(
            self,
            metrics=metric_set.zero_metrics(),
            events_processed=0,
            first_event_time=None,
            last_event_time=None,
        )


type MergeFn = cabc.Callable[
    [MetricSetSpec, AggregateRow | None, AggregateRow], AggregateRow
]


def _add_value(kind: MetricKind, left: MetricValue, right: MetricValue) -> MetricValue:
    if kind is MetricKind.FLAG:
        return bool(left) or bool(right)
    return left + right


def _min_time(*values: dt.datetime | None) -> dt.datetime | None:
    present = [value for value in values if value is not None]
    return min(present) if present else None


def _max_time(*values: dt.datetime | None) -> dt.datetime | None:
    present = [value for value in values if value is not None]
    return max(present) if present else None


def ensure_same_entity(existing: AggregateRow, incoming: AggregateRow) -> None:
    """Raise if two rows share a key but describe different entities."""
    if existing.metric_set != incoming.metric_set:
        raise AggregationConflictError(
            incoming.metric_set,
            incoming.entity_id,
            AggregationConflictReason.METRIC_SET_MISMATCH,
        )
    if existing.subject_id != incoming.subject_id:
        raise AggregationConflictError(
            incoming.metric_set,
            incoming.entity_id,
            AggregationConflictReason.SUBJECT_MISMATCH,
        )
    if existing.dimensions != incoming.dimensions:
        raise AggregationConflictError(
            incoming.metric_set,
            incoming.entity_id,
            AggregationConflictReason.DIMENSION_MISMATCH,
        )


def _contribution(
    metric_set: MetricSetSpec, metric: MetricSpec, event: EventLike
) -> MetricValue:
    try:
        return metric.contribution(event.attributes or {})
    except MetricValueError as exc:
        logger.warning(
            "[%s] metric_set=%s metric=%s entity=%s event_time=%s error=%s",
            MergeEventType.CONTRIBUTION_REJECTED,
            metric_set.name,
            metric.name,
            event.entity_id,
            event.event_time.isoformat(),
            exc,
        )
        return metric.zero


def fold_events(
    metric_set: MetricSetSpec, events: cabc.Iterable[EventLike]
) -> list[AggregateRow]:
    """Aggregate events into rows for ``metric_set``, sorted by entity id.

    Events missing a dimension value or matching no metric are ignored. A
    value a SUM metric cannot read contributes zero and is logged, so one
    malformed event never blocks the rest of its source.
    """
    metrics: dict[str, MetricMap] = {}
    meta: dict[str, AggregateRow] = {}
    for event in events:
        attributes = event.attributes or {}
        dimensions = metric_set.dimension_values(attributes)
        if dimensions is None:
            continue
        matched = [
            metric
            for metric in metric_set.metrics
            if metric.matches(event.event_name, attributes)
        ]
        if not matched:
            continue

        key = metric_set.entity_key(event.entity_id, dimensions)
        values = metrics.setdefault(key, metric_set.zero_metrics())
        for metric in matched:
            values[metric.name] = _add_value(
                metric.kind,
                values[metric.name],
                _contribution(metric_set, metric, event),
            )
        current = meta.get(key)
        meta[key] = AggregateRow(
            metric_set=metric_set.name,
            entity_id=key,
            subject_id=event.entity_id,
            dimensions=dimensions,
            metrics={},
            events_processed=(current.events_processed if current else 0) + 1,
            first_event_time=_min_time(
                current.first_event_time if current else None, event.event_time
            ),
            last_event_time=_max_time(
                current.last_event_time if current else None, event.event_time
            ),
        )

    return [
        dc.replace(meta[key], metrics=normalize_metrics(metric_set, metrics[key]))
        for key in sorted(meta)
    ]


def merge_replace(
    metric_set: MetricSetSpec,
    existing: AggregateRow | None,
    recomputed: AggregateRow,
) -> AggregateRow:
    """Overwrite counts and sums with ``recomputed``; OR the flags."""
    if existing is None:
        return recomputed
    ensure_same_entity(existing, recomputed)
    merged = {
        metric.name: (
            bool(existing.metrics[metric.name]) or bool(recomputed.metrics[metric.name])
            if metric.kind is MetricKind.FLAG
            else recomputed.metrics[metric.name]
        )
        for metric in metric_set.metrics
    }
    return dc.replace(recomputed, metrics=merged)


def merge_add(
    metric_set: MetricSetSpec,
    existing: AggregateRow | None,
    delta: AggregateRow,
) -> AggregateRow:
    """Add ``delta`` onto ``existing``: counts and sums add, flags OR."""
    if existing is None:
        return delta
    ensure_same_entity(existing, delta)
    merged = {
        metric.name: _add_value(
            metric.kind, existing.metrics[metric.name], delta.metrics[metric.name]
        )
        for metric in metric_set.metrics
    }
    return dc.replace(
        existing,
        metrics=merged,
        events_processed=existing.events_processed + delta.events_processed,
        first_event_time=_min_time(existing.first_event_time, delta.first_event_time),
        last_event_time=_max_time(existing.last_event_time, delta.last_event_time),
    )


MERGE_FUNCTIONS: dict[MergeMode, MergeFn] = {
    MergeMode.REPLACE: merge_replace,
    MergeMode.ADD: merge_add,
}


def pre_aggregate(
    metric_set: MetricSetSpec, rows: cabc.Iterable[AggregateRow]
) -> list[AggregateRow]:
    """Collapse rows sharing an entity key into one row per key.

    Counts and sums add, flags OR, first and last times widen. Rows that
    share a key but disagree on subject or dimensions raise
    :class:`AggregationConflictError`.
    """
    combined: dict[str, AggregateRow] = {}
    for row in rows:
        combined[row.entity_id] = merge_add(metric_set, combined.get(row.entity_id), row)
    return [combined[key] for key in sorted(combined)]


def _rows_differ(model: EntityAggregate, row: AggregateRow) -> bool:
    return (
        dict(model.metrics or {}) != row.metrics
        or model.events_processed != row.events_processed
        or model.first_event_time != row.first_event_time
        or model.last_event_time != row.last_event_time
    )


async def _load_existing(
    session: AsyncSession, metric_set: MetricSetSpec, subject_ids: cabc.Sequence[str]
) -> dict[str, EntityAggregate]:
    existing: dict[str, EntityAggregate] = {}
    for batch in in_batches(subject_ids):
        models = await session.scalars(
            select(EntityAggregate)
            .where(
                EntityAggregate.metric_set == metric_set.name,
                EntityAggregate.subject_id.in_(batch),
            )
            .with_for_update()
        )
        existing.update((model.entity_id, model) for model in models.all())
    return existing


async def upsert_aggregates(  # noqa: PLR0913
    session: AsyncSession,
    metric_set: MetricSetSpec,
    subject_ids: cabc.Sequence[str],
    rows: cabc.Iterable[AggregateRow],
    mode: MergeMode,
    *,
    window_start: dt.datetime,
) -> int:
    """Merge ``rows`` into stored aggregates for ``subject_ids``.

    Returns the number of aggregate rows inserted or changed. Under REPLACE,
    stored entities of these subjects without a recomputed row are emptied.
    """
    merge = MERGE_FUNCTIONS[mode]
    incoming = {row.entity_id: row for row in pre_aggregate(metric_set, rows)}
    existing = await _load_existing(session, metric_set, subject_ids)

    if mode is MergeMode.REPLACE:
        for key, model in existing.items():
            if key not in incoming:
                incoming[key] = AggregateRow.from_model(metric_set, model).emptied(
                    metric_set
                )

    changed = 0
    for key in sorted(incoming):
        model = existing.get(key)
        current = None if model is None else AggregateRow.from_model(metric_set, model)
        merged = merge(metric_set, current, incoming[key])
        if model is None:
            session.add(
                EntityAggregate(
                    metric_set=metric_set.name,
                    entity_id=merged.entity_id,
                    subject_id=merged.subject_id,
                    dimensions=merged.dimensions,
                    metrics=merged.metrics,
                    events_processed=merged.events_processed,
                    first_event_time=merged.first_event_time,
                    last_event_time=merged.last_event_time,
                    window_start=window_start,
                )
            )
            changed += 1
            continue
        if not _rows_differ(model, merged):
            continue
        model.metrics = merged.metrics
        model.events_processed = merged.events_processed
        model.first_event_time = merged.first_event_time
        model.last_event_time = merged.last_event_time
        if mode is MergeMode.REPLACE or model.window_start is None:
            model.window_start = window_start
        changed += 1
    await session.flush()
    return changed


@dc.dataclass(frozen=True, slots=True)
class AggregationResult:
    """Outcome of one aggregation pass over a source."""

    source_name: str
    mode: MergeMode
    window_start: dt.datetime
    as_of: dt.datetime
    subjects: int
    chunks_committed: int
    entities_updated: int
    events_aggregated: int


class AggregationEngine:
    """Maintain the aggregates of a metric catalog from stored raw events."""

    def __init__(  # noqa: PLR0913
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: MetricCatalog,
        *,
        window: dt.timedelta = DEFAULT_ROLLING_WINDOW,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Clock = utcnow,
    ) -> None:
        """Bind the engine to storage, metric sets and window length."""
        self._session_factory = session_factory
        self._catalog = catalog
        self._window = window
        self._clock = clock
        self._merger = ChunkedUpsertMerger(session_factory, chunk_size=chunk_size)

    @property
    def window(self) -> dt.timedelta:
        """Return the rolling window length.

        A pass at ``as_of`` counts events in ``[as_of - window, as_of]``,
        both bounds included.
        """
        return self._window

    async def pending_subjects(self, source_name: str) -> list[str]:
        """Return subjects with events that were never aggregated."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(distinct(RawEvent.entity_id)).where(
                    RawEvent.source_name == source_name,
                    RawEvent.aggregation_state == RawEventState.PENDING.value,
                )
            )
            return sorted(rows.all())

    async def window_subjects(self, source_name: str) -> list[str]:
        """Return subjects a REPLACE pass for ``source_name`` must revisit.

        Every subject with a raw event from the source is covered, so counts
        that aged out of the window drop to zero. Subjects only other sources
        have seen are left alone.
        """
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(distinct(RawEvent.entity_id)).where(
                    RawEvent.source_name == source_name
                )
            )
            return sorted(rows.all())

    async def aggregate(
        self,
        source_name: str,
        mode: MergeMode,
        *,
        as_of: dt.datetime | None = None,
        progress: MergeProgress | None = None,
    ) -> AggregationResult:
        """Run one aggregation pass for ``source_name`` under ``mode``.

        Subjects are processed in sorted chunks, each committed on its own.
        When a chunk fails, earlier chunks stay committed and their events
        are no longer pending, so the next pass resumes where this one
        stopped.
        """
        as_of = as_of or self._clock()
        window_start = as_of - self._window
        if mode is MergeMode.REPLACE:
            subjects = await self.window_subjects(source_name)
        else:
            subjects = await self.pending_subjects(source_name)

        progress = progress if progress is not None else MergeProgress()
        events_aggregated = 0

        async def apply_chunk(session: AsyncSession, chunk: list[str]) -> int:
            nonlocal events_aggregated
            changed = 0
            events = await self._load_events(
                session, source_name, chunk, mode, window_start, as_of
            )
            for metric_set in self._catalog:
                rows = fold_events(metric_set, events)
                changed += await upsert_aggregates(
                    session, metric_set, chunk, rows, mode, window_start=window_start
                )
            events_aggregated += await self._mark_aggregated(
                session, source_name, chunk, mode, as_of
            )
            return changed

        await self._merger.run(
            subjects, apply_chunk, label=f"{source_name}:{mode}", progress=progress
        )
        return AggregationResult(
            source_name=source_name,
            mode=mode,
            window_start=window_start,
            as_of=as_of,
            subjects=len(subjects),
            chunks_committed=progress.chunks_committed,
            entities_updated=progress.rows_written,
            events_aggregated=events_aggregated,
        )

    async def _load_events(  # noqa: PLR0913
        self,
        session: AsyncSession,
        source_name: str,
        subject_ids: list[str],
        mode: MergeMode,
        window_start: dt.datetime,
        as_of: dt.datetime,
    ) -> list[RawEvent]:
        event_names = sorted(
            set().union(*(metric_set.event_names for metric_set in self._catalog))
        )
        events: list[RawEvent] = []
        for batch in in_batches(subject_ids):
            stmt = select(RawEvent).where(
                RawEvent.entity_id.in_(batch),
                RawEvent.event_name.in_(event_names),
                RawEvent.event_time >= window_start,
            )
            if mode is MergeMode.REPLACE:
                # Aggregates span sources, so a recompute reads all of them.
                stmt = stmt.where(RawEvent.event_time <= as_of)
            else:
                stmt = stmt.where(
                    RawEvent.source_name == source_name,
                    RawEvent.aggregation_state == RawEventState.PENDING.value,
                )
            stmt = stmt.order_by(RawEvent.entity_id, RawEvent.event_time, RawEvent.id)
            events.extend((await session.scalars(stmt)).all())
        return events

    async def _mark_aggregated(  # noqa: PLR0913
        self,
        session: AsyncSession,
        source_name: str,
        subject_ids: list[str],
        mode: MergeMode,
        as_of: dt.datetime,
    ) -> int:
        marked = 0
        now = self._clock()
        for batch in in_batches(subject_ids):
            stmt = (
                update(RawEvent)
                .where(
                    RawEvent.entity_id.in_(batch),
                    RawEvent.aggregation_state == RawEventState.PENDING.value,
                )
                .values(
                    aggregation_state=RawEventState.AGGREGATED.value,
                    aggregated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if mode is MergeMode.REPLACE:
                stmt = stmt.where(RawEvent.event_time <= as_of)
            else:
                stmt = stmt.where(RawEvent.source_name == source_name)
            result = await session.execute(stmt)
            marked += result.rowcount or 0
        return marked
