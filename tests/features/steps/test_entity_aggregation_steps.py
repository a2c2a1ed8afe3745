"""Behavioural coverage for incremental entity aggregation."""

from __future__ import annotations

import asyncio
import typing as typ

import pytest
from pytest_bdd import given, parsers, scenario, then, when
from sqlalchemy import select

from cairn.bronze import RawEventWriter
from cairn.gold import ViewRegistry
from cairn.pipeline import (
    CycleResult,
    EngagementPipeline,
    IterableEventSource,
    PipelineConfig,
    PipelineDependencies,
    SourceEvent,
)
from cairn.silver import (
    AggregationEngine,
    EntityAggregate,
    MergeMode,
    MetricCatalog,
    MetricKind,
    MetricSetSpec,
    MetricSpec,
)
from tests.helpers.event_builders import (
    NOW,
    SOURCE_NAME,
    days_ago,
    envelope,
    fixed_clock,
    source_event,
)

if typ.TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

ACTIVITY = MetricSetSpec(
    name="activity",
    metrics=(
        MetricSpec("view_count", MetricKind.COUNT, frozenset({"view"})),
        MetricSpec("did_copy", MetricKind.FLAG, frozenset({"copy"})),
    ),
)


class AggregationContext(typ.TypedDict, total=False):
    """Shared mutable scenario state."""

    session_factory: async_sessionmaker[AsyncSession]
    events: list[SourceEvent]
    window_days: int
    pipeline: EngagementPipeline
    result: CycleResult


@scenario("../entity_aggregation.feature", "Views and copies are aggregated per user")
def test_views_and_copies_aggregated() -> None:
    """Wrap the pytest-bdd scenario."""


@scenario(
    "../entity_aggregation.feature",
    "Re-ingesting the same events under ADD changes nothing",
)
def test_reingest_is_idempotent() -> None:
    """Overlapping fetches must not double count."""


@scenario(
    "../entity_aggregation.feature",
    "Events outside the rolling window are excluded",
)
def test_window_excludes_old_events() -> None:
    """Only in-window events contribute."""


@pytest.fixture
def aggregation_context(
    session_factory: async_sessionmaker[AsyncSession],
) -> AggregationContext:
    """Provision a fresh database for the scenario."""
    return {"session_factory": session_factory, "events": [], "window_days": 60}


def _pipeline(context: AggregationContext) -> EngagementPipeline:
    if "pipeline" not in context:
        context["pipeline"] = EngagementPipeline(
            PipelineDependencies(
                context["session_factory"], IterableEventSource(context["events"])
            ),
            PipelineConfig(rolling_window_days=context["window_days"]),
            catalog=MetricCatalog([ACTIVITY]),
            registry=ViewRegistry([]),
            clock=fixed_clock(NOW),
        )
    return context["pipeline"]


@given("an empty event store with a view and copy metric set")
def given_empty_store(aggregation_context: AggregationContext) -> None:
    """Storage is initialised by the session_factory fixture."""


@given(parsers.parse("a {days:d}-day rolling window"))
def given_window(aggregation_context: AggregationContext, days: int) -> None:
    """Configure the aggregate window length."""
    aggregation_context["window_days"] = days


@given(
    parsers.parse(
        'user "{user}" has {views:d} "view" events and {copies:d} "copy" event'
    )
)
def given_user_events(
    aggregation_context: AggregationContext, user: str, views: int, copies: int
) -> None:
    """Queue recent view and copy events for ``user``."""
    events = aggregation_context["events"]
    events.extend(source_event(user, "view", days_ago(5 + i)) for i in range(views))
    events.extend(source_event(user, "copy", days_ago(3 + i)) for i in range(copies))


@given(parsers.parse('user "{user}" has a "{event_name}" event {days:d} days old'))
def given_aged_event(
    aggregation_context: AggregationContext, user: str, event_name: str, days: int
) -> None:
    """Queue one event of a given age."""
    aggregation_context["events"].append(source_event(user, event_name, days_ago(days)))


@given("an ingestion cycle has run")
@when("an ingestion cycle runs")
def run_cycle(aggregation_context: AggregationContext) -> None:
    """Run one ingest and aggregate cycle."""
    pipeline = _pipeline(aggregation_context)
    aggregation_context["result"] = asyncio.run(pipeline.run_cycle())
    assert aggregation_context["result"].ok


@when("the same events are ingested again")
def run_cycle_again(aggregation_context: AggregationContext) -> None:
    """Fetch the overlapping window a second time."""
    run_cycle(aggregation_context)


@when("the stored events are aggregated with REPLACE")
def aggregate_stored(aggregation_context: AggregationContext) -> None:
    """Write events straight to the raw store and recompute aggregates."""
    session_factory = aggregation_context["session_factory"]
    envelopes = [
        envelope(
            event.entity_id,
            event.event_name,
            event.event_time,
            discriminator=str(event.attributes["$insert_id"]),
        )
        for event in aggregation_context["events"]
    ]
    engine = AggregationEngine(
        session_factory,
        MetricCatalog([ACTIVITY]),
        window=PipelineConfig(
            rolling_window_days=aggregation_context["window_days"]
        ).rolling_window,
        clock=fixed_clock(NOW),
    )

    async def _run() -> None:
        await RawEventWriter(session_factory).ingest_batch(envelopes)
        await engine.aggregate(SOURCE_NAME, MergeMode.REPLACE, as_of=NOW)

    asyncio.run(_run())


@then("the cycle merged with ADD")
def cycle_merged_with_add(aggregation_context: AggregationContext) -> None:
    """The second cycle folded only new events."""
    result = aggregation_context["result"]
    assert result.merge_mode is MergeMode.ADD
    assert result.events_processed == 0


def _metrics(aggregation_context: AggregationContext, user: str) -> dict[str, object]:
    async def _load() -> EntityAggregate | None:
        async with aggregation_context["session_factory"]() as session:
            return await session.scalar(
                select(EntityAggregate).where(
                    EntityAggregate.metric_set == ACTIVITY.name,
                    EntityAggregate.entity_id == user,
                )
            )

    aggregate = asyncio.run(_load())
    assert aggregate is not None, f"no aggregate for {user}"
    return dict(aggregate.metrics)


@then(parsers.parse('user "{user}" has view_count {count:d}'))
def user_has_view_count(
    aggregation_context: AggregationContext, user: str, count: int
) -> None:
    """Check the stored count."""
    assert _metrics(aggregation_context, user)["view_count"] == count


@then(parsers.parse('user "{user}" has did_copy true'))
def user_has_copied(aggregation_context: AggregationContext, user: str) -> None:
    """Check the stored flag."""
    assert _metrics(aggregation_context, user)["did_copy"] is True
