"""Entity aggregates: metric declarations, merge modes and chunked merges."""

from __future__ import annotations

from .aggregation import (
    MERGE_FUNCTIONS,
    AggregateRow,
    AggregationEngine,
    AggregationResult,
    MergeMode,
    fold_events,
    merge_add,
    merge_replace,
    pre_aggregate,
    upsert_aggregates,
)
from .catalog import (
    CREATOR_ENGAGEMENT,
    PORTFOLIO_ENGAGEMENT,
    USER_ENGAGEMENT,
    build_engagement_catalog,
)
from .errors import (
    AggregationConflictError,
    AggregationConflictReason,
    MetricValueError,
    UnknownMetricSetError,
)
from .merger import DEFAULT_CHUNK_SIZE, ChunkedUpsertMerger, MergeProgress
from .metrics import (
    MetricCatalog,
    MetricKind,
    MetricSetSpec,
    MetricSpec,
    normalize_metrics,
)
from .storage import EntityAggregate, init_silver_storage

__all__ = [
    "CREATOR_ENGAGEMENT",
    "DEFAULT_CHUNK_SIZE",
    "MERGE_FUNCTIONS",
    "PORTFOLIO_ENGAGEMENT",
    "USER_ENGAGEMENT",
    "AggregateRow",
    "AggregationConflictError",
    "AggregationConflictReason",
    "AggregationEngine",
    "AggregationResult",
    "ChunkedUpsertMerger",
    "EntityAggregate",
    "MergeMode",
    "MergeProgress",
    "MetricCatalog",
    "MetricKind",
    "MetricSetSpec",
    "MetricSpec",
    "MetricValueError",
    "UnknownMetricSetError",
    "build_engagement_catalog",
    "fold_events",
    "init_silver_storage",
    "merge_add",
    "merge_replace",
    "normalize_metrics",
    "pre_aggregate",
    "upsert_aggregates",
]
